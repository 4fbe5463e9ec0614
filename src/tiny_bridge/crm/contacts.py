"""Chatwoot contact operations.

Rules the Chatwoot Application API imposes on contact payloads:

- city and country live in ``additional_attributes``
  (``city``, ``country``, ``country_code``).
- ``custom_attributes`` may only carry keys already defined in the
  account settings; unknown keys are rejected with 400/422.
- ``phone_number`` must be E.164; it is derived from a WhatsApp JID
  identifier when not given.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import structlog

from tiny_bridge.crm.http import ChatwootClient, decode_body
from tiny_bridge.crm.normalize import (
    BIO_ALIASES,
    clean_deep,
    infer_region_from_phone,
    normalize_additional_attributes,
    normalize_social_profiles,
    region_name,
    to_e164_phone,
)
from tiny_bridge.errors import CrmError

logger = structlog.get_logger()

UPDATABLE_FIELDS = (
    "name",
    "email",
    "identifier",
    "phone_number",
    "avatar_url",
    "additional_attributes",
    "custom_attributes",
)

# Accepted at the top level of an update and moved into additional_attributes.
ATTRIBUTE_SHORTCUTS = ("city", "company_name", "country", "country_code")
SOCIAL_SHORTCUTS = ("social_profiles", "socials")
ACCEPTED_UPDATE_KEYS = (
    *UPDATABLE_FIELDS,
    *ATTRIBUTE_SHORTCUTS,
    *SOCIAL_SHORTCUTS,
    *BIO_ALIASES,
)


class ContactService:
    """Contact CRUD on top of an open ChatwootClient."""

    def __init__(self, client: ChatwootClient) -> None:
        self._client = client

    def _contact_path(self, contact_id: Any = "") -> str:
        suffix = quote(str(contact_id), safe="") if contact_id != "" else ""
        return self._client.account_path(f"contacts/{suffix}")

    async def get_contacts(self) -> Any:
        return await self._client.get(self._contact_path())

    async def search_contacts(self, query: str) -> Any:
        return await self._client.get(
            self._client.account_path("contacts/search"), params={"q": query}
        )

    async def get_contact(self, contact_id: int | str) -> Any:
        return await self._client.get(self._contact_path(contact_id))

    async def create_contact(
        self,
        inbox_id: int,
        name: str | None,
        identifier: str | None,
        avatar_url: str | None = None,
        city: str = "",
        *,
        email: str = "",
        country: str = "",
        country_code: str = "",
        bio: str = "",
        company_name: str = "",
        socials: dict[str, str] | None = None,
        custom: dict[str, Any] | None = None,
    ) -> Any:
        """Create a contact and return it as stored by Chatwoot.

        Args:
            inbox_id: Inbox the contact belongs to (e.g. the WhatsApp inbox).
            name: Display name.
            identifier: External id, typically ``"5514...@s.whatsapp.net"``.
                Its leading digits become ``phone_number``.
            avatar_url: Optional avatar URL.
            city: Stored in ``additional_attributes.city``.
            email: Contact email.
            country: English country name; inferred from the phone if empty.
            country_code: ISO alpha-2 code; inferred from the phone if empty.
            bio: Shown as the contact description.
            company_name: Stored in ``additional_attributes``.
            socials: Usernames or profile URLs per network.
            custom: Custom attributes already defined in the account.

        Returns:
            The created contact. When Chatwoot saved it without the
            inferred country, a follow-up PATCH fixes it and the contact
            is fetched again.

        Raises:
            ValueError: if identifier, email and phone are all missing.
            CrmError: if the create call fails.
        """
        phone = to_e164_phone(identifier)
        if not identifier and not email and not phone:
            raise ValueError(
                "create_contact requires at least identifier, email or phone"
            )

        if not country_code.strip() and phone:
            iso = infer_region_from_phone(phone)
            if iso:
                country_code = iso
                if not country.strip():
                    country = region_name(iso)

        additional = clean_deep(
            {
                "city": city,
                "country": country,
                "country_code": country_code,
                "description": bio,
                "company_name": company_name,
                "social_profiles": clean_deep(
                    normalize_social_profiles(socials or {})
                ),
            }
        )
        payload = clean_deep(
            {
                "inbox_id": inbox_id,
                "name": name,
                "email": email,
                "identifier": identifier,
                "phone_number": phone,
                "avatar_url": avatar_url,
                "additional_attributes": additional,
                "custom_attributes": custom or None,
            }
        )

        try:
            created = await self._client.post(self._contact_path(), payload)
        except CrmError as exc:
            logger.error(
                "crm_contact_create_failed",
                status_code=exc.status_code,
                body=exc.body,
            )
            raise

        contact = _extract_contact(created)
        contact_id = contact.get("id")
        if contact_id is None:
            return created

        try:
            saved = contact.get("additional_attributes") or {}
            fixed = clean_deep(
                {
                    **saved,
                    "country_code": country_code or saved.get("country_code"),
                    "country": country or saved.get("country"),
                }
            ) or {}
            if fixed != saved:
                await self._client.patch(
                    self._contact_path(contact_id),
                    {"additional_attributes": fixed},
                )
            return await self.get_contact(contact_id)
        except CrmError as exc:
            logger.warning(
                "crm_contact_country_autofix_failed",
                contact_id=contact_id,
                error=str(exc),
            )
        return created

    async def update_contact(
        self,
        contact_id: int | str,
        patch: dict[str, Any],
        *,
        merge_additional: bool = True,
        merge_custom: bool = True,
    ) -> Any:
        """Update a contact and return it as stored after the change.

        ``patch`` takes the same shape as a created contact. Shortcuts
        at the top level (city, company_name, country, country_code,
        socials/social_profiles and the bio aliases) are moved into
        ``additional_attributes``. By default the given attributes are
        merged over the stored ones; pass ``merge_additional=False`` or
        ``merge_custom=False`` to replace them instead.
        """
        if contact_id in (None, ""):
            raise ValueError("update_contact requires a contact_id")
        path = self._contact_path(contact_id)

        raw = patch if isinstance(patch, dict) else {}
        top = {key: raw[key] for key in ACCEPTED_UPDATE_KEYS if key in raw}
        additional = _collect_additional(top)

        phone = top.get("phone_number") or to_e164_phone(top.get("identifier"))
        if phone:
            top["phone_number"] = phone
        if additional is not None:
            additional = normalize_additional_attributes(additional, phone) or {}

        current: dict[str, Any] = {}
        if merge_additional or merge_custom:
            current = _extract_contact(await self._client.get(path))

        if additional is not None and merge_additional:
            stored = _as_dict(current.get("additional_attributes"))
            additional = {**stored, **additional}

        custom = top.get("custom_attributes")
        if "custom_attributes" in top and merge_custom:
            custom = {**_as_dict(current.get("custom_attributes")), **_as_dict(custom)}

        payload = clean_deep(
            {
                "name": top.get("name"),
                "email": top.get("email"),
                "identifier": top.get("identifier"),
                "phone_number": top.get("phone_number"),
                "avatar_url": top.get("avatar_url"),
                "additional_attributes": additional,
                "custom_attributes": custom,
            }
        ) or {}

        await self._client.patch(path, payload)
        return await self._client.get(path)

    async def delete_contact(
        self,
        contact_id: int | str,
        *,
        verify: bool = False,
        ok_on_404: bool = True,
    ) -> dict[str, Any]:
        """Delete a contact.

        Args:
            contact_id: Contact to delete.
            verify: Fetch the contact afterwards; a 404 confirms the
                deletion (``verified=True``).
            ok_on_404: Treat a 404 on DELETE as success
                (``already_deleted=True``) instead of raising.

        Returns:
            ``{"ok", "status"}`` plus ``payload``, ``verified`` and/or
            ``already_deleted`` depending on the path taken.
        """
        key = "" if contact_id is None else str(contact_id).strip()
        if not key:
            raise ValueError("delete_contact requires a contact_id")
        path = self._contact_path(key)

        try:
            status, payload = await self._delete(path, ok_on_404=ok_on_404)

            if verify:
                try:
                    await self._client.request_raw("GET", path)
                except CrmError as exc:
                    if exc.status_code != 404:
                        raise
                    result: dict[str, Any] = {
                        "ok": True,
                        "status": status,
                        "verified": True,
                    }
                    if status == 404:
                        result["already_deleted"] = True
                    return result
                logger.warning("crm_contact_still_present", contact_id=key)
                return {"ok": False, "status": status, "verified": False}

            if status == 404:
                return {"ok": True, "status": status, "already_deleted": True}
            return {"ok": True, "status": status, "payload": payload}
        except CrmError as exc:
            logger.error(
                "crm_contact_delete_failed",
                contact_id=key,
                status_code=exc.status_code,
                body=exc.body,
            )
            raise

    async def _delete(self, path: str, *, ok_on_404: bool) -> tuple[int, Any]:
        try:
            response = await self._client.request_raw("DELETE", path)
        except CrmError as exc:
            if exc.status_code == 404 and ok_on_404:
                return 404, None
            raise
        return response.status_code, decode_body(response)


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _extract_contact(response: Any) -> dict[str, Any]:
    """Contact object from ``{"payload": {"contact": {...}}}`` responses."""
    payload = response.get("payload") if isinstance(response, dict) else None
    contact = payload.get("contact") if isinstance(payload, dict) else None
    return contact if isinstance(contact, dict) else {}


def _collect_additional(top: dict[str, Any]) -> dict[str, Any] | None:
    """Fold top-level shortcuts into additional_attributes.

    Returns the attributes to send, or None when the update does not
    touch them. Shortcut keys are removed from ``top``.
    """
    additional = _as_dict(top.get("additional_attributes"))

    for key in ATTRIBUTE_SHORTCUTS:
        if key in top:
            additional[key] = top[key]

    bio = next(
        (
            top[key]
            for key in BIO_ALIASES
            if isinstance(top.get(key), str) and top[key].strip()
        ),
        None,
    )
    if bio:
        additional["description"] = bio

    socials = next(
        (top[key] for key in SOCIAL_SHORTCUTS if isinstance(top.get(key), dict)),
        None,
    )
    if socials:
        additional["social_profiles"] = socials

    for key in (*ATTRIBUTE_SHORTCUTS, *BIO_ALIASES, *SOCIAL_SHORTCUTS):
        top.pop(key, None)

    if additional or "additional_attributes" in top:
        return additional
    return None
