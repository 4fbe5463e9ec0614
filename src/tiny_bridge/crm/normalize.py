"""Payload helpers for Chatwoot contacts: phones, handles, countries."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse

import phonenumbers
import pycountry
import structlog
from phonenumbers import NumberParseException

logger = structlog.get_logger()

# Fallback when phonenumbers cannot place a number (too short, unassigned
# ranges). "1" is shared by several countries (NANP), so it never
# resolves to one region here.
CALLING_CODE_REGIONS: dict[str, str | None] = {
    "55": "BR",
    "351": "PT",
    "54": "AR",
    "598": "UY",
    "1": None,
    "44": "GB",
    "33": "FR",
    "34": "ES",
    "39": "IT",
    "49": "DE",
}

SOCIAL_NETWORKS = ("instagram", "facebook", "linkedin", "twitter", "github")
BIO_ALIASES = ("bio", "description", "about", "notes", "descricao")

_LEADING_DIGITS_RE = re.compile(r"^\d+")
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_HANDLE_TAIL_RE = re.compile(r"[/?#].*$")
_UNKNOWN_REGION = "ZZ"


def clean_deep(value: Any) -> Any:
    """Drop "" and None recursively; empty dicts/lists collapse to None.

    0 and False are kept.
    """
    if isinstance(value, list):
        items = [v for v in (clean_deep(item) for item in value) if v is not None]
        return items or None
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            cleaned = clean_deep(item)
            if cleaned is not None:
                out[key] = cleaned
        return out or None
    if value is None or value == "":
        return None
    return value


def to_e164_phone(jid_or_phone: Any) -> str | None:
    """Leading digits as E.164: "5514999@s.whatsapp.net" -> "+5514999"."""
    match = _LEADING_DIGITS_RE.match(str(jid_or_phone or ""))
    return f"+{match.group(0)}" if match else None


def normalize_handle(value: Any) -> str:
    """Reduce "@user" or "https://site.com/user/?x" to "user"."""
    if not value:
        return ""
    handle = str(value).strip().lstrip("@")
    if _URL_RE.match(handle):
        parts = [p for p in urlparse(handle).path.split("/") if p]
        if parts:
            handle = parts[-1]
    return _HANDLE_TAIL_RE.sub("", handle)


def infer_region_from_phone(phone: Any) -> str | None:
    """ISO region for an E.164 number, or None when it cannot be placed.

    phonenumbers resolves the region from its metadata; numbers it
    cannot place fall back to the calling code table.
    """
    digits = str(phone or "").strip().lstrip("+")
    if not digits.isdigit():
        return None

    try:
        parsed = phonenumbers.parse(f"+{digits}")
    except NumberParseException:
        region = None
    else:
        region = phonenumbers.region_code_for_number(parsed)
    if region and region != _UNKNOWN_REGION:
        return str(region)

    for length in (3, 2, 1):
        code = digits[:length]
        if code in CALLING_CODE_REGIONS:
            logger.debug("phone_region_fallback", calling_code=code)
            return CALLING_CODE_REGIONS[code]
    return None


def region_name(iso2: str | None) -> str:
    """English country name for an ISO code, or the code itself."""
    if not iso2:
        return ""
    country = pycountry.countries.get(alpha_2=iso2.upper())
    if country is None:
        return iso2
    return str(getattr(country, "common_name", None) or country.name)


def normalize_social_profiles(profiles: dict[str, Any]) -> dict[str, str]:
    return {name: normalize_handle(profiles.get(name)) for name in SOCIAL_NETWORKS}


def normalize_additional_attributes(
    attributes: Any,
    phone_e164: str | None = None,
) -> dict[str, Any] | None:
    """Canonical ``additional_attributes`` for a contact.

    - bio aliases (bio, about, notes, descricao) become ``description``
    - ``socials`` is accepted as an alias of ``social_profiles``;
      handles are reduced to plain usernames
    - ``country_code``/``country`` are inferred from the phone when absent

    Returns None when nothing is left after cleaning.
    """
    base: dict[str, Any] = dict(attributes) if isinstance(attributes, dict) else {}

    for key in BIO_ALIASES:
        text = base.get(key)
        if isinstance(text, str) and text.strip():
            base["description"] = base.get("description") or text
    for key in BIO_ALIASES:
        if key != "description":
            base.pop(key, None)

    socials = base.pop("socials", None)
    if isinstance(socials, dict) and not isinstance(
        base.get("social_profiles"), dict
    ):
        base["social_profiles"] = socials
    if isinstance(base.get("social_profiles"), dict):
        base["social_profiles"] = normalize_social_profiles(base["social_profiles"])

    if not str(base.get("country_code") or "").strip() and phone_e164:
        iso = infer_region_from_phone(phone_e164)
        if iso:
            base["country_code"] = iso
            if not str(base.get("country") or "").strip():
                base["country"] = region_name(iso)

    return clean_deep(base)
