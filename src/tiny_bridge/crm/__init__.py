"""Chatwoot CRM contacts.

Quick start::

    from tiny_bridge.config import get_settings
    from tiny_bridge.crm import ChatwootClient, ContactService

    async with ChatwootClient.from_settings(get_settings()) as client:
        contacts = ContactService(client)
        found = await contacts.search_contacts("5514999999999")
"""

from tiny_bridge.crm.contacts import ContactService
from tiny_bridge.crm.http import ChatwootClient

__all__ = ["ChatwootClient", "ContactService"]
