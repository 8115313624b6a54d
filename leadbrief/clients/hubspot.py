"""Marketing-platform contact property lookup.

Best effort only: every failure returns None and the summary is built
without marketing-property evidence.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional
from urllib.parse import quote

import httpx

from leadbrief.brief.evidence import MARKETING_PROPERTIES
from leadbrief.config import settings
from leadbrief.normalize.redaction import redact_email_address

logger = logging.getLogger(__name__)

SEARCH_PATH = "/crm/v3/objects/contacts/search"
CONTACT_PATH = "/crm/v3/objects/contacts/{contact_id}"
# CRM contact fields that may already hold the marketing-platform contact id
MARKETING_CONTACT_ID_FIELDS = ("Hubspot__c", "HubSpot_Contact_Id__c")


class HubSpotClient:
    """Async client for contact search and property reads."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.token = token if token is not None else settings.hubspot_token
        self.base_url = (base_url or settings.hubspot_base_url or "https://api.hubapi.com").rstrip("/")
        self.timeout = timeout if timeout is not None else settings.hubspot_timeout_seconds
        if not self.token:
            logger.warning("HubSpot token not configured: marketing properties disabled")
        self.headers = {
            "Authorization": f"Bearer {self.token or ''}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> Optional[dict]:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            resp = await client.request(method, path, headers=self.headers, **kwargs)
        if resp.status_code != 200:
            logger.warning("HubSpot returned %d for %s: %s", resp.status_code, path, resp.text[:200])
            return None
        return resp.json()

    async def search_contact_id(self, email: str) -> Optional[str]:
        if not self.token or not email:
            return None
        data = await self._request("POST", SEARCH_PATH, json={
            "filterGroups": [
                {"filters": [{"propertyName": "email", "operator": "EQ", "value": email}]}
            ],
            "limit": 1,
        })
        results = (data or {}).get("results") or []
        if not results or not results[0].get("id"):
            return None
        return str(results[0]["id"])

    async def get_contact_properties(
        self,
        contact_id: str,
        properties: Iterable[str] = MARKETING_PROPERTIES,
    ) -> Optional[dict[str, Any]]:
        if not self.token or not contact_id:
            return None
        params = [("properties", p) for p in properties] + [("archived", "false")]
        path = CONTACT_PATH.format(contact_id=quote(str(contact_id), safe=""))
        data = await self._request("GET", path, params=params)
        return (data or {}).get("properties") or None

    async def properties_for_email(
        self,
        email: Optional[str],
        contact_id: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        """Read the marketing properties, searching by email only when no contact id is known.

        None on any failure.
        """
        if not self.token or not (email or contact_id):
            return None
        try:
            if not contact_id:
                contact_id = await self.search_contact_id(email)
            if not contact_id:
                logger.info("HubSpot: no contact for %s", redact_email_address(email))
                return None
            return await self.get_contact_properties(contact_id)
        except (httpx.HTTPError, ValueError):
            logger.exception("HubSpot lookup failed for %s", redact_email_address(email))
            return None
