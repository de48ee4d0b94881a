"""Cloudflare DNS provider implementation."""

import logging
from typing import Any, Dict, Optional

import requests

from deploypilot.core.exceptions import SideEffectError
from deploypilot.integrations.base import IDNSProvider

logger = logging.getLogger(__name__)

API_BASE = "https://api.cloudflare.com/client/v4"


def mask_token(token: str) -> str:
    """Show the first 8 and last 4 characters of a token."""
    if not token or len(token) <= 12:
        return "***"
    return f"{token[:8]}...{token[-4:]}"


class CloudflareDNSProvider(IDNSProvider):
    """
    Manages A records in one Cloudflare zone.

    Handles lookup, create, update and delete through the v4 REST API.
    """

    def __init__(
        self,
        api_token: str,
        zone_id: str,
        ttl: int = 1,
        proxied: bool = False,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the Cloudflare client.

        Args:
            api_token: API token with DNS edit permission
            zone_id: Zone holding the records
            ttl: Record TTL (1 means automatic)
            proxied: Whether records go through the Cloudflare proxy
            timeout: Per-request timeout in seconds
            session: Optional requests session
        """
        self.api_token = api_token
        self.zone_id = zone_id
        self.ttl = ttl
        self.proxied = proxied
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def records_url(self) -> str:
        return f"{API_BASE}/zones/{self.zone_id}/dns_records"

    def upsert(self, name: str, address: str) -> None:
        record = self.find_record(name)

        if record is None:
            self._request("POST", self.records_url, json=self._payload(name, address))
            logger.info("DNS record created: %s -> %s", name, address)
            return

        if record.get("content") == address:
            logger.info("DNS record %s already points to %s", name, address)
            return

        self._request(
            "PUT",
            f"{self.records_url}/{record['id']}",
            json=self._payload(name, address),
        )
        logger.info("DNS record updated: %s -> %s", name, address)

    def remove(self, name: str) -> None:
        record = self.find_record(name)
        if record is None:
            logger.info("DNS record %s not found, nothing to remove", name)
            return

        self._request("DELETE", f"{self.records_url}/{record['id']}")
        logger.info("DNS record deleted: %s (%s)", name, record["id"])

    def find_record(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the first A record named ``name``, or None."""
        data = self._request("GET", self.records_url, params={"type": "A", "name": name})
        records = data.get("result") or []
        if not records:
            logger.debug("No DNS record found for %s", name)
            return None
        return records[0]

    def _payload(self, name: str, address: str) -> Dict[str, Any]:
        return {
            "type": "A",
            "name": name,
            "content": address,
            "ttl": self.ttl,
            "proxied": self.proxied,
        }

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        logger.debug(
            "Sending Cloudflare API request %s %s (token %s)",
            method,
            url,
            mask_token(self.api_token),
        )

        try:
            response = self.session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise SideEffectError(f"Cloudflare API request failed: {e}")

        if response.status_code not in (200, 201):
            logger.error(
                "Cloudflare API returned status %d for %s %s: %s",
                response.status_code,
                method,
                url,
                response.text,
            )
            raise SideEffectError(
                f"Cloudflare API returned status {response.status_code}: {response.text}",
                details={"status": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SideEffectError(f"Failed to decode Cloudflare response: {e}")

        if not data.get("success", False):
            errors = data.get("errors") or []
            message = "; ".join(e.get("message", "Unknown error") for e in errors)
            raise SideEffectError(
                f"Cloudflare API returned success=false: {message or 'no details'}"
            )
        return data
