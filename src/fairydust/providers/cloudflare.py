"""Cloudflare provider for ACME DNS-01 challenges."""

from typing import Any

import httpx

from fairydust._logging import get_logger
from fairydust.credentials import CredentialStore
from fairydust.exceptions import PermanentProviderError, ProviderError
from fairydust.providers.base import DnsProvider, send, zone_candidates

logger = get_logger(__name__)

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"

# "An identical record already exists."
_DUPLICATE_RECORD_CODES = {81057, 81058}


class CloudflareProvider(DnsProvider):
    """DNS provider for the Cloudflare v4 API, authenticated by API token.

    Args:
        credentials: Store holding a token with Zone:DNS:Edit permission.
        api_url: Base URL of the API.
        timeout: HTTP request timeout in seconds (default: 30).
    """

    name = "cloudflare"

    def __init__(
        self,
        credentials: CredentialStore,
        api_url: str = CLOUDFLARE_API_URL,
        timeout: float = 30,
    ):
        self.credentials = credentials
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._http = httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.credentials.secret()}"}
        url = f"{self.api_url}{path}"
        return send(self._http, "Cloudflare", method, url, headers=headers, **kwargs)

    @staticmethod
    def _errors(response: httpx.Response) -> list[dict[str, Any]]:
        try:
            return response.json().get("errors") or []
        except ValueError:
            return []

    def _raise_for_response(self, response: httpx.Response, zone: str | None = None) -> None:
        if response.is_success:
            return
        errors = self._errors(response)
        detail = "; ".join(f"{e.get('code')}: {e.get('message')}" for e in errors) or None
        logger.error(
            "Cloudflare API error",
            extra={"zone": zone, "status_code": response.status_code, "detail": detail},
        )
        raise ProviderError.from_response(response, "Cloudflare", detail=detail)

    def find_zone(self, domain: str) -> str:
        """Return the id of the most specific Cloudflare zone containing domain."""
        for candidate in zone_candidates(domain):
            response = self._request("GET", "/zones", params={"name": candidate})
            self._raise_for_response(response)
            zones = response.json().get("result") or []
            if zones:
                logger.debug("Zone found", extra={"zone": candidate, "zone_id": zones[0]["id"]})
                return zones[0]["id"]

        raise PermanentProviderError(f"No zone found for domain: {domain}", status_code=404)

    def _find_record(self, zone: str, name: str, value: str) -> str | None:
        response = self._request(
            "GET",
            f"/zones/{zone}/dns_records",
            params={"type": "TXT", "name": name, "content": value},
        )
        self._raise_for_response(response, zone)
        records = response.json().get("result") or []
        return records[0]["id"] if records else None

    def create_txt_record(self, zone: str, name: str, value: str, ttl: int = 60) -> str:
        response = self._request(
            "POST",
            f"/zones/{zone}/dns_records",
            json={"type": "TXT", "name": name, "content": value, "ttl": ttl},
        )

        if response.status_code == 400 and any(
            e.get("code") in _DUPLICATE_RECORD_CODES for e in self._errors(response)
        ):
            # A retried create whose first attempt did land
            record_id = self._find_record(zone, name, value)
            if record_id is not None:
                logger.debug("TXT record already present", extra={"record_name": name})
                return record_id

        self._raise_for_response(response, zone)
        record_id = response.json()["result"]["id"]
        logger.info("TXT record created", extra={"zone": zone, "record_name": name})
        return record_id

    def delete_txt_record(self, zone: str, record_id: str) -> None:
        response = self._request("DELETE", f"/zones/{zone}/dns_records/{record_id}")
        if response.status_code == 404:
            logger.debug("TXT record already absent", extra={"record_id": record_id})
            return
        self._raise_for_response(response, zone)
        logger.info("TXT record deleted", extra={"zone": zone, "record_id": record_id})
