"""PowerDNS provider for ACME DNS-01 challenges."""

import httpx

from fairydust._logging import get_logger
from fairydust.credentials import CredentialStore
from fairydust.exceptions import PermanentProviderError, ProviderError
from fairydust.providers.base import DnsProvider, send, zone_candidates

logger = get_logger(__name__)

_RECORD_ID_SEPARATOR = "|"
DEFAULT_TTL = 60


class PowerDnsProvider(DnsProvider):
    """DNS provider for PowerDNS authoritative server.

    PowerDNS addresses records by rrset rather than by id, so the record
    id handed back is ``<record name>|<value>``. Creating and deleting a
    value preserves any other values in the same rrset, which matters
    when ``example.com`` and ``*.example.com`` are validated together.

    Args:
        api_url: Base URL of the PowerDNS API (e.g., "http://localhost:8081").
        credentials: Store holding the X-API-Key secret.
        server_id: PowerDNS server ID (default: "localhost").
        timeout: HTTP request timeout in seconds (default: 30).
    """

    name = "powerdns"

    def __init__(
        self,
        api_url: str,
        credentials: CredentialStore,
        server_id: str = "localhost",
        timeout: float = 30,
    ):
        self.api_url = api_url.rstrip("/")
        self.credentials = credentials
        self.server_id = server_id
        self.timeout = timeout
        self._http = httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def _zone_url(self, zone: str) -> str:
        return f"{self.api_url}/api/v1/servers/{self.server_id}/zones/{zone}"

    def _headers(self) -> dict[str, str]:
        return {"X-API-Key": self.credentials.secret()}

    def _raise_for_response(self, response: httpx.Response, zone: str) -> None:
        """Raise a ProviderError for any non-success status."""
        if response.is_success:
            return

        try:
            detail = response.json().get("error", response.text)
        except ValueError:
            detail = response.text or "Unknown error"

        logger.error(
            "PowerDNS API error",
            extra={"zone": zone, "status_code": response.status_code, "detail": detail},
        )
        raise ProviderError.from_response(response, "PowerDNS", detail=detail)

    def find_zone(self, domain: str) -> str:
        """Find the apex zone containing the given name.

        Tests each parent name from most to least specific against the
        zones endpoint.

        Returns:
            The zone name (with trailing dot).

        Raises:
            PermanentProviderError: If no matching zone is found.
        """
        for candidate in zone_candidates(domain):
            zone = candidate + "."
            logger.debug("Trying zone candidate", extra={"candidate": zone})
            response = send(
                self._http, "PowerDNS", "GET", self._zone_url(zone), headers=self._headers()
            )
            if response.status_code == 200:
                logger.debug("Zone found", extra={"zone": zone})
                return zone
            if response.status_code not in (404, 422):
                self._raise_for_response(response, zone)

        raise PermanentProviderError(f"No zone found for domain: {domain}", status_code=404)

    def _current_values(self, zone: str, name: str) -> tuple[list[str], int | None]:
        """Return the TXT values currently published at name and the rrset TTL."""
        response = send(
            self._http,
            "PowerDNS",
            "GET",
            self._zone_url(zone),
            headers=self._headers(),
            params={"rrset_name": name, "rrset_type": "TXT"},
        )
        self._raise_for_response(response, zone)
        values = []
        ttl = None
        for rrset in response.json().get("rrsets", []):
            if rrset.get("name") == name and rrset.get("type") == "TXT":
                values.extend(r["content"].strip('"') for r in rrset.get("records", []))
                ttl = rrset.get("ttl", ttl)
        return values, ttl

    def _patch_rrset(self, zone: str, name: str, values: list[str], ttl: int) -> None:
        rrset: dict = {"name": name, "type": "TXT"}
        if values:
            rrset["changetype"] = "REPLACE"
            rrset["ttl"] = ttl
            rrset["records"] = [{"content": f'"{v}"', "disabled": False} for v in values]
        else:
            rrset["changetype"] = "DELETE"

        response = send(
            self._http,
            "PowerDNS",
            "PATCH",
            self._zone_url(zone),
            headers=self._headers(),
            json={"rrsets": [rrset]},
        )
        self._raise_for_response(response, zone)

    def create_txt_record(
        self, zone: str, name: str, value: str, ttl: int = DEFAULT_TTL
    ) -> str:
        """Add a value to the TXT rrset at name."""
        fqdn = name.rstrip(".") + "."
        values, _ = self._current_values(zone, fqdn)
        if value not in values:
            self._patch_rrset(zone, fqdn, [*values, value], ttl)
        logger.info("TXT record created", extra={"zone": zone, "record_name": fqdn})
        return f"{fqdn}{_RECORD_ID_SEPARATOR}{value}"

    def delete_txt_record(self, zone: str, record_id: str) -> None:
        """Remove a value from its TXT rrset, deleting the rrset when empty."""
        fqdn, sep, value = record_id.partition(_RECORD_ID_SEPARATOR)
        if not sep:
            raise PermanentProviderError(f"Malformed PowerDNS record id: {record_id}")
        values, ttl = self._current_values(zone, fqdn)
        if value in values:
            remaining = [v for v in values if v != value]
            self._patch_rrset(zone, fqdn, remaining, ttl=ttl or DEFAULT_TTL)
        logger.info("TXT record deleted", extra={"zone": zone, "record_name": fqdn})
