"""Abstract base class for DNS providers."""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from fairydust.exceptions import TransientProviderError


class DnsProvider(ABC):
    """Abstract interface for DNS providers.

    DNS providers create and delete the TXT records used for ACME DNS-01
    challenge validation. Implementations raise
    :class:`~fairydust.exceptions.TransientProviderError` for conditions
    worth retrying and :class:`~fairydust.exceptions.PermanentProviderError`
    for everything else; retrying is the caller's job.

    Cloudflare and PowerDNS ship with fairydust. Other hosted DNS APIs,
    such as Aliyun DNS (AddDomainRecord / DeleteDomainRecord), plug in by
    subclassing this and registering in :func:`fairydust.providers.create_provider`.
    """

    name: str = "dns"

    @abstractmethod
    def find_zone(self, domain: str) -> str:
        """Find the zone that holds records for a domain.

        Args:
            domain: Fully qualified name (usually the challenge record name).

        Returns:
            Provider-specific zone identifier.

        Raises:
            PermanentProviderError: If no zone matches.
        """
        ...

    @abstractmethod
    def create_txt_record(self, zone: str, name: str, value: str, ttl: int = 60) -> str:
        """Create a TXT record.

        Creating a record that already exists with the same value must
        succeed and return the existing record's id.

        Args:
            zone: Zone identifier from find_zone().
            name: Fully qualified record name, e.g. "_acme-challenge.example.com".
            value: TXT record value.
            ttl: Record TTL in seconds.

        Returns:
            Record id for later deletion.
        """
        ...

    @abstractmethod
    def delete_txt_record(self, zone: str, record_id: str) -> None:
        """Delete a TXT record.

        Deleting a record that no longer exists must succeed.

        Args:
            zone: Zone identifier from find_zone().
            record_id: Id returned by create_txt_record().
        """
        ...

    def close(self) -> None:
        """Release network resources held by the provider."""


def zone_candidates(domain: str) -> list[str]:
    """Parent names of a domain, most specific first, without trailing dots."""
    parts = domain.rstrip(".").split(".")
    return [".".join(parts[i:]) for i in range(len(parts) - 1)]


def send(
    client: httpx.Client, provider: str, method: str, url: str, **kwargs: Any
) -> httpx.Response:
    """Send a request, mapping transport failures to transient provider errors.

    HTTP error statuses are returned to the caller untouched.
    """
    try:
        return client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientProviderError(f"{provider} API request timed out") from e
    except httpx.TransportError as e:
        raise TransientProviderError(f"{provider} API unreachable: {type(e).__name__}") from e
