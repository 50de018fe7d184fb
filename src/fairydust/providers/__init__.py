"""DNS providers for ACME challenge validation."""

from fairydust.config import Settings
from fairydust.credentials import CredentialStore
from fairydust.exceptions import ConfigurationError
from fairydust.providers.base import DnsProvider
from fairydust.providers.cloudflare import CloudflareProvider
from fairydust.providers.powerdns import PowerDnsProvider

__all__ = ["CloudflareProvider", "DnsProvider", "PowerDnsProvider", "create_provider"]


def create_provider(settings: Settings, credentials: CredentialStore) -> DnsProvider:
    """Instantiate the provider named by settings.dns_provider."""
    if settings.dns_provider == "cloudflare":
        return CloudflareProvider(credentials)
    if settings.dns_provider == "powerdns":
        return PowerDnsProvider(settings.powerdns_api_url, credentials)
    raise ConfigurationError(f"Unknown DNS provider: {settings.dns_provider}")
