"""Runtime configuration loaded from FAIRYDUST_* environment variables."""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from fairydust.exceptions import ConfigurationError

LETSENCRYPT_DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_DIRECTORY_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"

ENV_PREFIX = "FAIRYDUST_"

_ENV_FIELDS = {
    "ACME_DIRECTORY_URL": "acme_directory_url",
    "ACME_EMAIL": "acme_email",
    "ACCOUNT_KEY": "account_key_path",
    "CERTIFICATE_KEY_TYPE": "certificate_key_type",
    "DNS_PROVIDER": "dns_provider",
    "POWERDNS_API_URL": "powerdns_api_url",
    "RECORD_TTL": "record_ttl",
    "PROPAGATION_TIMEOUT": "propagation_timeout",
    "PROPAGATION_POLL_INTERVAL": "propagation_poll_interval",
    "PROPAGATION_RESOLVERS": "propagation_resolvers",
    "PROPAGATION_QUORUM": "propagation_quorum",
    "VALIDATION_TIMEOUT": "validation_timeout",
    "RENEWAL_WINDOW_DAYS": "renewal_window_days",
    "RENEWAL_SCAN_INTERVAL": "renewal_scan_interval",
    "RETRY_BASE_DELAY": "retry_base_delay",
    "RETRY_MAX_DELAY": "retry_max_delay",
    "RETRY_MAX_ATTEMPTS": "retry_max_attempts",
    "STORAGE_DIR": "storage_dir",
}


class Settings(BaseModel):
    """All tunables with their documented defaults.

    Credentials live in :mod:`fairydust.credentials`, not here.
    """

    acme_directory_url: str = LETSENCRYPT_DIRECTORY_URL
    acme_email: str | None = None
    account_key_path: Path = Path("~/.fairydust/account.pem")
    certificate_key_type: Literal["rsa2048", "rsa4096", "ec256", "ec384"] = "rsa2048"

    dns_provider: Literal["cloudflare", "powerdns"] = "cloudflare"
    powerdns_api_url: str = "http://localhost:8081"
    record_ttl: int = Field(default=60, gt=0)

    propagation_timeout: float = Field(default=300, gt=0)
    propagation_poll_interval: float = Field(default=10, gt=0)
    propagation_resolvers: list[str] = ["1.1.1.1", "8.8.8.8", "9.9.9.9"]
    propagation_quorum: str = "all"

    validation_timeout: float = Field(default=90, gt=0)

    renewal_window_days: int = Field(default=30, ge=0)
    renewal_scan_interval: float = Field(default=86400, gt=0)

    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_max_attempts: int = Field(default=5, ge=1)

    storage_dir: Path = Path("~/.fairydust/certs")

    model_config = ConfigDict(frozen=True, validate_default=True)

    @field_validator("propagation_resolvers", mode="before")
    @classmethod
    def _split_resolvers(cls, value: object) -> object:
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, list) and not value:
            raise ValueError("At least one resolver is required")
        return value

    @field_validator("propagation_quorum")
    @classmethod
    def _check_quorum(cls, value: str) -> str:
        value = value.strip().lower()
        if value in ("all", "majority"):
            return value
        if value.isdigit() and int(value) > 0:
            return value
        raise ValueError("Quorum must be 'all', 'majority' or a positive integer")

    @field_validator("account_key_path", "storage_dir")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: object) -> "Settings":
        """Build settings from FAIRYDUST_* variables.

        Args:
            environ: Environment mapping (defaults to os.environ).
            **overrides: Values taking precedence over the environment.

        Raises:
            ConfigurationError: If any value fails validation.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for suffix, field in _ENV_FIELDS.items():
            raw = environ.get(ENV_PREFIX + suffix)
            if raw is not None and raw != "":
                values[field] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls.model_validate(values)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"Invalid configuration: {problems}") from e
