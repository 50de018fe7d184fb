"""Pydantic models for certificate requests, challenges and results."""

import hashlib
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

# =============================================================================
# Enums
# =============================================================================


class RequestStatus(StrEnum):
    """Lifecycle of a certificate request."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ISSUED = "issued"
    FAILED = "failed"


class ChallengeState(StrEnum):
    """Lifecycle of a single DNS-01 challenge."""

    PENDING = "pending"
    RECORD_CREATING = "record_creating"
    AWAITING_PROPAGATION = "awaiting_propagation"
    VALIDATING = "validating"
    RECORD_CLEANUP = "record_cleanup"
    ISSUED = "issued"
    FAILED = "failed"


class ErrorCategory(StrEnum):
    """Failure taxonomy."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    VALIDATION = "validation"
    PROPAGATION = "propagation"
    CANCELLED = "cancelled"


# Every path out of RECORD_CREATING goes through RECORD_CLEANUP.
CHALLENGE_TRANSITIONS: dict[ChallengeState, frozenset[ChallengeState]] = {
    ChallengeState.PENDING: frozenset({ChallengeState.RECORD_CREATING, ChallengeState.FAILED}),
    ChallengeState.RECORD_CREATING: frozenset(
        {ChallengeState.AWAITING_PROPAGATION, ChallengeState.RECORD_CLEANUP}
    ),
    ChallengeState.AWAITING_PROPAGATION: frozenset(
        {ChallengeState.VALIDATING, ChallengeState.RECORD_CLEANUP}
    ),
    ChallengeState.VALIDATING: frozenset({ChallengeState.RECORD_CLEANUP}),
    ChallengeState.RECORD_CLEANUP: frozenset({ChallengeState.ISSUED, ChallengeState.FAILED}),
    ChallengeState.ISSUED: frozenset(),
    ChallengeState.FAILED: frozenset(),
}

_DOMAIN_RE = re.compile(r"^(\*\.)?([a-z0-9_]([a-z0-9_-]{0,61}[a-z0-9_])?\.)+[a-z0-9-]{2,63}$")

ACME_CHALLENGE_PREFIX = "_acme-challenge"


def normalize_domain(domain: str) -> str:
    """Lowercase a domain name and strip a trailing dot.

    Raises:
        ValueError: If the result is not a plausible DNS name.
    """
    normalized = domain.strip().lower().rstrip(".")
    if not _DOMAIN_RE.match(normalized):
        raise ValueError(f"Invalid domain name: {domain!r}")
    return normalized


def challenge_record_name(domain: str) -> str:
    """Return the DNS-01 record name for a domain.

    A wildcard domain is validated at its base name, so ``*.example.com``
    and ``example.com`` share ``_acme-challenge.example.com``.
    """
    base = domain[2:] if domain.startswith("*.") else domain
    return f"{ACME_CHALLENGE_PREFIX}.{base}"


# =============================================================================
# Models
# =============================================================================


class CertificateRequest(BaseModel):
    """A request for one certificate covering a set of domains.

    The domain set is the request identity: two requests for the same
    domains in any order share a key.
    """

    domains: list[str]
    requested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: RequestStatus = RequestStatus.PENDING

    @field_validator("domains")
    @classmethod
    def _normalize_domains(cls, value: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for domain in value:
            seen.setdefault(normalize_domain(domain), None)
        if not seen:
            raise ValueError("At least one domain is required")
        return list(seen)

    @property
    def key(self) -> frozenset[str]:
        return frozenset(self.domains)

    @property
    def domain_set_id(self) -> str:
        return domain_set_id(self.domains)


def domain_set_id(domains: Iterable[str]) -> str:
    """Filesystem-safe identifier for a domain set.

    Order and duplicates are ignored. A single domain is its own identifier;
    a larger set is named after its lowest domain plus a digest of the whole
    set, so ``[a, b]`` and ``[a]`` never share an identifier.
    """
    names = sorted({domain.lower().rstrip(".") for domain in domains})
    first = names[0]
    if first.startswith("*."):
        first = "_wildcard." + first[2:]
    if len(names) == 1:
        return first
    digest = hashlib.sha256(",".join(names).encode()).hexdigest()[:8]
    return f"{first}+{digest}"


class DNSChallenge(BaseModel):
    """One DNS-01 challenge, owned by the orchestration that created it."""

    domain: str
    token: str
    value: str
    state: ChallengeState = ChallengeState.PENDING

    @property
    def record_name(self) -> str:
        return challenge_record_name(self.domain)

    def transition(self, state: ChallengeState) -> None:
        """Move to a new state.

        Raises:
            StateTransitionError: If the state machine forbids the move.
        """
        from fairydust.exceptions import StateTransitionError

        if state not in CHALLENGE_TRANSITIONS[self.state]:
            raise StateTransitionError(
                f"Illegal challenge transition {self.state} -> {state}", domain=self.domain
            )
        self.state = state


class RecordHandle(BaseModel):
    """Reference to a TXT record created at a DNS provider."""

    domain: str
    zone: str
    record_id: str
    record_name: str
    value: str


class Certificate(BaseModel):
    """An issued certificate. Immutable; renewal produces a new instance."""

    domains: list[str]
    issued_at: datetime
    expires_at: datetime
    certificate_pem: str
    private_key_pem: str | None = Field(default=None, repr=False)
    request_id: str

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_validity_period(self) -> "Certificate":
        if self.expires_at <= self.issued_at:
            raise ValueError("Certificate expiry must be after issuance")
        return self

    @property
    def domain_set_id(self) -> str:
        return domain_set_id(self.domains)


class CertificateMetadata(BaseModel):
    """Persisted record of an issued certificate, read by the renewal scheduler."""

    domain_set_id: str
    domains: list[str]
    issued_at: datetime
    expires_at: datetime
    location: str
    revoked: bool = False


class ValidationResult(BaseModel):
    """Outcome of asking the certificate authority to validate one challenge."""

    domain: str
    valid: bool
    detail: str | None = None
    error: Any = None


class IssueResult(BaseModel):
    """Terminal outcome of one orchestration.

    ``cleanup_failures`` lists domains whose temporary TXT record is still
    published and needs manual removal.
    """

    request: CertificateRequest
    status: RequestStatus
    certificate: Certificate | None = None
    error: Any = None
    cleanup_failures: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def ok(self) -> bool:
        return self.status == RequestStatus.ISSUED

    @property
    def category(self) -> ErrorCategory | None:
        return self.error.category if self.error is not None else None

    def raise_for_status(self) -> Certificate:
        """Return the certificate, or raise the error that failed the request."""
        if self.error is not None:
            raise self.error
        assert self.certificate is not None
        return self.certificate


class ProviderCredential(BaseModel):
    """Opaque DNS provider secret."""

    name: str
    token: SecretStr

    model_config = ConfigDict(frozen=True)
