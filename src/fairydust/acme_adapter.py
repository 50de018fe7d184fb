"""Adapter between the orchestrator and an external ACME client."""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import josepy as jose
from acme import challenges, client, errors, messages
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from fairydust._logging import get_logger
from fairydust.challenges import challenge_value
from fairydust.crypto import (
    PrivateKey,
    certificate_validity,
    create_csr,
    generate_key,
    private_key_to_pem,
)
from fairydust.exceptions import (
    AcmeRejectedError,
    FairydustError,
    PermanentError,
    TransientError,
    ValidationError,
)
from fairydust.models import Certificate, CertificateRequest, DNSChallenge, ValidationResult

logger = get_logger(__name__)

# ACME problem codes worth another attempt later
_TRANSIENT_ACME_CODES = {"rateLimited", "serverInternal", "badNonce"}


@dataclass
class PendingChallenge:
    """What the CA asks us to publish for one domain."""

    domain: str
    token: str
    value: str


@dataclass
class AcmeOrder:
    """An open order at the certificate authority.

    ``state`` is private to the backend that created the order.
    """

    domains: list[str]
    challenges: list[PendingChallenge]
    state: dict[str, Any] = field(default_factory=dict)


@dataclass
class IssuedMaterial:
    fullchain_pem: str
    private_key_pem: str | None


class AcmeBackend(ABC):
    """The external ACME client, treated as an opaque capability."""

    @abstractmethod
    def begin_order(self, domains: list[str]) -> AcmeOrder:
        """Open an order and return the DNS-01 challenges to fulfil."""
        ...

    @abstractmethod
    def answer_challenge(self, order: AcmeOrder, domain: str, token: str) -> None:
        """Tell the CA the challenge for domain is ready to be checked."""
        ...

    @abstractmethod
    def finalize(self, order: AcmeOrder, deadline: datetime) -> IssuedMaterial:
        """Wait for validation, finalize the order and download the chain."""
        ...

    @abstractmethod
    def revoke(self, certificate_pem: str) -> None:
        """Revoke an issued certificate."""
        ...


class LibAcmeBackend(AcmeBackend):
    """AcmeBackend built on the ``acme`` library's ClientV2.

    The account is registered (or looked up) lazily on first use.

    Args:
        directory_url: URL of the ACME directory endpoint.
        account_key: Private key for the ACME account.
        email: Contact address for the account.
        timeout: HTTP timeout for ACME requests, in seconds.
        key_type: Type of the certificate key generated per order.
    """

    def __init__(
        self,
        directory_url: str,
        account_key: PrivateKey,
        email: str | None = None,
        timeout: float = 45,
        key_type: str = "rsa2048",
    ):
        self.directory_url = directory_url
        self.email = email
        self.timeout = timeout
        self.key_type = key_type
        if isinstance(account_key, rsa.RSAPrivateKey):
            self._jwk: jose.JWK = jose.JWKRSA(key=account_key)
            self._alg = jose.RS256
        else:
            self._jwk = jose.JWKEC(key=account_key)
            self._alg = jose.ES384 if account_key.curve.key_size > 256 else jose.ES256
        self._thumbprint = jose.b64encode(self._jwk.thumbprint()).decode()
        self._client: client.ClientV2 | None = None
        self._lock = threading.Lock()

    def _acme(self) -> client.ClientV2:
        with self._lock:
            if self._client is None:
                net = client.ClientNetwork(
                    self._jwk,
                    alg=self._alg,
                    user_agent="fairydust",
                    timeout=self.timeout,
                )
                directory = client.ClientV2.get_directory(self.directory_url, net)
                acme_client = client.ClientV2(directory, net=net)
                registration = messages.NewRegistration.from_data(
                    email=self.email, terms_of_service_agreed=True
                )
                try:
                    acme_client.new_account(registration)
                except errors.ConflictError as e:
                    existing = messages.RegistrationResource(
                        uri=e.location, body=messages.Registration()
                    )
                    acme_client.query_registration(existing)
                logger.debug("ACME account ready", extra={"directory": self.directory_url})
                self._client = acme_client
            return self._client

    def begin_order(self, domains: list[str]) -> AcmeOrder:
        acme_client = self._acme()
        cert_key = generate_key(self.key_type)
        csr_pem = create_csr(cert_key, domains).public_bytes(serialization.Encoding.PEM)
        orderr = acme_client.new_order(csr_pem)

        pending: list[PendingChallenge] = []
        challenge_bodies: dict[str, messages.ChallengeBody] = {}
        for authzr in orderr.authorizations:
            if authzr.body.status == messages.STATUS_VALID:
                continue
            domain = authzr.body.identifier.value
            if authzr.body.wildcard:
                domain = f"*.{domain}"
            for challb in authzr.body.challenges:
                if isinstance(challb.chall, challenges.DNS01):
                    token = challb.chall.encode("token")
                    pending.append(
                        PendingChallenge(domain, token, challenge_value(token, self._thumbprint))
                    )
                    challenge_bodies[token] = challb
                    break
            else:
                raise AcmeRejectedError(f"No dns-01 challenge offered for {domain}", domain=domain)

        return AcmeOrder(
            domains=domains,
            challenges=pending,
            state={
                "orderr": orderr,
                "challenges": challenge_bodies,
                "private_key_pem": private_key_to_pem(cert_key),
            },
        )

    def answer_challenge(self, order: AcmeOrder, domain: str, token: str) -> None:
        challb = order.state["challenges"][token]
        self._acme().answer_challenge(challb, challb.chall.response(self._jwk))

    def finalize(self, order: AcmeOrder, deadline: datetime) -> IssuedMaterial:
        orderr = self._acme().poll_and_finalize(order.state["orderr"], deadline)
        return IssuedMaterial(
            fullchain_pem=orderr.fullchain_pem,
            private_key_pem=order.state["private_key_pem"],
        )

    def revoke(self, certificate_pem: str) -> None:
        cert = x509.load_pem_x509_certificate(certificate_pem.encode())
        self._acme().revoke(cert, 0)


def translate_error(error: Exception, domain: str | None = None) -> FairydustError:
    """Map an ACME client exception into the fairydust taxonomy."""
    if isinstance(error, FairydustError):
        return error
    if isinstance(error, errors.ValidationError):
        details = []
        for authzr in error.failed_authzrs:
            for challb in authzr.body.challenges:
                if challb.error is not None:
                    details.append(f"{authzr.body.identifier.value}: {challb.error.detail}")
        return ValidationError(
            "Challenge validation failed: " + ("; ".join(details) or "no detail"), domain=domain
        )
    if isinstance(error, errors.TimeoutError):
        return TransientError("Timed out waiting for the certificate authority", domain=domain)
    if isinstance(error, errors.IssuanceError):
        return AcmeRejectedError(
            f"Certificate issuance failed: {error.error.detail}",
            acme_type=error.error.typ,
            domain=domain,
        )
    if isinstance(error, messages.Error):
        if error.code in _TRANSIENT_ACME_CODES:
            return TransientError(f"ACME server error: {error.detail}", domain=domain)
        if error.code in ("dns", "unauthorized", "incorrectResponse"):
            return ValidationError(f"Challenge validation failed: {error.detail}", domain=domain)
        return AcmeRejectedError(
            f"ACME server rejected the request: {error.detail}", acme_type=error.typ, domain=domain
        )
    if isinstance(error, OSError):
        # requests' exceptions derive from OSError
        return TransientError(f"ACME server unreachable: {type(error).__name__}", domain=domain)
    if isinstance(error, errors.Error):
        return PermanentError(f"ACME client error: {error}", domain=domain)
    return PermanentError(
        f"Unexpected ACME failure: {type(error).__name__}: {error}", domain=domain
    )


class AcmeClientAdapter:
    """Translates orchestrator steps into AcmeBackend calls.

    Open orders are tracked per request; challenges are looked up by
    their token, which the CA guarantees unique.

    Args:
        backend: The wrapped ACME client.
        validation_timeout: Seconds allowed for the CA to validate and issue.
    """

    def __init__(self, backend: AcmeBackend, validation_timeout: float = 90):
        self.backend = backend
        self.validation_timeout = validation_timeout
        self._lock = threading.Lock()
        self._orders: dict[frozenset[str], AcmeOrder] = {}
        self._orders_by_token: dict[str, AcmeOrder] = {}

    def prepare(self, request: CertificateRequest) -> list[DNSChallenge]:
        """Open an order for the request.

        Returns:
            One challenge per domain still needing authorization, carrying
            the (domain, token, expected value) to publish.

        Raises:
            FairydustError: If the CA refused or could not be reached.
        """
        try:
            order = self.backend.begin_order(list(request.domains))
        except FairydustError:
            raise
        except Exception as e:
            raise translate_error(e) from e

        with self._lock:
            self._orders[request.key] = order
            for pending in order.challenges:
                self._orders_by_token[pending.token] = order

        logger.info(
            "ACME order opened",
            extra={"domains": request.domains, "challenges": len(order.challenges)},
        )
        return [
            DNSChallenge(domain=p.domain, token=p.token, value=p.value) for p in order.challenges
        ]

    def request_validation(self, domain: str, token: str) -> ValidationResult:
        """Ask the CA to validate the challenge identified by token."""
        with self._lock:
            order = self._orders_by_token.get(token)
        if order is None:
            return ValidationResult(domain=domain, valid=False, detail="Unknown challenge token")

        try:
            self.backend.answer_challenge(order, domain, token)
        except Exception as e:
            error = translate_error(e, domain)
            logger.warning(
                "Challenge answer rejected", extra={"domain": domain, "error": error.message}
            )
            return ValidationResult(domain=domain, valid=False, detail=error.message, error=error)
        return ValidationResult(domain=domain, valid=True)

    def retrieve_certificate(
        self, request: CertificateRequest, timeout: float | None = None
    ) -> Certificate:
        """Wait for validation to finish and fetch the issued certificate.

        Args:
            request: The request whose order to finalize.
            timeout: Seconds to wait, capped at validation_timeout.

        Raises:
            ValidationError: If the CA could not validate a challenge.
            FairydustError: For any other failure.
        """
        with self._lock:
            order = self._orders.get(request.key)
        if order is None:
            raise PermanentError("No open ACME order for request")

        seconds = self.validation_timeout
        if timeout is not None:
            seconds = min(seconds, timeout)
        deadline = datetime.now() + timedelta(seconds=seconds)
        try:
            material = self.backend.finalize(order, deadline)
        except FairydustError:
            raise
        except Exception as e:
            raise translate_error(e) from e

        try:
            issued_at, expires_at = certificate_validity(material.fullchain_pem)
        except ValueError as e:
            raise PermanentError(f"CA returned an unreadable certificate: {e}") from e

        return Certificate(
            domains=list(request.domains),
            issued_at=issued_at,
            expires_at=expires_at,
            certificate_pem=material.fullchain_pem,
            private_key_pem=material.private_key_pem,
            request_id=request.domain_set_id,
        )

    def discard(self, request: CertificateRequest) -> None:
        """Forget the order opened for request."""
        with self._lock:
            order = self._orders.pop(request.key, None)
            if order is not None:
                for pending in order.challenges:
                    self._orders_by_token.pop(pending.token, None)

    def revoke(self, certificate: Certificate) -> None:
        """Revoke a certificate at the CA.

        Raises:
            FairydustError: If revocation failed.
        """
        try:
            self.backend.revoke(certificate.certificate_pem)
        except FairydustError:
            raise
        except Exception as e:
            raise translate_error(e) from e
        logger.info("Certificate revoked", extra={"domains": certificate.domains})
