"""Pytest fixtures for the fairydust test suite."""

import logging
import logging.handlers
import threading
from collections import defaultdict
from collections.abc import Callable, Generator, Iterable
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from fairydust.acme_adapter import (
    AcmeBackend,
    AcmeClientAdapter,
    AcmeOrder,
    IssuedMaterial,
    PendingChallenge,
)
from fairydust.challenges import challenge_value
from fairydust.dns_records import DNSRecordManager, RetryPolicy
from fairydust.exceptions import PermanentProviderError
from fairydust.orchestrator import ChallengeOrchestrator
from fairydust.propagation import PropagationChecker
from fairydust.providers.base import DnsProvider, zone_candidates

TEST_THUMBPRINT = "yB_0xL-h7D4c5VZ3qG0UPIK8hEtD4gPVKg6eT7N8Ghk"
RESOLVERS = ("192.0.2.1", "192.0.2.2", "192.0.2.3")


def make_certificate_pem(
    domains: list[str],
    not_before: datetime | None = None,
    lifetime: timedelta = timedelta(days=90),
) -> tuple[str, str]:
    """Build a self-signed certificate for domains.

    Returns:
        (certificate PEM, private key PEM)
    """
    key = ec.generate_private_key(ec.SECP256R1())
    not_before = not_before or datetime.now(UTC) - timedelta(minutes=1)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + lifetime)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False
        )
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return cert.public_bytes(serialization.Encoding.PEM).decode(), key_pem


class FakeDnsProvider(DnsProvider):
    """In-memory DNS provider with scriptable failures.

    ``create_failures`` and ``delete_failures`` map a record name to a list
    of exceptions raised, one per call, before calls start succeeding.
    """

    name = "fake"

    def __init__(self, zones: Iterable[str] = ("example.test", "bad.test", "example.com")):
        self.zones = set(zones)
        self.records: dict[str, tuple[str, str, str]] = {}
        self.create_failures: dict[str, list[Exception]] = defaultdict(list)
        self.delete_failures: dict[str, list[Exception]] = defaultdict(list)
        self.create_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.create_delay = 0.0
        self._lock = threading.Lock()
        self._next_id = 0

    def find_zone(self, domain: str) -> str:
        for candidate in zone_candidates(domain):
            if candidate in self.zones:
                return candidate
        raise PermanentProviderError(f"No zone found for domain: {domain}", status_code=404)

    def create_txt_record(self, zone: str, name: str, value: str, ttl: int = 60) -> str:
        with self._lock:
            self.create_calls.append(name)
        if self.create_delay:
            threading.Event().wait(self.create_delay)
        with self._lock:
            if self.create_failures[name]:
                raise self.create_failures[name].pop(0)
            for record_id, record in self.records.items():
                if record == (zone, name, value):
                    return record_id
            self._next_id += 1
            record_id = f"rec-{self._next_id}"
            self.records[record_id] = (zone, name, value)
            return record_id

    def delete_txt_record(self, zone: str, record_id: str) -> None:
        with self._lock:
            name = self.records.get(record_id, (zone, record_id, ""))[1]
            self.delete_calls.append(name)
            if self.delete_failures[name]:
                raise self.delete_failures[name].pop(0)
            self.records.pop(record_id, None)

    def values_at(self, name: str) -> set[str]:
        with self._lock:
            return {value for (_, n, value) in self.records.values() if n == name}


class ScriptedLookup:
    """TXT lookup that reports what FakeDnsProvider publishes.

    A record shows up at a resolver only after ``visible_after`` earlier
    queries of that resolver; names in ``hidden`` never show up.
    """

    def __init__(self, provider: FakeDnsProvider, visible_after: int = 0):
        self.provider = provider
        self.visible_after = visible_after
        self.hidden: set[str] = set()
        self.queries: dict[tuple[str, str], int] = defaultdict(int)
        self._lock = threading.Lock()

    def __call__(self, nameserver: str, name: str) -> set[str]:
        with self._lock:
            self.queries[(nameserver, name)] += 1
            count = self.queries[(nameserver, name)]
        if name in self.hidden or count <= self.visible_after:
            return set()
        return self.provider.values_at(name)

    def polls(self, name: str) -> int:
        """Number of polling rounds made for name."""
        return max((c for (_, n), c in self.queries.items() if n == name), default=0)


class FakeAcmeBackend(AcmeBackend):
    """ACME backend that issues self-signed certificates.

    ``answer_errors`` maps a domain to the exception answer_challenge raises;
    ``finalize_error`` is raised by finalize when set.
    """

    def __init__(self) -> None:
        self.answer_errors: dict[str, Exception] = {}
        self.begin_error: Exception | None = None
        self.finalize_error: Exception | None = None
        self.answered: list[str] = []
        self.revoked: list[str] = []
        self.orders: list[AcmeOrder] = []
        self.on_begin: Callable[[list[str]], None] | None = None
        self._counter = 0
        self._lock = threading.Lock()

    def begin_order(self, domains: list[str]) -> AcmeOrder:
        if self.on_begin is not None:
            self.on_begin(domains)
        if self.begin_error is not None:
            raise self.begin_error
        challenges = []
        with self._lock:
            for domain in domains:
                self._counter += 1
                token = f"token-{self._counter}"
                challenges.append(
                    PendingChallenge(domain, token, challenge_value(token, TEST_THUMBPRINT))
                )
        order = AcmeOrder(domains=list(domains), challenges=challenges)
        self.orders.append(order)
        return order

    def answer_challenge(self, order: AcmeOrder, domain: str, token: str) -> None:
        self.answered.append(domain)
        if domain in self.answer_errors:
            raise self.answer_errors[domain]

    def finalize(self, order: AcmeOrder, deadline: datetime) -> IssuedMaterial:
        if self.finalize_error is not None:
            raise self.finalize_error
        cert_pem, key_pem = make_certificate_pem(order.domains)
        return IssuedMaterial(fullchain_pem=cert_pem, private_key_pem=key_pem)

    def revoke(self, certificate_pem: str) -> None:
        self.revoked.append(certificate_pem)


@pytest.fixture
def provider() -> FakeDnsProvider:
    """In-memory DNS provider serving example.test, bad.test and example.com."""
    return FakeDnsProvider()


@pytest.fixture
def lookup(provider: FakeDnsProvider) -> ScriptedLookup:
    """Resolver lookup backed by the fake provider's records."""
    return ScriptedLookup(provider)


@pytest.fixture
def acme_backend() -> FakeAcmeBackend:
    return FakeAcmeBackend()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy that never sleeps."""
    return RetryPolicy(base_delay=0, max_delay=0, max_attempts=3)


@pytest.fixture
def orchestrator(
    provider: FakeDnsProvider,
    lookup: ScriptedLookup,
    acme_backend: FakeAcmeBackend,
    fast_retry: RetryPolicy,
) -> Generator[ChallengeOrchestrator]:
    """Orchestrator wired to the fakes with sub-second timeouts."""
    orchestrator = ChallengeOrchestrator(
        DNSRecordManager(provider, fast_retry),
        PropagationChecker(RESOLVERS, "all", lookup=lookup),
        AcmeClientAdapter(acme_backend, validation_timeout=5),
        propagation_timeout=0.5,
        poll_interval=0.01,
    )
    yield orchestrator
    orchestrator.shutdown(timeout=5)


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name.

        Args:
            level: Filter by log level (e.g., logging.INFO).
            name: Filter by logger name prefix (e.g., "fairydust.orchestrator").
        """
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def clear(self) -> None:
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Generator[LogCapture]:
    """Capture logs from the fairydust library during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Certificate issued" in log_capture.get_messages(logging.INFO)
    """
    handler = logging.handlers.MemoryHandler(capacity=10000)
    handler.setLevel(logging.DEBUG)

    fairydust_logger = logging.getLogger("fairydust")
    original_level = fairydust_logger.level
    fairydust_logger.setLevel(logging.DEBUG)
    fairydust_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        fairydust_logger.removeHandler(handler)
        fairydust_logger.setLevel(original_level)
        handler.close()
