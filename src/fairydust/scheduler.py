"""Periodic renewal of stored certificates nearing expiry."""

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from fairydust._logging import get_logger
from fairydust.exceptions import FairydustError
from fairydust.models import CertificateMetadata, IssueResult
from fairydust.orchestrator import ChallengeOrchestrator
from fairydust.storage import CertificateStore

logger = get_logger(__name__)


_NEVER_CHECKED = datetime.min.replace(tzinfo=UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RenewalScheduler:
    """Renews certificates whose expiry falls inside the renewal window.

    Each domain set is attempted at most once per scan interval. A failed
    renewal is left in place and attempted again on a later scan.

    Args:
        orchestrator: Issues the replacement certificates.
        store: Where certificates are read from and saved to.
        renewal_window: How long before expiry to start renewing.
        scan_interval: Seconds between scans, also the per-domain-set
            back-off after an attempt.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        orchestrator: ChallengeOrchestrator,
        store: CertificateStore,
        renewal_window: timedelta = timedelta(days=30),
        scan_interval: float = 86400,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.renewal_window = renewal_window
        self.scan_interval = scan_interval
        self.clock = clock
        self._next_check: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def load(self) -> int:
        """Pick up every stored certificate.

        Returns:
            Number of domain sets being tracked.
        """
        with self._lock:
            for metadata in self.store.list_metadata():
                self._next_check.setdefault(metadata.domain_set_id, _NEVER_CHECKED)
            count = len(self._next_check)
        logger.debug("Renewal schedule loaded", extra={"count": count})
        return count

    def next_check(self, domain_set_id: str) -> datetime | None:
        with self._lock:
            return self._next_check.get(domain_set_id)

    def is_due(self, metadata: CertificateMetadata, now: datetime) -> bool:
        """True if metadata describes a live certificate inside the window."""
        if metadata.revoked:
            return False
        if metadata.expires_at - self.renewal_window > now:
            return False
        with self._lock:
            next_check = self._next_check.get(metadata.domain_set_id)
        return next_check is None or next_check <= now

    def scan(self, now: datetime | None = None) -> list[IssueResult]:
        """Renew every due certificate.

        Returns:
            One result per renewal attempted, in store order.
        """
        now = now or self.clock()
        results: list[IssueResult] = []

        for metadata in self.store.list_metadata():
            if not self.is_due(metadata, now):
                continue
            with self._lock:
                self._next_check[metadata.domain_set_id] = now + timedelta(
                    seconds=self.scan_interval
                )

            try:
                certificate = self.store.load(metadata.domain_set_id)
            except (FairydustError, OSError) as e:
                logger.error(
                    "Cannot load certificate for renewal",
                    extra={"domain_set_id": metadata.domain_set_id, "error": str(e)},
                )
                continue

            try:
                result = self.orchestrator.renew(certificate)
            except (FairydustError, OSError) as e:
                logger.error(
                    "Renewal attempt aborted",
                    extra={"domain_set_id": metadata.domain_set_id, "error": str(e)},
                )
                continue
            results.append(result)

            if result.certificate is not None:
                try:
                    self.store.save(result.certificate)
                except (FairydustError, OSError) as e:
                    logger.error(
                        "Cannot store renewed certificate",
                        extra={"domain_set_id": metadata.domain_set_id, "error": str(e)},
                    )
                    continue
            if result.ok:
                logger.info(
                    "Certificate renewed",
                    extra={
                        "domain_set_id": metadata.domain_set_id,
                        "expires_at": result.certificate.expires_at.isoformat(),
                    },
                )
            else:
                logger.warning(
                    "Renewal failed, will retry on a later scan",
                    extra={
                        "domain_set_id": metadata.domain_set_id,
                        "category": result.category.value if result.category else None,
                    },
                )

        return results

    def run(self, stop_event: threading.Event) -> None:
        """Scan repeatedly until stop_event is set."""
        self.load()
        logger.info("Renewal scheduler started", extra={"interval": self.scan_interval})
        while not stop_event.is_set():
            self.scan()
            stop_event.wait(self.scan_interval)
        logger.info("Renewal scheduler stopped")
