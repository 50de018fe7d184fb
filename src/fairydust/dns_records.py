"""TXT record lifecycle with retry on transient provider failures."""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from fairydust._logging import get_logger
from fairydust.cancellation import CancelToken
from fairydust.exceptions import CleanupError, FairydustError, RetryExhaustedError
from fairydust.models import DNSChallenge, RecordHandle
from fairydust.providers.base import DnsProvider

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attempt ``n`` (1-based) that fails transiently is followed by a wait of
    ``min(max_delay, base_delay * 2 ** (n - 1))`` seconds, or the server's
    Retry-After capped at ``max_delay``.
    """

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 5

    def delay(self, attempt: int, error: FairydustError | None = None) -> float:
        backoff = self.base_delay * 2 ** (attempt - 1)
        if error is not None:
            backoff = error.get_retry_seconds(backoff)
        return min(self.max_delay, float(backoff))


class DNSRecordManager:
    """Creates and deletes challenge TXT records through a DnsProvider.

    Args:
        provider: The DNS provider.
        retry_policy: Backoff for transient failures.
        ttl: TTL for created records.
    """

    def __init__(
        self,
        provider: DnsProvider,
        retry_policy: RetryPolicy | None = None,
        ttl: int = 60,
    ):
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.ttl = ttl
        self._locks_guard = threading.Lock()
        self._name_locks: dict[str, threading.Lock] = {}

    def _name_lock(self, record_name: str) -> threading.Lock:
        """Lock serializing provider calls for one record name.

        A wildcard and its base domain publish at the same name.
        """
        with self._locks_guard:
            return self._name_locks.setdefault(record_name, threading.Lock())

    def _with_retry(
        self,
        operation: str,
        func: Callable[[], T],
        domain: str,
        cancel: CancelToken | None,
    ) -> T:
        """Run func, retrying transient FairydustErrors per the policy.

        Raises:
            FairydustError: Non-transient errors, unchanged.
            RetryExhaustedError: If every attempt failed transiently.
            CancelledError: If cancelled while waiting between attempts.
        """
        policy = self.retry_policy
        cancel = cancel or CancelToken()
        for attempt in range(1, policy.max_attempts + 1):
            cancel.raise_if_cancelled()
            try:
                return func()
            except FairydustError as e:
                e.domain = e.domain or domain
                if not e.is_transient:
                    raise
                if attempt == policy.max_attempts:
                    raise RetryExhaustedError(
                        f"{operation} failed after {attempt} attempts: {e.message}",
                        last_error=e,
                        attempts=attempt,
                        domain=domain,
                    ) from e

                delay = policy.delay(attempt, e)
                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "operation": operation,
                        "domain": domain,
                        "attempt": attempt,
                        "delay": delay,
                        "error": e.message,
                    },
                )
                if cancel.sleep(delay):
                    cancel.raise_if_cancelled()

        raise AssertionError("unreachable")

    def create(self, challenge: DNSChallenge, cancel: CancelToken | None = None) -> RecordHandle:
        """Publish the challenge's TXT record.

        Returns:
            Handle identifying the record for deletion.

        Raises:
            FairydustError: If the record could not be created.
        """
        name = challenge.record_name

        def _create() -> RecordHandle:
            zone = self.provider.find_zone(name)
            with self._name_lock(name):
                record_id = self.provider.create_txt_record(zone, name, challenge.value, self.ttl)
            return RecordHandle(
                domain=challenge.domain,
                zone=zone,
                record_id=record_id,
                record_name=name,
                value=challenge.value,
            )

        handle = self._with_retry("create", _create, challenge.domain, cancel)
        logger.debug(
            "Challenge record published",
            extra={"domain": challenge.domain, "record_name": name, "zone": handle.zone},
        )
        return handle

    def delete(self, handle: RecordHandle) -> CleanupError | None:
        """Remove a record created by create().

        Cleanup is not cancellable: it runs to completion or exhausts its
        retries even when the orchestration has been aborted.

        Returns:
            None on success, otherwise the CleanupError to report.
        """
        def _delete() -> None:
            with self._name_lock(handle.record_name):
                self.provider.delete_txt_record(handle.zone, handle.record_id)

        try:
            self._with_retry(
                "delete",
                _delete,
                handle.domain,
                cancel=None,
            )
        except Exception as e:
            logger.error(
                "Challenge record cleanup failed",
                extra={"domain": handle.domain, "record_name": handle.record_name},
                exc_info=not isinstance(e, FairydustError),
            )
            reason = e.message if isinstance(e, FairydustError) else type(e).__name__
            return CleanupError(
                f"Could not remove {handle.record_name}: {reason}",
                record_name=handle.record_name,
                domain=handle.domain,
            )
        return None
