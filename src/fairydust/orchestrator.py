"""Drives one certificate request through the DNS-01 state machine.

::

    Pending -> RecordCreating -> AwaitingPropagation -> Validating
            -> RecordCleanup -> Issued | Failed

Record creation and propagation checks run concurrently per domain and
meet at a barrier before validation. Cleanup sits in a ``finally`` block,
so no path that created a record reaches a terminal state without it.
"""

import contextvars
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed

from pydantic import ValidationError as PydanticValidationError

from fairydust._logging import Timer, get_domain_extra, get_logger, reset_domains, set_domains
from fairydust.acme_adapter import AcmeClientAdapter
from fairydust.cancellation import CancelToken
from fairydust.dns_records import DNSRecordManager
from fairydust.exceptions import (
    CancelledError,
    CleanupError,
    FairydustError,
    PermanentError,
    PropagationTimeoutError,
    ValidationError,
)
from fairydust.models import (
    Certificate,
    CertificateRequest,
    ChallengeState,
    DNSChallenge,
    IssueResult,
    RecordHandle,
    RequestStatus,
)
from fairydust.propagation import PropagationChecker

logger = get_logger(__name__)

# States in which a challenge may have a published record
_LIVE_STATES = frozenset(
    {
        ChallengeState.RECORD_CREATING,
        ChallengeState.AWAITING_PROPAGATION,
        ChallengeState.VALIDATING,
    }
)


class Orchestration:
    """Handle on a running (or finished) orchestration.

    Returned by :meth:`ChallengeOrchestrator.submit`; a second submit for
    the same domain set while this one runs returns the same handle.
    """

    def __init__(self, request: CertificateRequest, cancel_token: CancelToken):
        self.request = request
        self.cancel_token = cancel_token
        self.challenges: list[DNSChallenge] = []
        self._done = threading.Event()
        self._result: IssueResult | None = None

    @property
    def state(self) -> RequestStatus:
        return self.request.status

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        """Abort the orchestration. Records already created are still removed."""
        self.cancel_token.cancel(reason)

    def done(self) -> bool:
        return self._done.is_set()

    def result(self, timeout: float | None = None) -> IssueResult:
        """Block until the terminal result is available.

        Raises:
            TimeoutError: If timeout elapses first. The orchestration keeps running.
        """
        if not self._done.wait(timeout):
            raise TimeoutError("Orchestration still in progress")
        assert self._result is not None
        return self._result

    def _finish(self, result: IssueResult) -> None:
        self._result = result
        self._done.set()

    def __repr__(self) -> str:
        return f"<Orchestration {self.request.domains} {self.state}>"


class ChallengeOrchestrator:
    """Issues certificates by composing record, propagation and ACME steps.

    Args:
        records: Creates and deletes challenge TXT records.
        propagation: Confirms records are publicly visible.
        acme: Talks to the certificate authority.
        propagation_timeout: Seconds each record may take to become visible.
        poll_interval: Seconds between propagation polls.
        max_workers: Upper bound on concurrent per-domain tasks.
    """

    def __init__(
        self,
        records: DNSRecordManager,
        propagation: PropagationChecker,
        acme: AcmeClientAdapter,
        propagation_timeout: float = 300,
        poll_interval: float = 10,
        max_workers: int = 8,
    ):
        self.records = records
        self.propagation = propagation
        self.acme = acme
        self.propagation_timeout = propagation_timeout
        self.poll_interval = poll_interval
        self.max_workers = max_workers

        self._lock = threading.Lock()
        self._in_flight: dict[frozenset[str], Orchestration] = {}
        self._threads: dict[frozenset[str], threading.Thread] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, domains: Iterable[str], timeout: float | None = None) -> Orchestration:
        """Start an orchestration, or join the one already running for domains.

        Args:
            domains: Domains for one certificate.
            timeout: Overall deadline in seconds. Expiry counts as cancellation.

        Raises:
            PermanentError: If the domain set is empty or malformed.
        """
        try:
            request = CertificateRequest(domains=list(domains))
        except PydanticValidationError as e:
            raise PermanentError(f"Invalid domain set: {e.errors()[0]['msg']}") from e

        with self._lock:
            existing = self._in_flight.get(request.key)
            if existing is not None:
                logger.info(
                    "Joining in-flight orchestration", extra={"domains": request.domains}
                )
                return existing

            orchestration = Orchestration(request, CancelToken(timeout))
            self._in_flight[request.key] = orchestration
            thread = threading.Thread(
                target=self._run,
                args=(orchestration,),
                name=f"fairydust-{request.domain_set_id}",
                daemon=True,
            )
            self._threads[request.key] = thread
        thread.start()
        return orchestration

    def issue(self, domains: Iterable[str], timeout: float | None = None) -> IssueResult:
        """Obtain a certificate for domains and wait for the terminal result."""
        return self.submit(domains, timeout).result()

    def renew(self, certificate: Certificate, timeout: float | None = None) -> IssueResult:
        """Obtain a replacement for certificate covering the same domains."""
        logger.info(
            "Renewing certificate",
            extra={
                "domains": certificate.domains,
                "expires_at": certificate.expires_at.isoformat(),
            },
        )
        return self.issue(certificate.domains, timeout)

    def in_flight(self, domains: Iterable[str]) -> Orchestration | None:
        """Return the running orchestration for a domain set, if any."""
        request = CertificateRequest(domains=list(domains))
        with self._lock:
            return self._in_flight.get(request.key)

    def shutdown(self, cancel: bool = True, timeout: float | None = None) -> None:
        """Optionally cancel running orchestrations and wait for them to finish."""
        with self._lock:
            running = list(self._in_flight.values())
            threads = list(self._threads.values())
        if cancel:
            for orchestration in running:
                orchestration.cancel("Shutting down")
        for thread in threads:
            thread.join(timeout)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(self, orchestration: Orchestration) -> None:
        request = orchestration.request
        token = set_domains(request.domains)
        result: IssueResult | None = None
        try:
            result = self._execute(orchestration)
        finally:
            if result is None:
                # Only reached when _execute itself raised
                request.status = RequestStatus.FAILED
                result = IssueResult(
                    request=request,
                    status=RequestStatus.FAILED,
                    error=PermanentError("Orchestration aborted unexpectedly"),
                )
            with self._lock:
                self._in_flight.pop(request.key, None)
                self._threads.pop(request.key, None)
            orchestration._finish(result)
            reset_domains(token)

    def _execute(self, orchestration: Orchestration) -> IssueResult:
        request = orchestration.request
        cancel = orchestration.cancel_token
        handles: dict[str, RecordHandle] = {}
        certificate: Certificate | None = None
        error: FairydustError | None = None
        cleanup_errors: list[CleanupError] = []

        request.status = RequestStatus.IN_PROGRESS
        logger.info("Orchestration started", extra=get_domain_extra())

        with Timer() as timer:
            try:
                cancel.raise_if_cancelled()
                orchestration.challenges = self.acme.prepare(request)
                challenges = orchestration.challenges

                error = self._provision(challenges, handles, cancel)
                if error is None:
                    cancel.raise_if_cancelled()
                    error = self._validate(challenges)
                if error is None:
                    cancel.raise_if_cancelled()
                    certificate = self.acme.retrieve_certificate(request, cancel.remaining())
            except FairydustError as e:
                error = e
            except Exception as e:
                logger.exception("Unexpected orchestration failure", extra=get_domain_extra())
                error = PermanentError(f"Unexpected failure: {type(e).__name__}: {e}")
            finally:
                cleanup_errors = self._cleanup(orchestration.challenges, handles)
                self.acme.discard(request)

        if isinstance(error, FairydustError) and cancel.cancelled and certificate is None:
            if not isinstance(error, CancelledError):
                error = CancelledError(cancel.reason or "Cancelled", domain=error.domain)

        cleanup_failures = [e.domain for e in cleanup_errors if e.domain]
        warnings = [e.message for e in cleanup_errors]
        if error is None and cleanup_errors:
            error = cleanup_errors[0]

        status = RequestStatus.ISSUED if error is None else RequestStatus.FAILED
        request.status = status
        terminal = ChallengeState.ISSUED if error is None else ChallengeState.FAILED
        for challenge in orchestration.challenges:
            challenge.transition(terminal)

        extra = {
            **get_domain_extra(),
            "status": status.value,
            "elapsed_ms": timer.elapsed_ms,
            "cleanup_failures": cleanup_failures,
        }
        if error is None:
            logger.info("Certificate issued", extra=extra)
        else:
            logger.error(
                "Orchestration failed",
                extra={**extra, "category": error.category.value, "error": error.message},
            )

        return IssueResult(
            request=request,
            status=status,
            certificate=certificate,
            error=error,
            cleanup_failures=cleanup_failures,
            warnings=warnings,
        )

    def _provision(
        self,
        challenges: list[DNSChallenge],
        handles: dict[str, RecordHandle],
        cancel: CancelToken,
    ) -> FairydustError | None:
        """Create and await every record concurrently.

        Returns only after every per-domain task has finished, so no
        create call is still in flight when cleanup starts.

        Returns:
            The first failure, or None if every record is visible.
        """
        if not challenges:
            return None

        stage = cancel.child()
        handles_lock = threading.Lock()

        def provision(challenge: DNSChallenge) -> None:
            if stage.cancelled:
                # A sibling already failed; this challenge never starts
                return
            challenge.transition(ChallengeState.RECORD_CREATING)
            handle = self.records.create(challenge, stage)
            with handles_lock:
                handles[challenge.token] = handle

            challenge.transition(ChallengeState.AWAITING_PROPAGATION)
            stage.raise_if_cancelled()
            timeout = self.propagation_timeout
            remaining = stage.remaining()
            if remaining is not None:
                timeout = min(timeout, remaining)
            if not self.propagation.await_visible(challenge, timeout, self.poll_interval, stage):
                stage.raise_if_cancelled()
                raise PropagationTimeoutError(
                    f"{challenge.record_name} not visible after {timeout:.0f}s",
                    domain=challenge.domain,
                )

        first_error: FairydustError | None = None
        workers = max(1, min(self.max_workers, len(challenges)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fairydust-dns") as pool:
            futures = {
                pool.submit(contextvars.copy_context().run, provision, challenge): challenge
                for challenge in challenges
            }
            for future in as_completed(futures):
                exc = future.exception()
                if exc is None or first_error is not None:
                    continue
                if isinstance(exc, FairydustError):
                    first_error = exc
                else:
                    logger.error(
                        "Unexpected provisioning failure",
                        extra={"domain": futures[future].domain},
                        exc_info=exc,
                    )
                    first_error = PermanentError(
                        f"Unexpected failure: {type(exc).__name__}: {exc}",
                        domain=futures[future].domain,
                    )
                stage.cancel("Sibling challenge failed")

        return first_error

    def _validate(self, challenges: list[DNSChallenge]) -> FairydustError | None:
        """Ask the CA to check every challenge; the request is atomic."""
        for challenge in challenges:
            challenge.transition(ChallengeState.VALIDATING)

        for challenge in challenges:
            result = self.acme.request_validation(challenge.domain, challenge.token)
            if not result.valid:
                if isinstance(result.error, FairydustError):
                    return result.error
                return ValidationError(
                    result.detail or "Challenge rejected", domain=challenge.domain
                )
        return None

    def _cleanup(
        self, challenges: list[DNSChallenge], handles: dict[str, RecordHandle]
    ) -> list[CleanupError]:
        """Remove every record that was created; never raises for a provider failure."""
        failures: list[CleanupError] = []
        for challenge in challenges:
            if challenge.state not in _LIVE_STATES:
                continue
            challenge.transition(ChallengeState.RECORD_CLEANUP)
            handle = handles.get(challenge.token)
            if handle is None:
                # The create call failed; there is nothing to remove
                continue
            failure = self.records.delete(handle)
            if failure is not None:
                failures.append(failure)
        return failures
