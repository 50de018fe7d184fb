"""Error taxonomy for certificate orchestration.

Every error carries an :class:`~fairydust.models.ErrorCategory`; callers
decide whether to retry by category, never by exception message.
"""

from typing import Any

import httpx

from fairydust.models import ErrorCategory


class FairydustError(Exception):
    """Base exception for all fairydust errors.

    Args:
        message: Human readable description. Must never contain secrets.
        category: Taxonomy bucket used for retry decisions and exit codes.
        domain: Domain the failure is scoped to, if any.
        retry_after: Seconds the remote side asked us to wait, if known.
    """

    category: ErrorCategory = ErrorCategory.PERMANENT

    def __init__(
        self,
        message: str,
        category: ErrorCategory | None = None,
        domain: str | None = None,
        retry_after: int | None = None,
    ):
        self.message = message
        if category is not None:
            self.category = category
        self.domain = domain
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.PROPAGATION)

    def get_retry_seconds(self, default: float) -> float:
        """Get retry delay, falling back to default.

        Args:
            default: Default seconds if retry_after is not set.

        Returns:
            Number of seconds to wait before retrying.
        """
        return self.retry_after if self.retry_after is not None else default


class TransientError(FairydustError):
    """Network timeout, rate limit or other condition worth retrying."""

    category = ErrorCategory.TRANSIENT


class PermanentError(FairydustError):
    """Authentication failure, invalid zone or other non-retryable error."""

    category = ErrorCategory.PERMANENT


class ProviderError(FairydustError):
    """Error returned by a DNS provider API."""

    def __init__(self, message: str, status_code: int | None = None, **kwargs: Any):
        self.status_code = status_code
        super().__init__(message, **kwargs)

    @classmethod
    def from_response(
        cls,
        response: httpx.Response,
        provider: str,
        detail: str | None = None,
        domain: str | None = None,
    ) -> "ProviderError":
        """Create a ProviderError from an HTTP error response.

        Routes to the transient or permanent subclass based on status code.

        Args:
            response: The failed httpx response.
            provider: Provider name, used in the message.
            detail: Error detail extracted from the body, if any.
            domain: Domain the request was made for.

        Returns:
            TransientProviderError or PermanentProviderError.
        """
        status = response.status_code
        detail = detail or response.text or "Unknown error"
        message = f"{provider} API error ({status}): {detail}"
        retry_after = cls._parse_retry_after(response.headers.get("Retry-After"))

        if status in (408, 425, 429) or status >= 500:
            return TransientProviderError(
                message, status_code=status, domain=domain, retry_after=retry_after
            )
        return PermanentProviderError(message, status_code=status, domain=domain)

    @staticmethod
    def _parse_retry_after(value: str | None) -> int | None:
        """Parse Retry-After header (seconds or HTTP-date).

        Args:
            value: Retry-After header value.

        Returns:
            Seconds to wait, or None if not parseable.
        """
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            from datetime import UTC, datetime
            from email.utils import parsedate_to_datetime

            try:
                dt = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
            return max(0, int((dt - datetime.now(UTC)).total_seconds()))


class TransientProviderError(ProviderError):
    """Provider rate limit, timeout or server error."""

    category = ErrorCategory.TRANSIENT


class PermanentProviderError(ProviderError):
    """Provider rejected the request (bad credentials, unknown zone...)."""

    category = ErrorCategory.PERMANENT


class RetryExhaustedError(PermanentError):
    """Transient failures persisted past the retry budget."""

    def __init__(self, message: str, last_error: FairydustError, attempts: int, **kwargs: Any):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(message, **kwargs)


class ValidationError(FairydustError):
    """The certificate authority could not validate a challenge."""

    category = ErrorCategory.VALIDATION


class AcmeRejectedError(PermanentError):
    """The certificate authority refused the order."""

    def __init__(self, message: str, acme_type: str | None = None, **kwargs: Any):
        self.acme_type = acme_type
        super().__init__(message, **kwargs)


class PropagationTimeoutError(FairydustError):
    """A challenge record was not observed by enough resolvers in time."""

    category = ErrorCategory.PROPAGATION


class CancelledError(FairydustError):
    """The orchestration was aborted or ran past its deadline."""

    category = ErrorCategory.CANCELLED


class CleanupError(FairydustError):
    """A temporary challenge record could not be removed.

    Reported next to the primary outcome, never in place of it.
    """

    def __init__(self, message: str, record_name: str, **kwargs: Any):
        self.record_name = record_name
        super().__init__(message, **kwargs)


class StateTransitionError(FairydustError):
    """A challenge was moved along an edge the state machine forbids."""


class ConfigurationError(PermanentError):
    """Invalid or missing configuration value."""


class CredentialError(PermanentError):
    """Credentials are missing or have been released."""
