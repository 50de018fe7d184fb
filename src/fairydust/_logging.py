"""Logging utilities for the fairydust package."""

import logging
import time
from contextvars import ContextVar, Token

# Silent unless the consumer (or the CLI) configures handlers
_root = logging.getLogger("fairydust")
_root.addHandler(logging.NullHandler())

# Domains of the orchestration running in the current context
_current_domains: ContextVar[list[str] | None] = ContextVar("current_domains", default=None)


def set_domains(domains: list[str] | None) -> Token[list[str] | None]:
    """Set current domains for logging context.

    Args:
        domains: List of domains being processed.

    Returns:
        Token to reset the context.
    """
    return _current_domains.set(domains)


def reset_domains(token: Token[list[str] | None]) -> None:
    """Reset domains context.

    Args:
        token: Token from set_domains() call.
    """
    _current_domains.reset(token)


def get_domain_extra() -> dict[str, list[str] | str]:
    """Get domain info for log extra fields.

    Returns:
        Dict with 'domain' (single) or 'domains' (multiple), or empty dict.
    """
    domains = _current_domains.get()
    if domains is None:
        return {}
    if len(domains) == 1:
        return {"domain": domains[0]}
    return {"domains": domains}


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the fairydust namespace."""
    return logging.getLogger(name)


_REDACTED = "**********"
_secrets: set[str] = set()


def register_secret(value: str) -> None:
    """Mark a value that must never appear in formatted log output."""
    if value:
        _secrets.add(value)


def unregister_secret(value: str) -> None:
    """Forget a value previously passed to register_secret()."""
    _secrets.discard(value)


class RedactSecretsFilter(logging.Filter):
    """Handler filter replacing registered secrets in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        secrets = tuple(_secrets)
        if not secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in secrets:
            redacted = redacted.replace(secret, _REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(verbose: bool = False) -> logging.Handler:
    """Attach a redacting stderr handler to the package logger.

    Only the command-line entry point calls this; library consumers
    configure logging themselves.

    Returns:
        The installed handler.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    handler.addFilter(RedactSecretsFilter())
    _root.addHandler(handler)
    _root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return handler


class Timer:
    """Context manager for timing operations.

    Usage:
        with Timer() as t:
            # do work
        print(f"Elapsed: {t.elapsed_ms}ms")
    """

    def __init__(self) -> None:
        self.elapsed_ms: float = 0
        self._start: float = 0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000
