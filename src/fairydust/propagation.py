"""Poll public resolvers until a challenge record is visible."""

import time
from collections.abc import Callable, Sequence

import dns.exception
import dns.resolver

from fairydust._logging import Timer, get_logger
from fairydust.cancellation import CancelToken
from fairydust.models import DNSChallenge

logger = get_logger(__name__)

# (nameserver, record name) -> TXT strings currently served
TxtLookup = Callable[[str, str], set[str]]


def query_txt(nameserver: str, name: str, lifetime: float = 5.0) -> set[str]:
    """Ask a single nameserver for the TXT values at name.

    Negative answers and resolver failures yield an empty set; the
    caller treats them as "not visible yet".
    """
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    resolver.lifetime = lifetime
    resolver.cache = None
    try:
        answer = resolver.resolve(name, "TXT")
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
        return set()
    except dns.exception.DNSException as e:
        logger.debug(
            "Resolver query failed",
            extra={"nameserver": nameserver, "record_name": name, "error": type(e).__name__},
        )
        return set()
    # Unrelated binary TXT data at the same name must not fail the lookup.
    return {b"".join(rdata.strings).decode("utf-8", errors="replace") for rdata in answer}


def required_votes(quorum: str | int, resolver_count: int) -> int:
    """Number of resolvers that must see a record.

    Args:
        quorum: "all", "majority", or an explicit count.
        resolver_count: Number of resolvers queried.

    Raises:
        ValueError: If the quorum cannot be met by resolver_count resolvers.
    """
    if quorum == "all":
        votes = resolver_count
    elif quorum == "majority":
        votes = resolver_count // 2 + 1
    else:
        votes = int(quorum)
    if not 0 < votes <= resolver_count:
        raise ValueError(f"Quorum {quorum!r} not satisfiable with {resolver_count} resolvers")
    return votes


class PropagationChecker:
    """Gates validation on a challenge record being publicly visible.

    Args:
        resolvers: Nameserver addresses outside the DNS provider's own
            infrastructure.
        quorum: "all", "majority", or the number of resolvers that must
            observe the value.
        lookup: TXT lookup function, injectable for tests.
    """

    def __init__(
        self,
        resolvers: Sequence[str] = ("1.1.1.1", "8.8.8.8", "9.9.9.9"),
        quorum: str | int = "all",
        lookup: TxtLookup = query_txt,
    ):
        self.resolvers = list(resolvers)
        self.quorum = quorum
        self.votes_needed = required_votes(quorum, len(self.resolvers))
        self._lookup = lookup

    def _visible_count(self, challenge: DNSChallenge) -> int:
        return sum(
            1
            for nameserver in self.resolvers
            if challenge.value in self._lookup(nameserver, challenge.record_name)
        )

    def await_visible(
        self,
        challenge: DNSChallenge,
        timeout: float,
        poll_interval: float,
        cancel: CancelToken | None = None,
    ) -> bool:
        """Poll until a quorum of resolvers serves the challenge value.

        Args:
            challenge: The challenge whose record to look for.
            timeout: Maximum seconds to wait. Required and positive.
            poll_interval: Seconds between polling rounds.
            cancel: Token that aborts the wait early.

        Returns:
            True once the quorum is reached; False on timeout or cancellation.

        Raises:
            ValueError: If timeout or poll_interval is not positive.
        """
        if timeout <= 0:
            raise ValueError("Propagation timeout must be positive")
        if poll_interval <= 0:
            raise ValueError("Poll interval must be positive")

        cancel = cancel or CancelToken()
        deadline = time.monotonic() + timeout
        polls = 0
        with Timer() as timer:
            while True:
                polls += 1
                seen = self._visible_count(challenge)
                if seen >= self.votes_needed:
                    break
                logger.debug(
                    "Record not yet visible",
                    extra={
                        "domain": challenge.domain,
                        "record_name": challenge.record_name,
                        "seen": seen,
                        "needed": self.votes_needed,
                        "poll": polls,
                    },
                )
                remaining = deadline - time.monotonic()
                if remaining <= 0 or cancel.sleep(min(poll_interval, remaining)):
                    logger.warning(
                        "Record propagation not confirmed",
                        extra={
                            "domain": challenge.domain,
                            "record_name": challenge.record_name,
                            "polls": polls,
                        },
                    )
                    return False

        logger.info(
            "Record visible",
            extra={
                "domain": challenge.domain,
                "record_name": challenge.record_name,
                "polls": polls,
                "elapsed_ms": timer.elapsed_ms,
            },
        )
        return True
