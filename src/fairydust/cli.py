"""Command-line entry point: ``fairydust`` / ``python -m fairydust``."""

import argparse
import signal
import sys
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta

from fairydust import __version__
from fairydust._logging import configure_logging, get_logger
from fairydust.acme_adapter import AcmeClientAdapter, LibAcmeBackend
from fairydust.config import Settings
from fairydust.credentials import CredentialStore
from fairydust.crypto import load_or_create_account_key
from fairydust.dns_records import DNSRecordManager, RetryPolicy
from fairydust.exceptions import ConfigurationError, FairydustError
from fairydust.models import ErrorCategory, IssueResult
from fairydust.orchestrator import ChallengeOrchestrator
from fairydust.propagation import PropagationChecker
from fairydust.providers import DnsProvider, create_provider
from fairydust.scheduler import RenewalScheduler
from fairydust.storage import FileCertificateStore

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_PERMANENT = 1
EXIT_USAGE = 2
EXIT_TRANSIENT = 75  # EX_TEMPFAIL

_RETRYABLE = {ErrorCategory.TRANSIENT, ErrorCategory.PROPAGATION, ErrorCategory.CANCELLED}


def exit_code(error: BaseException | None) -> int:
    """Map a failure to the process exit status."""
    if error is None:
        return EXIT_OK
    if isinstance(error, ConfigurationError):
        return EXIT_USAGE
    if isinstance(error, FairydustError) and error.category in _RETRYABLE:
        return EXIT_TRANSIENT
    return EXIT_PERMANENT


@dataclass
class Runtime:
    """Everything a command needs to talk to the CA and the DNS provider."""

    orchestrator: ChallengeOrchestrator
    acme: AcmeClientAdapter
    provider: DnsProvider
    credentials: CredentialStore

    def close(self) -> None:
        self.orchestrator.shutdown()
        self.provider.close()
        self.credentials.release()


def build_runtime(settings: Settings, environ: Mapping[str, str] | None = None) -> Runtime:
    """Wire providers, ACME client and orchestrator from settings.

    Raises:
        CredentialError: If the provider credential is not configured.
    """
    credentials = CredentialStore.from_env(settings.dns_provider, environ)
    provider = create_provider(settings, credentials)
    records = DNSRecordManager(
        provider,
        RetryPolicy(
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            max_attempts=settings.retry_max_attempts,
        ),
        ttl=settings.record_ttl,
    )
    propagation = PropagationChecker(settings.propagation_resolvers, settings.propagation_quorum)
    backend = LibAcmeBackend(
        settings.acme_directory_url,
        load_or_create_account_key(settings.account_key_path),
        email=settings.acme_email,
        key_type=settings.certificate_key_type,
    )
    acme = AcmeClientAdapter(backend, validation_timeout=settings.validation_timeout)
    orchestrator = ChallengeOrchestrator(
        records,
        propagation,
        acme,
        propagation_timeout=settings.propagation_timeout,
        poll_interval=settings.propagation_poll_interval,
    )
    return Runtime(orchestrator, acme, provider, credentials)


def _report(result: IssueResult, store: FileCertificateStore) -> int:
    if result.certificate is not None:
        metadata = store.save(result.certificate)
        print(f"Certificate for {', '.join(metadata.domains)} saved to {metadata.location}")
        print(f"Expires {metadata.expires_at:%Y-%m-%d %H:%M} UTC")
    if result.cleanup_failures:
        print("The following TXT records could not be removed and need manual cleanup:")
        for domain in result.cleanup_failures:
            print(f"  {domain}")
    if not result.ok:
        print(f"Failed ({result.category}): {result.error}", file=sys.stderr)
    return exit_code(result.error)


def cmd_issue(args: argparse.Namespace, settings: Settings, runtime: Runtime) -> int:
    store = FileCertificateStore(settings.storage_dir)
    result = runtime.orchestrator.issue(args.domains, timeout=args.timeout)
    return _report(result, store)


def cmd_renew(args: argparse.Namespace, settings: Settings, runtime: Runtime) -> int:
    store = FileCertificateStore(settings.storage_dir)
    certificate = store.load(args.domain_set_id)
    result = runtime.orchestrator.renew(certificate, timeout=args.timeout)
    return _report(result, store)


def cmd_revoke(args: argparse.Namespace, settings: Settings, runtime: Runtime) -> int:
    store = FileCertificateStore(settings.storage_dir)
    certificate = store.load(args.domain_set_id)
    runtime.acme.revoke(certificate)
    store.mark_revoked(args.domain_set_id)
    print(f"Revoked {args.domain_set_id}")
    return EXIT_OK


def cmd_schedule(args: argparse.Namespace, settings: Settings, runtime: Runtime) -> int:
    scheduler = RenewalScheduler(
        runtime.orchestrator,
        FileCertificateStore(settings.storage_dir),
        renewal_window=timedelta(days=settings.renewal_window_days),
        scan_interval=settings.renewal_scan_interval,
    )
    if args.once:
        scheduler.load()
        results = scheduler.scan()
        for result in results:
            for domain in result.cleanup_failures:
                print(f"Manual cleanup needed: {domain}")
        return max((exit_code(r.error) for r in results), default=EXIT_OK)

    stop = threading.Event()

    def _stop(signum: int, frame: object) -> None:
        logger.info("Stop requested", extra={"signal": signum})
        stop.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    scheduler.run(stop)
    return EXIT_OK


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    store = FileCertificateStore(settings.storage_dir)
    for metadata in store.list_metadata():
        flag = " (revoked)" if metadata.revoked else ""
        print(
            f"{metadata.domain_set_id}\t{metadata.expires_at:%Y-%m-%d}\t"
            f"{','.join(metadata.domains)}{flag}"
        )
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fairydust",
        description="Issue and renew certificates using ACME DNS-01 challenges.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    issue = sub.add_parser("issue", help="Obtain a certificate for one or more domains.")
    issue.add_argument("domains", nargs="+", help="Domains to include, e.g. example.com.")
    issue.add_argument("--timeout", type=float, help="Overall deadline in seconds.")

    renew = sub.add_parser("renew", help="Renew a stored certificate now.")
    renew.add_argument("domain_set_id", help="Identifier shown by `fairydust list`.")
    renew.add_argument("--timeout", type=float, help="Overall deadline in seconds.")

    revoke = sub.add_parser("revoke", help="Revoke a stored certificate.")
    revoke.add_argument("domain_set_id", help="Identifier shown by `fairydust list`.")

    schedule = sub.add_parser("schedule", help="Renew certificates as they near expiry.")
    schedule.add_argument("--once", action="store_true", help="Run a single scan and exit.")

    sub.add_parser("list", help="Show stored certificates.")
    return parser


_COMMANDS = {
    "issue": cmd_issue,
    "renew": cmd_renew,
    "revoke": cmd_revoke,
    "schedule": cmd_schedule,
}


def main(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = Settings.from_env(environ)
        if args.command == "list":
            return cmd_list(args, settings)

        runtime = build_runtime(settings, environ)
        try:
            return _COMMANDS[args.command](args, settings, runtime)
        finally:
            runtime.close()
    except FairydustError as e:
        print(f"Error: {e}", file=sys.stderr)
        return exit_code(e)


if __name__ == "__main__":
    sys.exit(main())
