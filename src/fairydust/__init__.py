"""fairydust - certificate issuance and renewal through ACME DNS-01 challenges."""

from fairydust.orchestrator import ChallengeOrchestrator, Orchestration
from fairydust.scheduler import RenewalScheduler

__all__ = ["ChallengeOrchestrator", "Orchestration", "RenewalScheduler"]
__version__ = "0.1.0"
