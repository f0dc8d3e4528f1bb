"""Hard eligibility rules applied before any learned or reasoned decision."""

from collections.abc import Iterable, Sequence

from psp_router.models import CandidateSnapshot, Health, Transaction

DEFAULT_ALLOWED_HEALTH = frozenset({Health.GREEN, Health.YELLOW})

VETO_NO_VALID_PSP = "veto:no_valid_psp"


def rejection_reasons(
    tx: Transaction,
    candidate: CandidateSnapshot,
    allowed_health: Iterable[Health] = DEFAULT_ALLOWED_HEALTH,
) -> list[str]:
    """Why a candidate is inadmissible for a transaction (empty if admissible)."""
    reasons = []
    if not candidate.supports:
        reasons.append("capability")
    # Red is never routable, whatever the configuration says.
    if candidate.health == Health.RED or candidate.health not in set(allowed_health):
        reasons.append("health")
    if tx.sca_required and tx.is_card and not candidate.supports_3ds:
        reasons.append("compliance")
    return reasons


def filter_candidates(
    tx: Transaction,
    candidates: Sequence[CandidateSnapshot],
    allowed_health: Iterable[Health] = DEFAULT_ALLOWED_HEALTH,
) -> list[CandidateSnapshot]:
    """Return the admissible candidates, preserving input order."""
    allowed = frozenset(allowed_health)
    return [c for c in candidates if not rejection_reasons(tx, c, allowed)]
