"""Deterministic candidate scoring and decision construction."""

import uuid
from collections.abc import Sequence

from pydantic import BaseModel, Field

from psp_router.guardrails import VETO_NO_VALID_PSP
from psp_router.models import (
    SCHEMA_VERSION,
    VETO_CANDIDATE,
    CandidateSnapshot,
    Health,
    RouteConstraints,
    RouteDecision,
    Transaction,
)


class ScoringWeights(BaseModel):
    """Weights of the deterministic fallback score."""

    auth: float = 1.0
    fee_bps: float = 1.0
    fixed_fee: float = 1.0
    business_bias: float = 0.0
    sca_3ds_bonus: float = 0.0
    yellow_penalty: float = 0.0
    risk_penalty: float = 0.0
    bias: dict[str, float] = Field(default_factory=dict)


class ConstraintDefaults(BaseModel):
    retry_window_ms: int = 8000
    max_retries: int = 1


def score_candidate(tx: Transaction, c: CandidateSnapshot, w: ScoringWeights) -> float:
    score = (
        w.auth * c.auth_rate
        - w.fee_bps * (c.fee_bps / 10000.0)
        - w.fixed_fee * (c.fixed_fee / max(tx.amount, 1.0))
        + w.business_bias * w.bias.get(c.name, 0.0)
    )
    if tx.sca_required and tx.is_card and c.supports_3ds:
        score += w.sca_3ds_bonus
    if c.health == Health.YELLOW:
        score -= w.yellow_penalty
    score -= w.risk_penalty * (tx.risk_score / 100.0)
    return score


def best_index(scores: Sequence[float]) -> int:
    """Index of the maximum; the first occurrence wins ties."""
    best = 0
    for i in range(1, len(scores)):
        if scores[i] > scores[best]:
            best = i
    return best


def new_decision_id() -> str:
    return str(uuid.uuid4())


def constraints_for(tx: Transaction, defaults: ConstraintDefaults) -> RouteConstraints:
    return RouteConstraints(
        must_use_3ds=tx.sca_required and tx.is_card,
        retry_window_ms=defaults.retry_window_ms,
        max_retries=defaults.max_retries,
    )


def veto_decision(guardrail: str, reasoning: str) -> RouteDecision:
    return RouteDecision(
        schema_version=SCHEMA_VERSION,
        decision_id=new_decision_id(),
        candidate=VETO_CANDIDATE,
        alternates=(),
        reasoning=reasoning,
        guardrail=guardrail,
        constraints=RouteConstraints(),
        features_used=(),
    )


def build_decision(
    tx: Transaction,
    chosen: CandidateSnapshot,
    candidates: Sequence[CandidateSnapshot],
    method: str,
    defaults: ConstraintDefaults,
    extra_features: Sequence[str] = (),
    detail: str = "",
) -> RouteDecision:
    reasoning = (
        f"{method} - Auth: {chosen.auth_rate:.2%}, "
        f"Fee: {chosen.fee_bps}bps + {chosen.fixed_fee:.2f}"
    )
    if detail:
        reasoning = f"{reasoning}, {detail}"
    return RouteDecision(
        schema_version=SCHEMA_VERSION,
        decision_id=new_decision_id(),
        candidate=chosen.name,
        alternates=tuple(c.name for c in candidates if c.name != chosen.name),
        reasoning=reasoning,
        guardrail="none",
        constraints=constraints_for(tx, defaults),
        features_used=(
            f"auth={chosen.auth_rate:.2f}",
            f"fee_bps={chosen.fee_bps}",
            f"method={method}",
            *extra_features,
        ),
    )


def score_deterministically(
    tx: Transaction,
    candidates: Sequence[CandidateSnapshot],
    weights: ScoringWeights | None = None,
    defaults: ConstraintDefaults | None = None,
    segment: str = "",
) -> RouteDecision:
    """Pick the highest-scoring admissible candidate.

    ``candidates`` must already be filtered by the guardrails; an empty list
    yields the veto decision.
    """
    if not candidates:
        return veto_decision(VETO_NO_VALID_PSP, "No valid PSP")
    weights = weights or ScoringWeights()
    scores = [score_candidate(tx, c, weights) for c in candidates]
    idx = best_index(scores)
    extra = [f"score={scores[idx]:.4f}"]
    if segment:
        extra.append(f"segment={segment}")
    return build_decision(
        tx, candidates[idx], candidates, "deterministic",
        defaults or ConstraintDefaults(), extra,
    )
