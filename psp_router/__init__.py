"""psp-router: PSP routing with guardrails, reasoner-first scoring, and bandit learning."""

from psp_router.bandit import (
    BanditEngine,
    ContextualEpsilonGreedyPolicy,
    EpsilonGreedyPolicy,
    StatisticsStore,
    ThompsonSamplingPolicy,
)
from psp_router.config import RouterSettings, build_exporter, build_router
from psp_router.guardrails import filter_candidates
from psp_router.models import (
    CandidateSnapshot,
    CardScheme,
    Health,
    PaymentMethod,
    RouteContext,
    RouteDecision,
    Transaction,
    TransactionOutcome,
)
from psp_router.reward import compute_reward
from psp_router.router import PspRouter

__all__ = [
    "BanditEngine",
    "CandidateSnapshot",
    "CardScheme",
    "ContextualEpsilonGreedyPolicy",
    "EpsilonGreedyPolicy",
    "Health",
    "PaymentMethod",
    "PspRouter",
    "RouteContext",
    "RouteDecision",
    "RouterSettings",
    "StatisticsStore",
    "ThompsonSamplingPolicy",
    "Transaction",
    "TransactionOutcome",
    "build_exporter",
    "build_router",
    "compute_reward",
    "filter_candidates",
]
