"""Interchangeable candidate scorers used by the routing chain.

A scorer receives the admissible candidates for a transaction and either
returns a :class:`RouteDecision` naming one of them or raises.  The router
tries scorers in configured order and always ends with
:class:`DeterministicScorer`, which cannot fail on a non-empty candidate list.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from psp_router.bandit import BanditEngine
from psp_router.exceptions import ReasonerUnavailable, ScorerUnavailable
from psp_router.memory import LessonMemory
from psp_router.models import (
    CandidateSnapshot,
    PerformancePredictor,
    Reasoner,
    RouteContext,
    RouteDecision,
)
from psp_router.schema import parse_reasoner_response
from psp_router.scoring import (
    ConstraintDefaults,
    ScoringWeights,
    best_index,
    build_decision,
    new_decision_id,
    score_deterministically,
)

SYSTEM_PROMPT = """\
You are an expert payment service provider (PSP) routing system. Select the optimal PSP
for each transaction to maximize authorization success, minimize fees, and ensure compliance.

CRITICAL RULES:
1. Only choose a PSP listed in "candidates"; every listed PSP already passed capability,
   health and compliance checks.
2. ALWAYS enforce SCA/3DS requirements when specified.
3. Weigh authorization rates, fees, merchant preferences and segment statistics.
4. Use the relevant lessons from past routing outcomes when they apply.
5. Give clear reasoning for your choice.

RESPONSE FORMAT:
Return only a JSON object with this exact structure:
{
  "schemaVersion": "1.0",
  "decisionId": "unique-id",
  "candidate": "PSP_NAME",
  "alternates": ["PSP1", "PSP2"],
  "reasoning": "why this PSP was chosen",
  "guardrail": "none",
  "constraints": {"mustUse3ds": false, "retryWindowMs": 8000, "maxRetries": 1},
  "featuresUsed": ["auth=0.89", "fee_bps=200"]
}
"""

USER_INSTRUCTION = (
    "Route this payment transaction to the optimal PSP. Consider auth rates, fees, "
    "compliance requirements, merchant preferences and historical lessons."
)


@dataclass(frozen=True)
class ScoringRequest:
    """Everything a scorer may look at for one decision call."""
    ctx: RouteContext
    admissible: tuple[CandidateSnapshot, ...]
    segment: str
    features: dict[str, float] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.admissible]


class CandidateScorer(ABC):
    name = "scorer"

    @abstractmethod
    async def propose(self, request: ScoringRequest) -> RouteDecision:
        """Return a decision whose candidate is in ``request.admissible``."""
        ...


class ReasonerScorer(CandidateScorer):
    """Ask the external reasoner, then validate its answer."""

    name = "reasoner"

    def __init__(
        self,
        reasoner: Reasoner,
        lessons: LessonMemory | None = None,
        lessons_k: int = 3,
        temperature: float = 0.1,
        bandit: BanditEngine | None = None,
    ):
        self._reasoner = reasoner
        self._lessons = lessons
        self._lessons_k = lessons_k
        self._temperature = temperature
        self._bandit = bandit

    async def build_payload(self, request: ScoringRequest) -> dict[str, Any]:
        segment_stats = dict(request.ctx.segment_stats)
        if self._bandit is not None:
            for arm, mean in self._bandit.stats_for(request.segment, request.names).items():
                segment_stats.setdefault(f"{arm}_{request.segment}_mean_reward", mean)
        lessons: list[str] = []
        if self._lessons is not None:
            lessons = await self._lessons.relevant_lessons(request.ctx.tx, self._lessons_k)
        return {
            "transaction": request.ctx.tx.to_dict(),
            "candidates": [c.to_dict() for c in request.admissible],
            "merchantPreferences": dict(request.ctx.merchant_prefs),
            "segmentStats": segment_stats,
            "relevantLessons": lessons,
        }

    async def propose(self, request: ScoringRequest) -> RouteDecision:
        payload = await self.build_payload(request)
        try:
            raw = await self._reasoner.complete_json(
                SYSTEM_PROMPT, USER_INSTRUCTION, json.dumps(payload, indent=2),
                temperature=self._temperature,
            )
        except asyncio.TimeoutError:
            raise
        except Exception as e:
            raise ReasonerUnavailable(f"{self._reasoner.name}: {e}") from e
        # Reasoners reuse ids (e.g. the "unique-id" from the prompt); outcomes are keyed by id.
        decision = replace(parse_reasoner_response(raw, request.names), decision_id=new_decision_id())
        logger.debug(f"Reasoner proposed {decision.candidate}: {decision.reasoning[:120]}")
        return decision


class PredictorScorer(CandidateScorer):
    """Choose the candidate with the highest predicted success probability."""

    name = "predictor"

    def __init__(
        self,
        predictor: PerformancePredictor,
        defaults: ConstraintDefaults | None = None,
        model_version: str = "v1.0",
    ):
        self._predictor = predictor
        self._defaults = defaults or ConstraintDefaults()
        self._model_version = model_version

    async def propose(self, request: ScoringRequest) -> RouteDecision:
        if not self._predictor.is_ready:
            raise ScorerUnavailable("performance model not loaded")
        tx = request.ctx.tx
        probabilities = await asyncio.gather(
            *(self._predictor.predict_success(c.name, tx) for c in request.admissible)
        )
        for name, p in zip(request.names, probabilities):
            if not isinstance(p, (int, float)) or not 0.0 <= p <= 1.0:
                raise ScorerUnavailable(f"predictor returned {p!r} for {name}")
        idx = best_index(probabilities)
        features = [f"ml:{n}={p:.3f}" for n, p in zip(request.names, probabilities)]
        features += [f"ml_model={self._model_version}", f"ml_confidence={probabilities[idx]:.3f}"]
        return build_decision(
            tx, request.admissible[idx], request.admissible, "ml_prediction", self._defaults,
            features, detail=f"Success probability: {probabilities[idx]:.2%}",
        )


class BanditScorer(CandidateScorer):
    """Let the bandit pick among admissible arms for the transaction's segment."""

    name = "bandit"

    def __init__(self, engine: BanditEngine, defaults: ConstraintDefaults | None = None):
        self._engine = engine
        self._defaults = defaults or ConstraintDefaults()

    async def propose(self, request: ScoringRequest) -> RouteDecision:
        arm = self._engine.select(request.segment, request.names, request.features)
        chosen = next(c for c in request.admissible if c.name == arm)
        stat = self._engine.store.get(request.segment, arm)
        return build_decision(
            request.ctx.tx, chosen, request.admissible, "bandit", self._defaults,
            [f"policy={self._engine.policy_name}", f"segment={request.segment}",
             f"pulls={stat.count}", f"mean_reward={stat.mean:.4f}"],
            detail=f"Bandit mean reward: {stat.mean:.4f} over {stat.count} pulls",
        )


class DeterministicScorer(CandidateScorer):
    """Weighted score over auth rate, fees, bias, compliance, health and risk."""

    name = "deterministic"

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        defaults: ConstraintDefaults | None = None,
    ):
        self.weights = weights or ScoringWeights()
        self._defaults = defaults or ConstraintDefaults()

    async def propose(self, request: ScoringRequest) -> RouteDecision:
        return score_deterministically(
            request.ctx.tx, request.admissible, self.weights, self._defaults, request.segment,
        )
