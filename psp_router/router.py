"""Route transactions through guardrails and a scorer chain, and learn from outcomes."""

import threading
from collections import OrderedDict
from collections.abc import Iterable, Sequence

from loguru import logger

from psp_router.bandit import BanditEngine
from psp_router.failover import CircuitBreaker, FailoverChain, ScorerTier
from psp_router.guardrails import DEFAULT_ALLOWED_HEALTH, VETO_NO_VALID_PSP, filter_candidates
from psp_router.memory import LessonMemory
from psp_router.models import (
    Health,
    RouteContext,
    RouteDecision,
    Transaction,
    TransactionOutcome,
    context_features,
    segment_key,
)
from psp_router.reward import DEFAULT_REWARD_SETTINGS, RewardSettings, compute_reward
from psp_router.scorers import CandidateScorer, DeterministicScorer, ScoringRequest
from psp_router.scoring import ScoringWeights, veto_decision

VETO_ROUTER_ERROR = "veto:router_error"


class PspRouter:
    """Routes each transaction to one admissible PSP.

    Order of attempts:
      1. Guardrails → empty admissible set returns the veto decision
      2. Configured scorers in order (reasoner, ML predictor, bandit), each
         guarded by a circuit breaker and a timeout (``timeouts[name]``, else
         ``default_timeout_s``)
      3. Deterministic scoring, always last and never skipped

    Learning happens only through :meth:`update_reward` /
    :meth:`record_outcome`; :meth:`decide` never mutates bandit state.
    """

    def __init__(
        self,
        scorers: Sequence[CandidateScorer] = (),
        *,
        fallback: DeterministicScorer | None = None,
        engine: BanditEngine | None = None,
        lessons: LessonMemory | None = None,
        timeouts: dict[str, float] | None = None,
        default_timeout_s: float = 5.0,
        breaker: CircuitBreaker | None = None,
        allowed_health: Iterable[Health] = DEFAULT_ALLOWED_HEALTH,
        reward_settings: RewardSettings = DEFAULT_REWARD_SETTINGS,
        max_pending: int = 10_000,
    ):
        self._scorers = list(scorers)
        self._fallback = fallback or DeterministicScorer()
        self._engine = engine
        self._lessons = lessons
        self._timeouts = dict(timeouts or {})
        self._default_timeout_s = default_timeout_s
        self._failover = FailoverChain(breaker)
        self._allowed_health = frozenset(allowed_health)
        self._reward_settings = reward_settings
        self._max_pending = max_pending

        self._pending: OrderedDict[str, Transaction] = OrderedDict()
        self._pending_lock = threading.Lock()
        self._last_decision: RouteDecision | None = None

    @property
    def engine(self) -> BanditEngine | None:
        return self._engine

    @property
    def breaker(self) -> CircuitBreaker:
        return self._failover.breaker

    @property
    def last_decision(self) -> RouteDecision | None:
        return self._last_decision

    @property
    def scorer_names(self) -> list[str]:
        return [s.name for s in self._scorers] + [self._fallback.name]

    async def decide(self, ctx: RouteContext) -> RouteDecision:
        """Return a routing decision; never raises for well-formed contexts."""
        tx = ctx.tx
        logger.info(
            f"Routing decision for merchant {tx.merchant_id}, "
            f"amount {tx.amount} {tx.currency}, method {tx.method.value}"
        )
        try:
            decision = await self._decide(ctx)
        except Exception as e:
            logger.exception(f"Routing failed unexpectedly, vetoing: {e}")
            decision = veto_decision(VETO_ROUTER_ERROR, f"Router error: {e}")
        self._last_decision = decision
        return decision

    async def _decide(self, ctx: RouteContext) -> RouteDecision:
        tx = ctx.tx
        admissible = filter_candidates(tx, ctx.candidates, self._allowed_health)
        if not admissible:
            logger.warning(
                f"No valid PSPs for merchant {tx.merchant_id} "
                f"({len(ctx.candidates)} candidates rejected)"
            )
            return veto_decision(VETO_NO_VALID_PSP, "No valid PSP")

        request = ScoringRequest(
            ctx=ctx,
            admissible=tuple(admissible),
            segment=segment_key(tx),
            features=context_features(tx),
        )
        chain = self._build_chain()
        try:
            decision, tier, latency_ms = await self._failover.try_scorers(chain, request)
        except RuntimeError as e:
            logger.error(f"All scorers failed: {e}")
            return veto_decision(VETO_ROUTER_ERROR, "All scorers failed")

        level = "INFO" if tier.name == chain[0].name else "WARNING"
        logger.log(
            level,
            f"Route: {decision.candidate} via {tier.name} ({latency_ms}ms) | "
            f"segment={request.segment} admissible={len(admissible)}",
        )
        self._remember(request, decision)
        return decision

    def _build_chain(self) -> list[ScorerTier]:
        """Configured scorers in order, then the deterministic safety net."""
        chain = [
            ScorerTier(s.name, s, timeout_s=self._timeouts.get(s.name, self._default_timeout_s))
            for s in self._scorers
        ]
        chain.append(ScorerTier(self._fallback.name, self._fallback, is_terminal=True))
        return chain

    # --- Outcome feedback ---

    def _remember(self, request: ScoringRequest, decision: RouteDecision) -> None:
        with self._pending_lock:
            self._pending[decision.decision_id] = request.ctx.tx
            while len(self._pending) > self._max_pending:
                self._pending.popitem(last=False)

    def _take_pending(self, decision_id: str) -> Transaction | None:
        with self._pending_lock:
            return self._pending.pop(decision_id, None)

    def update_reward(
        self, outcome: TransactionOutcome, tx: Transaction | None = None,
    ) -> float | None:
        """Fold one outcome into the bandit. Returns the reward, or None if skipped."""
        pending = self._take_pending(outcome.decision_id)
        if tx is None:
            if pending is None:
                logger.warning(f"Outcome for unknown decision {outcome.decision_id}, ignoring")
                return None
            tx = pending
        reward = compute_reward(outcome, self._reward_settings)
        if self._engine is None:
            logger.debug(f"No bandit configured; reward {reward:.4f} not recorded")
            return reward
        self._engine.update(segment_key(tx), outcome.psp_name, reward, context_features(tx))
        logger.info(
            f"Outcome {outcome.decision_id}: {outcome.psp_name} "
            f"{'authorized' if outcome.authorized else 'declined'}, reward={reward:.4f}"
        )
        return reward

    async def record_outcome(
        self, outcome: TransactionOutcome, tx: Transaction | None = None,
    ) -> float | None:
        """:meth:`update_reward`, then store a lesson if memory is configured."""
        if tx is None:
            with self._pending_lock:
                tx = self._pending.get(outcome.decision_id)
        reward = self.update_reward(outcome, tx)
        if reward is not None and self._lessons is not None and tx is not None:
            await self._lessons.record(tx, outcome)
        return reward

    # --- Runtime tuning ---

    def set_weights(self, weights: ScoringWeights) -> None:
        """Hot-swap the deterministic scoring weights."""
        self._fallback.weights = weights
        logger.info(f"Scoring weights updated: {weights.model_dump()}")

    def set_scorers(self, scorers: Sequence[CandidateScorer]) -> None:
        self._scorers = list(scorers)
        logger.info(f"Scorer chain updated: {' -> '.join(self.scorer_names)}")
