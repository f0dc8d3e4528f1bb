"""Scorer tiers tried in order, each behind its own circuit breaker."""

import asyncio
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from psp_router.exceptions import ScorerUnavailable
from psp_router.models import RouteDecision
from psp_router.scorers import CandidateScorer, ScoringRequest

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


@dataclass
class ScorerTier:
    """One entry of the chain; the terminal tier is never skipped."""

    name: str
    scorer: CandidateScorer
    timeout_s: float | None = None
    is_terminal: bool = False


@dataclass
class _BreakerState:
    state: str = CLOSED
    opened_at: float = 0.0
    probing: bool = False
    probe_started: float = 0.0
    failures: deque = field(default_factory=lambda: deque(maxlen=50))


class CircuitBreaker:
    """Skips a scorer after ``failure_threshold`` failures within ``window_s``.

    After ``cooldown_s`` the breaker goes half-open and lets a single probe
    through; the probe's result closes or re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        window_s: float = 60.0,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.window_s = window_s
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._scorers: dict[str, _BreakerState] = {}

    def _state_for(self, name: str) -> _BreakerState:
        return self._scorers.setdefault(name, _BreakerState())

    def state(self, name: str) -> str:
        return self._state_for(name).state

    def is_open(self, name: str) -> bool:
        st = self._state_for(name)
        if st.state == OPEN:
            if self._clock() - st.opened_at < self.cooldown_s:
                return True
            st.state = HALF_OPEN
            st.probing = False
            logger.info(f"Breaker[{name}]: cooldown over, allowing a probe")
        if st.state == HALF_OPEN:
            now = self._clock()
            # A probe that never reported back (e.g. cancelled) expires after one cooldown.
            if st.probing and now - st.probe_started < self.cooldown_s:
                return True
            st.probing = True
            st.probe_started = now
        return False

    def record_success(self, name: str) -> None:
        st = self._state_for(name)
        if st.state != CLOSED:
            logger.info(f"Breaker[{name}]: probe succeeded, closing")
        st.state = CLOSED
        st.probing = False
        st.failures.clear()

    def _trip(self, st: _BreakerState, now: float) -> None:
        st.state = OPEN
        st.opened_at = now
        st.probing = False

    def record_failure(self, name: str) -> None:
        st = self._state_for(name)
        now = self._clock()
        while st.failures and now - st.failures[0] >= self.window_s:
            st.failures.popleft()
        st.failures.append(now)

        if st.state == HALF_OPEN:
            self._trip(st, now)
            logger.warning(f"Breaker[{name}]: probe failed, open for another {self.cooldown_s}s")
        elif st.state == CLOSED and len(st.failures) >= self.failure_threshold:
            self._trip(st, now)
            logger.warning(
                f"Breaker[{name}]: open after {len(st.failures)} failures "
                f"within {self.window_s}s"
            )


class FailoverChain:
    """Walks the scorer tiers until one returns an admissible decision."""

    def __init__(self, breaker: CircuitBreaker | None = None) -> None:
        self._breaker = breaker or CircuitBreaker()

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def _attempt(self, tier: ScorerTier, request: ScoringRequest) -> RouteDecision:
        pending = tier.scorer.propose(request)
        if tier.timeout_s:
            try:
                decision = await asyncio.wait_for(pending, timeout=tier.timeout_s)
            except asyncio.TimeoutError:
                raise ScorerUnavailable(f"{tier.name} timed out after {tier.timeout_s}s") from None
        else:
            decision = await pending
        if decision.candidate not in request.names:
            raise ScorerUnavailable(
                f"{tier.name} picked {decision.candidate!r}, which is not admissible"
            )
        return decision

    async def try_scorers(
        self, chain: list[ScorerTier], request: ScoringRequest,
    ) -> tuple[RouteDecision, ScorerTier, int]:
        """Return ``(decision, tier, latency_ms)`` from the first tier that succeeds.

        Raises:
            RuntimeError: every tier failed, the terminal one included.
        """
        errors: list[str] = []
        for tier in chain:
            guarded = not tier.is_terminal
            if guarded and self._breaker.is_open(tier.name):
                logger.info(f"Skipping {tier.name}: breaker open")
                errors.append(f"{tier.name}: breaker open")
                continue

            started = time.monotonic()
            try:
                decision = await self._attempt(tier, request)
            except Exception as e:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                errors.append(f"{tier.name}: {e}")
                if guarded:
                    self._breaker.record_failure(tier.name)
                logger.warning(f"Scorer {tier.name} gave no usable decision after {elapsed_ms}ms: {e}")
                continue

            if guarded:
                self._breaker.record_success(tier.name)
            return decision, tier, int((time.monotonic() - started) * 1000)

        raise RuntimeError(f"All scorers failed ({'; '.join(errors)})")
