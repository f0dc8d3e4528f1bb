"""Multi-armed bandit learning over PSP arms.

Statistics are partitioned by segment key (see :func:`psp_router.models.segment_key`)
so learning stays local to comparable transactions.  Three selection policies
share one store:

* :class:`EpsilonGreedyPolicy`: explore uniformly with probability epsilon,
  otherwise exploit the best mean reward.
* :class:`ThompsonSamplingPolicy`: draw from each arm's Beta posterior.
* :class:`ContextualEpsilonGreedyPolicy`: epsilon-greedy plus a bonus for arms
  whose past contexts resemble the current one.

Concurrency: values in the store are immutable :class:`ArmStatistic` objects.
Writers serialize per key and swap in a new value; readers take no lock, so a
read sees either the old or the new (sum, count) pair, never a mix.
"""

import math
import random
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

from loguru import logger

from psp_router.exceptions import StatisticsCorruption
from psp_router.models import ArmStatistic

CONTEXT_BONUS_WEIGHT = 0.1


class StatisticsStore:
    """Owned table of (segment, arm) -> ArmStatistic with per-key write locks."""

    def __init__(self, initial: Mapping[str, Mapping[str, ArmStatistic]] | None = None):
        self._stats: dict[tuple[str, str], ArmStatistic] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()
        if initial:
            for seg, arms in initial.items():
                for arm, stat in arms.items():
                    self._stats[(seg, arm)] = stat

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def get(self, segment_key: str, arm: str) -> ArmStatistic:
        """Current statistic for a key; unseen keys read as a fresh zero state.

        A corrupt entry is reset rather than returned.
        """
        stat = self._stats.get((segment_key, arm))
        if stat is None:
            return ArmStatistic.fresh()
        problems = stat.problems()
        if problems:
            return self._reset(segment_key, arm, stat, "; ".join(problems))
        return stat

    def apply(self, segment_key: str, arm: str, fn) -> ArmStatistic:
        """Atomically replace the statistic for a key with ``fn(current)``."""
        key = (segment_key, arm)
        with self._lock_for(key):
            current = self._stats.get(key) or ArmStatistic.fresh()
            problems = current.problems()
            if problems:
                err = StatisticsCorruption(segment_key, arm, "; ".join(problems))
                logger.warning(f"Bandit: resetting corrupt statistic {err}")
                current = ArmStatistic.fresh()
            updated = fn(current)
            problems = updated.problems()
            if problems:
                raise StatisticsCorruption(segment_key, arm, "; ".join(problems))
            self._stats[key] = updated
            return updated

    def put(self, segment_key: str, arm: str, stat: ArmStatistic) -> None:
        key = (segment_key, arm)
        with self._lock_for(key):
            self._stats[key] = stat

    def _reset(self, segment_key: str, arm: str, seen: ArmStatistic, detail: str) -> ArmStatistic:
        err = StatisticsCorruption(segment_key, arm, detail)
        logger.warning(f"Bandit: resetting corrupt statistic {err}")
        key = (segment_key, arm)
        fresh = ArmStatistic.fresh()
        with self._lock_for(key):
            # Only reset if nobody replaced the bad value meanwhile.
            if self._stats.get(key) is seen:
                self._stats[key] = fresh
                return fresh
            return self._stats.get(key) or fresh

    def export(self) -> dict[str, dict[str, dict[str, Any]]]:
        """JSON-safe copy of the whole table, grouped by segment."""
        out: dict[str, dict[str, dict[str, Any]]] = {}
        for (seg, arm), stat in sorted(list(self._stats.items())):
            out.setdefault(seg, {})[arm] = stat.to_dict()
        return out

    def load(self, data: Mapping[str, Mapping[str, Mapping[str, Any]]]) -> int:
        """Replace entries from an exported table. Returns entries loaded."""
        loaded = 0
        for seg, arms in data.items():
            if not isinstance(arms, Mapping):
                logger.warning(f"Bandit: skipping malformed snapshot segment {seg}")
                continue
            for arm, raw in arms.items():
                try:
                    stat = ArmStatistic.from_dict(dict(raw))
                except (AttributeError, TypeError, ValueError) as e:
                    logger.warning(f"Bandit: skipping unreadable snapshot entry {seg}/{arm}: {e}")
                    continue
                if stat.problems():
                    logger.warning(f"Bandit: skipping corrupt snapshot entry {seg}/{arm}")
                    continue
                self.put(seg, arm, stat)
                loaded += 1
        return loaded

    def __len__(self) -> int:
        return len(self._stats)


# --- Selection policies ---


class BanditPolicy(ABC):
    """Chooses one arm from the admissible arms given current statistics."""

    name = "policy"

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    @abstractmethod
    def choose(
        self,
        stats: Sequence[ArmStatistic],
        arms: Sequence[str],
        context: Mapping[str, float] | None = None,
    ) -> int:
        """Return the index of the chosen arm."""
        ...

    def updated(
        self, stat: ArmStatistic, reward: float, context: Mapping[str, float] | None = None,
    ) -> ArmStatistic:
        """Return ``stat`` with one observed reward folded in."""
        count = stat.count + 1
        alpha, beta = stat.alpha, stat.beta
        if reward > 0:
            alpha += 1
        else:
            beta += 1
        return ArmStatistic(
            reward_sum=stat.reward_sum + reward,
            count=count,
            alpha=alpha,
            beta=beta,
            centroids=dict(stat.centroids),
        )


def _argmax_first(scores: Sequence[float]) -> int:
    best = 0
    for i in range(1, len(scores)):
        if scores[i] > scores[best]:
            best = i
    return best


class EpsilonGreedyPolicy(BanditPolicy):
    name = "epsilon_greedy"

    def __init__(self, epsilon: float = 0.1, rng: random.Random | None = None):
        super().__init__(rng)
        self.epsilon = min(1.0, max(0.0, epsilon))

    def explore(self) -> bool:
        return self.epsilon > 0 and self._rng.random() < self.epsilon

    def choose(self, stats, arms, context=None) -> int:
        if self.explore():
            return self._rng.randrange(len(arms))
        return _argmax_first([self.exploit_score(s, context) for s in stats])

    def exploit_score(self, stat: ArmStatistic, context: Mapping[str, float] | None) -> float:
        return stat.mean


class ThompsonSamplingPolicy(BanditPolicy):
    name = "thompson"

    def choose(self, stats, arms, context=None) -> int:
        samples = [self._rng.betavariate(s.alpha, s.beta) for s in stats]
        return _argmax_first(samples)


class ContextualEpsilonGreedyPolicy(EpsilonGreedyPolicy):
    """Epsilon-greedy whose exploitation score rewards context similarity.

    Each arm keeps a running mean ("centroid") of the numeric features seen
    when it was updated.  The bonus for a context is
    ``0.1 * sum(1 - |c - m| / max(c, m, 1))`` over features present in both.
    """

    name = "contextual_epsilon_greedy"

    def __init__(
        self,
        epsilon: float = 0.1,
        tracked_features: Sequence[str] | None = None,
        rng: random.Random | None = None,
    ):
        super().__init__(epsilon, rng)
        self.tracked_features = tuple(tracked_features) if tracked_features else None

    def _tracked(self, context: Mapping[str, float] | None) -> dict[str, float]:
        if not context:
            return {}
        keys = self.tracked_features if self.tracked_features is not None else tuple(context)
        return {k: float(context[k]) for k in keys if k in context}

    def exploit_score(self, stat: ArmStatistic, context: Mapping[str, float] | None) -> float:
        if stat.count == 0:
            return 0.0
        return stat.mean + self.context_bonus(stat, context)

    def context_bonus(self, stat: ArmStatistic, context: Mapping[str, float] | None) -> float:
        total = 0.0
        for feature, value in self._tracked(context).items():
            if feature not in stat.centroids:
                continue
            centroid = stat.centroids[feature]
            scale = max(value, centroid, 1.0)
            total += 1.0 - abs(value - centroid) / scale
        return CONTEXT_BONUS_WEIGHT * total

    def updated(self, stat, reward, context=None) -> ArmStatistic:
        base = super().updated(stat, reward, context)
        centroids = dict(stat.centroids)
        for feature, value in self._tracked(context).items():
            # Running mean over this arm's pulls; first sighting seeds it.
            old = centroids.get(feature, value)
            centroids[feature] = old + (value - old) / base.count
        return ArmStatistic(
            reward_sum=base.reward_sum,
            count=base.count,
            alpha=base.alpha,
            beta=base.beta,
            centroids=centroids,
        )


POLICIES: dict[str, type[BanditPolicy]] = {
    EpsilonGreedyPolicy.name: EpsilonGreedyPolicy,
    ThompsonSamplingPolicy.name: ThompsonSamplingPolicy,
    ContextualEpsilonGreedyPolicy.name: ContextualEpsilonGreedyPolicy,
}


def make_policy(
    name: str,
    epsilon: float = 0.1,
    tracked_features: Sequence[str] | None = None,
    seed: int | None = None,
) -> BanditPolicy:
    rng = random.Random(seed)
    if name == EpsilonGreedyPolicy.name:
        return EpsilonGreedyPolicy(epsilon, rng=rng)
    if name == ThompsonSamplingPolicy.name:
        return ThompsonSamplingPolicy(rng=rng)
    if name == ContextualEpsilonGreedyPolicy.name:
        return ContextualEpsilonGreedyPolicy(epsilon, tracked_features, rng=rng)
    raise ValueError(f"Unknown bandit policy '{name}'. Choose one of: {', '.join(POLICIES)}")


class BanditEngine:
    """Selection and update over an injected :class:`StatisticsStore`."""

    def __init__(self, store: StatisticsStore | None = None, policy: BanditPolicy | None = None):
        self.store = store if store is not None else StatisticsStore()
        self.policy = policy or EpsilonGreedyPolicy()

    @property
    def policy_name(self) -> str:
        return self.policy.name

    def select(
        self,
        segment_key: str,
        arms: Sequence[str],
        context: Mapping[str, float] | None = None,
    ) -> str:
        if not arms:
            raise ValueError("No arms to select from")
        stats = [self.store.get(segment_key, arm) for arm in arms]
        idx = self.policy.choose(stats, arms, context)
        chosen = arms[idx]
        logger.debug(
            f"Bandit[{self.policy.name}] {segment_key}: selected {chosen} "
            f"from {len(arms)} arms"
        )
        return chosen

    def update(
        self,
        segment_key: str,
        arm: str,
        reward: float,
        context: Mapping[str, float] | None = None,
    ) -> ArmStatistic:
        """Fold one reward into (segment, arm).

        Non-finite input is rejected without touching the stored statistic.
        Never raises on corrupt state.
        """
        bad = [] if math.isfinite(reward) else [f"reward={reward}"]
        bad += [f"{k}={v}" for k, v in (context or {}).items() if not math.isfinite(v)]
        if bad:
            logger.warning(
                f"Bandit: ignoring update for {segment_key}/{arm}, non-finite {', '.join(bad)}"
            )
            return self.store.get(segment_key, arm)
        try:
            stat = self.store.apply(
                segment_key, arm, lambda s: self.policy.updated(s, reward, context),
            )
        except StatisticsCorruption as e:
            logger.warning(f"Bandit: discarding update that produced an invalid statistic: {e}")
            return self.store.get(segment_key, arm)
        logger.debug(
            f"Bandit[{self.policy.name}] {segment_key}/{arm}: reward={reward:.4f} "
            f"count={stat.count} mean={stat.mean:.4f}"
        )
        return stat

    def stats_for(self, segment_key: str, arms: Sequence[str]) -> dict[str, float]:
        """Mean reward per arm, in the shape the reasoner payload expects."""
        return {arm: round(self.store.get(segment_key, arm).mean, 6) for arm in arms}

    def snapshot(self) -> dict[str, Any]:
        return {"policy": self.policy.name, "stats": self.store.export()}

    def restore(self, snapshot: Mapping[str, Any]) -> int:
        stats = snapshot.get("stats") or {}
        if not isinstance(stats, Mapping):
            logger.warning(f"Bandit: snapshot stats is {type(stats).__name__}, not a table; ignoring")
            return 0
        loaded = self.store.load(stats)
        logger.info(f"Bandit: restored {loaded} statistics from snapshot")
        return loaded
