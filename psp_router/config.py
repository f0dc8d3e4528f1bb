"""Settings and wiring for psp-router.

Values come from keyword arguments or ``PSP_ROUTER_*`` environment variables;
nested sections use ``__`` as delimiter, e.g.
``PSP_ROUTER_BANDIT__EPSILON=0.15`` or ``PSP_ROUTER_WEIGHTS__RISK_PENALTY=0.5``.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from psp_router.bandit import BanditEngine, StatisticsStore, make_policy
from psp_router.failover import CircuitBreaker
from psp_router.memory import LessonMemory
from psp_router.models import Health, PerformancePredictor, Reasoner
from psp_router.persistence import SnapshotExporter, SqliteSnapshotStore
from psp_router.reward import RewardSettings
from psp_router.router import PspRouter
from psp_router.scorers import (
    BanditScorer,
    CandidateScorer,
    DeterministicScorer,
    PredictorScorer,
    ReasonerScorer,
)
from psp_router.scoring import ConstraintDefaults, ScoringWeights

ScorerName = Literal["reasoner", "predictor", "bandit"]


class BanditSettings(BaseModel):
    policy: Literal["epsilon_greedy", "thompson", "contextual_epsilon_greedy"] = "epsilon_greedy"
    epsilon: float = Field(default=0.1, ge=0.0, le=1.0)
    tracked_features: list[str] = ["amount", "risk_score", "sca_required", "is_card"]
    seed: int | None = None


class BreakerSettings(BaseModel):
    failure_threshold: int = Field(default=3, ge=1)
    window_s: float = Field(default=60.0, gt=0)
    cooldown_s: float = Field(default=30.0, ge=0)


class RewardConfig(BaseModel):
    speed_threshold_ms: int = 1000
    speed_bonus: float = 0.1
    risk_threshold: int = 50
    risk_penalty: float = 0.2

    def to_settings(self) -> RewardSettings:
        return RewardSettings(
            speed_threshold_ms=self.speed_threshold_ms,
            speed_bonus=self.speed_bonus,
            risk_threshold=self.risk_threshold,
            risk_penalty=self.risk_penalty,
        )


class RouterSettings(BaseSettings):
    """Top-level routing configuration."""

    scorers: list[ScorerName] = ["reasoner"]
    reasoner_timeout_s: float = Field(default=5.0, gt=0)
    predictor_timeout_s: float = Field(default=1.0, gt=0)
    reasoner_temperature: float = 0.1
    lessons_k: int = Field(default=3, ge=0)
    allowed_health: list[Health] = [Health.GREEN, Health.YELLOW]
    max_pending_decisions: int = Field(default=10_000, ge=1)

    weights: ScoringWeights = ScoringWeights()
    constraints: ConstraintDefaults = ConstraintDefaults()
    bandit: BanditSettings = BanditSettings()
    breaker: BreakerSettings = BreakerSettings()
    reward: RewardConfig = RewardConfig()

    snapshot_db: str | None = None
    snapshot_interval_s: float = Field(default=300.0, gt=0)
    snapshot_keep: int = Field(default=20, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="PSP_ROUTER_", env_nested_delimiter="__", extra="forbid",
    )

    @field_validator("scorers")
    @classmethod
    def _unique_scorers(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError(f"scorers must not repeat: {value}")
        return value

    @field_validator("allowed_health")
    @classmethod
    def _no_red(cls, value: list[Health]) -> list[Health]:
        return [h for h in value if h != Health.RED]


def build_engine(settings: RouterSettings, store: StatisticsStore | None = None) -> BanditEngine:
    b = settings.bandit
    policy = make_policy(b.policy, b.epsilon, b.tracked_features, b.seed)
    return BanditEngine(store or StatisticsStore(), policy)


def build_exporter(settings: RouterSettings, engine: BanditEngine) -> SnapshotExporter | None:
    """Snapshot exporter for ``engine``, or None when ``snapshot_db`` is unset."""
    if not settings.snapshot_db:
        return None
    store = SqliteSnapshotStore(settings.snapshot_db, keep=settings.snapshot_keep)
    return SnapshotExporter(engine, store, interval_s=settings.snapshot_interval_s)


def build_router(
    settings: RouterSettings | None = None,
    *,
    reasoner: Reasoner | None = None,
    predictor: PerformancePredictor | None = None,
    lessons: LessonMemory | None = None,
    engine: BanditEngine | None = None,
) -> PspRouter:
    """Wire a :class:`PspRouter` from settings.

    Scorers named in ``settings.scorers`` whose collaborator is missing are
    left out of the chain (with the deterministic scorer still last).
    """
    settings = settings or RouterSettings()
    engine = engine or build_engine(settings)
    defaults = settings.constraints

    chain: list[CandidateScorer] = []
    for name in settings.scorers:
        if name == "reasoner" and reasoner is not None:
            chain.append(ReasonerScorer(
                reasoner, lessons=lessons, lessons_k=settings.lessons_k,
                temperature=settings.reasoner_temperature, bandit=engine,
            ))
        elif name == "predictor" and predictor is not None:
            chain.append(PredictorScorer(predictor, defaults))
        elif name == "bandit":
            chain.append(BanditScorer(engine, defaults))

    br = settings.breaker
    return PspRouter(
        chain,
        fallback=DeterministicScorer(settings.weights, defaults),
        engine=engine,
        lessons=lessons,
        timeouts={
            ReasonerScorer.name: settings.reasoner_timeout_s,
            PredictorScorer.name: settings.predictor_timeout_s,
        },
        breaker=CircuitBreaker(br.failure_threshold, br.window_s, br.cooldown_s),
        allowed_health=settings.allowed_health,
        reward_settings=settings.reward.to_settings(),
        max_pending=settings.max_pending_decisions,
    )
