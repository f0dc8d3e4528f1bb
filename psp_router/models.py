"""Core data models and collaborator interfaces for psp-router."""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

SCHEMA_VERSION = "1.0"
VETO_CANDIDATE = "NONE"


class PaymentMethod(str, Enum):
    CARD = "card"
    PAYPAL = "paypal"
    KLARNA_PAY_LATER = "klarna_pay_later"
    BANK_TRANSFER = "bank_transfer"


class CardScheme(str, Enum):
    VISA = "visa"
    MASTERCARD = "mastercard"
    AMEX = "amex"
    UNKNOWN = "unknown"


class Health(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


@dataclass(frozen=True)
class Transaction:
    """One incoming payment request."""
    merchant_id: str
    buyer_country: str
    merchant_country: str
    currency: str
    amount: float
    method: PaymentMethod
    scheme: CardScheme = CardScheme.UNKNOWN
    sca_required: bool = False
    risk_score: int = 0
    bin: str | None = None

    @property
    def is_card(self) -> bool:
        return self.method == PaymentMethod.CARD

    def to_dict(self) -> dict[str, Any]:
        return {
            "merchantId": self.merchant_id,
            "buyerCountry": self.buyer_country,
            "merchantCountry": self.merchant_country,
            "currency": self.currency,
            "amount": self.amount,
            "method": self.method.value,
            "scheme": self.scheme.value,
            "scaRequired": self.sca_required,
            "riskScore": self.risk_score,
            "bin": self.bin,
        }


@dataclass(frozen=True)
class CandidateSnapshot:
    """Per-call view of one PSP's capability, health and economics."""
    name: str
    supports: bool
    health: Health
    auth_rate: float
    fee_bps: int
    fixed_fee: float
    supports_3ds: bool
    tokenization: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "supports": self.supports,
            "health": self.health.value,
            "authRate30d": self.auth_rate,
            "feeBps": self.fee_bps,
            "fixedFee": self.fixed_fee,
            "supports3DS": self.supports_3ds,
            "tokenization": self.tokenization,
        }


@dataclass(frozen=True)
class RouteContext:
    tx: Transaction
    candidates: tuple[CandidateSnapshot, ...]
    merchant_prefs: dict[str, str] = field(default_factory=dict)
    segment_stats: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Accept any sequence, but keep a stable ordered tuple.
        object.__setattr__(self, "candidates", tuple(self.candidates))


@dataclass(frozen=True)
class RouteConstraints:
    must_use_3ds: bool = False
    retry_window_ms: int = 0
    max_retries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mustUse3ds": self.must_use_3ds,
            "retryWindowMs": self.retry_window_ms,
            "maxRetries": self.max_retries,
        }


@dataclass(frozen=True)
class RouteDecision:
    """The routing answer handed back to the caller."""
    schema_version: str
    decision_id: str
    candidate: str
    alternates: tuple[str, ...]
    reasoning: str
    guardrail: str
    constraints: RouteConstraints
    features_used: tuple[str, ...] = ()

    @property
    def is_veto(self) -> bool:
        return self.candidate == VETO_CANDIDATE

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "decisionId": self.decision_id,
            "candidate": self.candidate,
            "alternates": list(self.alternates),
            "reasoning": self.reasoning,
            "guardrail": self.guardrail,
            "constraints": self.constraints.to_dict(),
            "featuresUsed": list(self.features_used),
        }


@dataclass(frozen=True)
class TransactionOutcome:
    """What happened after the chosen PSP was called."""
    decision_id: str
    psp_name: str
    authorized: bool
    transaction_amount: float
    fee_amount: float
    processing_time_ms: int
    risk_score: int
    processed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ArmStatistic:
    """Learning state for one (segment, arm) pair.

    Instances are never mutated; the store swaps in a new value on update.
    """
    reward_sum: float = 0.0
    count: int = 0
    alpha: float = 1.0
    beta: float = 1.0
    centroids: dict[str, float] = field(default_factory=dict)

    @classmethod
    def fresh(cls) -> "ArmStatistic":
        return cls()

    @property
    def mean(self) -> float:
        # Unseen arms score 0, not inf.
        return self.reward_sum / self.count if self.count > 0 else 0.0

    def problems(self) -> list[str]:
        """Return the ways this statistic is impossible (empty if valid)."""
        found = []
        if self.count < 0:
            found.append(f"negative count {self.count}")
        if not math.isfinite(self.reward_sum):
            found.append(f"non-finite reward sum {self.reward_sum}")
        if self.count == 0 and self.reward_sum != 0.0:
            found.append("reward sum without pulls")
        if not (math.isfinite(self.alpha) and self.alpha > 0):
            found.append(f"invalid alpha {self.alpha}")
        if not (math.isfinite(self.beta) and self.beta > 0):
            found.append(f"invalid beta {self.beta}")
        if any(not math.isfinite(v) for v in self.centroids.values()):
            found.append("non-finite centroid")
        return found

    def to_dict(self) -> dict[str, Any]:
        return {
            "sum": self.reward_sum,
            "count": self.count,
            "alpha": self.alpha,
            "beta": self.beta,
            "centroids": dict(self.centroids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArmStatistic":
        return cls(
            reward_sum=float(data.get("sum", 0.0)),
            count=int(data.get("count", 0)),
            alpha=float(data.get("alpha", 1.0)),
            beta=float(data.get("beta", 1.0)),
            centroids={str(k): float(v) for k, v in (data.get("centroids") or {}).items()},
        )


@dataclass(frozen=True)
class MemoryHit:
    """A lesson returned by similarity search."""
    key: str
    text: str
    metadata: dict[str, str]
    score: float


def segment_key(tx: Transaction) -> str:
    """Partition key for bandit statistics: merchant country, currency, method, scheme."""
    return "|".join((
        tx.merchant_country.upper(),
        tx.currency.upper(),
        tx.method.value,
        tx.scheme.value,
    ))


def context_features(tx: Transaction) -> dict[str, float]:
    """Numeric features tracked by the contextual bandit."""
    return {
        "amount": float(tx.amount),
        "risk_score": float(tx.risk_score),
        "sca_required": 1.0 if tx.sca_required else 0.0,
        "is_card": 1.0 if tx.is_card else 0.0,
    }


# --- Collaborator interfaces ---


class Reasoner(ABC):
    """External service that proposes a route as a JSON document."""

    @abstractmethod
    async def complete_json(
        self,
        system_prompt: str,
        instruction: str,
        context_json: str,
        temperature: float = 0.1,
    ) -> str:
        """Return the raw JSON text of a routing decision."""
        ...

    @property
    def name(self) -> str:
        return self.__class__.__name__


class HealthProvider(ABC):
    @abstractmethod
    async def get(self, psp: str) -> tuple[Health, int]:
        """Return (health, latency_ms) for a PSP."""
        ...


class FeeQuoteProvider(ABC):
    @abstractmethod
    async def get(self, psp: str, tx: Transaction) -> tuple[int, float]:
        """Return (fee_bps, fixed_fee) for a PSP and transaction."""
        ...


class PerformancePredictor(ABC):
    """Trained model that estimates a PSP's success probability."""

    @property
    def is_ready(self) -> bool:
        return True

    @abstractmethod
    async def predict_success(self, psp: str, tx: Transaction) -> float:
        ...


class Embedder(ABC):
    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        ...


class VectorMemory(ABC):
    """Semantic store of free-text lessons."""

    @abstractmethod
    async def add(
        self, key: str, text: str, metadata: dict[str, str], embedding: list[float],
    ) -> None:
        ...

    @abstractmethod
    async def search(self, embedding: list[float], k: int) -> list[MemoryHit]:
        ...
