"""Shared fixtures and collaborator fakes."""

import asyncio
import json

import pytest

from psp_router.models import (
    CandidateSnapshot,
    CardScheme,
    Embedder,
    FeeQuoteProvider,
    Health,
    HealthProvider,
    PaymentMethod,
    PerformancePredictor,
    Reasoner,
    RouteContext,
    Transaction,
)


def make_tx(**overrides) -> Transaction:
    fields = dict(
        merchant_id="M123",
        buyer_country="US",
        merchant_country="IL",
        currency="USD",
        amount=120.00,
        method=PaymentMethod.CARD,
        scheme=CardScheme.VISA,
        sca_required=False,
        risk_score=18,
        bin="411111",
    )
    fields.update(overrides)
    return Transaction(**fields)


def make_candidate(name: str, **overrides) -> CandidateSnapshot:
    fields = dict(
        name=name,
        supports=True,
        health=Health.GREEN,
        auth_rate=0.85,
        fee_bps=200,
        fixed_fee=0.30,
        supports_3ds=True,
        tokenization=True,
    )
    fields.update(overrides)
    return CandidateSnapshot(**fields)


ADYEN = make_candidate("Adyen", auth_rate=0.89, fee_bps=200, fixed_fee=0.30)
STRIPE = make_candidate("Stripe", auth_rate=0.87, fee_bps=180, fixed_fee=0.25)


def reasoner_json(candidate: str = "Stripe", **overrides) -> str:
    payload = {
        "schemaVersion": "1.0",
        "decisionId": "llm-1",
        "candidate": candidate,
        "alternates": ["Adyen"],
        "reasoning": "Lower fees with comparable auth rate",
        "guardrail": "none",
        "constraints": {"mustUse3ds": False, "retryWindowMs": 8000, "maxRetries": 1},
        "featuresUsed": ["auth=0.87", "fee_bps=180"],
    }
    payload.update(overrides)
    return json.dumps(payload)


class FakeReasoner(Reasoner):
    """Returns a canned answer, raises, or stalls."""

    def __init__(self, response: str = "", error: Exception | None = None, delay_s: float = 0.0):
        self.response = response
        self.error = error
        self.delay_s = delay_s
        self.calls: list[dict] = []

    async def complete_json(self, system_prompt, instruction, context_json, temperature=0.1):
        self.calls.append(json.loads(context_json))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.response


class FakePredictor(PerformancePredictor):
    def __init__(self, rates: dict[str, float], ready: bool = True):
        self.rates = rates
        self.ready = ready

    @property
    def is_ready(self) -> bool:
        return self.ready

    async def predict_success(self, psp, tx):
        return self.rates[psp]


class StaticHealth(HealthProvider):
    def __init__(self, states: dict[str, str] | None = None, failing: set[str] | None = None):
        self.states = states or {}
        self.failing = failing or set()

    async def get(self, psp):
        if psp in self.failing:
            raise ConnectionError(f"{psp} health endpoint down")
        return Health(self.states.get(psp, "green")), 100


class StaticFees(FeeQuoteProvider):
    def __init__(self, quotes: dict[str, tuple[int, float]] | None = None):
        self.quotes = quotes or {}

    async def get(self, psp, tx):
        return self.quotes.get(psp, (200, 0.30))


class KeywordEmbedder(Embedder):
    """Bag-of-keywords embedding; good enough to rank lessons in tests."""

    VOCAB = ("usd", "eur", "gbp", "card", "paypal", "visa", "mastercard", "adyen", "stripe")

    async def embed(self, text):
        lowered = text.lower()
        return [float(lowered.count(word)) for word in self.VOCAB]


@pytest.fixture
def tx() -> Transaction:
    return make_tx()


@pytest.fixture
def ctx(tx) -> RouteContext:
    return RouteContext(
        tx=tx,
        candidates=(ADYEN, STRIPE),
        merchant_prefs={"prefer_low_fees": "true"},
        segment_stats={"Adyen_USD_Visa_auth": 0.89, "Stripe_USD_Visa_auth": 0.87},
    )
