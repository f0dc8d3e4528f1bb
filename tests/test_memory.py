import asyncio

import pytest

from conftest import KeywordEmbedder, make_tx

from psp_router.memory import (
    InMemoryVectorMemory,
    LessonMemory,
    cosine_similarity,
    lesson_query,
    lesson_text,
)
from psp_router.models import CardScheme, Embedder, PaymentMethod, TransactionOutcome


def outcome(**overrides) -> TransactionOutcome:
    fields = dict(
        decision_id="d-1", psp_name="Adyen", authorized=True, transaction_amount=120.0,
        fee_amount=2.7, processing_time_ms=450, risk_score=18,
    )
    fields.update(overrides)
    return TransactionOutcome(**fields)


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 2.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([1.0], [1.0, 2.0]) == 0.0


def test_lesson_text():
    tx = make_tx()
    assert lesson_text(tx, outcome()) == "Segment M123|IL|USD|card|visa: Adyen succeeded in 450ms"
    failed = lesson_text(tx, outcome(authorized=False, error_code="do_not_honor"))
    assert failed.endswith("Adyen failed in 450ms (do_not_honor)")
    assert "USD" in lesson_query(tx)


def test_vector_memory_upserts_and_ranks():
    store = InMemoryVectorMemory()

    async def scenario():
        await store.add("a", "first", {}, [1.0, 0.0])
        await store.add("b", "second", {}, [0.0, 1.0])
        await store.add("a", "replaced", {"v": "2"}, [1.0, 0.1])
        return await store.search([1.0, 0.0], 5)

    hits = asyncio.run(scenario())
    assert len(store) == 2
    assert [h.key for h in hits] == ["a", "b"]
    assert hits[0].text == "replaced"


def test_record_and_retrieve():
    memory = LessonMemory(KeywordEmbedder(), InMemoryVectorMemory())
    tx = make_tx()

    async def scenario():
        key = await memory.record(tx, outcome())
        lessons = await memory.relevant_lessons(tx, 3)
        return key, lessons

    key, lessons = asyncio.run(scenario())
    assert key.startswith("lesson_")
    assert lessons == ["Segment M123|IL|USD|card|visa: Adyen succeeded in 450ms"]


def test_zero_k_returns_nothing():
    memory = LessonMemory(KeywordEmbedder(), InMemoryVectorMemory())
    assert asyncio.run(memory.relevant_lessons(make_tx(), 0)) == []


def test_memory_failures_do_not_propagate():
    class BrokenEmbedder(Embedder):
        async def embed(self, text):
            raise ConnectionError("embedding service down")

    memory = LessonMemory(BrokenEmbedder(), InMemoryVectorMemory())
    assert asyncio.run(memory.relevant_lessons(make_tx(), 3)) == []
    assert asyncio.run(memory.record(make_tx(), outcome())) is None


def test_min_score_filters_weak_matches():
    memory = LessonMemory(KeywordEmbedder(), InMemoryVectorMemory(), min_score=0.99)
    paypal_tx = make_tx(method=PaymentMethod.PAYPAL, scheme=CardScheme.UNKNOWN, currency="GBP")

    async def scenario():
        await memory.record(paypal_tx, outcome(psp_name="PayPal"))
        return await memory.relevant_lessons(make_tx(), 3)

    assert asyncio.run(scenario()) == []
