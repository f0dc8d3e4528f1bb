"""Lesson memory: short notes about past routing outcomes, found by similarity."""

import asyncio
import math
import uuid

from loguru import logger

from psp_router.models import (
    Embedder,
    MemoryHit,
    Transaction,
    TransactionOutcome,
    VectorMemory,
)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


class InMemoryVectorMemory(VectorMemory):
    """Process-local vector memory, for tests and single-node runs."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[str, dict[str, str], list[float]]] = {}
        self._lock = asyncio.Lock()

    async def add(self, key, text, metadata, embedding) -> None:
        async with self._lock:
            # Upsert, like ON CONFLICT (key) DO UPDATE.
            self._items[key] = (text, dict(metadata), list(embedding))

    async def search(self, embedding, k) -> list[MemoryHit]:
        async with self._lock:
            items = list(self._items.items())
        hits = [
            MemoryHit(key, text, meta, cosine_similarity(embedding, emb))
            for key, (text, meta, emb) in items
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:max(k, 0)]

    def __len__(self) -> int:
        return len(self._items)


def lesson_query(tx: Transaction) -> str:
    return (
        f"PSP routing for {tx.currency} {tx.method.value} {tx.scheme.value} "
        f"merchant {tx.merchant_country}"
    )


def lesson_text(tx: Transaction, outcome: TransactionOutcome) -> str:
    verdict = "succeeded" if outcome.authorized else "failed"
    text = (
        f"Segment {tx.merchant_id}|{tx.merchant_country}|{tx.currency}|{tx.method.value}|"
        f"{tx.scheme.value}: {outcome.psp_name} {verdict} in {outcome.processing_time_ms}ms"
    )
    if outcome.error_code:
        text += f" ({outcome.error_code})"
    return text


class LessonMemory:
    """Embeds lesson text and talks to a :class:`VectorMemory`.

    Memory is advisory: failures are logged and never block routing.
    """

    def __init__(self, embedder: Embedder, store: VectorMemory, min_score: float = 0.0):
        self._embedder = embedder
        self._store = store
        self._min_score = min_score

    async def relevant_lessons(self, tx: Transaction, k: int) -> list[str]:
        if k <= 0:
            return []
        try:
            embedding = await self._embedder.embed(lesson_query(tx))
            hits = await self._store.search(embedding, k)
        except Exception as e:
            logger.warning(f"Lesson retrieval failed: {e}")
            return []
        return [h.text for h in hits if h.score >= self._min_score]

    async def record(self, tx: Transaction, outcome: TransactionOutcome) -> str | None:
        text = lesson_text(tx, outcome)
        key = f"lesson_{uuid.uuid4().hex}"
        try:
            embedding = await self._embedder.embed(text)
            await self._store.add(
                key, text,
                {"psp": outcome.psp_name, "outcome": str(outcome.authorized).lower()},
                embedding,
            )
        except Exception as e:
            logger.warning(f"Could not add lesson to memory: {e}")
            return None
        return key
