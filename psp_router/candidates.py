"""Build per-call candidate snapshots from capabilities and live lookups."""

import asyncio
from collections.abc import Mapping, Sequence

from loguru import logger

from psp_router.models import (
    CandidateSnapshot,
    FeeQuoteProvider,
    Health,
    HealthProvider,
    PaymentMethod,
    Transaction,
)

DEFAULT_CAPABILITIES: dict[PaymentMethod, frozenset[str]] = {
    PaymentMethod.CARD: frozenset({"Adyen", "Stripe"}),
    PaymentMethod.PAYPAL: frozenset({"PayPal"}),
    PaymentMethod.KLARNA_PAY_LATER: frozenset({"Klarna"}),
}

DEFAULT_3DS = frozenset({"Adyen", "Stripe"})
DEFAULT_TOKENIZATION = frozenset({"Adyen", "Stripe"})


class CapabilityMatrix:
    """Which PSP can process which payment method."""

    def __init__(
        self,
        capabilities: Mapping[PaymentMethod, Sequence[str]] | None = None,
        supports_3ds: Sequence[str] | None = None,
        tokenization: Sequence[str] | None = None,
    ):
        caps = capabilities if capabilities is not None else DEFAULT_CAPABILITIES
        self._caps = {PaymentMethod(m): frozenset(names) for m, names in caps.items()}
        self._3ds = frozenset(supports_3ds) if supports_3ds is not None else DEFAULT_3DS
        self._tokens = frozenset(tokenization) if tokenization is not None else DEFAULT_TOKENIZATION

    def supports(self, psp: str, tx: Transaction) -> bool:
        return psp in self._caps.get(tx.method, frozenset())

    def supports_3ds(self, psp: str) -> bool:
        return psp in self._3ds

    def tokenization(self, psp: str) -> bool:
        return psp in self._tokens


async def _snapshot(
    psp: str,
    tx: Transaction,
    matrix: CapabilityMatrix,
    health: HealthProvider,
    fees: FeeQuoteProvider,
    auth_rates: Mapping[str, float],
) -> CandidateSnapshot | None:
    try:
        (state, _latency), (bps, fixed) = await asyncio.gather(
            health.get(psp), fees.get(psp, tx),
        )
        state = Health(state)
    except Exception as e:
        logger.warning(f"Candidate {psp}: health/fee lookup failed, skipping: {e}")
        return None
    return CandidateSnapshot(
        name=psp,
        supports=True,
        health=state,
        auth_rate=float(auth_rates.get(psp, 0.0)),
        fee_bps=int(bps),
        fixed_fee=float(fixed),
        supports_3ds=matrix.supports_3ds(psp),
        tokenization=matrix.tokenization(psp),
    )


async def build_candidates(
    tx: Transaction,
    psp_names: Sequence[str],
    health: HealthProvider,
    fees: FeeQuoteProvider,
    auth_rates: Mapping[str, float] | None = None,
    matrix: CapabilityMatrix | None = None,
) -> list[CandidateSnapshot]:
    """Snapshots for every PSP that supports the transaction's method.

    Lookups run concurrently; output keeps the order of ``psp_names``.  A PSP
    whose lookups fail is left out rather than guessed.
    """
    matrix = matrix or CapabilityMatrix()
    rates = auth_rates or {}
    supported = [p for p in psp_names if matrix.supports(p, tx)]
    snapshots = await asyncio.gather(
        *(_snapshot(p, tx, matrix, health, fees, rates) for p in supported)
    )
    return [s for s in snapshots if s is not None]
