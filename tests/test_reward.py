import random

import pytest

from psp_router.models import TransactionOutcome
from psp_router.reward import RewardSettings, compute_reward


def outcome(**overrides) -> TransactionOutcome:
    fields = dict(
        decision_id="d-1",
        psp_name="Adyen",
        authorized=True,
        transaction_amount=120.00,
        fee_amount=2.70,
        processing_time_ms=450,
        risk_score=20,
    )
    fields.update(overrides)
    return TransactionOutcome(**fields)


def test_authorized_fast_low_risk_clamps_to_one():
    # 1.0 - 0.0225 + 0.1 = 1.0775
    assert compute_reward(outcome()) == 1.0


def test_slow_authorized():
    assert compute_reward(outcome(processing_time_ms=1500)) == pytest.approx(1.0 - 0.0225)


def test_declined_high_risk():
    r = compute_reward(outcome(authorized=False, processing_time_ms=1500, risk_score=80))
    assert r == pytest.approx(-0.0225 - 0.2)


def test_thresholds_are_strict():
    assert compute_reward(outcome(authorized=False, fee_amount=0, processing_time_ms=1000)) == 0.0
    assert compute_reward(outcome(authorized=False, fee_amount=0, processing_time_ms=1500, risk_score=50)) == 0.0


def test_zero_amount_does_not_divide_by_zero():
    assert compute_reward(outcome(transaction_amount=0, fee_amount=1.0)) == -1.0
    assert compute_reward(outcome(transaction_amount=0, fee_amount=0.0)) == 1.0


def test_custom_settings():
    settings = RewardSettings(speed_bonus=0.0, risk_penalty=0.5, risk_threshold=10)
    assert compute_reward(outcome(fee_amount=0), settings) == pytest.approx(0.5)


def test_always_bounded():
    rng = random.Random(3)
    for _ in range(1000):
        r = compute_reward(outcome(
            authorized=rng.random() < 0.5,
            transaction_amount=rng.choice([0, 0.01, 1, 120, 1e9, -5]),
            fee_amount=rng.choice([0, 0.3, 50, 1e12]),
            processing_time_ms=rng.randint(0, 5000),
            risk_score=rng.randint(0, 100),
        ))
        assert -1.0 <= r <= 1.0


def test_nan_clamps_low():
    assert compute_reward(outcome(fee_amount=float("nan"))) == -1.0
