import pytest

from conftest import ADYEN, STRIPE, make_candidate, make_tx

from psp_router.models import Health, PaymentMethod
from psp_router.scoring import (
    ConstraintDefaults,
    ScoringWeights,
    score_candidate,
    score_deterministically,
)


def test_worked_example_prefers_adyen():
    tx = make_tx(amount=120.00, sca_required=False)
    w = ScoringWeights()
    assert score_candidate(tx, ADYEN, w) == pytest.approx(0.89 - 0.02 - 0.0025)
    assert score_candidate(tx, STRIPE, w) == pytest.approx(0.87 - 0.018 - 0.25 / 120)

    d = score_deterministically(tx, [ADYEN, STRIPE], w)
    assert d.candidate == "Adyen"
    assert d.alternates == ("Stripe",)
    assert d.guardrail == "none"
    assert "deterministic" in d.reasoning
    assert "auth=0.89" in d.features_used
    assert "fee_bps=200" in d.features_used
    assert "method=deterministic" in d.features_used


def test_constraints_follow_sca():
    d = score_deterministically(make_tx(sca_required=True), [ADYEN])
    assert d.constraints.must_use_3ds
    assert d.constraints.retry_window_ms == 8000
    assert d.constraints.max_retries == 1

    paypal = make_candidate("PayPal", supports_3ds=False)
    d = score_deterministically(make_tx(sca_required=True, method=PaymentMethod.PAYPAL), [paypal])
    assert not d.constraints.must_use_3ds


def test_constraint_defaults_are_configurable():
    d = score_deterministically(make_tx(), [ADYEN], defaults=ConstraintDefaults(retry_window_ms=3000, max_retries=2))
    assert d.constraints.retry_window_ms == 3000
    assert d.constraints.max_retries == 2


def test_ties_go_to_first_in_input_order():
    a = make_candidate("A")
    b = make_candidate("B")
    assert score_deterministically(make_tx(), [a, b]).candidate == "A"
    assert score_deterministically(make_tx(), [b, a]).candidate == "B"


def test_optional_terms():
    tx = make_tx(sca_required=True, risk_score=40, amount=100.0)
    yellow = make_candidate("Y", health=Health.YELLOW, auth_rate=0.9, fee_bps=0, fixed_fee=0)
    green = make_candidate("G", auth_rate=0.85, fee_bps=0, fixed_fee=0, supports_3ds=False)
    w = ScoringWeights(
        yellow_penalty=0.1, sca_3ds_bonus=0.2, risk_penalty=0.5,
        business_bias=2.0, bias={"G": 0.1},
    )
    assert score_candidate(tx, yellow, w) == pytest.approx(0.9 + 0.2 - 0.1 - 0.2)
    assert score_candidate(tx, green, w) == pytest.approx(0.85 + 0.2 - 0.2)


def test_small_amount_floor():
    tx = make_tx(amount=0.0)
    c = make_candidate("A", auth_rate=0.0, fee_bps=0, fixed_fee=0.5)
    assert score_candidate(tx, c, ScoringWeights()) == pytest.approx(-0.5)


def test_empty_list_is_veto():
    d = score_deterministically(make_tx(), [])
    assert d.is_veto
    assert d.guardrail == "veto:no_valid_psp"


def test_decision_ids_are_unique():
    ids = {score_deterministically(make_tx(), [ADYEN]).decision_id for _ in range(50)}
    assert len(ids) == 50
