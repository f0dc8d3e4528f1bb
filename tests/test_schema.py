import json

import pytest

from conftest import reasoner_json

from psp_router.exceptions import InvalidReasonerResponse, ReasonerUnavailable
from psp_router.schema import parse_reasoner_response

ADMISSIBLE = ["Adyen", "Stripe"]


def test_valid_response_is_returned_verbatim():
    d = parse_reasoner_response(reasoner_json("Stripe"), ADMISSIBLE)
    assert d.candidate == "Stripe"
    assert d.decision_id == "llm-1"
    assert d.alternates == ("Adyen",)
    assert d.constraints.retry_window_ms == 8000
    assert d.features_used == ("auth=0.87", "fee_bps=180")


def test_accepts_legacy_key_spelling():
    raw = json.dumps({
        "Schema_Version": "1.0",
        "Decision_Id": "x",
        "Candidate": "Adyen",
        "Alternates": [],
        "Reasoning": "r",
        "Guardrail": "none",
        "Constraints": {"Must_Use_3ds": True, "Retry_Window_Ms": 8000, "Max_Retries": 1},
        "Features_Used": [],
    })
    d = parse_reasoner_response(raw, ADMISSIBLE)
    assert d.candidate == "Adyen"
    assert d.constraints.must_use_3ds


def test_accepts_fenced_json():
    d = parse_reasoner_response("```json\n" + reasoner_json("Adyen") + "\n```", ADMISSIBLE)
    assert d.candidate == "Adyen"


@pytest.mark.parametrize("raw", ["", "   ", "not json", "[1, 2]", "null"])
def test_malformed_text(raw):
    with pytest.raises(InvalidReasonerResponse):
        parse_reasoner_response(raw, ADMISSIBLE)


def test_candidate_must_be_admissible():
    with pytest.raises(InvalidReasonerResponse, match="not admissible"):
        parse_reasoner_response(reasoner_json("PayPal"), ADMISSIBLE)
    with pytest.raises(InvalidReasonerResponse):
        parse_reasoner_response(reasoner_json("NONE"), ADMISSIBLE)


@pytest.mark.parametrize("missing", ["schemaVersion", "decisionId", "candidate", "constraints", "featuresUsed"])
def test_missing_fields_are_rejected(missing):
    payload = json.loads(reasoner_json())
    del payload[missing]
    with pytest.raises(InvalidReasonerResponse):
        parse_reasoner_response(json.dumps(payload), ADMISSIBLE)


def test_wrong_types_are_rejected():
    with pytest.raises(InvalidReasonerResponse):
        parse_reasoner_response(reasoner_json(alternates="Adyen"), ADMISSIBLE)
    with pytest.raises(InvalidReasonerResponse):
        parse_reasoner_response(
            reasoner_json(constraints={"mustUse3ds": "yes", "retryWindowMs": 8000, "maxRetries": 1}),
            ADMISSIBLE,
        )
    with pytest.raises(InvalidReasonerResponse):
        parse_reasoner_response(
            reasoner_json(constraints={"mustUse3ds": False, "retryWindowMs": -1, "maxRetries": 1}),
            ADMISSIBLE,
        )


def test_invalid_response_is_a_reasoner_failure():
    assert issubclass(InvalidReasonerResponse, ReasonerUnavailable)
