"""Validated boundary for the reasoner's JSON answer.

The reasoner is an external, loosely-typed service.  Nothing in its answer is
trusted: every required field must be present with the right type, and the
chosen candidate must be admissible.  Any failure raises
:class:`~psp_router.exceptions.InvalidReasonerResponse`, which the router
treats exactly like a reasoner outage.
"""

import json
from collections.abc import Iterable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from psp_router.exceptions import InvalidReasonerResponse
from psp_router.models import RouteConstraints, RouteDecision


def _aliases(snake: str, camel: str, legacy: str) -> AliasChoices:
    return AliasChoices(snake, camel, legacy)


class ReasonerConstraints(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    must_use_3ds: bool = Field(validation_alias=_aliases("must_use_3ds", "mustUse3ds", "Must_Use_3ds"))
    retry_window_ms: int = Field(
        ge=0, validation_alias=_aliases("retry_window_ms", "retryWindowMs", "Retry_Window_Ms"),
    )
    max_retries: int = Field(
        ge=0, validation_alias=_aliases("max_retries", "maxRetries", "Max_Retries"),
    )


class ReasonerDecision(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    schema_version: str = Field(
        min_length=1, validation_alias=_aliases("schema_version", "schemaVersion", "Schema_Version"),
    )
    decision_id: str = Field(
        min_length=1, validation_alias=_aliases("decision_id", "decisionId", "Decision_Id"),
    )
    candidate: str = Field(min_length=1, validation_alias=_aliases("candidate", "candidate", "Candidate"))
    alternates: list[str] = Field(validation_alias=_aliases("alternates", "alternates", "Alternates"))
    reasoning: str = Field(validation_alias=_aliases("reasoning", "reasoning", "Reasoning"))
    guardrail: str = Field(validation_alias=_aliases("guardrail", "guardrail", "Guardrail"))
    constraints: ReasonerConstraints = Field(
        validation_alias=_aliases("constraints", "constraints", "Constraints"),
    )
    features_used: list[str] = Field(
        validation_alias=_aliases("features_used", "featuresUsed", "Features_Used"),
    )

    def to_decision(self) -> RouteDecision:
        return RouteDecision(
            schema_version=self.schema_version,
            decision_id=self.decision_id,
            candidate=self.candidate,
            alternates=tuple(self.alternates),
            reasoning=self.reasoning,
            guardrail=self.guardrail,
            constraints=RouteConstraints(
                must_use_3ds=self.constraints.must_use_3ds,
                retry_window_ms=self.constraints.retry_window_ms,
                max_retries=self.constraints.max_retries,
            ),
            features_used=tuple(self.features_used),
        )


def _strip_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_reasoner_response(raw: str, admissible: Iterable[str]) -> RouteDecision:
    """Parse and validate a reasoner answer against the admissible names."""
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidReasonerResponse("empty response", raw if isinstance(raw, str) else "")
    try:
        payload = json.loads(_strip_fences(raw))
    except json.JSONDecodeError as e:
        raise InvalidReasonerResponse(f"not JSON: {e}", raw) from e
    if not isinstance(payload, dict):
        raise InvalidReasonerResponse(f"expected an object, got {type(payload).__name__}", raw)
    try:
        parsed = ReasonerDecision.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise InvalidReasonerResponse(f"invalid fields: {fields}", raw) from e

    names = set(admissible)
    if parsed.candidate not in names:
        raise InvalidReasonerResponse(
            f"candidate '{parsed.candidate}' is not admissible ({', '.join(sorted(names))})", raw,
        )
    return parsed.to_decision()
