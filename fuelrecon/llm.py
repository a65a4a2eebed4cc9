"""LLM-backed explanations and prioritisation for fuel records needing review."""
from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Iterable, Protocol

from openai import OpenAI

from .models import FuelRecord, ReviewAnnotation

LOGGER = logging.getLogger(__name__)

REASON_MESSAGES = {
    "OVER_CONSUMPTION": (
        "Checkpoints consumed more than the trip allowance. Verify LPOs and yard entries for duplicates.",
        "high",
    ),
    "UNDER_CONSUMPTION": (
        "The journey is complete but fuel is left over. Confirm every LPO was captured.",
        "medium",
    ),
    "UNRESOLVED_ALLOWANCE": (
        "The trip allowance is incomplete because configuration is missing. Enter it or configure the route.",
        "medium",
    ),
    "CANCELLED_RECORD": (
        "The record was cancelled and is kept for history only.",
        "low",
    ),
}

_VALID_SEVERITIES = {"low", "medium", "high"}

_JSON_SCHEMA = {
    "name": "fuel_review_annotation",
    "schema": {
        "type": "object",
        "properties": {
            "severity": {
                "type": "string",
                "description": "Operational priority: low, medium or high.",
            },
            "summary": {
                "type": "string",
                "description": "Human readable explanation (1-2 sentences).",
            },
            "actions": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Ordered follow-up steps for fuel clerks.",
            },
            "confidence": {
                "type": "number",
                "description": "Confidence score between 0 and 1.",
            },
            "needs_escalation": {
                "type": "boolean",
                "description": "Whether a fleet manager must sign off.",
            },
        },
        "required": ["severity", "summary"],
        "additionalProperties": False,
    },
}


@dataclass(frozen=True)
class LLMConfig:
    """Runtime configuration for the LLM integration."""

    model: str
    temperature: float
    api_key: str | None

    @classmethod
    def from_env(cls) -> "LLMConfig":
        model = os.getenv("FUELRECON_OPENAI_MODEL", "gpt-4o-mini")
        temperature = float(os.getenv("FUELRECON_OPENAI_TEMPERATURE", "0.2"))
        api_key = os.getenv("FUELRECON_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY")
        return cls(model=model, temperature=temperature, api_key=api_key)


class StructuredClient(Protocol):
    def request(self, *, messages: list[dict[str, Any]], schema: dict[str, Any]) -> Dict[str, Any] | None:
        ...


class OpenAIStructuredClient:
    """Adapts the OpenAI Responses API to ``request(messages, schema) -> dict``."""

    def __init__(self, config: LLMConfig, client: OpenAI) -> None:
        self._config = config
        self._client = client

    def request(self, *, messages: list[dict[str, Any]], schema: dict[str, Any]) -> Dict[str, Any] | None:
        response = self._client.responses.create(
            model=self._config.model,
            temperature=self._config.temperature,
            input=messages,
            text={"format": {"type": "json_schema", **schema}},
        )
        return _extract_json_payload(response)


def _load_structured_client(config: LLMConfig) -> StructuredClient | None:
    if not config.api_key:
        return None
    return OpenAIStructuredClient(config, OpenAI(api_key=config.api_key))


_client_override: StructuredClient | None = None


def set_structured_client_for_testing(client: StructuredClient | None) -> None:
    """Route annotations through ``client`` instead of the configured one."""

    global _client_override
    _client_override = client
    _service.cache_clear()


def _serialise_record(record: FuelRecord) -> Dict[str, Any]:
    return {
        "fuel_record_id": record.id,
        "truck_no": record.truck_no,
        "going_do": record.going_do,
        "return_do": record.return_do,
        "going_to": record.going_to,
        "return_to": record.return_to,
        "total_liters": float(record.total_liters),
        "extra_liters": float(record.extra_liters),
        "checkpoints": {cp.value: float(value) for cp, value in record.iter_checkpoints() if value},
        "balance": float(record.balance),
        "pending_config": record.pending_config.value if record.pending_config else None,
        "is_cancelled": record.is_cancelled,
    }


def _compose_user_payload(reason_code: str, record: FuelRecord) -> dict[str, Any]:
    return {"reason_code": reason_code, "fuel_record": _serialise_record(record)}


def _fallback_summary(reason_code: str, record: FuelRecord) -> str:
    trip = f"{record.truck_no} on {record.going_do}"
    if reason_code == "OVER_CONSUMPTION":
        return (
            f"Fuel record {record.id} for {trip} to {record.going_to} is over-consumed by "
            f"{abs(record.balance):.2f}L against an allowance of {record.total_liters + record.extra_liters:.2f}L."
        )
    if reason_code == "UNDER_CONSUMPTION":
        return (
            f"Fuel record {record.id} for {trip} completed its return with "
            f"{record.balance:.2f}L of allowance unused."
        )
    if reason_code == "UNRESOLVED_ALLOWANCE" and record.pending_config is not None:
        return (
            f"Fuel record {record.id} for {trip} to {record.going_to} is waiting on "
            f"configuration ({record.pending_config.value})."
        )
    if reason_code == "CANCELLED_RECORD":
        return (
            f"Fuel record {record.id} for {trip} was cancelled by {record.cancelled_by or 'unknown'}: "
            f"{record.cancellation_reason or 'no reason given'}."
        )
    message, _ = REASON_MESSAGES.get(
        reason_code,
        ("Unexpected condition detected. Escalate to the fleet fuel controller.", "medium"),
    )
    return f"{message} (record {record.id} / truck {record.truck_no})."


def _fallback_annotation(reason_code: str, record: FuelRecord) -> ReviewAnnotation:
    _, severity = REASON_MESSAGES.get(reason_code, ("", "medium"))
    return ReviewAnnotation(
        explanation=_fallback_summary(reason_code, record),
        severity=severity,
        source="rule",
    )


class ReviewAnnotationService:
    """LLM-powered agent that explains why a fuel record needs attention."""

    def __init__(self, config: LLMConfig, client: StructuredClient | None) -> None:
        self._config = config
        self._client = client

    @classmethod
    def from_env(cls) -> "ReviewAnnotationService":
        config = LLMConfig.from_env()
        client = _client_override or _load_structured_client(config)
        return cls(config=config, client=client)

    def annotate(self, reason_code: str, record: FuelRecord) -> ReviewAnnotation:
        if self._client is None:
            return _fallback_annotation(reason_code, record)

        payload = _compose_user_payload(reason_code, record)
        messages = [
            {
                "role": "system",
                "content": "You are a fleet fuel controller reviewing truck round-trip fuel records.",
            },
            {
                "role": "user",
                "content": [
                    {
                        "type": "input_text",
                        "text": (
                            "Classify and explain why this fuel record needs review. "
                            "Return JSON that aligns with the provided schema."
                        ),
                    },
                    {"type": "input_text", "text": json.dumps(payload, indent=2)},
                ],
            },
        ]

        try:
            llm_payload = self._client.request(messages=messages, schema=_JSON_SCHEMA)
        except Exception as exc:  # pragma: no cover - network/runtime failure
            LOGGER.warning("LLM annotation failed; using rule-based fallback: %s", exc)
            return _fallback_annotation(reason_code, record)

        if not llm_payload:
            return _fallback_annotation(reason_code, record)

        severity = str(llm_payload.get("severity", "")).lower()
        if severity not in _VALID_SEVERITIES:
            return _fallback_annotation(reason_code, record)
        summary = llm_payload.get("summary") or _fallback_summary(reason_code, record)

        actions = llm_payload.get("actions") or []
        if isinstance(actions, Iterable) and not isinstance(actions, str):
            ordered_actions = [a for a in actions if isinstance(a, str)]
        else:
            ordered_actions = []

        confidence = llm_payload.get("confidence")

        extra_segments = []
        if llm_payload.get("needs_escalation"):
            extra_segments.append("Escalate to the fleet manager before adjusting the record.")

        explanation = " ".join(part.strip() for part in [summary, *extra_segments] if part)
        return ReviewAnnotation(
            explanation=explanation,
            severity=severity,
            actions=tuple(ordered_actions),
            confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
            needs_escalation=bool(llm_payload.get("needs_escalation")),
            source="openai",
            raw_response=llm_payload,
        )


def _block_text(block: Any) -> str | None:
    content = getattr(block, "content", None)
    if isinstance(content, list) and content:
        item = content[0]
        return item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
    message = getattr(block, "message", None)
    if message is not None and getattr(message, "content", None):
        item = message.content[0]
        return item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
    return getattr(block, "text", None)


def _extract_json_payload(response: Any) -> Dict[str, Any] | None:
    """Normalise the OpenAI client response into a Python dictionary."""

    outputs = getattr(response, "output", None) or getattr(response, "outputs", None)
    if not outputs:
        # Older SDKs use `choices`
        outputs = getattr(response, "choices", None)
    if not outputs:
        return None

    for block in outputs:
        text = _block_text(block)
        if not text:
            continue
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload

    LOGGER.warning("LLM response could not be parsed as JSON. Falling back to rules.")
    return None


@lru_cache(maxsize=1)
def _service() -> ReviewAnnotationService:
    return ReviewAnnotationService.from_env()


def annotate_review(reason_code: str, record: FuelRecord) -> ReviewAnnotation:
    """Return an explanation, severity and metadata for a record needing review."""

    return _service().annotate(reason_code, record)
