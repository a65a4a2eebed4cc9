import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from fuelrecon import llm


@pytest.fixture(autouse=True)
def stubbed_llm_client():
    """Provide deterministic LLM outputs for tests without network access."""

    class _StubClient:
        _SEVERITY_MAP = {
            "OVER_CONSUMPTION": "high",
            "UNDER_CONSUMPTION": "medium",
            "UNRESOLVED_ALLOWANCE": "medium",
            "CANCELLED_RECORD": "low",
        }

        _SUMMARY_MAP = {
            "OVER_CONSUMPTION": "Checkpoints exceed the allowance; look for duplicate LPOs.",
            "UNDER_CONSUMPTION": "Fuel left over after the return leg; confirm missing LPOs.",
            "UNRESOLVED_ALLOWANCE": "Allowance incomplete; configure the route or truck batch.",
            "CANCELLED_RECORD": "Record cancelled; kept for history.",
        }

        def request(self, *, messages, schema):  # type: ignore[override]
            payload = self._extract_payload(messages)
            schema_name = schema.get("name")
            if schema_name == "fuel_review_annotation":
                return self._annotation_payload(payload)
            raise AssertionError(f"Unexpected schema requested: {schema_name!r}")

        def _extract_payload(self, messages):
            for block in reversed(messages):
                content = block.get("content")
                if not isinstance(content, list):
                    continue
                for item in reversed(content):
                    if not isinstance(item, dict):
                        continue
                    if item.get("type") not in {"text", "input_text"}:
                        continue
                    try:
                        return json.loads(item.get("text", ""))
                    except json.JSONDecodeError:
                        continue
            return {}

        def _annotation_payload(self, payload):
            reason = payload.get("reason_code", "")
            return {
                "severity": self._SEVERITY_MAP.get(reason, "medium"),
                "summary": self._SUMMARY_MAP.get(reason, "Investigate the fuel record."),
                "actions": ["Review the fuel record checkpoints"],
                "confidence": 0.5,
                "needs_escalation": reason == "OVER_CONSUMPTION",
            }

    stub = _StubClient()
    llm.set_structured_client_for_testing(stub)
    yield
    llm.set_structured_client_for_testing(None)
