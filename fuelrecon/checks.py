"""Deterministic checks that flag fuel records and request LLM annotations."""
from __future__ import annotations

from typing import Iterable, List

from .balance import BalanceStatus, assess, is_journey_complete
from .llm import annotate_review
from .models import FuelRecord, ReviewItem


def reason_for(record: FuelRecord) -> str | None:
    if record.is_cancelled:
        return "CANCELLED_RECORD"
    if record.pending_config is not None:
        return "UNRESOLVED_ALLOWANCE"
    status = assess(record).status
    if status is BalanceStatus.OVER_CONSUMED:
        return "OVER_CONSUMPTION"
    if status is BalanceStatus.UNDER_CONSUMED and is_journey_complete(record):
        return "UNDER_CONSUMPTION"
    return None


def evaluate_record(record: FuelRecord) -> ReviewItem | None:
    reason = reason_for(record)
    if reason is None:
        return None

    annotation = annotate_review(reason, record)
    return ReviewItem(
        record=record,
        reason_code=reason,
        explanation=annotation.explanation,
        severity=annotation.severity,
        actionable=assess(record).actionable,
        actions=annotation.actions,
        confidence=annotation.confidence,
        needs_escalation=annotation.needs_escalation,
        llm_source=annotation.source,
        raw_annotation=annotation.raw_response,
    )


def evaluate_records(records: Iterable[FuelRecord]) -> list[ReviewItem]:
    items: List[ReviewItem] = []
    for record in records:
        item = evaluate_record(record)
        if item:
            items.append(item)
    return items
