"""Rendering utilities for machine-readable and human-readable outputs."""
from __future__ import annotations

import csv
import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from .balance import BalanceStatus, assess
from .models import ZERO, Checkpoint, DeliveryOrder, FuelRecord, LPOEntry, Notification, ReviewItem, YardDispense

RECORD_FIELDS = [
    "id",
    "date",
    "month",
    "truck_no",
    "going_do",
    "return_do",
    "start",
    "going_from",
    "going_to",
    "return_from",
    "return_to",
    "total_liters",
    "extra_liters",
    *[checkpoint.value for checkpoint in Checkpoint],
    "balance",
    "destination_changed",
    "pending_config",
    "cancelled",
    "statement",
]


def write_records_csv(path: Path, records: Iterable[FuelRecord]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=RECORD_FIELDS)
        writer.writeheader()
        for record in records:
            writer.writerow(record.as_dict())


def write_records_json(path: Path, records: Iterable[FuelRecord], reviews: Iterable[ReviewItem] = ()) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    by_record = {item.record.id: item for item in reviews}
    payload = []
    for record in records:
        entry = record.as_json()
        item = by_record.get(record.id)
        entry["review"] = item.as_json() if item else None
        payload.append(entry)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def write_notifications_json(path: Path, notifications: Iterable[Notification]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = [notification.as_json() for notification in notifications]
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def write_pending_json(
    path: Path,
    *,
    orphans: Iterable[DeliveryOrder],
    dispenses: Iterable[YardDispense],
    lpos: Iterable[LPOEntry],
) -> None:
    """Everything still waiting for a fuel record to link to."""

    payload = {
        "orphan_return_orders": [
            {
                "do_number": order.do_number,
                "date": order.date.isoformat(),
                "truck_no": order.truck_no,
                "origin": order.origin,
                "destination": order.destination,
            }
            for order in orphans
        ],
        "pending_yard_dispenses": [
            {
                "id": dispense.id,
                "date": dispense.date.isoformat(),
                "truck_no": dispense.truck_no,
                "yard": dispense.yard,
                "liters": float(dispense.liters),
                "entered_by": dispense.entered_by,
            }
            for dispense in dispenses
        ],
        "unattached_lpos": [
            {
                "lpo_no": lpo.lpo_no,
                "date": lpo.date.isoformat(),
                "truck_no": lpo.truck_no,
                "station": lpo.station,
                "do_number": lpo.do_number,
                "liters": float(lpo.liters),
            }
            for lpo in lpos
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def generate_markdown_summary(
    records: Sequence[FuelRecord],
    reviews: Sequence[ReviewItem],
    *,
    notifications: Sequence[Notification] = (),
    pending_total: int = 0,
) -> str:
    active = [record for record in records if not record.is_cancelled]
    cancelled = [record for record in records if record.is_cancelled]
    statuses = Counter(assess(record).status for record in active)
    reasons = Counter(item.reason_code for item in reviews)
    open_notifications = Counter(n.type.value for n in notifications if n.status == "pending")

    lines = ["# Fuel Reconciliation Report", ""]
    lines.append(f"Generated: {datetime.now(timezone.utc).isoformat()}")
    lines.append("")
    lines.append("## Overview")
    lines.append("")
    lines.append(f"- Fuel records: **{len(records)}**")
    lines.append(f"- Active records: **{len(active)}**")
    lines.append(f"- Round trips with a return DO: **{sum(1 for r in active if r.return_do)}**")
    lines.append(f"- Balanced: **{statuses[BalanceStatus.BALANCED]}**")
    lines.append(f"- Over-consumed: **{statuses[BalanceStatus.OVER_CONSUMED]}**")
    lines.append(f"- Under-consumed: **{statuses[BalanceStatus.UNDER_CONSUMED]}**")
    lines.append(f"- Items waiting to be linked: **{pending_total}**")
    lines.append("")

    allowance = sum((r.total_liters + r.extra_liters for r in active), ZERO)
    net = sum((r.balance for r in active), ZERO)
    lines.append(f"Active allowance: {allowance:.2f}L, net balance: {net:.2f}L.")
    if cancelled:
        historical = sum((r.balance for r in cancelled), ZERO)
        lines.append(f"Cancelled records ({len(cancelled)}) carry {historical:.2f}L of historical balance, not counted above.")
    lines.append("")

    if reasons:
        lines.append("## Records by review reason")
        lines.append("")
        for reason, count in sorted(reasons.items()):
            lines.append(f"- {reason}: {count}")
        lines.append("")

    if open_notifications:
        lines.append("## Open notifications")
        lines.append("")
        for kind, count in sorted(open_notifications.items()):
            lines.append(f"- {kind}: {count}")
        lines.append("")

    if reviews:
        lines.append("## Detailed explanations")
        lines.append("")
        lines.append("| Record | Truck | Going DO | Return DO | Balance | Reason | Severity | Explanation | Actions |")
        lines.append("| --- | --- | --- | --- | --- | --- | --- | --- | --- |")
        for item in reviews:
            lines.append(
                "| {id} | {truck} | {going} | {ret} | {balance:.2f} | {reason} | {severity} | {explanation} | {actions} |".format(
                    id=item.record.id,
                    truck=item.record.truck_no,
                    going=item.record.going_do,
                    ret=item.record.return_do or "",
                    balance=item.record.balance,
                    reason=item.reason_code,
                    severity=item.severity.title(),
                    explanation=item.explanation.replace("|", "\\|"),
                    actions="; ".join(item.actions).replace("|", "\\|"),
                )
            )
        lines.append("")
    else:
        lines.append("No records need review. All balances are settled.")

    return "\n".join(lines)


def write_markdown(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        handle.write(content)
