"""High-level orchestration for a batch reconciliation run."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .checks import evaluate_records
from .config import EngineSettings, RouteConfigStore, TruckBatchStore
from .models import DeliveryOrder, JourneyLeg, LPOEntry, YardDispense
from .normalization import load_batches, load_dispenses, load_lpos, load_orders, load_routes
from .report import (
    generate_markdown_summary,
    write_markdown,
    write_notifications_json,
    write_pending_json,
    write_records_csv,
    write_records_json,
)
from .service import FuelLedger

LOGGER = logging.getLogger(__name__)

# Same-day ordering: a going DO must exist before its return, and both
# before the fuel bought against them.
_GOING, _RETURN, _LPO, _YARD = range(4)


def _event_order(event: object) -> Tuple[Any, int, str]:
    if isinstance(event, DeliveryOrder):
        rank = _GOING if event.leg is JourneyLeg.GOING else _RETURN
        return (event.date, rank, event.do_number)
    if isinstance(event, LPOEntry):
        return (event.date, _LPO, event.lpo_no)
    if isinstance(event, YardDispense):
        return (event.date, _YARD, event.id)
    raise TypeError(f"Unsupported event: {event!r}")


def run_reconciliation(
    *,
    orders_path: Path,
    routes_path: Path,
    batches_path: Path,
    out_dir: Path,
    lpos_path: Path | None = None,
    yard_path: Path | None = None,
    settings: EngineSettings | None = None,
) -> Dict[str, int]:
    ledger = FuelLedger(
        routes=RouteConfigStore(load_routes(routes_path)),
        batches=TruckBatchStore(load_batches(batches_path)),
        settings=settings,
    )

    events: List[object] = [*load_orders(orders_path)]
    if lpos_path is not None:
        events.extend(load_lpos(lpos_path))
    if yard_path is not None:
        events.extend(load_dispenses(yard_path))
    events.sort(key=_event_order)
    LOGGER.info("Replaying %d events", len(events))
    ledger.replay(events)

    records = ledger.all_records()
    reviews = evaluate_records(records)
    notifications = ledger.notifications()
    orphans = ledger.orphan_returns()
    dispenses = ledger.pending_dispenses()
    lpos = ledger.unattached_lpos()

    out_dir.mkdir(parents=True, exist_ok=True)
    write_records_csv(out_dir / "fuel_records.csv", records)
    write_records_json(out_dir / "fuel_records.json", records, reviews)
    write_notifications_json(out_dir / "notifications.json", notifications)
    write_pending_json(out_dir / "pending.json", orphans=orphans, dispenses=dispenses, lpos=lpos)
    markdown = generate_markdown_summary(
        records,
        reviews,
        notifications=notifications,
        pending_total=len(orphans) + len(dispenses) + len(lpos),
    )
    write_markdown(out_dir / "fuel_report.md", markdown)

    summary = {
        "records": len(records),
        "reviews": len(reviews),
        "notifications": len(notifications),
        "orphan_returns": len(orphans),
        "pending_dispenses": len(dispenses),
        "unattached_lpos": len(lpos),
    }
    LOGGER.info("Reconciliation finished: %s", summary)
    return summary
