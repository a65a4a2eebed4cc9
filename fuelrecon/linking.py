"""Journey linking: attach return trip orders to their going fuel records."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .errors import LinkConflictError
from .models import DeliveryOrder, FuelRecord, JourneyLeg
from .normalization import normalize_place, normalize_truck_no

LOGGER = logging.getLogger(__name__)

ORPHAN_NO_GOING_RECORD = "NO_UNLINKED_GOING_RECORD"
ORPHAN_WRONG_TRUCK = "TRUCK_MISMATCH"


@dataclass(frozen=True, slots=True)
class LinkFailure:
    do_number: str
    truck_no: str
    reason: str


@dataclass(frozen=True, slots=True)
class LinkResult:
    """Either the record a return DO was linked to, or why it was held back."""

    record: Optional[FuelRecord] = None
    failure: Optional[LinkFailure] = None
    already_linked: bool = False

    @property
    def linked(self) -> bool:
        return self.record is not None


def do_sequence(do_number: str) -> int:
    digits = re.findall(r"\d+", do_number or "")
    return int(digits[-1]) if digits else -1


def _recency(record: FuelRecord) -> tuple:
    return (record.date, do_sequence(record.going_do))


def select_going_record(candidates: Iterable[FuelRecord], truck_no: str) -> Optional[FuelRecord]:
    """Most recent going record for the truck that has no return DO yet."""

    key = normalize_truck_no(truck_no)
    unlinked = [
        record
        for record in candidates
        if normalize_truck_no(record.truck_no) == key and record.return_do is None
    ]
    if not unlinked:
        return None
    return max(unlinked, key=_recency)


def apply_return(record: FuelRecord, return_do: DeliveryOrder) -> FuelRecord:
    """Write the return-leg fields; the going destination is never touched."""

    record.return_do = return_do.do_number
    record.return_date = return_do.date
    record.return_from = return_do.origin
    record.return_to = return_do.destination
    record.has_destination_changed = normalize_place(return_do.destination) != normalize_place(record.going_to)
    return record


def link_return(
    candidates: Iterable[FuelRecord],
    return_do: DeliveryOrder,
    *,
    target: FuelRecord | None = None,
) -> LinkResult:
    """Pick the going record a return DO belongs to and link it.

    ``target`` pins the link to one record (manual linking). A target, or the
    truck's latest going record when nothing unlinked is left, that already
    carries a different return DO raises :class:`LinkConflictError`.
    """

    if return_do.leg is not JourneyLeg.RETURN:
        raise ValueError(f"DO {return_do.do_number} is not a return order")

    records: List[FuelRecord] = list(candidates)
    key = normalize_truck_no(return_do.truck_no)

    for record in records:
        if record.return_do == return_do.do_number and normalize_truck_no(record.truck_no) == key:
            return LinkResult(record=record, already_linked=True)

    if target is not None:
        if normalize_truck_no(target.truck_no) != key:
            return LinkResult(failure=LinkFailure(return_do.do_number, return_do.truck_no, ORPHAN_WRONG_TRUCK))
        if target.return_do is not None:
            raise LinkConflictError(
                f"Fuel record {target.id} is already linked to return DO {target.return_do}",
                do_number=return_do.do_number,
                fuel_record_id=target.id,
            )
        chosen: Optional[FuelRecord] = target
    else:
        chosen = select_going_record(records, return_do.truck_no)

    if chosen is None:
        same_truck = [r for r in records if normalize_truck_no(r.truck_no) == key]
        if same_truck:
            latest = max(same_truck, key=_recency)
            raise LinkConflictError(
                f"Latest going record {latest.id} for {return_do.truck_no} is already linked "
                f"to return DO {latest.return_do}",
                do_number=return_do.do_number,
                fuel_record_id=latest.id,
            )
        LOGGER.info("Return DO %s for %s has no going record yet", return_do.do_number, return_do.truck_no)
        return LinkResult(failure=LinkFailure(return_do.do_number, return_do.truck_no, ORPHAN_NO_GOING_RECORD))

    apply_return(chosen, return_do)
    if chosen.has_destination_changed:
        LOGGER.info(
            "Return DO %s changes destination of %s; keeping going destination %s",
            return_do.do_number,
            chosen.id,
            chosen.going_to,
        )
    return LinkResult(record=chosen)


def unlink_return(record: FuelRecord) -> FuelRecord:
    """Drop a cancelled return DO and its planned return allocation.

    Liters already attached from LPOs or yard entries stay on the return
    checkpoints; those events happened regardless of the order.
    """

    record.return_do = None
    record.return_date = None
    record.return_from = None
    record.return_to = None
    record.has_destination_changed = False
    record.return_checkpoints = {
        checkpoint: liters
        for checkpoint, liters in record.event_liters.items()
        if checkpoint.leg is JourneyLeg.RETURN
    }
    return record
