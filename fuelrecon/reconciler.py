"""Fold LPO purchases and yard dispenses into fuel record checkpoints."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from threading import Lock
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .linking import do_sequence
from .models import (
    NIL_DO,
    ZERO,
    Checkpoint,
    DispenseStatus,
    FuelRecord,
    JourneyLeg,
    LPOEntry,
    LPOJourneyType,
    YardDispense,
)
from .normalization import normalize_place, normalize_truck_no

LOGGER = logging.getLogger(__name__)

# station -> (checkpoint on the going leg, checkpoint on the return leg)
STATION_CHECKPOINTS: Dict[str, Tuple[Checkpoint, Checkpoint]] = {
    "LAKE CHILABOMBWE": (Checkpoint.ZAMBIA_GOING, Checkpoint.ZAMBIA_RETURN),
    "LAKE NDOLA": (Checkpoint.ZAMBIA_RETURN, Checkpoint.ZAMBIA_RETURN),
    "LAKE KAPIRI": (Checkpoint.ZAMBIA_RETURN, Checkpoint.ZAMBIA_RETURN),
    "CASH": (Checkpoint.ZAMBIA_GOING, Checkpoint.ZAMBIA_RETURN),
    "TCC": (Checkpoint.ZAMBIA_GOING, Checkpoint.ZAMBIA_RETURN),
    "ZHANFEI": (Checkpoint.ZAMBIA_GOING, Checkpoint.ZAMBIA_RETURN),
    "KAMOA": (Checkpoint.ZAMBIA_GOING, Checkpoint.ZAMBIA_RETURN),
    "COMIKA": (Checkpoint.ZAMBIA_GOING, Checkpoint.ZAMBIA_RETURN),
    "MBEYA STATION": (Checkpoint.MBEYA_GOING, Checkpoint.MBEYA_RETURN),
    "MBEYA RETURN STATION": (Checkpoint.MBEYA_RETURN, Checkpoint.MBEYA_RETURN),
    "INFINITY": (Checkpoint.MBEYA_GOING, Checkpoint.MBEYA_RETURN),
    "TUNDUMA STATION": (Checkpoint.TDM_GOING, Checkpoint.TUNDUMA_RETURN),
    "MORO STATION": (Checkpoint.MORO_GOING, Checkpoint.MORO_RETURN),
    "TANGA STATION": (Checkpoint.TANGA_YARD, Checkpoint.TANGA_RETURN),
    "DAR STATION": (Checkpoint.DAR_GOING, Checkpoint.DAR_RETURN),
}

YARD_CHECKPOINTS: Dict[str, Tuple[Checkpoint, Checkpoint]] = {
    "DAR YARD": (Checkpoint.DAR_YARD, Checkpoint.DAR_RETURN),
    "TANGA YARD": (Checkpoint.TANGA_YARD, Checkpoint.TANGA_RETURN),
    "MMSA YARD": (Checkpoint.MMSA_YARD, Checkpoint.MMSA_YARD),
}

UNMATCHED_NO_RECORD = "NO_FUEL_RECORD"
UNMATCHED_UNKNOWN_DO = "UNKNOWN_DO"
UNMATCHED_UNKNOWN_STATION = "UNKNOWN_STATION"


@dataclass(frozen=True, slots=True)
class EventMatch:
    record_id: str
    leg: JourneyLeg
    checkpoint: Checkpoint


@dataclass(frozen=True, slots=True)
class Unmatched:
    reason: str


def _pick(table: Dict[str, Tuple[Checkpoint, Checkpoint]], name: str, leg: JourneyLeg) -> Optional[Checkpoint]:
    entry = table.get(normalize_place(name.replace("_", " ")))
    if entry is None:
        return None
    return entry[0] if leg is JourneyLeg.GOING else entry[1]


def station_checkpoint(station: str, leg: JourneyLeg) -> Optional[Checkpoint]:
    return _pick(STATION_CHECKPOINTS, station, leg)


def yard_checkpoint(yard: str, leg: JourneyLeg) -> Optional[Checkpoint]:
    return _pick(YARD_CHECKPOINTS, yard, leg)


def leg_for_date(record: FuelRecord, day: date) -> JourneyLeg:
    """Events dated before the return DO belong to the going leg."""

    if record.return_date is not None and day >= record.return_date:
        return JourneyLeg.RETURN
    return JourneyLeg.GOING


def _latest(records: Iterable[FuelRecord]) -> Optional[FuelRecord]:
    ordered = sorted(records, key=lambda r: (r.date, do_sequence(r.going_do)))
    return ordered[-1] if ordered else None


def apply_event(record: FuelRecord, checkpoint: Checkpoint, liters: Decimal) -> Decimal:
    """Add consumed liters to a checkpoint; values only ever grow in magnitude."""

    consumed = abs(liters)
    value = record.checkpoint_value(checkpoint) - consumed
    record.set_checkpoint(checkpoint, value)
    record.event_liters[checkpoint] = record.event_liters.get(checkpoint, ZERO) - consumed
    return value


class TruckIndex:
    """Normalised truck number to the fuel record ids that may receive its events."""

    def __init__(self) -> None:
        self._ids: Dict[str, List[str]] = {}
        self._lock = Lock()

    def add(self, record: FuelRecord) -> None:
        key = normalize_truck_no(record.truck_no)
        with self._lock:
            ids = self._ids.setdefault(key, [])
            if record.id not in ids:
                ids.append(record.id)

    def candidates(self, truck_no: str) -> List[str]:
        with self._lock:
            return list(self._ids.get(normalize_truck_no(truck_no), ()))

    def trucks(self) -> Set[str]:
        with self._lock:
            return set(self._ids)


class ExternalEventReconciler:
    """Matches purchase and yard events to fuel records by truck and date.

    Links are weak: events keep the id of the record they were folded into
    and records keep event ids, but neither owns the other. Events that match
    nothing are queued and retried when a record for the truck appears.
    """

    def __init__(self, *, dispense_window_days: int = 60) -> None:
        self.index = TruckIndex()
        self.window = timedelta(days=dispense_window_days)
        self._lock = Lock()
        self._lpos: Dict[str, LPOEntry] = {}
        self._dispenses: Dict[str, YardDispense] = {}
        self._lpo_counter = 0

    # -- registries -------------------------------------------------------

    def register_lpo(self, lpo: LPOEntry) -> LPOEntry:
        with self._lock:
            if not lpo.id:
                self._lpo_counter += 1
                lpo.id = f"LPO-{self._lpo_counter:05d}"
            self._lpos[lpo.id] = lpo
        return lpo

    def register_dispense(self, dispense: YardDispense) -> YardDispense:
        with self._lock:
            self._dispenses[dispense.id] = dispense
        return dispense

    def lpo(self, lpo_id: str) -> Optional[LPOEntry]:
        with self._lock:
            return self._lpos.get(lpo_id)

    def dispense(self, dispense_id: str) -> Optional[YardDispense]:
        with self._lock:
            return self._dispenses.get(dispense_id)

    def lpos_for(self, record_id: str) -> List[LPOEntry]:
        with self._lock:
            return [lpo for lpo in self._lpos.values() if lpo.fuel_record_id == record_id]

    def dispenses_for(self, record_id: str) -> List[YardDispense]:
        with self._lock:
            return [d for d in self._dispenses.values() if d.fuel_record_id == record_id]

    def pending_dispenses(self, truck_no: str | None = None) -> List[YardDispense]:
        key = normalize_truck_no(truck_no) if truck_no else None
        with self._lock:
            return [
                d
                for d in self._dispenses.values()
                if d.status is DispenseStatus.PENDING
                and (key is None or normalize_truck_no(d.truck_no) == key)
            ]

    def unattached_lpos(self, truck_no: str | None = None) -> List[LPOEntry]:
        key = normalize_truck_no(truck_no) if truck_no else None
        with self._lock:
            return [
                lpo
                for lpo in self._lpos.values()
                if not lpo.is_linked and (key is None or normalize_truck_no(lpo.truck_no) == key)
            ]

    # -- matching ---------------------------------------------------------

    def match_lpo(self, lpo: LPOEntry, records: Iterable[FuelRecord]) -> EventMatch | Unmatched:
        key = normalize_truck_no(lpo.truck_no)
        same_truck = [r for r in records if normalize_truck_no(r.truck_no) == key]
        if not same_truck:
            return Unmatched(UNMATCHED_NO_RECORD)

        record: Optional[FuelRecord] = None
        leg: Optional[JourneyLeg] = None
        if lpo.do_number and lpo.do_number.upper() != NIL_DO:
            for candidate in same_truck:
                if candidate.going_do == lpo.do_number:
                    record, leg = candidate, JourneyLeg.GOING
                    break
                if candidate.return_do == lpo.do_number:
                    record, leg = candidate, JourneyLeg.RETURN
                    break
            if record is None:
                return Unmatched(UNMATCHED_UNKNOWN_DO)
        else:
            record = _latest(r for r in same_truck if r.date <= lpo.date)
            if record is None:
                return Unmatched(UNMATCHED_NO_RECORD)
            if lpo.journey_type is LPOJourneyType.GOING:
                leg = JourneyLeg.GOING
            elif lpo.journey_type is LPOJourneyType.RETURN:
                leg = JourneyLeg.RETURN
            else:
                leg = leg_for_date(record, lpo.date)

        checkpoint = station_checkpoint(lpo.station, leg)
        if checkpoint is None:
            return Unmatched(UNMATCHED_UNKNOWN_STATION)
        return EventMatch(record.id, checkpoint.leg, checkpoint)

    def match_dispense(self, dispense: YardDispense, records: Iterable[FuelRecord]) -> EventMatch | Unmatched:
        key = normalize_truck_no(dispense.truck_no)
        eligible = [
            r
            for r in records
            if normalize_truck_no(r.truck_no) == key
            and r.date <= dispense.date
            and dispense.date - r.date <= self.window
        ]
        record = _latest(eligible)
        if record is None:
            return Unmatched(UNMATCHED_NO_RECORD)

        leg = leg_for_date(record, dispense.date)
        checkpoint = yard_checkpoint(dispense.yard, leg)
        if checkpoint is None:
            return Unmatched(UNMATCHED_UNKNOWN_STATION)
        return EventMatch(record.id, checkpoint.leg, checkpoint)

    # -- attachment -------------------------------------------------------

    def attach_lpo(self, record: FuelRecord, lpo: LPOEntry, match: EventMatch) -> Decimal:
        value = apply_event(record, match.checkpoint, lpo.liters)
        lpo.fuel_record_id = record.id
        lpo.leg = match.leg
        lpo.checkpoint = match.checkpoint
        if lpo.id not in record.lpo_refs:
            record.lpo_refs.append(lpo.id)
        LOGGER.info(
            "LPO %s (%sL at %s) attached to %s %s",
            lpo.lpo_no,
            lpo.liters,
            lpo.station,
            record.id,
            match.checkpoint.value,
        )
        return value

    def attach_dispense(
        self,
        record: FuelRecord,
        dispense: YardDispense,
        match: EventMatch,
        *,
        auto: bool = True,
    ) -> Decimal:
        value = apply_event(record, match.checkpoint, dispense.liters)
        dispense.status = DispenseStatus.LINKED
        dispense.fuel_record_id = record.id
        dispense.leg = match.leg
        dispense.checkpoint = match.checkpoint
        dispense.auto_linked = auto
        if dispense.id not in record.dispense_refs:
            record.dispense_refs.append(dispense.id)
        LOGGER.info(
            "Yard dispense %s (%sL at %s) linked to %s %s",
            dispense.id,
            dispense.liters,
            dispense.yard,
            record.id,
            match.checkpoint.value,
        )
        return value
