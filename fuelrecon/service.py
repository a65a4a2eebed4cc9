"""Event entry points for the fuel ledger.

Each public method handles one external trigger (a trip order, an LPO, a yard
entry, an admin correction). Work for a truck runs under that truck's guard
and every record write is a single-record transaction, so triggers may arrive
from several threads in any order.
"""
from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional

from . import balance
from .allocation import Allocation, AllocationConfig, AllocationRules, allocate
from .config import EngineSettings, RouteConfigStore, TruckBatchStore
from .errors import EventStateError, LinkConflictError, UnknownRecordError
from .linking import LinkResult, apply_return, link_return, unlink_return
from .models import (
    ZERO,
    Checkpoint,
    DeliveryOrder,
    DispenseStatus,
    FuelRecord,
    FuelRecordDetails,
    JourneyLeg,
    LPOEntry,
    Notification,
    NotificationType,
    YardDispense,
    checkpoints_for,
)
from .normalization import format_truck_no, normalize_place, normalize_truck_no, parse_liters
from .notifications import DeficiencyNotifier
from .reconciler import EventMatch, ExternalEventReconciler, leg_for_date, yard_checkpoint
from .store import FuelRecordStore

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_deficiency(
    current: Optional[NotificationType], new: Optional[NotificationType]
) -> Optional[NotificationType]:
    if current is None or current is new:
        return new if current is None else current
    if new is None:
        return current
    return NotificationType.BOTH


def apply_allocation(record: FuelRecord, allocation: Allocation) -> None:
    """Replace a leg's planned liters, keeping liters attached from events."""

    leg_values: Dict[Checkpoint, Decimal] = {}
    for checkpoint in checkpoints_for(allocation.leg):
        value = allocation.checkpoints.get(checkpoint, ZERO) + record.event_liters.get(checkpoint, ZERO)
        if value != 0:
            leg_values[checkpoint] = value
    if allocation.leg is JourneyLeg.GOING:
        record.going_checkpoints = leg_values
    else:
        record.return_checkpoints = leg_values


class FuelLedger:
    def __init__(
        self,
        *,
        routes: RouteConfigStore | None = None,
        batches: TruckBatchStore | None = None,
        settings: EngineSettings | None = None,
        rules: AllocationRules | None = None,
        notifier: DeficiencyNotifier | None = None,
        store: FuelRecordStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or EngineSettings.from_env()
        self.config = AllocationConfig(
            routes=routes if routes is not None else RouteConfigStore(),
            batches=batches if batches is not None else TruckBatchStore(),
            rules=rules or AllocationRules(),
        )
        self.notifier = notifier if notifier is not None else DeficiencyNotifier()
        self.store = store if store is not None else FuelRecordStore()
        self.reconciler = ExternalEventReconciler(dispense_window_days=self.settings.dispense_window_days)
        self._clock = clock
        self._orphans: Dict[str, DeliveryOrder] = {}
        self._orphan_lock = Lock()

    # -- queries ----------------------------------------------------------

    def get(self, record_id: str) -> FuelRecord:
        return self.store.get(record_id)

    def all_records(self) -> List[FuelRecord]:
        return self.store.all()

    def records_for_truck(self, truck_no: str) -> List[FuelRecord]:
        return sorted(self._records_for(truck_no), key=lambda r: (r.date, r.id))

    def orphan_returns(self) -> List[DeliveryOrder]:
        with self._orphan_lock:
            waiting = list(self._orphans.values())
        return sorted(waiting, key=lambda order: (order.date, order.do_number))

    def pending_dispenses(self, truck_no: str | None = None) -> List[YardDispense]:
        return [copy.copy(d) for d in self.reconciler.pending_dispenses(truck_no)]

    def unattached_lpos(self, truck_no: str | None = None) -> List[LPOEntry]:
        return [copy.copy(lpo) for lpo in self.reconciler.unattached_lpos(truck_no)]

    def notifications(self) -> List[Notification]:
        return self.notifier.notifications

    def details(self, record_id: str) -> FuelRecordDetails:
        record = self.store.get(record_id)
        lpos = sorted(self.reconciler.lpos_for(record_id), key=lambda lpo: (lpo.date, lpo.lpo_no))
        dispenses = sorted(self.reconciler.dispenses_for(record_id), key=lambda d: (d.date, d.id))
        return FuelRecordDetails(
            record=record,
            lpos=[copy.copy(lpo) for lpo in lpos],
            dispenses=[copy.copy(d) for d in dispenses],
            allowance=balance.allowance(record),
            consumed=balance.consumed(record),
            lpo_liters=sum((lpo.liters for lpo in lpos), ZERO),
            lpo_cost=sum((lpo.amount for lpo in lpos), ZERO),
            yard_liters=sum((d.liters for d in dispenses), ZERO),
            actionable=not record.is_cancelled,
        )

    # -- trip orders ------------------------------------------------------

    def record_going_order(
        self,
        order: DeliveryOrder,
        *,
        total_liters: Decimal | str | int = ZERO,
        extra_liters: Decimal | str | int = ZERO,
        start: str | None = None,
        loading_point: str | None = None,
        statement: str | None = None,
    ) -> FuelRecord:
        """Create the fuel record skeleton for a going DO and allocate its going leg.

        ``total_liters`` and ``extra_liters`` are the caller's defaults and are
        kept as-is when the matching configuration is missing.
        """

        if order.leg is not JourneyLeg.GOING:
            raise ValueError(f"DO {order.do_number} is not a going order")
        default_total = parse_liters(total_liters)
        default_extra = parse_liters(extra_liters)
        truck_no = format_truck_no(order.truck_no)

        with self.store.truck_guard(truck_no):
            for existing in self._records_for(truck_no):
                if existing.going_do == order.do_number:
                    LOGGER.info("Going DO %s already has fuel record %s", order.do_number, existing.id)
                    return existing

            journey_start = normalize_place(start) or (
                "TANGA" if "TANGA" in normalize_place(order.origin) else self.settings.default_start
            )
            point = (loading_point or self.settings.default_loading_point).upper()
            allocation = allocate(
                JourneyLeg.GOING,
                order.destination,
                self.config,
                truck_no=truck_no,
                start=journey_start,
                loading_point=point,
            )
            record = FuelRecord(
                id=self.store.next_id(),
                date=order.date,
                month=order.date.strftime("%B %Y"),
                truck_no=truck_no,
                going_do=order.do_number,
                start=journey_start,
                loading_point=point,
                going_from=normalize_place(order.origin) or journey_start,
                going_to=normalize_place(order.destination),
                total_liters=allocation.total_liters if allocation.total_liters is not None else default_total,
                extra_liters=allocation.extra_liters if allocation.extra_liters is not None else default_extra,
                statement=statement,
                pending_config=allocation.deficiency,
            )
            apply_allocation(record, allocation)
            self.store.add(record)
            self.reconciler.index.add(record)
            LOGGER.info(
                "Fuel record %s created for %s going DO %s to %s",
                record.id,
                truck_no,
                order.do_number,
                record.going_to,
            )

            if allocation.deficiency is not None:
                self.notifier.notify_deficiency(
                    allocation.deficiency,
                    truck_no=truck_no,
                    destination=record.going_to,
                    fuel_record_id=record.id,
                    do_number=order.do_number,
                )

            self._retry_orphans(truck_no)
            self._retry_events(truck_no)
            return self.store.get(record.id)

    def record_return_order(self, order: DeliveryOrder, *, target_record_id: str | None = None) -> LinkResult:
        """Link a return DO to its going record, or hold it as an orphan.

        Raises :class:`LinkConflictError` when the DO would claim a record that
        is already linked; the DO is kept in the orphan queue in that case.
        """

        if order.leg is not JourneyLeg.RETURN:
            raise ValueError(f"DO {order.do_number} is not a return order")
        order = copy.copy(order)
        order.truck_no = format_truck_no(order.truck_no)

        with self.store.truck_guard(order.truck_no):
            target = self.store.get(target_record_id) if target_record_id else None
            result = self._link_locked(order, target=target)
            if result.linked:
                self._retry_events(order.truck_no)
                return LinkResult(
                    record=self.store.get(result.record.id),
                    already_linked=result.already_linked,
                )
            return result

    def cancel_return_order(self, do_number: str, *, truck_no: str) -> Optional[FuelRecord]:
        """Withdraw a return DO. Returns the unlinked record, or None for an orphan."""

        if self._release_orphan(do_number):
            LOGGER.info("Orphan return DO %s withdrawn", do_number)
            return None
        with self.store.truck_guard(truck_no):
            for record in self._records_for(truck_no):
                if record.return_do == do_number:
                    with self.store.transaction(record.id) as working:
                        unlink_return(working)
                    LOGGER.info("Return DO %s unlinked from %s", do_number, record.id)
                    return self.store.get(record.id)
        raise UnknownRecordError(f"No fuel record is linked to return DO {do_number}")

    def _link_locked(self, order: DeliveryOrder, *, target: FuelRecord | None = None) -> LinkResult:
        candidates = self._records_for(order.truck_no)
        try:
            result = link_return(candidates, order, target=target)
        except LinkConflictError:
            self._hold_orphan(order, "conflict with an already linked going record")
            raise

        if result.already_linked:
            return result
        if not result.linked:
            self._hold_orphan(order, result.failure.reason)
            return result

        with self.store.transaction(result.record.id) as working:
            apply_return(working, order)
            allocation = allocate(
                JourneyLeg.RETURN,
                order.origin,
                self.config,
                truck_no=working.truck_no,
                start=working.start,
                final_destination=order.destination,
                allowance=working.total_liters,
            )
            apply_allocation(working, allocation)
            if allocation.additional_liters > 0:
                LOGGER.info(
                    "Return from %s needs %sL more than the going allowance of %s",
                    allocation.anchor,
                    allocation.additional_liters,
                    working.id,
                )
                working.total_liters += allocation.additional_liters
            working.pending_config = merge_deficiency(working.pending_config, allocation.deficiency)
            linked = working

        if allocation.deficiency is not None:
            self.notifier.notify_deficiency(
                allocation.deficiency,
                truck_no=order.truck_no,
                destination=allocation.anchor,
                fuel_record_id=linked.id,
                do_number=order.do_number,
            )
        self._release_orphan(order.do_number)
        LOGGER.info("Return DO %s linked to %s", order.do_number, linked.id)
        return LinkResult(record=linked)

    def _hold_orphan(self, order: DeliveryOrder, reason: str) -> None:
        with self._orphan_lock:
            self._orphans[order.do_number] = order
        self.notifier.notify_orphan_return(order, reason)

    def _release_orphan(self, do_number: str) -> bool:
        with self._orphan_lock:
            released = self._orphans.pop(do_number, None) is not None
        if released:
            self.notifier.resolve_orphan(do_number)
        return released

    def _still_orphaned(self, do_number: str) -> bool:
        with self._orphan_lock:
            return do_number in self._orphans

    def _retry_orphans(self, truck_no: str) -> None:
        key = normalize_truck_no(truck_no)
        waiting = [o for o in self.orphan_returns() if normalize_truck_no(o.truck_no) == key]
        for order in waiting:
            latest = max(self._records_for(truck_no), key=lambda r: r.date)
            if order.date < latest.date or not self._still_orphaned(order.do_number):
                continue
            try:
                self._link_locked(order)
            except LinkConflictError as exc:
                LOGGER.info("Orphan return DO %s still blocked: %s", order.do_number, exc)

    # -- LPO and yard events ----------------------------------------------

    def record_lpo(self, lpo: LPOEntry) -> LPOEntry:
        lpo = copy.copy(lpo)
        lpo.liters = parse_liters(lpo.liters)
        lpo.price_per_liter = parse_liters(lpo.price_per_liter)
        lpo.truck_no = format_truck_no(lpo.truck_no)
        self.reconciler.register_lpo(lpo)

        with self.store.truck_guard(lpo.truck_no):
            self._attach_lpo_locked(lpo)
        return copy.copy(lpo)

    def record_yard_dispense(self, dispense: YardDispense) -> YardDispense:
        dispense = copy.copy(dispense)
        dispense.liters = parse_liters(dispense.liters)
        dispense.truck_no = format_truck_no(dispense.truck_no)
        dispense.timestamp = dispense.timestamp or self._clock()
        dispense.status = DispenseStatus.PENDING
        self.reconciler.register_dispense(dispense)

        with self.store.truck_guard(dispense.truck_no):
            if not self._attach_dispense_locked(dispense):
                self.notifier.notify_pending_dispense(dispense)
        return copy.copy(dispense)

    def link_dispense(self, dispense_id: str, record_id: str) -> YardDispense:
        """Manually link a pending yard dispense to a chosen fuel record."""

        dispense = self._dispense(dispense_id)
        with self.store.truck_guard(dispense.truck_no):
            _require_pending(dispense)
            record = self.store.get(record_id)
            if normalize_truck_no(record.truck_no) != normalize_truck_no(dispense.truck_no):
                raise EventStateError(f"Yard dispense {dispense_id} is for {dispense.truck_no}, not {record.truck_no}")
            leg = leg_for_date(record, dispense.date)
            checkpoint = yard_checkpoint(dispense.yard, leg)
            if checkpoint is None:
                raise EventStateError(f"Yard {dispense.yard} has no checkpoint on the {leg.value} leg")
            with self.store.transaction(record_id) as working:
                self.reconciler.attach_dispense(
                    working, dispense, EventMatch(record_id, checkpoint.leg, checkpoint), auto=False
                )
        self.notifier.resolve_dispense(dispense_id)
        return copy.copy(dispense)

    def reject_dispense(self, dispense_id: str, *, reason: str, actor: str) -> YardDispense:
        dispense = self._dispense(dispense_id)
        with self.store.truck_guard(dispense.truck_no):
            _require_pending(dispense)
            dispense.status = DispenseStatus.REJECTED
            dispense.rejection_reason = reason
            dispense.rejected_by = actor
        self.notifier.resolve_dispense(dispense_id)
        self.notifier.notify_rejected_dispense(dispense)
        LOGGER.info("Yard dispense %s rejected by %s", dispense_id, actor)
        return copy.copy(dispense)

    def _dispense(self, dispense_id: str) -> YardDispense:
        dispense = self.reconciler.dispense(dispense_id)
        if dispense is None:
            raise UnknownRecordError(f"Unknown yard dispense: {dispense_id}")
        return dispense

    def _attach_lpo_locked(self, lpo: LPOEntry) -> bool:
        if lpo.is_linked:
            return True
        match =self.reconciler.match_lpo(lpo, self._records_for(lpo.truck_no))
        if not isinstance(match, EventMatch):
            LOGGER.warning("LPO %s for %s not attached: %s", lpo.lpo_no, lpo.truck_no, match.reason)
            return False
        with self.store.transaction(match.record_id) as working:
            self.reconciler.attach_lpo(working, lpo, match)
        return True

    def _attach_dispense_locked(self, dispense: YardDispense) -> bool:
        # another trigger for the same truck may have settled it first
        if dispense.status is not DispenseStatus.PENDING:
            return dispense.status is DispenseStatus.LINKED
        match =self.reconciler.match_dispense(dispense, self._records_for(dispense.truck_no))
        if not isinstance(match, EventMatch):
            LOGGER.warning(
                "Yard dispense %s for %s left pending: %s", dispense.id, dispense.truck_no, match.reason
            )
            return False
        with self.store.transaction(match.record_id) as working:
            self.reconciler.attach_dispense(working, dispense, match)
        self.notifier.resolve_dispense(dispense.id)
        return True

    def _retry_events(self, truck_no: str) -> None:
        for lpo in self.reconciler.unattached_lpos(truck_no):
            self._attach_lpo_locked(lpo)
        for dispense in self.reconciler.pending_dispenses(truck_no):
            self._attach_dispense_locked(dispense)

    # -- corrections ------------------------------------------------------

    def cancel_record(self, record_id: str, *, reason: str, actor: str) -> FuelRecord:
        record = self.store.get(record_id)
        with self.store.truck_guard(record.truck_no):
            with self.store.transaction(record_id) as working:
                working.is_cancelled = True
                working.cancellation_reason = reason
                working.cancelled_by = actor
                working.cancelled_at = self._clock()
        LOGGER.info("Fuel record %s cancelled by %s: %s", record_id, actor, reason)
        return self.store.get(record_id)

    def update_allowance(
        self,
        record_id: str,
        *,
        total_liters: Decimal | str | int | None = None,
        extra_liters: Decimal | str | int | None = None,
        actor: str = "system",
    ) -> FuelRecord:
        """Enter the allowance by hand where configuration was missing."""

        total = parse_liters(total_liters) if total_liters is not None else None
        extra = parse_liters(extra_liters) if extra_liters is not None else None
        record = self.store.get(record_id)
        with self.store.truck_guard(record.truck_no):
            with self.store.transaction(record_id) as working:
                if total is not None:
                    working.total_liters = total
                if extra is not None:
                    working.extra_liters = extra
                working.pending_config = _remaining_deficiency(working.pending_config, total, extra)
                updated = working
        if updated.pending_config is None:
            self.notifier.resolve_for_record(updated)
        LOGGER.info("Allowance of %s set by %s to %s + %s", record_id, actor, updated.total_liters, updated.extra_liters)
        return self.store.get(record_id)

    def amend_checkpoint(self, record_id: str, checkpoint: Checkpoint, liters: Decimal | str | int) -> FuelRecord:
        """Overwrite one checkpoint with a manually confirmed quantity."""

        consumed = parse_liters(liters)
        record = self.store.get(record_id)
        with self.store.truck_guard(record.truck_no):
            with self.store.transaction(record_id) as working:
                working.set_checkpoint(checkpoint, -consumed)
        return self.store.get(record_id)

    def reallocate(self, record_id: str, leg: JourneyLeg) -> FuelRecord:
        """Re-run allocation for one leg against the current configuration."""

        record = self.store.get(record_id)
        with self.store.truck_guard(record.truck_no):
            with self.store.transaction(record_id) as working:
                if leg is JourneyLeg.GOING:
                    allocation = self._allocate_going_leg(working)
                    if allocation.total_liters is not None:
                        working.total_liters = allocation.total_liters
                    if allocation.extra_liters is not None:
                        working.extra_liters = allocation.extra_liters
                    other = self._allocate_return_leg(working) if working.return_do else None
                else:
                    if working.return_do is None:
                        raise ValueError(f"Fuel record {record_id} has no return DO to allocate")
                    allocation = self._allocate_return_leg(working)
                    other = self._allocate_going_leg(working)
                apply_allocation(working, allocation)
                # the flag reflects whatever is still missing across both legs
                working.pending_config = merge_deficiency(
                    allocation.deficiency, other.deficiency if other is not None else None
                )
                updated = working
        if updated.pending_config is None:
            self.notifier.resolve_for_record(updated)
        if allocation.deficiency is not None:
            self.notifier.notify_deficiency(
                allocation.deficiency,
                truck_no=record.truck_no,
                destination=allocation.anchor,
                fuel_record_id=record_id,
            )
        return self.store.get(record_id)

    def _allocate_going_leg(self, record: FuelRecord) -> Allocation:
        return allocate(
            JourneyLeg.GOING,
            record.going_to,
            self.config,
            truck_no=record.truck_no,
            start=record.start,
            loading_point=record.loading_point,
        )

    def _allocate_return_leg(self, record: FuelRecord) -> Allocation:
        return allocate(
            JourneyLeg.RETURN,
            record.return_from or "",
            self.config,
            truck_no=record.truck_no,
            start=record.start,
            final_destination=record.return_to,
        )

    def _records_for(self, truck_no: str) -> List[FuelRecord]:
        return [self.store.get(record_id) for record_id in self.reconciler.index.candidates(truck_no)]

    def replay(self, events: Iterable[object]) -> None:
        """Feed a mixed, already ordered stream of orders, LPOs and yard entries."""

        for event in events:
            if isinstance(event, DeliveryOrder):
                if event.leg is JourneyLeg.GOING:
                    self.record_going_order(event)
                else:
                    try:
                        self.record_return_order(event)
                    except LinkConflictError as exc:
                        LOGGER.warning("Return DO %s held: %s", event.do_number, exc)
            elif isinstance(event, LPOEntry):
                self.record_lpo(event)
            elif isinstance(event, YardDispense):
                self.record_yard_dispense(event)
            else:
                raise TypeError(f"Unsupported event: {event!r}")


def _require_pending(dispense: YardDispense) -> None:
    if dispense.status is not DispenseStatus.PENDING:
        raise EventStateError(f"Yard dispense {dispense.id} is {dispense.status.value}, not pending")


def _remaining_deficiency(
    current: Optional[NotificationType], total: Optional[Decimal], extra: Optional[Decimal]
) -> Optional[NotificationType]:
    missing_total = current in (NotificationType.MISSING_TOTAL_LITERS, NotificationType.BOTH) and total is None
    missing_extra = current in (NotificationType.MISSING_EXTRA_FUEL, NotificationType.BOTH) and extra is None
    if missing_total and missing_extra:
        return NotificationType.BOTH
    if missing_total:
        return NotificationType.MISSING_TOTAL_LITERS
    if missing_extra:
        return NotificationType.MISSING_EXTRA_FUEL
    return None
