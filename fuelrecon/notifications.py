"""Advisory notifications for configuration gaps and unmatched events."""
from __future__ import annotations

import logging
from enum import Enum
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from .models import DeliveryOrder, FuelRecord, Notification, NotificationType, YardDispense
from .normalization import normalize_place, normalize_truck_no, truck_suffix

LOGGER = logging.getLogger(__name__)

Sink = Callable[[Notification], None]

_DEFICIENCY_TITLES = {
    NotificationType.MISSING_TOTAL_LITERS: "Route allowance not configured",
    NotificationType.MISSING_EXTRA_FUEL: "Truck batch not configured",
    NotificationType.BOTH: "Route and truck batch not configured",
}


class Audience(str, Enum):
    OPERATOR = "operator"
    ADMIN = "admin"


class DeficiencyNotifier:
    """Emits one advisory per missing-configuration combination.

    The dedupe key is ``(truck, destination)`` for a missing route,
    ``(truck, suffix)`` for a missing batch, and both for ``both``. Emitting
    never raises into the caller's workflow; a failing sink is logged.
    """

    def __init__(self, sink: Sink | None = None) -> None:
        self._sink = sink
        self._lock = Lock()
        self._seen: Dict[Tuple[str, ...], Notification] = {}
        self._notifications: List[Notification] = []
        self._counter = 0

    @property
    def notifications(self) -> List[Notification]:
        with self._lock:
            return list(self._notifications)

    def pending(self) -> List[Notification]:
        return [n for n in self.notifications if n.status == "pending"]

    def _next_id(self) -> str:
        self._counter += 1
        return f"NTF-{self._counter:05d}"

    def _publish(self, key: Tuple[str, ...] | None, build: Callable[[str], Notification]) -> Optional[Notification]:
        with self._lock:
            if key is not None and key in self._seen:
                return None
            notification = build(self._next_id())
            if key is not None:
                self._seen[key] = notification
            self._notifications.append(notification)

        LOGGER.warning("%s: %s", notification.type.value, notification.message)
        if self._sink is not None:
            try:
                self._sink(notification)
            except Exception as exc:  # pragma: no cover - sink is an external collaborator
                LOGGER.error("Notification sink failed for %s: %s", notification.id, exc)
        return notification

    def notify_deficiency(
        self,
        kind: NotificationType,
        *,
        truck_no: str,
        destination: str,
        fuel_record_id: str | None = None,
        do_number: str | None = None,
    ) -> Optional[Notification]:
        if not kind.is_deficiency:
            raise ValueError(f"{kind.value} is not a configuration deficiency")

        truck = normalize_truck_no(truck_no)
        dest = normalize_place(destination)
        suffix = truck_suffix(truck_no)
        if kind is NotificationType.MISSING_TOTAL_LITERS:
            key: Tuple[str, ...] = (kind.value, truck, dest)
            missing: Tuple[str, ...] = ("total_liters",)
        elif kind is NotificationType.MISSING_EXTRA_FUEL:
            key = (kind.value, truck, suffix)
            missing = ("extra_liters",)
        else:
            key = (kind.value, truck, dest, suffix)
            missing = ("total_liters", "extra_liters")

        def build(notification_id: str) -> Notification:
            return Notification(
                id=notification_id,
                type=kind,
                title=_DEFICIENCY_TITLES[kind],
                message=render_deficiency(kind, truck_no=truck_no, destination=dest, suffix=suffix),
                truck_no=truck_no,
                fuel_record_id=fuel_record_id,
                do_number=do_number,
                destination=dest,
                truck_suffix=suffix,
                missing_fields=missing,
            )

        return self._publish(key, build)

    def notify_orphan_return(self, order: DeliveryOrder, reason: str) -> Optional[Notification]:
        key = (NotificationType.UNLINKED_EXPORT_DO.value, normalize_truck_no(order.truck_no), order.do_number)

        def build(notification_id: str) -> Notification:
            return Notification(
                id=notification_id,
                type=NotificationType.UNLINKED_EXPORT_DO,
                title="Return DO not linked",
                message=(
                    f"Return DO {order.do_number} for {order.truck_no} could not be linked "
                    f"to a going fuel record ({reason})."
                ),
                truck_no=order.truck_no,
                do_number=order.do_number,
                destination=order.destination,
            )

        return self._publish(key, build)

    def notify_pending_dispense(self, dispense: YardDispense) -> Optional[Notification]:
        key = (NotificationType.TRUCK_PENDING_LINKING.value, dispense.id)

        def build(notification_id: str) -> Notification:
            return Notification(
                id=notification_id,
                type=NotificationType.TRUCK_PENDING_LINKING,
                title="Yard fuel waiting for a fuel record",
                message=(
                    f"{dispense.liters}L dispensed to {dispense.truck_no} at {dispense.yard} "
                    f"on {dispense.date.isoformat()} has no matching fuel record."
                ),
                truck_no=dispense.truck_no,
                yard_dispense_id=dispense.id,
            )

        return self._publish(key, build)

    def notify_rejected_dispense(self, dispense: YardDispense) -> Optional[Notification]:
        def build(notification_id: str) -> Notification:
            return Notification(
                id=notification_id,
                type=NotificationType.TRUCK_ENTRY_REJECTED,
                title="Yard fuel entry rejected",
                message=(
                    f"Entry {dispense.id} for {dispense.truck_no} at {dispense.yard} was rejected "
                    f"by {dispense.rejected_by}: {dispense.rejection_reason}"
                ),
                truck_no=dispense.truck_no,
                yard_dispense_id=dispense.id,
            )

        return self._publish(None, build)

    def resolve(self, predicate: Callable[[Notification], bool]) -> int:
        resolved = 0
        with self._lock:
            for notification in self._notifications:
                if notification.status == "pending" and predicate(notification):
                    notification.status = "resolved"
                    resolved += 1
        return resolved

    def resolve_for_record(self, record: FuelRecord) -> int:
        return self.resolve(
            lambda n: n.type.is_deficiency and n.fuel_record_id == record.id
        )

    def resolve_orphan(self, do_number: str) -> int:
        return self.resolve(
            lambda n: n.type is NotificationType.UNLINKED_EXPORT_DO and n.do_number == do_number
        )

    def resolve_dispense(self, dispense_id: str) -> int:
        return self.resolve(
            lambda n: n.type is NotificationType.TRUCK_PENDING_LINKING and n.yard_dispense_id == dispense_id
        )


def render_deficiency(
    kind: NotificationType,
    *,
    truck_no: str,
    destination: str,
    suffix: str,
    audience: Audience = Audience.OPERATOR,
) -> str:
    if kind is NotificationType.MISSING_TOTAL_LITERS:
        gap = f"no route allowance for destination {destination}"
        fix = f"configure the route {destination}"
    elif kind is NotificationType.MISSING_EXTRA_FUEL:
        gap = f"no extra-fuel batch for truck suffix {suffix.upper()}"
        fix = f"add suffix {suffix.upper()} to a truck batch"
    else:
        gap = f"no route allowance for {destination} and no batch for suffix {suffix.upper()}"
        fix = f"configure the route {destination} and the batch for {suffix.upper()}"

    if audience is Audience.ADMIN:
        return f"Fuel record for {truck_no} has {gap}. Please {fix}."
    return f"Fuel record for {truck_no} has {gap}. Contact an admin or edit the record manually."


def render_for(notification: Notification, audience: Audience) -> str:
    """Role-aware phrasing of a deficiency; other notifications render as stored."""

    if not notification.type.is_deficiency:
        return notification.message
    return render_deficiency(
        notification.type,
        truck_no=notification.truck_no,
        destination=notification.destination or "",
        suffix=notification.truck_suffix or "",
        audience=audience,
    )
