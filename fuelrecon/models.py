"""Data models used by the fuel reconciliation engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

ZERO = Decimal("0.00")


class JourneyLeg(str, Enum):
    GOING = "going"
    RETURN = "return"


class Checkpoint(str, Enum):
    """Named points where fuel leaves a trip allowance."""

    MMSA_YARD = "mmsa_yard"
    TANGA_YARD = "tanga_yard"
    DAR_YARD = "dar_yard"
    DAR_GOING = "dar_going"
    MORO_GOING = "moro_going"
    MBEYA_GOING = "mbeya_going"
    TDM_GOING = "tdm_going"
    ZAMBIA_GOING = "zambia_going"
    CONGO_FUEL = "congo_fuel"
    ZAMBIA_RETURN = "zambia_return"
    TUNDUMA_RETURN = "tunduma_return"
    MBEYA_RETURN = "mbeya_return"
    MORO_RETURN = "moro_return"
    DAR_RETURN = "dar_return"
    TANGA_RETURN = "tanga_return"

    @property
    def leg(self) -> JourneyLeg:
        return JourneyLeg.GOING if self in GOING_CHECKPOINTS else JourneyLeg.RETURN


GOING_CHECKPOINTS: Tuple[Checkpoint, ...] = (
    Checkpoint.MMSA_YARD,
    Checkpoint.TANGA_YARD,
    Checkpoint.DAR_YARD,
    Checkpoint.DAR_GOING,
    Checkpoint.MORO_GOING,
    Checkpoint.MBEYA_GOING,
    Checkpoint.TDM_GOING,
    Checkpoint.ZAMBIA_GOING,
    Checkpoint.CONGO_FUEL,
)

RETURN_CHECKPOINTS: Tuple[Checkpoint, ...] = (
    Checkpoint.ZAMBIA_RETURN,
    Checkpoint.TUNDUMA_RETURN,
    Checkpoint.MBEYA_RETURN,
    Checkpoint.MORO_RETURN,
    Checkpoint.DAR_RETURN,
    Checkpoint.TANGA_RETURN,
)


def checkpoints_for(leg: JourneyLeg) -> Tuple[Checkpoint, ...]:
    if leg is JourneyLeg.GOING:
        return GOING_CHECKPOINTS
    return RETURN_CHECKPOINTS


class Direction(str, Enum):
    IMPORT = "IMPORT"
    EXPORT = "EXPORT"

    @property
    def leg(self) -> JourneyLeg:
        return JourneyLeg.GOING if self is Direction.IMPORT else JourneyLeg.RETURN


class LPOJourneyType(str, Enum):
    GOING = "going"
    RETURN = "return"
    CASH = "cash"
    DRIVER_ACCOUNT = "driver_account"

    @property
    def is_unlinked_to_do(self) -> bool:
        return self in (LPOJourneyType.CASH, LPOJourneyType.DRIVER_ACCOUNT)


class DispenseStatus(str, Enum):
    PENDING = "pending"
    LINKED = "linked"
    REJECTED = "rejected"


class NotificationType(str, Enum):
    MISSING_TOTAL_LITERS = "missing_total_liters"
    MISSING_EXTRA_FUEL = "missing_extra_fuel"
    BOTH = "both"
    UNLINKED_EXPORT_DO = "unlinked_export_do"
    TRUCK_PENDING_LINKING = "truck_pending_linking"
    TRUCK_ENTRY_REJECTED = "truck_entry_rejected"

    @property
    def is_deficiency(self) -> bool:
        return self in (
            NotificationType.MISSING_TOTAL_LITERS,
            NotificationType.MISSING_EXTRA_FUEL,
            NotificationType.BOTH,
        )


NIL_DO = "NIL"


@dataclass(slots=True)
class DeliveryOrder:
    do_number: str
    date: date
    direction: Direction
    truck_no: str
    origin: str
    destination: str
    client: str = ""
    do_type: str = "DO"

    @property
    def leg(self) -> JourneyLeg:
        return self.direction.leg


@dataclass(slots=True)
class RouteConfig:
    route_name: str
    destination: str
    total_liters: Decimal
    origin: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    is_active: bool = True


@dataclass(slots=True)
class DestinationRule:
    destination: str
    extra_liters: Decimal


@dataclass(slots=True)
class TruckBatchConfig:
    truck_suffix: str
    extra_liters: Decimal
    destination_rules: Tuple[DestinationRule, ...] = ()


@dataclass(slots=True)
class LPOEntry:
    lpo_no: str
    date: date
    station: str
    truck_no: str
    do_number: str
    liters: Decimal
    price_per_liter: Decimal
    journey_type: LPOJourneyType
    id: str = ""
    fuel_record_id: Optional[str] = None
    leg: Optional[JourneyLeg] = None
    checkpoint: Optional[Checkpoint] = None

    @property
    def amount(self) -> Decimal:
        return self.liters * self.price_per_liter

    @property
    def is_linked(self) -> bool:
        return self.fuel_record_id is not None


@dataclass(slots=True)
class YardDispense:
    id: str
    date: date
    truck_no: str
    yard: str
    liters: Decimal
    entered_by: str
    timestamp: Optional[datetime] = None
    status: DispenseStatus = DispenseStatus.PENDING
    fuel_record_id: Optional[str] = None
    leg: Optional[JourneyLeg] = None
    checkpoint: Optional[Checkpoint] = None
    auto_linked: bool = False
    rejection_reason: Optional[str] = None
    rejected_by: Optional[str] = None


@dataclass(slots=True)
class FuelRecord:
    """One truck round trip: the aggregation root for allocations and events."""

    id: str
    date: date
    truck_no: str
    going_do: str
    start: str
    going_from: str
    going_to: str
    total_liters: Decimal = ZERO
    extra_liters: Decimal = ZERO
    month: str = ""
    loading_point: str = "DAR_YARD"
    return_do: Optional[str] = None
    return_date: Optional[date] = None
    return_from: Optional[str] = None
    return_to: Optional[str] = None
    going_checkpoints: Dict[Checkpoint, Decimal] = field(default_factory=dict)
    return_checkpoints: Dict[Checkpoint, Decimal] = field(default_factory=dict)
    event_liters: Dict[Checkpoint, Decimal] = field(default_factory=dict)
    balance: Decimal = ZERO
    statement: Optional[str] = None
    has_destination_changed: bool = False
    pending_config: Optional[NotificationType] = None
    is_cancelled: bool = False
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    lpo_refs: List[str] = field(default_factory=list)
    dispense_refs: List[str] = field(default_factory=list)

    @property
    def is_in_progress(self) -> bool:
        return self.return_do is None

    def checkpoints(self, leg: JourneyLeg) -> Dict[Checkpoint, Decimal]:
        if leg is JourneyLeg.GOING:
            return self.going_checkpoints
        return self.return_checkpoints

    def checkpoint_value(self, checkpoint: Checkpoint) -> Decimal:
        return self.checkpoints(checkpoint.leg).get(checkpoint, ZERO)

    def set_checkpoint(self, checkpoint: Checkpoint, value: Decimal) -> None:
        self.checkpoints(checkpoint.leg)[checkpoint] = value

    def iter_checkpoints(self) -> Iterator[Tuple[Checkpoint, Decimal]]:
        for checkpoint in GOING_CHECKPOINTS:
            yield checkpoint, self.going_checkpoints.get(checkpoint, ZERO)
        for checkpoint in RETURN_CHECKPOINTS:
            yield checkpoint, self.return_checkpoints.get(checkpoint, ZERO)

    def as_dict(self) -> dict[str, str]:
        row = {
            "id": self.id,
            "date": self.date.isoformat(),
            "month": self.month,
            "truck_no": self.truck_no,
            "going_do": self.going_do,
            "return_do": self.return_do or "",
            "start": self.start,
            "going_from": self.going_from,
            "going_to": self.going_to,
            "return_from": self.return_from or "",
            "return_to": self.return_to or "",
            "total_liters": f"{self.total_liters:.2f}",
            "extra_liters": f"{self.extra_liters:.2f}",
        }
        for checkpoint, value in self.iter_checkpoints():
            row[checkpoint.value] = f"{value:.2f}"
        row.update(
            {
                "balance": f"{self.balance:.2f}",
                "destination_changed": "Yes" if self.has_destination_changed else "No",
                "pending_config": self.pending_config.value if self.pending_config else "",
                "cancelled": "Yes" if self.is_cancelled else "No",
                "statement": self.statement or "",
            }
        )
        return row

    def as_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "month": self.month,
            "truck_no": self.truck_no,
            "going_do": self.going_do,
            "return_do": self.return_do,
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "start": self.start,
            "loading_point": self.loading_point,
            "going": {"from": self.going_from, "to": self.going_to},
            "return": {"from": self.return_from, "to": self.return_to},
            "total_liters": float(self.total_liters),
            "extra_liters": float(self.extra_liters),
            "going_checkpoints": {cp.value: float(v) for cp, v in self.going_checkpoints.items()},
            "return_checkpoints": {cp.value: float(v) for cp, v in self.return_checkpoints.items()},
            "balance": float(self.balance),
            "has_destination_changed": self.has_destination_changed,
            "pending_config": self.pending_config.value if self.pending_config else None,
            "is_cancelled": self.is_cancelled,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "statement": self.statement,
            "lpo_refs": list(self.lpo_refs),
            "dispense_refs": list(self.dispense_refs),
        }


@dataclass(slots=True)
class Notification:
    id: str
    type: NotificationType
    title: str
    message: str
    truck_no: str
    fuel_record_id: Optional[str] = None
    do_number: Optional[str] = None
    destination: Optional[str] = None
    truck_suffix: Optional[str] = None
    missing_fields: Tuple[str, ...] = ()
    yard_dispense_id: Optional[str] = None
    status: str = "pending"

    def as_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "status": self.status,
            "metadata": {
                "truck_no": self.truck_no,
                "fuel_record_id": self.fuel_record_id,
                "do_number": self.do_number,
                "destination": self.destination,
                "truck_suffix": self.truck_suffix,
                "missing_fields": list(self.missing_fields),
                "yard_dispense_id": self.yard_dispense_id,
            },
        }


@dataclass(slots=True)
class ReviewAnnotation:
    """Structured response produced by the LLM annotator."""

    explanation: str
    severity: str
    actions: Tuple[str, ...] = ()
    confidence: Optional[float] = None
    needs_escalation: bool = False
    source: str = "openai"
    raw_response: Dict[str, object] | None = None


@dataclass(slots=True)
class ReviewItem:
    record: FuelRecord
    reason_code: str
    explanation: str
    severity: str
    actionable: bool = True
    actions: Tuple[str, ...] = ()
    confidence: Optional[float] = None
    needs_escalation: bool = False
    llm_source: str = "openai"
    raw_annotation: Dict[str, object] | None = None

    def as_dict(self) -> dict[str, str]:
        return {
            "fuel_record_id": self.record.id,
            "truck_no": self.record.truck_no,
            "going_do": self.record.going_do,
            "return_do": self.record.return_do or "",
            "balance": f"{self.record.balance:.2f}",
            "reason_code": self.reason_code,
            "severity": self.severity,
            "actionable": "Yes" if self.actionable else "No",
            "explanation": self.explanation,
            "actions": "; ".join(self.actions),
            "confidence": f"{self.confidence:.0%}" if self.confidence is not None else "",
            "needs_escalation": "Yes" if self.needs_escalation else "No",
            "llm_source": self.llm_source,
        }

    def as_json(self) -> dict[str, object]:
        return {
            "fuel_record_id": self.record.id,
            "truck_no": self.record.truck_no,
            "going_do": self.record.going_do,
            "return_do": self.record.return_do,
            "balance": float(self.record.balance),
            "reason_code": self.reason_code,
            "severity": self.severity,
            "actionable": self.actionable,
            "explanation": self.explanation,
            "actions": list(self.actions),
            "confidence": self.confidence,
            "needs_escalation": self.needs_escalation,
            "llm_source": self.llm_source,
            "llm_payload": self.raw_annotation,
        }


@dataclass(slots=True)
class FuelRecordDetails:
    """Read view of one record with its attached events and summary totals."""

    record: FuelRecord
    lpos: List[LPOEntry]
    dispenses: List[YardDispense]
    allowance: Decimal
    consumed: Decimal
    lpo_liters: Decimal
    lpo_cost: Decimal
    yard_liters: Decimal
    actionable: bool

    def as_json(self) -> dict[str, object]:
        return {
            "record": self.record.as_json(),
            "lpos": [
                {
                    "lpo_no": lpo.lpo_no,
                    "date": lpo.date.isoformat(),
                    "station": lpo.station,
                    "do_number": lpo.do_number,
                    "liters": float(lpo.liters),
                    "price_per_liter": float(lpo.price_per_liter),
                    "journey_type": lpo.journey_type.value,
                    "leg": lpo.leg.value if lpo.leg else None,
                    "checkpoint": lpo.checkpoint.value if lpo.checkpoint else None,
                }
                for lpo in self.lpos
            ],
            "yard_dispenses": [
                {
                    "id": dispense.id,
                    "date": dispense.date.isoformat(),
                    "yard": dispense.yard,
                    "liters": float(dispense.liters),
                    "entered_by": dispense.entered_by,
                    "status": dispense.status.value,
                    "leg": dispense.leg.value if dispense.leg else None,
                    "checkpoint": dispense.checkpoint.value if dispense.checkpoint else None,
                }
                for dispense in self.dispenses
            ],
            "summary": {
                "allowance": float(self.allowance),
                "consumed": float(self.consumed),
                "balance": float(self.record.balance),
                "lpo_liters": float(self.lpo_liters),
                "lpo_cost": float(self.lpo_cost),
                "yard_liters": float(self.yard_liters),
                "actionable": self.actionable,
            },
        }
