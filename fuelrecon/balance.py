"""Balance calculation for fuel records."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from .models import ZERO, Checkpoint, FuelRecord


class BalanceStatus(str, Enum):
    BALANCED = "balanced"
    UNDER_CONSUMED = "under_consumed"
    OVER_CONSUMED = "over_consumed"


@dataclass(frozen=True, slots=True)
class BalanceAssessment:
    balance: Decimal
    status: BalanceStatus
    actionable: bool

    @property
    def needs_review(self) -> bool:
        return self.actionable and self.status is BalanceStatus.OVER_CONSUMED


def allowance(record: FuelRecord) -> Decimal:
    return (record.total_liters or ZERO) + (record.extra_liters or ZERO)


def consumed(record: FuelRecord) -> Decimal:
    return sum((abs(value) for _, value in record.iter_checkpoints()), ZERO)


def compute_balance(record: FuelRecord) -> Decimal:
    """``total + extra - sum(|checkpoint|)`` over both legs."""

    return allowance(record) - consumed(record)


def refresh_balance(record: FuelRecord) -> Decimal:
    record.balance = compute_balance(record)
    return record.balance


def classify(balance: Decimal) -> BalanceStatus:
    if balance < 0:
        return BalanceStatus.OVER_CONSUMED
    if balance > 0:
        return BalanceStatus.UNDER_CONSUMED
    return BalanceStatus.BALANCED


def assess(record: FuelRecord) -> BalanceAssessment:
    # A cancelled record keeps its stored balance but is historical only.
    return BalanceAssessment(
        balance=record.balance,
        status=classify(record.balance),
        actionable=not record.is_cancelled,
    )


def is_journey_complete(record: FuelRecord) -> bool:
    """A trip is complete once its last return checkpoint has been recorded."""

    if record.return_do is None:
        return False
    destination = (record.return_to or record.start or "").upper()
    if "MSA" in destination or "MOMBASA" in destination:
        last = Checkpoint.TANGA_RETURN
    else:
        last = Checkpoint.MBEYA_RETURN
    return record.checkpoint_value(last) != 0
