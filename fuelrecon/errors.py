"""Exceptions surfaced to callers of the reconciliation engine."""
from __future__ import annotations


class FuelReconError(Exception):
    """Base class for hard failures raised by the engine."""


class NormalizationError(FuelReconError, ValueError):
    """Raised when an input value cannot be normalised."""


class LinkConflictError(FuelReconError):
    """Raised when a return DO would claim a going record that is already linked."""

    def __init__(self, message: str, *, do_number: str, fuel_record_id: str | None = None) -> None:
        super().__init__(message)
        self.do_number = do_number
        self.fuel_record_id = fuel_record_id


class UnknownRecordError(FuelReconError, KeyError):
    """Raised when a fuel record, LPO or yard dispense id is not known."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class EventStateError(FuelReconError):
    """Raised when a yard dispense is linked or rejected from the wrong state."""
