"""Configuration lookups: route allowances, truck batch extras and engine settings."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .models import RouteConfig, TruckBatchConfig
from .normalization import normalize_place, truck_suffix

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings for the ledger service."""

    dispense_window_days: int
    default_start: str
    default_loading_point: str

    @classmethod
    def from_env(cls) -> "EngineSettings":
        window = int(os.getenv("FUELRECON_DISPENSE_WINDOW_DAYS", "60"))
        start = os.getenv("FUELRECON_DEFAULT_START", "DAR").strip().upper()
        loading_point = os.getenv("FUELRECON_DEFAULT_LOADING_POINT", "DAR_YARD").strip().upper()
        return cls(dispense_window_days=window, default_start=start, default_loading_point=loading_point)


@dataclass(frozen=True)
class RouteMatch:
    route: RouteConfig
    match_type: str

    @property
    def total_liters(self) -> Decimal:
        return self.route.total_liters


@dataclass(frozen=True)
class BatchMatch:
    truck_suffix: str
    extra_liters: Decimal
    destination_override: bool = False


class RouteConfigStore:
    """Read-only view over admin-maintained route allowances.

    Lookups try, in order: origin and destination together, the destination
    or one of its aliases, then a configured destination contained in the
    requested name ("KOLWEZI MINE" resolves to "KOLWEZI"). Anything else is a
    miss; no default allowance is ever guessed.
    """

    def __init__(self, routes: Iterable[RouteConfig] = ()) -> None:
        self._routes: List[RouteConfig] = [route for route in routes if route.is_active]

    def __len__(self) -> int:
        return len(self._routes)

    def lookup(self, destination: str, origin: str | None = None) -> Optional[RouteMatch]:
        dest = normalize_place(destination)
        if not dest:
            return None
        orig = normalize_place(origin)

        if orig:
            for route in self._routes:
                if route.origin and normalize_place(route.origin) == orig and self._names(route, dest):
                    return RouteMatch(route, "exact")

        for route in self._routes:
            if self._names(route, dest):
                return RouteMatch(route, "exact" if not orig else "partial")

        for route in self._routes:
            if normalize_place(route.destination) in dest:
                return RouteMatch(route, "partial")

        LOGGER.debug("No route configured for destination %s", dest)
        return None

    @staticmethod
    def _names(route: RouteConfig, dest: str) -> bool:
        if normalize_place(route.destination) == dest:
            return True
        return any(normalize_place(alias) == dest for alias in route.aliases)


class TruckBatchStore:
    """Truck-number suffix to extra-fuel allowance, with per-destination overrides."""

    def __init__(self, batches: Iterable[TruckBatchConfig] = ()) -> None:
        self._batches: Dict[str, TruckBatchConfig] = {
            batch.truck_suffix.lower(): batch for batch in batches
        }

    def __len__(self) -> int:
        return len(self._batches)

    def lookup(self, truck_no: str, destination: str | None = None) -> Optional[BatchMatch]:
        suffix = truck_suffix(truck_no)
        batch = self._batches.get(suffix) if suffix else None
        if batch is None:
            return None

        dest = normalize_place(destination)
        if dest:
            for rule in batch.destination_rules:
                rule_dest = normalize_place(rule.destination)
                if rule_dest and (rule_dest in dest or dest in rule_dest):
                    return BatchMatch(suffix, rule.extra_liters, destination_override=True)

        return BatchMatch(suffix, batch.extra_liters)
