"""Checkpoint allocation: split a trip allowance across the checkpoints of one leg."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from .config import BatchMatch, RouteConfigStore, RouteMatch, TruckBatchStore
from .models import ZERO, Checkpoint, JourneyLeg, NotificationType
from .normalization import normalize_place

LOGGER = logging.getLogger(__name__)

@dataclass(frozen=True)
class AllocationRules:
    """Standard liters handed out at each checkpoint."""

    tanga_yard_to_dar: Decimal = Decimal("100")
    dar_yard_standard: Decimal = Decimal("550")
    dar_yard_kisarawe: Decimal = Decimal("580")
    mbeya_going: Decimal = Decimal("450")
    zambia_return: Decimal = Decimal("400")
    tunduma_return: Decimal = Decimal("100")
    mbeya_return: Decimal = Decimal("400")
    moro_return_to_mombasa: Decimal = Decimal("100")
    tanga_return_to_mombasa: Decimal = Decimal("70")
    special_destinations: tuple[tuple[str, Decimal], ...] = (
        ("LUSAKA", Decimal("60")),
        ("LUBUMBASH", Decimal("260")),
    )

    @property
    def return_reserve(self) -> Decimal:
        return self.zambia_return + self.tunduma_return + self.mbeya_return


@dataclass(frozen=True)
class AllocationConfig:
    routes: RouteConfigStore
    batches: TruckBatchStore
    rules: AllocationRules = field(default_factory=AllocationRules)


@dataclass(frozen=True)
class Allocation:
    """Result of allocating one leg.

    ``checkpoints`` holds signed liters (always <= 0). ``total_liters`` and
    ``extra_liters`` are None when their configuration is missing.
    """

    leg: JourneyLeg
    anchor: str
    checkpoints: Dict[Checkpoint, Decimal] = field(default_factory=dict)
    total_liters: Optional[Decimal] = None
    extra_liters: Optional[Decimal] = None
    additional_liters: Decimal = ZERO
    route_match: Optional[RouteMatch] = None
    batch_match: Optional[BatchMatch] = None
    missing_route: bool = False
    missing_batch: bool = False

    @property
    def deficiency(self) -> Optional[NotificationType]:
        if self.missing_route and self.missing_batch:
            return NotificationType.BOTH
        if self.missing_route:
            return NotificationType.MISSING_TOTAL_LITERS
        if self.missing_batch:
            return NotificationType.MISSING_EXTRA_FUEL
        return None

    @property
    def consumed(self) -> Decimal:
        return sum((abs(value) for value in self.checkpoints.values()), ZERO)


def is_mombasa(place: str) -> bool:
    name = normalize_place(place)
    # "MSA" only counts as a whole word; MMSA and similar names are other places
    return "MOMBASA" in name or "MSA" in re.split(r"[^A-Z0-9]+", name)


def _out(liters: Decimal) -> Decimal:
    # Checkpoints record fuel leaving the allowance.
    return -abs(liters).quantize(Decimal("0.01"))


def _special_destination(destination: str, rules: AllocationRules) -> Optional[Decimal]:
    for name, liters in rules.special_destinations:
        if name in destination:
            return liters
    return None


def allocate(
    leg: JourneyLeg,
    destination: str,
    config: AllocationConfig,
    *,
    truck_no: str = "",
    start: str = "DAR",
    loading_point: str = "DAR_YARD",
    final_destination: str | None = None,
    allowance: Decimal | None = None,
) -> Allocation:
    """Allocate the checkpoints of one leg.

    For the going leg ``destination`` is the going destination. For the
    return leg it is the anchor of the reverse route (the place the truck
    loads its return cargo) and ``final_destination`` is where the return ends.
    ``allowance`` is the record's current total, used to size any top-up
    the return route needs.
    """

    if leg is JourneyLeg.GOING:
        return _allocate_going(destination, config, truck_no=truck_no, start=start, loading_point=loading_point)
    return _allocate_return(destination, config, final_destination=final_destination or start, allowance=allowance)


def _allocate_going(
    destination: str,
    config: AllocationConfig,
    *,
    truck_no: str,
    start: str,
    loading_point: str,
) -> Allocation:
    rules = config.rules
    dest = normalize_place(destination)
    route = config.routes.lookup(dest)
    batch = config.batches.lookup(truck_no, dest) if truck_no else None
    missing_batch = batch is None

    if route is None:
        LOGGER.warning("No route allowance for %s; going leg of %s left unallocated", dest, truck_no)
        return Allocation(
            leg=JourneyLeg.GOING,
            anchor=dest,
            extra_liters=batch.extra_liters if batch else None,
            batch_match=batch,
            missing_route=True,
            missing_batch=missing_batch,
        )

    total = route.total_liters
    extra = batch.extra_liters if batch else ZERO
    checkpoints: Dict[Checkpoint, Decimal] = {}

    if normalize_place(start) == "TANGA":
        checkpoints[Checkpoint.TANGA_YARD] = _out(rules.tanga_yard_to_dar)

    point = (loading_point or "DAR_YARD").upper()
    if point == "KISARAWE":
        checkpoints[Checkpoint.DAR_YARD] = _out(rules.dar_yard_kisarawe)
    elif point == "DAR_STATION":
        checkpoints[Checkpoint.DAR_GOING] = _out(rules.dar_yard_standard)
    else:
        checkpoints[Checkpoint.DAR_YARD] = _out(rules.dar_yard_standard)

    checkpoints[Checkpoint.MBEYA_GOING] = _out(rules.mbeya_going)

    special = _special_destination(dest, rules)
    if special is not None:
        zambia = special
    else:
        used = sum((abs(value) for value in checkpoints.values()), ZERO)
        zambia = total + extra - used - rules.return_reserve
        if zambia < 0:
            LOGGER.warning(
                "Allowance %s+%s for %s does not cover the standard checkpoints", total, extra, dest
            )
            zambia = ZERO
    checkpoints[Checkpoint.ZAMBIA_GOING] = _out(zambia)

    LOGGER.debug("Going allocation for %s to %s: %s", truck_no, dest, checkpoints)
    return Allocation(
        leg=JourneyLeg.GOING,
        anchor=dest,
        checkpoints=checkpoints,
        total_liters=total,
        extra_liters=batch.extra_liters if batch else None,
        route_match=route,
        batch_match=batch,
        missing_batch=missing_batch,
    )


def _allocate_return(
    anchor: str,
    config: AllocationConfig,
    *,
    final_destination: str,
    allowance: Decimal | None,
) -> Allocation:
    rules = config.rules
    place = normalize_place(anchor)
    route = config.routes.lookup(place)
    if route is None:
        LOGGER.warning("No route allowance for return anchor %s; return leg left unallocated", place)
        return Allocation(leg=JourneyLeg.RETURN, anchor=place, missing_route=True)

    checkpoints: Dict[Checkpoint, Decimal] = {
        Checkpoint.ZAMBIA_RETURN: _out(rules.zambia_return),
        Checkpoint.TUNDUMA_RETURN: _out(rules.tunduma_return),
        Checkpoint.MBEYA_RETURN: _out(rules.mbeya_return),
    }
    if is_mombasa(final_destination):
        checkpoints[Checkpoint.MORO_RETURN] = _out(rules.moro_return_to_mombasa)
        checkpoints[Checkpoint.TANGA_RETURN] = _out(rules.tanga_return_to_mombasa)

    additional = ZERO
    if allowance is not None and route.total_liters > allowance:
        additional = route.total_liters - allowance

    return Allocation(
        leg=JourneyLeg.RETURN,
        anchor=place,
        checkpoints=checkpoints,
        total_liters=route.total_liters,
        additional_liters=additional,
        route_match=route,
    )
