"""Utilities for reading and normalising source files."""
from __future__ import annotations

import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Iterable, List

from .errors import NormalizationError
from .models import (
    DeliveryOrder,
    DestinationRule,
    Direction,
    LPOEntry,
    LPOJourneyType,
    NIL_DO,
    RouteConfig,
    TruckBatchConfig,
    YardDispense,
)

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y", "%d-%b-%Y")

ORDER_COLUMNS = {"do_number", "date", "direction", "truck_no", "origin", "destination"}
LPO_COLUMNS = {"lpo_no", "date", "station", "truck_no", "do_number", "liters", "price_per_liter"}
YARD_COLUMNS = {"date", "truck_no", "yard", "liters"}
ROUTE_COLUMNS = {"destination", "total_liters"}
BATCH_COLUMNS = {"truck_suffix", "extra_liters"}

YARDS = ("DAR YARD", "TANGA YARD", "MMSA YARD")

_DIRECTION_ALIASES = {
    "IMPORT": Direction.IMPORT,
    "GOING": Direction.IMPORT,
    "EXPORT": Direction.EXPORT,
    "RETURN": Direction.EXPORT,
}

_TRUCK_DISPLAY = re.compile(r"^(T\d{3,4})([A-Z]{3})$")


def normalize_truck_no(raw: str) -> str:
    """Match key for truck numbers: "t699-dxy" and "T699 DXY" become "T699DXY"."""

    return re.sub(r"[\s-]", "", raw or "").upper()


def format_truck_no(raw: str) -> str:
    normalized = normalize_truck_no(raw)
    match = _TRUCK_DISPLAY.match(normalized)
    if match:
        return f"{match.group(1)} {match.group(2)}"
    return normalized


def truck_suffix(raw: str) -> str:
    """Return the batch suffix of a truck number, e.g. ``dxy`` for ``T699 DXY``."""

    parts = (raw or "").strip().lower().split()
    if len(parts) > 1:
        return parts[-1]
    match = re.search(r"([a-z]+)$", normalize_truck_no(raw).lower())
    return match.group(1) if match else ""


def normalize_place(raw: str | None) -> str:
    return " ".join((raw or "").upper().split())


def parse_date(raw: str) -> date:
    for pattern in DATE_FORMATS:
        try:
            return datetime.strptime(raw.strip(), pattern).date()
        except ValueError:
            continue
    raise NormalizationError(f"Unrecognised date format: {raw}")


def parse_liters(raw: object) -> Decimal:
    """Parse a non-negative liter quantity; anything else is rejected."""

    if isinstance(raw, bool):
        raise NormalizationError(f"Invalid liters: {raw!r}")
    if isinstance(raw, Decimal):
        value = raw
    else:
        normalized = str(raw).replace(",", "").strip()
        try:
            value = Decimal(normalized)
        except (InvalidOperation, ValueError) as exc:
            raise NormalizationError(f"Invalid liters: {raw!r}") from exc
    if not value.is_finite():
        raise NormalizationError(f"Invalid liters: {raw!r}")
    if value < 0:
        raise NormalizationError(f"Liters cannot be negative: {raw!r}")
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def parse_direction(raw: str) -> Direction:
    try:
        return _DIRECTION_ALIASES[raw.strip().upper()]
    except KeyError as exc:
        raise NormalizationError(f"Unknown trip direction: {raw}") from exc


def parse_journey_type(raw: str, do_number: str) -> LPOJourneyType:
    value = (raw or "").strip().lower().replace(" ", "_")
    if not value:
        return LPOJourneyType.CASH if do_number == NIL_DO else LPOJourneyType.GOING
    try:
        return LPOJourneyType(value)
    except ValueError as exc:
        raise NormalizationError(f"Unknown LPO journey type: {raw}") from exc


def normalise_order(row: dict[str, str]) -> DeliveryOrder:
    return DeliveryOrder(
        do_number=row["do_number"].strip(),
        date=parse_date(row["date"]),
        direction=parse_direction(row["direction"]),
        truck_no=format_truck_no(row["truck_no"]),
        origin=normalize_place(row["origin"]),
        destination=normalize_place(row["destination"]),
        client=(row.get("client") or "").strip(),
        do_type=(row.get("do_type") or "DO").strip().upper(),
    )


def normalise_lpo(row: dict[str, str]) -> LPOEntry:
    do_number = (row["do_number"] or "").strip()
    if not do_number or do_number.upper() == NIL_DO:
        do_number = NIL_DO
    return LPOEntry(
        lpo_no=row["lpo_no"].strip(),
        date=parse_date(row["date"]),
        station=normalize_place(row["station"]),
        truck_no=format_truck_no(row["truck_no"]),
        do_number=do_number,
        liters=parse_liters(row["liters"]),
        price_per_liter=parse_liters(row["price_per_liter"]),
        journey_type=parse_journey_type(row.get("journey_type", ""), do_number),
    )


def normalise_dispense(row: dict[str, str], *, index: int) -> YardDispense:
    yard = normalize_place(row["yard"])
    if yard not in YARDS:
        raise NormalizationError(f"Unknown yard: {row['yard']}")
    return YardDispense(
        id=(row.get("id") or "").strip() or f"YD-{index:05d}",
        date=parse_date(row["date"]),
        truck_no=format_truck_no(row["truck_no"]),
        yard=yard,
        liters=parse_liters(row["liters"]),
        entered_by=(row.get("entered_by") or "system").strip(),
    )


def normalise_route(row: dict[str, str]) -> RouteConfig:
    destination = normalize_place(row["destination"])
    aliases = tuple(
        normalize_place(alias) for alias in (row.get("aliases") or "").split("|") if alias.strip()
    )
    return RouteConfig(
        route_name=(row.get("route_name") or "").strip() or destination,
        destination=destination,
        total_liters=parse_liters(row["total_liters"]),
        origin=normalize_place(row.get("origin")) or None,
        aliases=aliases,
        is_active=(row.get("is_active") or "true").strip().lower() not in {"false", "no", "0"},
    )


def normalise_batch(row: dict[str, str]) -> TruckBatchConfig:
    rules: List[DestinationRule] = []
    for chunk in (row.get("destination_rules") or "").split("|"):
        if not chunk.strip():
            continue
        destination, _, liters = chunk.partition("=")
        rules.append(DestinationRule(normalize_place(destination), parse_liters(liters)))
    return TruckBatchConfig(
        truck_suffix=row["truck_suffix"].strip().lower(),
        extra_liters=parse_liters(row["extra_liters"]),
        destination_rules=tuple(rules),
    )


def _sniff_delimiter(sample: str) -> str:
    """Detect a CSV delimiter, defaulting to comma when uncertain."""

    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;")
        return dialect.delimiter
    except csv.Error:
        return ";" if sample.count(";") > sample.count(",") else ","


def _read_rows(path: Path, required: Iterable[str]) -> List[dict[str, str]]:
    if not path.exists():
        raise FileNotFoundError(path)

    with path.open(newline="", encoding="utf-8-sig") as handle:
        sample = handle.read(1024)
        handle.seek(0)
        reader = csv.DictReader(handle, delimiter=_sniff_delimiter(sample))
        if reader.fieldnames is None:
            raise NormalizationError(f"Missing expected columns in {path}")
        reader.fieldnames = [name.strip().lower() for name in reader.fieldnames]
        if not set(required).issubset(reader.fieldnames):
            raise NormalizationError(f"Missing expected columns in {path}")
        return list(reader)


def load_orders(path: Path) -> List[DeliveryOrder]:
    return [normalise_order(row) for row in _read_rows(path, ORDER_COLUMNS)]


def load_lpos(path: Path) -> List[LPOEntry]:
    return [normalise_lpo(row) for row in _read_rows(path, LPO_COLUMNS)]


def load_dispenses(path: Path) -> List[YardDispense]:
    rows = _read_rows(path, YARD_COLUMNS)
    return [normalise_dispense(row, index=index) for index, row in enumerate(rows, start=1)]


def load_routes(path: Path) -> List[RouteConfig]:
    return [normalise_route(row) for row in _read_rows(path, ROUTE_COLUMNS)]


def load_batches(path: Path) -> List[TruckBatchConfig]:
    return [normalise_batch(row) for row in _read_rows(path, BATCH_COLUMNS)]
