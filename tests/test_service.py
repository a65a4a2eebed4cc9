import dataclasses
import threading
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from fuelrecon.checks import evaluate_record
from fuelrecon.config import EngineSettings, RouteConfigStore, TruckBatchStore
from fuelrecon.errors import EventStateError, LinkConflictError, NormalizationError, UnknownRecordError
from fuelrecon.models import (
    Checkpoint,
    DeliveryOrder,
    Direction,
    DispenseStatus,
    JourneyLeg,
    LPOEntry,
    LPOJourneyType,
    NotificationType,
    RouteConfig,
    TruckBatchConfig,
    YardDispense,
)
from fuelrecon.service import FuelLedger

ROUTES = [
    RouteConfig("DAR", "DAR", Decimal("2400")),
    RouteConfig("KOLWEZI", "KOLWEZI", Decimal("2400")),
]
SETTINGS = EngineSettings(dispense_window_days=60, default_start="DAR", default_loading_point="DAR_YARD")
CANCELLED_AT = datetime(2024, 4, 1, 9, 30, tzinfo=timezone.utc)


def make_ledger(routes=ROUTES) -> FuelLedger:
    return FuelLedger(
        routes=RouteConfigStore(routes),
        batches=TruckBatchStore([TruckBatchConfig("dxy", Decimal("100"))]),
        settings=SETTINGS,
        clock=lambda: CANCELLED_AT,
    )


def going(do_number: str = "6038", *, destination: str = "DAR", day: date = date(2024, 3, 1)) -> DeliveryOrder:
    return DeliveryOrder(do_number, day, Direction.IMPORT, "T699 DXY", "DAR", destination)


def returning(do_number: str = "7001", *, origin: str = "DAR", destination: str = "DAR", day: date = date(2024, 3, 20)) -> DeliveryOrder:
    return DeliveryOrder(do_number, day, Direction.EXPORT, "T699DXY", origin, destination)


def dispense(dispense_id: str, day: date, liters: str = "200", *, yard: str = "DAR YARD") -> YardDispense:
    return YardDispense(dispense_id, day, "t699 dxy", yard, Decimal(liters), "yard-clerk")


def test_round_trip_scenario_balances_to_zero():
    ledger = make_ledger()

    record = ledger.record_going_order(going())
    assert record.balance == Decimal("900")
    assert record.going_checkpoints == {
        Checkpoint.DAR_YARD: Decimal("-550.00"),
        Checkpoint.MBEYA_GOING: Decimal("-450.00"),
        Checkpoint.ZAMBIA_GOING: Decimal("-600.00"),
    }

    result = ledger.record_return_order(returning())

    assert result.linked
    linked = ledger.get(record.id)
    assert linked.return_do == "7001"
    assert linked.return_checkpoints == {
        Checkpoint.ZAMBIA_RETURN: Decimal("-400.00"),
        Checkpoint.TUNDUMA_RETURN: Decimal("-100.00"),
        Checkpoint.MBEYA_RETURN: Decimal("-400.00"),
    }
    assert linked.balance == Decimal("0")
    assert ledger.notifications() == []


def test_duplicate_going_order_returns_existing_record():
    ledger = make_ledger()

    first = ledger.record_going_order(going())
    second = ledger.record_going_order(going())

    assert first.id == second.id
    assert len(ledger.all_records()) == 1
    assert [r.id for r in ledger.records_for_truck("t699-dxy")] == [first.id]


def test_missing_route_keeps_caller_default_and_notifies():
    ledger = make_ledger(routes=[])

    record = ledger.record_going_order(going(), total_liters="1800")

    assert record.total_liters == Decimal("1800.00")
    assert record.extra_liters == Decimal("100")
    assert record.going_checkpoints == {}
    assert record.pending_config is NotificationType.MISSING_TOTAL_LITERS
    notifications = ledger.notifications()
    assert [n.type for n in notifications] == [NotificationType.MISSING_TOTAL_LITERS]
    assert notifications[0].fuel_record_id == record.id


def test_update_allowance_resolves_deficiency():
    ledger = make_ledger(routes=[])
    record = ledger.record_going_order(going())

    updated = ledger.update_allowance(record.id, total_liters="2400", actor="admin")

    assert updated.pending_config is None
    assert updated.balance == Decimal("2500.00")
    assert ledger.notifier.pending() == []


def test_return_destination_change_keeps_going_destination():
    ledger = make_ledger()
    record = ledger.record_going_order(going(destination="KOLWEZI"))

    ledger.record_return_order(returning(origin="KOLWEZI", destination="LUSAKA"))

    linked = ledger.get(record.id)
    assert linked.going_to == "KOLWEZI"
    assert linked.return_to == "LUSAKA"
    assert linked.has_destination_changed is True


def test_return_route_above_allowance_tops_up_total():
    ledger = make_ledger(routes=[RouteConfig("DAR", "DAR", Decimal("2400")), RouteConfig("NDOLA", "NDOLA", Decimal("2600"))])
    record = ledger.record_going_order(going())

    ledger.record_return_order(returning(origin="NDOLA"))

    assert ledger.get(record.id).total_liters == Decimal("2600")


def test_yard_dispense_leg_follows_return_date():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    ledger.record_return_order(returning())

    ledger.record_yard_dispense(dispense("YD-1", date(2024, 3, 10)))
    ledger.record_yard_dispense(dispense("YD-2", date(2024, 3, 25)))

    updated = ledger.get(record.id)
    assert updated.going_checkpoints[Checkpoint.DAR_YARD] == Decimal("-750.00")
    assert updated.return_checkpoints[Checkpoint.DAR_RETURN] == Decimal("-200.00")
    assert updated.balance == Decimal("-400.00")


def test_reallocation_keeps_event_liters():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    ledger.record_yard_dispense(dispense("YD-1", date(2024, 3, 2)))

    before = ledger.get(record.id)
    after = ledger.reallocate(record.id, JourneyLeg.GOING)

    assert after.going_checkpoints == before.going_checkpoints
    assert after.balance == Decimal("700.00")


def test_pending_dispense_links_when_record_appears():
    ledger = make_ledger()

    pending = ledger.record_yard_dispense(dispense("YD-1", date(2024, 3, 5)))
    assert pending.status is DispenseStatus.PENDING
    assert [n.type for n in ledger.notifier.pending()] == [NotificationType.TRUCK_PENDING_LINKING]

    record = ledger.record_going_order(going())

    assert ledger.pending_dispenses() == []
    assert ledger.get(record.id).going_checkpoints[Checkpoint.DAR_YARD] == Decimal("-750.00")
    assert ledger.notifier.pending() == []
    assert ledger.details(record.id).dispenses[0].auto_linked is True


def test_orphan_return_links_when_going_record_appears():
    ledger = make_ledger()

    result = ledger.record_return_order(returning())
    assert not result.linked
    assert [order.do_number for order in ledger.orphan_returns()] == ["7001"]

    record = ledger.record_going_order(going())

    assert ledger.get(record.id).return_do == "7001"
    assert ledger.orphan_returns() == []


def test_concurrent_return_orders_link_exactly_once():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    barrier = threading.Barrier(2)
    outcomes = []

    def submit(do_number: str) -> None:
        barrier.wait()
        try:
            outcomes.append(("linked", ledger.record_return_order(returning(do_number)).record.return_do))
        except LinkConflictError as exc:
            outcomes.append(("conflict", exc.do_number))

    threads = [threading.Thread(target=submit, args=(do,)) for do in ("7001", "7002")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    kinds = sorted(kind for kind, _ in outcomes)
    assert kinds == ["conflict", "linked"]
    winner = next(do for kind, do in outcomes if kind == "linked")
    loser = next(do for kind, do in outcomes if kind == "conflict")
    assert ledger.get(record.id).return_do == winner
    assert [order.do_number for order in ledger.orphan_returns()] == [loser]


def test_lpo_purchase_is_attached_and_priced():
    ledger = make_ledger()
    record = ledger.record_going_order(going())

    lpo = ledger.record_lpo(
        LPOEntry("LPO-9", date(2024, 3, 5), "MBEYA STATION", "T699DXY", "6038", Decimal("300"), Decimal("1.50"), LPOJourneyType.GOING)
    )

    assert lpo.fuel_record_id == record.id
    details = ledger.details(record.id)
    assert details.lpo_liters == Decimal("300")
    assert details.lpo_cost == Decimal("450")
    assert details.record.going_checkpoints[Checkpoint.MBEYA_GOING] == Decimal("-750.00")


def test_negative_lpo_liters_are_rejected():
    ledger = make_ledger()

    with pytest.raises(NormalizationError):
        ledger.record_lpo(
            LPOEntry("LPO-9", date(2024, 3, 5), "MBEYA STATION", "T699DXY", "6038", "-10", "1.50", LPOJourneyType.GOING)
        )


def test_manual_link_and_reject_of_pending_dispenses():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    late = ledger.record_yard_dispense(dispense("YD-1", date(2024, 6, 1)))
    stray = ledger.record_yard_dispense(dispense("YD-2", date(2024, 6, 2)))
    assert late.status is DispenseStatus.PENDING

    linked = ledger.link_dispense(late.id, record.id)
    rejected = ledger.reject_dispense(stray.id, reason="wrong truck", actor="supervisor")

    assert linked.status is DispenseStatus.LINKED
    assert linked.auto_linked is False
    assert rejected.status is DispenseStatus.REJECTED
    assert NotificationType.TRUCK_ENTRY_REJECTED in {n.type for n in ledger.notifications()}
    with pytest.raises(EventStateError):
        ledger.reject_dispense(stray.id, reason="again", actor="supervisor")
    with pytest.raises(UnknownRecordError):
        ledger.link_dispense("YD-404", record.id)


def test_cancel_keeps_balance_and_marks_non_actionable():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    ledger.record_return_order(returning())
    ledger.amend_checkpoint(record.id, Checkpoint.ZAMBIA_GOING, "650")

    cancelled = ledger.cancel_record(record.id, reason="duplicate trip", actor="admin")

    assert cancelled.balance == Decimal("-50.00")
    assert cancelled.is_cancelled
    assert cancelled.cancelled_at == CANCELLED_AT
    item = evaluate_record(cancelled)
    assert item.reason_code == "CANCELLED_RECORD"
    assert item.actionable is False
    assert ledger.details(record.id).actionable is False


def test_cancel_return_order_unlinks_record():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    ledger.record_return_order(returning())

    unlinked = ledger.cancel_return_order("7001", truck_no="T699 DXY")

    assert unlinked.return_do is None
    assert unlinked.return_checkpoints == {}
    assert unlinked.balance == Decimal("900.00")
    assert ledger.get(record.id).is_in_progress


def run_together(*targets) -> None:
    barrier = threading.Barrier(len(targets))

    def start(target):
        def run():
            barrier.wait()
            target()

        return run

    threads = [threading.Thread(target=start(target)) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


def test_concurrent_manual_links_attach_dispense_once():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    late = ledger.record_yard_dispense(dispense("YD-1", date(2024, 6, 1)))
    outcomes = []

    def link():
        try:
            ledger.link_dispense(late.id, record.id)
            outcomes.append("linked")
        except EventStateError:
            outcomes.append("refused")

    run_together(link, link)

    assert sorted(outcomes) == ["linked", "refused"]
    updated = ledger.get(record.id)
    assert updated.going_checkpoints[Checkpoint.DAR_YARD] == Decimal("-750.00")
    assert updated.dispense_refs == ["YD-1"]
    assert updated.balance == Decimal("700.00")


def test_link_and_reject_race_has_one_winner():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    late = ledger.record_yard_dispense(dispense("YD-1", date(2024, 6, 1)))
    outcomes = []

    def link():
        try:
            ledger.link_dispense(late.id, record.id)
            outcomes.append("linked")
        except EventStateError:
            outcomes.append("refused")

    def reject():
        try:
            ledger.reject_dispense(late.id, reason="not our truck", actor="supervisor")
            outcomes.append("rejected")
        except EventStateError:
            outcomes.append("refused")

    run_together(link, reject)

    assert outcomes.count("refused") == 1
    final = ledger.details(record.id)
    if "linked" in outcomes:
        assert final.dispenses[0].status is DispenseStatus.LINKED
        assert final.record.going_checkpoints[Checkpoint.DAR_YARD] == Decimal("-750.00")
    else:
        assert final.dispenses == []
        assert final.record.going_checkpoints[Checkpoint.DAR_YARD] == Decimal("-550.00")
        assert ledger.pending_dispenses() == []


def test_lpo_and_yard_entry_for_same_record_both_land():
    ledger = make_ledger()
    record = ledger.record_going_order(going())

    run_together(
        lambda: ledger.record_lpo(
            LPOEntry("LPO-9", date(2024, 3, 5), "MBEYA STATION", "T699DXY", "6038", Decimal("300"), Decimal("1.50"), LPOJourneyType.GOING)
        ),
        lambda: ledger.record_yard_dispense(dispense("YD-1", date(2024, 3, 10))),
    )

    updated = ledger.get(record.id)
    assert updated.going_checkpoints[Checkpoint.MBEYA_GOING] == Decimal("-750.00")
    assert updated.going_checkpoints[Checkpoint.DAR_YARD] == Decimal("-750.00")
    assert updated.balance == Decimal("400.00")


def test_orphans_of_other_trucks_survive_concurrent_going_orders():
    ledger = make_ledger()
    errors = []

    def hold_orphans():
        try:
            for n in range(40):
                ledger.record_return_order(
                    DeliveryOrder(f"8{n:03d}", date(2024, 3, 20), Direction.EXPORT, "T800 XYZ", "DAR", "DAR")
                )
        except Exception as exc:  # pragma: no cover - reported by the assertion below
            errors.append(exc)

    def open_trips():
        try:
            for n in range(40):
                ledger.record_going_order(
                    DeliveryOrder(f"9{n:03d}", date(2024, 3, 1), Direction.IMPORT, f"T{n:03d} DXY", "DAR", "DAR")
                )
        except Exception as exc:  # pragma: no cover - reported by the assertion below
            errors.append(exc)

    run_together(hold_orphans, open_trips)

    assert errors == []
    assert len(ledger.orphan_returns()) == 40
    assert len(ledger.all_records()) == 40


def test_cancelled_orphan_is_not_relinked_later():
    ledger = make_ledger()
    ledger.record_return_order(returning())

    assert ledger.cancel_return_order("7001", truck_no="T699 DXY") is None
    record = ledger.record_going_order(going())

    assert ledger.get(record.id).return_do is None
    assert ledger.orphan_returns() == []
    assert NotificationType.UNLINKED_EXPORT_DO not in {n.type for n in ledger.notifier.pending()}


def test_reallocation_keeps_the_recorded_loading_point():
    ledger = make_ledger()
    record = ledger.record_going_order(going(), loading_point="kisarawe")

    assert record.loading_point == "KISARAWE"
    assert record.going_checkpoints[Checkpoint.DAR_YARD] == Decimal("-580.00")

    after = ledger.reallocate(record.id, JourneyLeg.GOING)

    assert after.going_checkpoints == record.going_checkpoints
    assert after.as_json()["loading_point"] == "KISARAWE"


def test_reallocation_clears_deficiency_once_route_is_configured():
    ledger = make_ledger(routes=[])
    record = ledger.record_going_order(going())
    assert record.pending_config is NotificationType.MISSING_TOTAL_LITERS

    ledger.config = dataclasses.replace(ledger.config, routes=RouteConfigStore(ROUTES))
    after = ledger.reallocate(record.id, JourneyLeg.GOING)

    assert after.pending_config is None
    assert after.total_liters == Decimal("2400")
    assert after.going_checkpoints[Checkpoint.ZAMBIA_GOING] == Decimal("-600.00")
    assert ledger.notifier.pending() == []


def test_reallocation_keeps_deficiency_of_the_other_leg():
    ledger = make_ledger()
    record = ledger.record_going_order(going())
    ledger.record_return_order(returning(origin="NDOLA"))
    assert ledger.get(record.id).pending_config is NotificationType.MISSING_TOTAL_LITERS

    after = ledger.reallocate(record.id, JourneyLeg.GOING)

    assert after.pending_config is NotificationType.MISSING_TOTAL_LITERS
    assert [n.type for n in ledger.notifier.pending()] == [NotificationType.MISSING_TOTAL_LITERS]
