from datetime import date
from decimal import Decimal

from fuelrecon.models import Checkpoint, DispenseStatus, FuelRecord, JourneyLeg, LPOEntry, LPOJourneyType, YardDispense
from fuelrecon.reconciler import (
    UNMATCHED_NO_RECORD,
    UNMATCHED_UNKNOWN_DO,
    UNMATCHED_UNKNOWN_STATION,
    EventMatch,
    ExternalEventReconciler,
    Unmatched,
    apply_event,
    yard_checkpoint,
)


def make_record(*, linked: bool = True) -> FuelRecord:
    record = FuelRecord(
        id="FR-00001",
        date=date(2024, 3, 1),
        truck_no="T699 DXY",
        going_do="6038",
        start="DAR",
        going_from="DAR",
        going_to="KOLWEZI",
        total_liters=Decimal("2400"),
        extra_liters=Decimal("100"),
    )
    if linked:
        record.return_do = "7001"
        record.return_date = date(2024, 3, 20)
    return record


def make_lpo(station: str, *, do_number: str = "6038", day: date = date(2024, 3, 5), journey=LPOJourneyType.GOING) -> LPOEntry:
    return LPOEntry(
        lpo_no="LPO-1",
        date=day,
        station=station,
        truck_no="T699DXY",
        do_number=do_number,
        liters=Decimal("300"),
        price_per_liter=Decimal("1.50"),
        journey_type=journey,
    )


def make_dispense(day: date, *, yard: str = "DAR YARD") -> YardDispense:
    return YardDispense(
        id="YD-00001",
        date=day,
        truck_no="t699 dxy",
        yard=yard,
        liters=Decimal("200"),
        entered_by="yard-clerk",
    )


def test_lpo_against_going_do_hits_going_checkpoint():
    match = ExternalEventReconciler().match_lpo(make_lpo("MBEYA STATION"), [make_record()])

    assert match == EventMatch("FR-00001", JourneyLeg.GOING, Checkpoint.MBEYA_GOING)


def test_lpo_against_return_do_hits_return_checkpoint():
    match = ExternalEventReconciler().match_lpo(make_lpo("TUNDUMA STATION", do_number="7001"), [make_record()])

    assert match == EventMatch("FR-00001", JourneyLeg.RETURN, Checkpoint.TUNDUMA_RETURN)


def test_cash_lpo_without_do_uses_date_to_pick_leg():
    lpo = make_lpo("LAKE CHILABOMBWE", do_number="NIL", day=date(2024, 3, 22), journey=LPOJourneyType.CASH)

    match = ExternalEventReconciler().match_lpo(lpo, [make_record()])

    assert match.checkpoint is Checkpoint.ZAMBIA_RETURN


def test_lpo_unknown_do_and_station_are_unmatched():
    reconciler = ExternalEventReconciler()

    assert reconciler.match_lpo(make_lpo("MBEYA STATION", do_number="9999"), [make_record()]) == Unmatched(UNMATCHED_UNKNOWN_DO)
    assert reconciler.match_lpo(make_lpo("NOWHERE"), [make_record()]) == Unmatched(UNMATCHED_UNKNOWN_STATION)
    assert reconciler.match_lpo(make_lpo("MBEYA STATION"), []) == Unmatched(UNMATCHED_NO_RECORD)


def test_yard_dispense_before_return_date_goes_to_going_leg():
    match = ExternalEventReconciler().match_dispense(make_dispense(date(2024, 3, 10)), [make_record()])

    assert match.checkpoint is Checkpoint.DAR_YARD


def test_yard_dispense_after_return_date_goes_to_return_leg():
    match = ExternalEventReconciler().match_dispense(make_dispense(date(2024, 3, 25)), [make_record()])

    assert match.checkpoint is Checkpoint.DAR_RETURN


def test_yard_dispense_outside_window_is_unmatched():
    reconciler = ExternalEventReconciler(dispense_window_days=10)

    match = reconciler.match_dispense(make_dispense(date(2024, 4, 30)), [make_record()])

    assert match == Unmatched(UNMATCHED_NO_RECORD)


def test_events_add_to_existing_checkpoint_values():
    record = make_record()
    record.going_checkpoints[Checkpoint.DAR_YARD] = Decimal("-550.00")

    apply_event(record, Checkpoint.DAR_YARD, Decimal("200"))
    apply_event(record, Checkpoint.DAR_YARD, Decimal("-50"))

    assert record.going_checkpoints[Checkpoint.DAR_YARD] == Decimal("-800.00")
    assert record.event_liters[Checkpoint.DAR_YARD] == Decimal("-250")


def test_attach_dispense_links_both_sides():
    reconciler = ExternalEventReconciler()
    record = make_record()
    dispense = reconciler.register_dispense(make_dispense(date(2024, 3, 10)))

    reconciler.attach_dispense(record, dispense, EventMatch(record.id, JourneyLeg.GOING, Checkpoint.DAR_YARD))

    assert dispense.status is DispenseStatus.LINKED
    assert dispense.fuel_record_id == record.id
    assert record.dispense_refs == ["YD-00001"]
    assert reconciler.pending_dispenses() == []
    assert reconciler.dispenses_for(record.id) == [dispense]


def test_mmsa_yard_is_going_only():
    assert yard_checkpoint("MMSA YARD", JourneyLeg.RETURN) is Checkpoint.MMSA_YARD
    assert yard_checkpoint("TANGA_YARD", JourneyLeg.RETURN) is Checkpoint.TANGA_RETURN
