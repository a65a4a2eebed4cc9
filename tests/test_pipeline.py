import csv
import json
from pathlib import Path

from fuelrecon.cli import main
from fuelrecon.pipeline import run_reconciliation


def write_inputs(tmp_path: Path) -> dict:
    files = {
        "orders": (
            "do_number,date,direction,truck_no,origin,destination\n"
            "7001,2024-03-20,EXPORT,T699 DXY,DAR,DAR\n"
            "6038,2024-03-01,IMPORT,T699 DXY,DAR,DAR\n"
            "6100,2024-03-03,IMPORT,T100 ABC,DAR,LIKASI\n"
        ),
        "lpos": (
            "lpo_no,date,station,truck_no,do_number,liters,price_per_liter\n"
            "L1,2024-03-05,MBEYA STATION,T699 DXY,6038,100,1.50\n"
        ),
        "yard": (
            "id,date,truck_no,yard,liters,entered_by\n"
            "YD-1,2024-02-01,T555 ZZZ,DAR YARD,80,clerk\n"
        ),
        "routes": "destination,total_liters\nDAR,2400\n",
        "batches": "truck_suffix,extra_liters\ndxy,100\n",
    }
    paths = {}
    for name, content in files.items():
        path = tmp_path / f"{name}.csv"
        path.write_text(content)
        paths[name] = path
    return paths


def test_run_reconciliation_writes_all_outputs(tmp_path: Path):
    paths = write_inputs(tmp_path)
    out_dir = tmp_path / "out"

    summary = run_reconciliation(
        orders_path=paths["orders"],
        lpos_path=paths["lpos"],
        yard_path=paths["yard"],
        routes_path=paths["routes"],
        batches_path=paths["batches"],
        out_dir=out_dir,
    )

    assert summary["records"] == 2
    assert summary["orphan_returns"] == 0
    assert summary["pending_dispenses"] == 1

    with (out_dir / "fuel_records.csv").open(newline="", encoding="utf-8") as handle:
        rows = {row["going_do"]: row for row in csv.DictReader(handle)}
    assert rows["6038"]["return_do"] == "7001"
    assert rows["6038"]["mbeya_going"] == "-550.00"
    assert rows["6038"]["balance"] == "-100.00"
    assert rows["6100"]["pending_config"] == "both"

    records = json.loads((out_dir / "fuel_records.json").read_text(encoding="utf-8"))
    reasons = {entry["going_do"]: entry["review"]["reason_code"] for entry in records if entry["review"]}
    assert reasons == {"6038": "OVER_CONSUMPTION", "6100": "UNRESOLVED_ALLOWANCE"}

    notifications = json.loads((out_dir / "notifications.json").read_text(encoding="utf-8"))
    assert {n["type"] for n in notifications} == {"both", "truck_pending_linking"}

    pending = json.loads((out_dir / "pending.json").read_text(encoding="utf-8"))
    assert [d["id"] for d in pending["pending_yard_dispenses"]] == ["YD-1"]

    report = (out_dir / "fuel_report.md").read_text(encoding="utf-8")
    assert "# Fuel Reconciliation Report" in report
    assert "OVER_CONSUMPTION: 1" in report


def test_cli_run_command(tmp_path: Path):
    paths = write_inputs(tmp_path)
    out_dir = tmp_path / "cli-out"

    exit_code = main(
        [
            "run",
            "--orders", str(paths["orders"]),
            "--routes", str(paths["routes"]),
            "--batches", str(paths["batches"]),
            "--out-dir", str(out_dir),
            "--log-level", "WARNING",
        ]
    )

    assert exit_code == 0
    assert (out_dir / "fuel_report.md").exists()
    assert json.loads((out_dir / "pending.json").read_text(encoding="utf-8"))["unattached_lpos"] == []
