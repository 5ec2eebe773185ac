import pandas as pd
import pytest

from therxos.ingestion import ingest_csv, map_columns, normalize_header, parse_money
from therxos.scanner import run_scan
from therxos.seed import DEMO_CSV


def test_headers_map_to_canonical_columns():
    assert normalize_header("Rx #") == "rx"
    assert normalize_header("  Dispensed Item NDC ") == "dispensed_item_ndc"
    df = pd.DataFrame(columns=["Rx #", "Dispensed Item NDC", "Date Filled", "Unused Column"])
    assert list(map_columns(df).columns) == ["rx_number", "ndc", "dispense_date"]


def test_parse_money_handles_symbols_and_parentheses():
    values = parse_money(pd.Series(["$1,234.50", "(5.00)", "", "abc"]))
    assert values.iloc[0] == pytest.approx(1234.5)
    assert values.iloc[1] == pytest.approx(-5.0)
    assert pd.isna(values.iloc[2])
    assert pd.isna(values.iloc[3])


def test_missing_required_columns_rejected_before_writing(service, pharmacy_id):
    csv = b"Patient ID,Drug Name,Qty\nP1,LISINOPRIL 10MG TAB,30\n"
    with pytest.raises(ValueError, match="ndc"):
        ingest_csv(service, pharmacy_id, csv)
    assert service.scalar("SELECT COUNT(*) FROM ingestion_logs") == 0
    assert service.scalar("SELECT COUNT(*) FROM prescriptions") == 0


def test_seed_ingestion_counts(seeded):
    result = seeded["ingestion"]
    assert result["status"] == "completed_with_errors"
    assert result["recordsProcessed"] == 9
    assert result["inserted"] == 8
    assert result["errors"] == 1
    assert result["errorDetails"] == ["Row 9: unparseable dispense date"]
    assert result["patientsCreated"] == 6
    assert result["dataQualityIssues"] == 3


def test_claim_issues_recorded(service, seeded):
    issues = service.list_data_quality(seeded["pharmacy_id"])
    assert sorted(i["issue_type"] for i in issues) == ["invalid_ndc", "missing_bin", "missing_prescriber"]
    invalid = next(i for i in issues if i["issue_type"] == "invalid_ndc")
    assert invalid["original_value"] == "1234"


def test_reingest_is_idempotent(service, seeded):
    again = ingest_csv(service, seeded["pharmacy_id"], DEMO_CSV.encode("utf-8"))
    assert again["inserted"] == 0
    assert again["duplicates"] == 8
    assert again["patientsCreated"] == 0
    assert service.scalar("SELECT COUNT(*) FROM prescriptions") == 8


def test_values_normalized_and_gp_computed(service, seeded):
    rx = service.fetch_one("SELECT * FROM prescriptions WHERE rx_number = '1002'")
    assert rx["ndc"] == "68180048709"
    assert rx["dispensed_date"] == "2025-01-05"
    assert rx["insurance_bin"] == "610014"
    assert rx["gross_profit"] == pytest.approx(2.0)
    patient = service.fetch_one("SELECT * FROM patients WHERE patient_id = ?", (rx["patient_id"],))
    assert (patient["first_name"], patient["last_name"]) == ("JOHN", "SMITH")
    assert patient["insurance_bin"] == "610014"
    assert patient["insurance_group"] == "RXGRP1"


def test_bad_numbers_reported_per_row(service, pharmacy_id, claims_csv):
    csv = claims_csv([
        ("R1", "Ann", "Lane", "1960-01-01", "LISINOPRIL 10MG TAB", "68180051301", "thirty", 30, "2025-02-01",
         "DR A", "610014", "G1", "1.00", "0", "3.00"),
        ("R2", "Ann", "Lane", "1960-01-01", "LISINOPRIL 10MG TAB", "68180051301", 30, 30, "02/03/2025",
         "DR A", "610014", "G1", "1.00", "0", "3.00"),
    ])
    result = ingest_csv(service, pharmacy_id, csv)
    assert result["inserted"] == 1
    assert result["errors"] == 1
    assert result["errorDetails"] == ["Row 2: quantity is not a number"]
    assert service.scalar("SELECT dispensed_date FROM prescriptions") == "2025-02-03"


def test_new_fill_of_recommended_drug_completes_opportunity(service, seeded, claims_csv):
    pid = seeded["pharmacy_id"]
    run_scan(service, [pid])
    csv = claims_csv([
        ("2001", "John", "Smith", "1950-03-14", "ROSUVASTATIN CALCIUM 10MG TAB", "00591-3747-30", 30, 30,
         "2025-02-05", "DR ADAMS", "610014", "RXGRP1", "2.00", "0", "24.00"),
    ])
    result = ingest_csv(service, pid, csv)
    assert result["autoComplete"]["completed"] == 1
    opp = service.get_opportunity(result["autoComplete"]["opportunityIds"][0])
    assert opp["status"] == "Completed"
    assert opp["recommended_drug_name"] == "ROSUVASTATIN CALCIUM 10MG TAB"
    assert "Auto-completed" in opp["staff_notes"]


def test_non_finite_numbers_reported_per_row(service, pharmacy_id, claims_csv):
    csv = claims_csv([
        ("R1", "Ann", "Lane", "1960-01-01", "LISINOPRIL 10MG TAB", "68180051301", 30, "inf", "2025-02-01",
         "DR A", "610014", "G1", "1.00", "0", "3.00"),
        ("R2", "Ann", "Lane", "1960-01-01", "LISINOPRIL 10MG TAB", "68180051301", "-inf", 30, "2025-02-02",
         "DR A", "610014", "G1", "1.00", "0", "3.00"),
        ("R3", "Ann", "Lane", "1960-01-01", "LISINOPRIL 10MG TAB", "68180051301", 30, "9e30", "2025-02-03",
         "DR A", "610014", "G1", "1.00", "0", "3.00"),
        ("R4", "Ann", "Lane", "1960-01-01", "LISINOPRIL 10MG TAB", "68180051301", 30, 30, "2025-02-04",
         "DR A", "610014", "G1", "inf", "0", "3.00"),
        ("R5", "Ann", "Lane", "1960-01-01", "LISINOPRIL 10MG TAB", "68180051301", 30, 30, "2025-02-05",
         "DR A", "610014", "G1", "1.00", "0", "3.00"),
    ])
    result = ingest_csv(service, pharmacy_id, csv)
    assert result["status"] == "completed_with_errors"
    assert result["inserted"] == 1
    assert result["errors"] == 4
    assert result["errorDetails"][:3] == [
        "Row 2: days supply is not a finite number",
        "Row 3: quantity is not a finite number",
        "Row 4: days supply is out of range",
    ]
    assert "not a finite amount" in result["errorDetails"][3]
    assert service.scalar("SELECT rx_number FROM prescriptions") == "R5"
