"""
CSV claim ingestion.

Pharmacy-system exports (PioneerRx, Rx30 and hand-made spreadsheets) are read
with pandas as text, their headers mapped onto one canonical set, values
normalized, and the claims written as patients + prescriptions. Re-ingesting a
file is harmless: prescriptions are unique on (pharmacy, rx_number, date, ndc).
"""
from __future__ import annotations

import hashlib
import io
import logging
import re
from typing import Any, Dict, IO, List, Optional, Union

import numpy as np
import pandas as pd

from .database import new_id, to_json, utcnow
from .normalize import (
    base_drug_name,
    digits,
    is_valid_ndc,
    normalize_bin,
    normalize_drug_name,
    normalize_ndc,
)
from .service import ACTIVE_STATUSES, TheRxService, _placeholders

log = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 50
MAX_DAYS_SUPPLY = 365
MAX_DAYS_SUPPLY_VALUE = 100_000

# canonical column -> accepted (normalized) header spellings
HEADER_ALIASES: Dict[str, List[str]] = {
    "patient_id": ["patient_id", "patient_number", "patient_no", "pat_id", "patientid", "person_code", "mrn"],
    "patient_first_name": ["patient_first_name", "first_name", "pat_first_name", "patient_first", "firstname"],
    "patient_last_name": ["patient_last_name", "last_name", "pat_last_name", "patient_last", "lastname"],
    "patient_dob": ["patient_dob", "dob", "date_of_birth", "birth_date", "birthdate", "patient_birth_date"],
    "rx_number": ["rx_number", "rx", "rx_no", "rxnumber", "rx_num", "prescription_number", "script_number"],
    "ndc": ["ndc", "ndc_number", "dispensed_ndc", "dispensed_item_ndc", "ndc_code", "drug_ndc", "ndc11"],
    "drug_name": ["drug_name", "drug", "dispensed_item_name", "dispensed_drug", "medication", "item_name",
                  "drug_description", "product_name"],
    "quantity": ["quantity", "qty", "dispensed_quantity", "qty_dispensed", "quantity_dispensed", "metric_qty"],
    "days_supply": ["days_supply", "day_supply", "days", "ds", "supply_days"],
    "dispense_date": ["dispense_date", "dispensed_date", "date_filled", "fill_date", "date_written_filled",
                      "date_dispensed", "service_date", "filled_date"],
    "daw_code": ["daw_code", "daw", "dispense_as_written"],
    "sig": ["sig", "directions", "sig_text", "instructions"],
    "prescriber_name": ["prescriber_name", "prescriber", "doctor", "physician", "prescriber_full_name",
                        "md_name", "provider_name"],
    "prescriber_npi": ["prescriber_npi", "npi", "prescriber_npi_number", "doctor_npi"],
    "insurance_bin": ["insurance_bin", "bin", "primary_bin", "bin_number", "third_party_bin", "plan_bin"],
    "insurance_group": ["insurance_group", "group", "group_number", "primary_group", "group_id", "plan_group"],
    "insurance_pcn": ["insurance_pcn", "pcn", "primary_pcn", "processor_control_number"],
    "contract_id": ["contract_id", "contract", "medicare_contract_id", "contract_number"],
    "plan_name": ["plan_name", "plan", "insurance_name", "primary_plan", "third_party_name", "payer_name"],
    "acquisition_cost": ["acquisition_cost", "acq_cost", "cost", "drug_cost", "actual_cost", "acquisition"],
    "patient_pay": ["patient_pay", "copay", "patient_paid", "patient_pay_amount", "pt_pay", "copay_amount"],
    "insurance_pay": ["insurance_pay", "insurance_paid", "third_party_pay", "plan_paid", "primary_paid",
                      "insurance_payment", "tp_paid"],
    "gross_profit": ["gross_profit", "gp", "profit", "net_profit"],
}
_ALIAS_LOOKUP = {alias: canon for canon, aliases in HEADER_ALIASES.items() for alias in aliases}

REQUIRED_COLUMNS = ["ndc", "drug_name", "quantity", "days_supply", "dispense_date"]
PATIENT_NAME_COLUMNS = ["patient_first_name", "patient_last_name", "patient_dob"]
MONEY_COLUMNS = ["acquisition_cost", "patient_pay", "insurance_pay", "gross_profit"]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_header(header: Any) -> str:
    # "Rx #" and "rx_#" both become "rx"
    return _NON_ALNUM.sub("_", str(header).strip().lower()).strip("_")


def map_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename headers to canonical names; the first column wins on collisions."""
    renames: Dict[str, str] = {}
    taken = set()
    for col in df.columns:
        canon = _ALIAS_LOOKUP.get(normalize_header(col))
        if canon and canon not in taken:
            renames[col] = canon
            taken.add(canon)
    mapped = df.rename(columns=renames)
    return mapped[[c for c in mapped.columns if c in HEADER_ALIASES]].copy()


def missing_columns(columns: List[str]) -> List[str]:
    missing = [c for c in REQUIRED_COLUMNS if c not in columns]
    if "patient_id" not in columns:
        missing.extend(c for c in PATIENT_NAME_COLUMNS if c not in columns)
    return missing


def parse_money(series: pd.Series) -> pd.Series:
    cleaned = series.astype(str).str.strip()
    negative = cleaned.str.startswith("(") & cleaned.str.endswith(")")
    cleaned = cleaned.str.replace(r"[$,()\s]", "", regex=True)
    values = pd.to_numeric(cleaned.where(cleaned != "", None), errors="coerce")
    return values.where(~negative, -values)


def parse_dates(series: pd.Series) -> pd.Series:
    parsed = pd.to_datetime(series.astype(str).str.strip(), errors="coerce", format="mixed")
    return parsed.dt.strftime("%Y-%m-%d")


def patient_hash(pharmacy_id: str, external_id: str = "", first: str = "", last: str = "", dob: str = "") -> str:
    if external_id:
        key = f"{pharmacy_id}|{external_id.strip().upper()}"
    else:
        key = f"{pharmacy_id}|{first.strip().upper()}|{last.strip().upper()}|{dob.strip()}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def read_claims(file: Union[str, bytes, IO]) -> pd.DataFrame:
    """Read a claims export as strings with canonical columns and normalized values.

    Adds helper columns: ``_row`` (1-based line number in the file),
    ``_ndc_raw`` and ``_error`` (None for usable rows).
    """
    if isinstance(file, bytes):
        file = io.BytesIO(file)
    df = pd.read_csv(file, dtype=str, keep_default_na=False, skipinitialspace=True)
    df = map_columns(df)
    missing = missing_columns(list(df.columns))
    if missing:
        raise ValueError(f"Missing required columns: {', '.join(missing)}")
    for col in HEADER_ALIASES:
        if col not in df.columns:
            df[col] = ""
    df = df.fillna("")
    df["_row"] = df.index + 2
    df["_ndc_raw"] = df["ndc"]
    df["_error"] = None

    df["ndc"] = df["ndc"].map(normalize_ndc)
    df["drug_name"] = df["drug_name"].map(normalize_drug_name)
    df["insurance_bin"] = df["insurance_bin"].map(normalize_bin)
    for col in ("insurance_group", "insurance_pcn", "contract_id", "plan_name", "prescriber_name",
                "prescriber_npi", "rx_number", "patient_id", "daw_code", "sig"):
        df[col] = df[col].astype(str).str.strip()
    for col in ("patient_first_name", "patient_last_name"):
        df[col] = df[col].astype(str).str.strip().str.upper()

    df["dispensed_date"] = parse_dates(df["dispense_date"])
    df["patient_dob"] = parse_dates(df["patient_dob"]).fillna("")
    df["quantity_num"] = pd.to_numeric(df["quantity"].str.replace(",", "", regex=False), errors="coerce")
    df["days_supply_num"] = pd.to_numeric(df["days_supply"], errors="coerce")
    for col in MONEY_COLUMNS:
        df[col] = parse_money(df[col])

    gp = df["patient_pay"].fillna(0) + df["insurance_pay"].fillna(0) - df["acquisition_cost"].fillna(0)
    nothing_known = df["acquisition_cost"].isna() & df["patient_pay"].isna() & df["insurance_pay"].isna()
    df["gross_profit"] = df["gross_profit"].where(df["gross_profit"].notna(), gp.where(~nothing_known))

    df.loc[df["drug_name"] == "", "_error"] = "missing drug name"
    df.loc[df["ndc"] == "", "_error"] = "missing NDC"
    df.loc[df["quantity_num"].isna(), "_error"] = "quantity is not a number"
    df.loc[np.isinf(df["quantity_num"]), "_error"] = "quantity is not a finite number"
    df.loc[df["days_supply_num"].isna(), "_error"] = "days supply is not a number"
    df.loc[df["days_supply_num"].abs() > MAX_DAYS_SUPPLY_VALUE, "_error"] = "days supply is out of range"
    df.loc[np.isinf(df["days_supply_num"]), "_error"] = "days supply is not a finite number"
    for col in MONEY_COLUMNS:
        df.loc[np.isinf(df[col]), "_error"] = f"{col.replace('_', ' ')} is not a finite amount"
    df.loc[df["dispensed_date"].isna(), "_error"] = "unparseable dispense date"
    no_patient = (df["patient_id"] == "") & ((df["patient_first_name"] == "") | (df["patient_last_name"] == ""))
    df.loc[no_patient, "_error"] = "no patient identifier"
    return df


def _nullable(value: Any) -> Any:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, str) and value == "":
        return None
    return value


def ingest_csv(
    service: TheRxService,
    pharmacy_id: str,
    file: Union[str, bytes, IO],
    filename: Optional[str] = None,
    source_email: Optional[str] = None,
    run_auto_complete: bool = True,
) -> Dict[str, Any]:
    """Load one claims export for ``pharmacy_id``.

    Raises ``ValueError`` (and writes nothing) when required columns are missing.
    """
    service.get_pharmacy(pharmacy_id)
    df = read_claims(file)
    ingestion_id = new_id()
    with service.transaction() as conn:
        conn.execute(
            "INSERT INTO ingestion_logs (ingestion_id, pharmacy_id, filename, source_email, total_records) "
            "VALUES (?, ?, ?, ?, ?)",
            (ingestion_id, pharmacy_id, filename, source_email, len(df)),
        )
    log.info("[Ingest] Start id=%s pharmacy=%s file=%s rows=%s", ingestion_id, pharmacy_id, filename, len(df))

    errors: List[str] = []
    error_count = 0
    inserted = duplicates = patients_created = dq_count = 0
    new_claims: List[Dict[str, Any]] = []
    touched_patients = set()
    patient_cache: Dict[str, str] = {}
    try:
        with service.transaction() as conn:
            for rec in df.sort_values("dispensed_date", na_position="last").to_dict("records"):
                if rec["_error"]:
                    error_count += 1
                    if len(errors) < MAX_ERROR_DETAILS:
                        errors.append(f"Row {rec['_row']}: {rec['_error']}")
                    continue
                phash = patient_hash(
                    pharmacy_id,
                    rec["patient_id"],
                    rec["patient_first_name"],
                    rec["patient_last_name"],
                    rec["patient_dob"] or "",
                )
                patient_id = patient_cache.get(phash)
                if patient_id is None:
                    row = conn.execute(
                        "SELECT patient_id FROM patients WHERE pharmacy_id = ? AND patient_hash = ?",
                        (pharmacy_id, phash),
                    ).fetchone()
                    if row:
                        patient_id = row["patient_id"]
                    else:
                        patient_id = new_id()
                        conn.execute(
                            """
                            INSERT INTO patients (patient_id, pharmacy_id, patient_hash, external_id, first_name,
                                                  last_name, date_of_birth)
                            VALUES (?, ?, ?, ?, ?, ?, ?)
                            """,
                            (patient_id, pharmacy_id, phash, _nullable(rec["patient_id"]),
                             _nullable(rec["patient_first_name"]), _nullable(rec["patient_last_name"]),
                             _nullable(rec["patient_dob"])),
                        )
                        patients_created += 1
                    patient_cache[phash] = patient_id

                rx_number = rec["rx_number"] or "AUTO-" + hashlib.sha1(
                    f"{phash}|{rec['ndc']}|{rec['dispensed_date']}".encode("utf-8")
                ).hexdigest()[:10].upper()
                prescription_id = new_id()
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO prescriptions (
                        prescription_id, pharmacy_id, patient_id, rx_number, ndc, drug_name, quantity, days_supply,
                        dispensed_date, daw_code, sig, prescriber_name, prescriber_npi, insurance_bin,
                        insurance_group, insurance_pcn, contract_id, plan_name, acquisition_cost, patient_pay,
                        insurance_pay, gross_profit, source_file, ingestion_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (prescription_id, pharmacy_id, patient_id, rx_number, rec["ndc"], rec["drug_name"],
                     float(rec["quantity_num"]), int(rec["days_supply_num"]), rec["dispensed_date"],
                     _nullable(rec["daw_code"]), _nullable(rec["sig"]), _nullable(rec["prescriber_name"]),
                     _nullable(digits(rec["prescriber_npi"])), _nullable(rec["insurance_bin"]),
                     _nullable(rec["insurance_group"]), _nullable(rec["insurance_pcn"]),
                     _nullable(rec["contract_id"]), _nullable(rec["plan_name"]),
                     _nullable(rec["acquisition_cost"]), _nullable(rec["patient_pay"]),
                     _nullable(rec["insurance_pay"]), _nullable(rec["gross_profit"]), filename, ingestion_id),
                )
                if cur.rowcount == 0:
                    duplicates += 1
                    continue
                inserted += 1
                touched_patients.add(patient_id)
                new_claims.append({
                    "patient_id": patient_id,
                    "ndc": rec["ndc"],
                    "drug_name": rec["drug_name"],
                    "dispensed_date": rec["dispensed_date"],
                })
                dq_count += _record_claim_issues(service, conn, pharmacy_id, patient_id, prescription_id, rec)

            if touched_patients:
                _refresh_patient_insurance(conn, list(touched_patients))
    except Exception as e:
        log.exception("[Ingest][Error] id=%s failed: %s", ingestion_id, e)
        with service.transaction() as conn:
            conn.execute(
                "UPDATE ingestion_logs SET status = 'failed', error_details = ?, completed_at = ? "
                "WHERE ingestion_id = ?",
                (to_json([str(e)]), utcnow(), ingestion_id),
            )
        raise

    status = "completed_with_errors" if error_count else "completed"
    with service.transaction() as conn:
        conn.execute(
            """
            UPDATE ingestion_logs SET status = ?, inserted = ?, duplicates = ?, errors = ?, error_details = ?,
                   completed_at = ?
            WHERE ingestion_id = ?
            """,
            (status, inserted, duplicates, error_count, to_json(errors), utcnow(), ingestion_id),
        )

    auto = {"completed": 0, "opportunityIds": []}
    if run_auto_complete and new_claims:
        auto = auto_complete(service, pharmacy_id, new_claims)

    log.info(
        "[Ingest] Done id=%s inserted=%s duplicates=%s errors=%s patients_created=%s dq=%s auto_completed=%s",
        ingestion_id, inserted, duplicates, error_count, patients_created, dq_count, auto["completed"],
    )
    return {
        "ingestionId": ingestion_id,
        "status": status,
        "recordsProcessed": len(df),
        "inserted": inserted,
        "duplicates": duplicates,
        "errors": error_count,
        "errorDetails": errors,
        "patientsCreated": patients_created,
        "dataQualityIssues": dq_count,
        "autoComplete": auto,
    }


def _record_claim_issues(service: TheRxService, conn, pharmacy_id: str, patient_id: str,
                         prescription_id: str, rec: Dict[str, Any]) -> int:
    issues = []
    if not rec["insurance_bin"]:
        issues.append(("missing_bin", f"Claim {rec['rx_number'] or rec['_row']} has no insurance BIN",
                       "insurance_bin", None))
    if not is_valid_ndc(rec["_ndc_raw"]):
        issues.append(("invalid_ndc", f"NDC '{rec['_ndc_raw']}' is not 10 or 11 digits", "current_ndc",
                       rec["_ndc_raw"]))
    if not rec["prescriber_name"]:
        issues.append(("missing_prescriber", f"Claim {rec['rx_number'] or rec['_row']} has no prescriber",
                       "prescriber_name", None))
    ds = rec["days_supply_num"]
    if ds <= 0 or ds > MAX_DAYS_SUPPLY:
        issues.append(("invalid_days_supply", f"Days supply {rec['days_supply']} is outside 1-{MAX_DAYS_SUPPLY}",
                       "days_supply", rec["days_supply"]))
    for issue_type, description, field, original in issues:
        service.add_data_quality_issue(
            conn, pharmacy_id, issue_type, description, field_name=field, original_value=original,
            patient_id=patient_id, prescription_id=prescription_id,
        )
    return len(issues)


def _refresh_patient_insurance(conn, patient_ids: List[str]) -> None:
    cols = ("insurance_bin", "insurance_group", "insurance_pcn", "contract_id", "plan_name")
    latest = (
        "(SELECT r.{col} FROM prescriptions r WHERE r.patient_id = patients.patient_id "
        "ORDER BY r.dispensed_date DESC, r.created_at DESC LIMIT 1)"
    )
    assignments = ", ".join(f"{c} = {latest.format(col=c)}" for c in cols)
    for start in range(0, len(patient_ids), 500):
        chunk = patient_ids[start:start + 500]
        conn.execute(
            f"UPDATE patients SET {assignments} WHERE patient_id IN ({_placeholders(chunk)})",
            chunk,
        )


def auto_complete(service: TheRxService, pharmacy_id: str, new_claims: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Complete open opportunities whose recommended drug was just filled for the patient."""
    by_patient: Dict[str, List[Dict[str, Any]]] = {}
    for claim in new_claims:
        by_patient.setdefault(claim["patient_id"], []).append(claim)
    patient_ids = list(by_patient)
    if not patient_ids:
        return {"completed": 0, "opportunityIds": []}
    open_opps: List[Dict[str, Any]] = []
    for start in range(0, len(patient_ids), 500):
        chunk = patient_ids[start:start + 500]
        open_opps.extend(service.fetch_all(
            f"""
            SELECT opportunity_id, patient_id, recommended_drug_name, recommended_ndc, staff_notes
            FROM opportunities
            WHERE pharmacy_id = ? AND status IN ({_placeholders(ACTIVE_STATUSES)})
              AND patient_id IN ({_placeholders(chunk)})
            """,
            (pharmacy_id, *ACTIVE_STATUSES, *chunk),
        ))
    completed: List[str] = []
    stamp = utcnow()
    with service.transaction() as conn:
        for opp in open_opps:
            rec_base = base_drug_name(opp["recommended_drug_name"])
            rec_ndc = normalize_ndc(opp["recommended_ndc"]) if opp["recommended_ndc"] else ""
            for claim in by_patient[opp["patient_id"]]:
                hit = (rec_ndc and claim["ndc"] == rec_ndc) or (
                    rec_base and base_drug_name(claim["drug_name"]) == rec_base
                )
                if not hit:
                    continue
                note = f"Auto-completed: {claim['drug_name']} filled {claim['dispensed_date']}"
                notes = f"{opp['staff_notes']}\n{note}" if opp["staff_notes"] else note
                conn.execute(
                    """
                    UPDATE opportunities SET status = 'Completed', actioned_at = ?, updated_at = ?, staff_notes = ?
                    WHERE opportunity_id = ?
                    """,
                    (stamp, stamp, notes, opp["opportunity_id"]),
                )
                completed.append(opp["opportunity_id"])
                break
    if completed:
        log.info("[Ingest] Auto-completed %s opportunities for pharmacy=%s", len(completed), pharmacy_id)
    return {"completed": len(completed), "opportunityIds": completed}
