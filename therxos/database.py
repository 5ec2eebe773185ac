"""
Database utilities for TheRxOS.

The schema lives here as plain DDL so it is easy to review and version.
List-valued columns (keywords, BIN lists, JSON details) are stored as JSON text.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from sqlite3 import Connection
from typing import Any, Dict, Iterable, Optional

from .config import get_settings

log = logging.getLogger(__name__)

# --- Schema DDL -------------------------------------------------------------

CREATE_TABLE_PHARMACIES = """
CREATE TABLE IF NOT EXISTS pharmacies (
    pharmacy_id TEXT PRIMARY KEY,
    pharmacy_name TEXT NOT NULL,
    state TEXT,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN (
        'onboarding','active','suspended','demo'
    )),
    submitter_email TEXT,
    settings TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

CREATE_TABLE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    pharmacy_id TEXT,
    email TEXT NOT NULL UNIQUE COLLATE NOCASE,
    password_hash TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    role TEXT NOT NULL CHECK (role IN ('super_admin','admin','pharmacist','technician')),
    is_active INTEGER NOT NULL DEFAULT 1,
    must_change_password INTEGER NOT NULL DEFAULT 0,
    last_login TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (pharmacy_id) REFERENCES pharmacies(pharmacy_id) ON DELETE CASCADE
);
"""

CREATE_TABLE_PATIENTS = """
CREATE TABLE IF NOT EXISTS patients (
    patient_id TEXT PRIMARY KEY,
    pharmacy_id TEXT NOT NULL,
    patient_hash TEXT NOT NULL,
    external_id TEXT,
    first_name TEXT,
    last_name TEXT,
    date_of_birth TEXT,
    insurance_bin TEXT,
    insurance_group TEXT,
    insurance_pcn TEXT,
    contract_id TEXT,
    plan_name TEXT,
    med_sync_enrolled INTEGER NOT NULL DEFAULT 0,
    med_sync_date INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (pharmacy_id, patient_hash),
    FOREIGN KEY (pharmacy_id) REFERENCES pharmacies(pharmacy_id) ON DELETE CASCADE
);
"""

CREATE_TABLE_PRESCRIPTIONS = """
CREATE TABLE IF NOT EXISTS prescriptions (
    prescription_id TEXT PRIMARY KEY,
    pharmacy_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    rx_number TEXT NOT NULL,
    ndc TEXT NOT NULL,
    drug_name TEXT NOT NULL,
    quantity REAL NOT NULL,
    days_supply INTEGER NOT NULL,
    dispensed_date TEXT NOT NULL,      -- ISO date (YYYY-MM-DD)
    daw_code TEXT,
    sig TEXT,
    prescriber_name TEXT,
    prescriber_npi TEXT,
    insurance_bin TEXT,
    insurance_group TEXT,
    insurance_pcn TEXT,
    contract_id TEXT,
    plan_name TEXT,
    acquisition_cost REAL,
    patient_pay REAL,
    insurance_pay REAL,
    gross_profit REAL,
    source_file TEXT,
    ingestion_id TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (pharmacy_id, rx_number, dispensed_date, ndc),
    FOREIGN KEY (pharmacy_id) REFERENCES pharmacies(pharmacy_id) ON DELETE CASCADE,
    FOREIGN KEY (patient_id) REFERENCES patients(patient_id) ON DELETE CASCADE
);
"""

CREATE_TABLE_TRIGGERS = """
CREATE TABLE IF NOT EXISTS triggers (
    trigger_id TEXT PRIMARY KEY,
    trigger_code TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    trigger_type TEXT NOT NULL CHECK (trigger_type IN (
        'therapeutic_interchange','missing_therapy','ndc_optimization',
        'brand_to_generic','formulation_change','combo_therapy'
    )),
    category TEXT,
    detection_keywords TEXT NOT NULL DEFAULT '[]',
    exclude_keywords TEXT NOT NULL DEFAULT '[]',
    if_has_keywords TEXT NOT NULL DEFAULT '[]',
    if_not_has_keywords TEXT NOT NULL DEFAULT '[]',
    recommended_drug TEXT,
    recommended_ndc TEXT,
    action_instructions TEXT,
    clinical_rationale TEXT,
    priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('low','medium','high','critical')),
    annual_fills INTEGER NOT NULL DEFAULT 12,
    default_gp_value REAL,
    keyword_match_mode TEXT NOT NULL DEFAULT 'any' CHECK (keyword_match_mode IN ('any','all')),
    is_enabled INTEGER NOT NULL DEFAULT 1,
    bin_inclusions TEXT,
    bin_exclusions TEXT,
    group_inclusions TEXT,
    group_exclusions TEXT,
    contract_prefix_exclusions TEXT,
    pharmacy_inclusions TEXT,
    expected_qty REAL,
    expected_days_supply INTEGER,
    synced_at TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

# insurance_group '' means "any group on this BIN"
CREATE_TABLE_TRIGGER_BIN_VALUES = """
CREATE TABLE IF NOT EXISTS trigger_bin_values (
    trigger_id TEXT NOT NULL,
    insurance_bin TEXT NOT NULL,
    insurance_group TEXT NOT NULL DEFAULT '',
    gp_value REAL,
    is_excluded INTEGER NOT NULL DEFAULT 0,
    coverage_status TEXT NOT NULL DEFAULT 'unknown' CHECK (coverage_status IN (
        'works','excluded','verified','unknown'
    )),
    verified_at TEXT,
    verified_claim_count INTEGER NOT NULL DEFAULT 0,
    avg_reimbursement REAL,
    avg_qty REAL,
    best_drug_name TEXT,
    best_ndc TEXT,
    PRIMARY KEY (trigger_id, insurance_bin, insurance_group),
    FOREIGN KEY (trigger_id) REFERENCES triggers(trigger_id) ON DELETE CASCADE
);
"""

CREATE_TABLE_OPPORTUNITIES = """
CREATE TABLE IF NOT EXISTS opportunities (
    opportunity_id TEXT PRIMARY KEY,
    pharmacy_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    prescription_id TEXT,
    trigger_id TEXT,
    opportunity_type TEXT NOT NULL,
    trigger_group TEXT,
    current_ndc TEXT,
    current_drug_name TEXT,
    recommended_drug_name TEXT,
    recommended_ndc TEXT,
    potential_margin_gain REAL NOT NULL DEFAULT 0,
    annual_margin_gain REAL NOT NULL DEFAULT 0,
    avg_dispensed_qty REAL,
    clinical_rationale TEXT,
    clinical_priority TEXT NOT NULL DEFAULT 'medium',
    status TEXT NOT NULL DEFAULT 'Not Submitted' CHECK (status IN (
        'Not Submitted','Submitted','Approved','Completed','Denied','Didn''t Work','Flagged'
    )),
    staff_notes TEXT,
    dismissed_reason TEXT,
    prescriber_name TEXT,
    insurance_bin TEXT,
    insurance_group TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    actioned_at TEXT,
    actioned_by TEXT,
    FOREIGN KEY (pharmacy_id) REFERENCES pharmacies(pharmacy_id) ON DELETE CASCADE,
    FOREIGN KEY (patient_id) REFERENCES patients(patient_id) ON DELETE CASCADE,
    FOREIGN KEY (prescription_id) REFERENCES prescriptions(prescription_id) ON DELETE SET NULL,
    FOREIGN KEY (trigger_id) REFERENCES triggers(trigger_id) ON DELETE SET NULL
);
"""

CREATE_TABLE_AUDIT_RULES = """
CREATE TABLE IF NOT EXISTS audit_rules (
    rule_id TEXT PRIMARY KEY,
    rule_code TEXT NOT NULL UNIQUE,
    rule_name TEXT NOT NULL,
    rule_description TEXT,
    rule_type TEXT NOT NULL CHECK (rule_type IN (
        'quantity_mismatch','days_supply_mismatch','daw_violation',
        'sig_quantity_mismatch','high_gp_risk'
    )),
    drug_keywords TEXT,
    ndc_pattern TEXT,
    expected_quantity REAL,
    min_quantity REAL,
    max_quantity REAL,
    quantity_tolerance REAL NOT NULL DEFAULT 0.1,
    min_days_supply INTEGER,
    max_days_supply INTEGER,
    allowed_daw_codes TEXT,
    has_generic_available INTEGER,
    gp_threshold REAL NOT NULL DEFAULT 50,
    severity TEXT NOT NULL DEFAULT 'warning' CHECK (severity IN ('critical','warning','info')),
    audit_risk_score REAL,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

CREATE_TABLE_AUDIT_FLAGS = """
CREATE TABLE IF NOT EXISTS audit_flags (
    flag_id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    pharmacy_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    prescription_id TEXT NOT NULL,
    rule_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    drug_name TEXT,
    ndc TEXT,
    dispensed_quantity REAL,
    days_supply INTEGER,
    daw_code TEXT,
    gross_profit REAL,
    exposure REAL,
    violation_message TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open','resolved')),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (rule_id, prescription_id),
    FOREIGN KEY (rule_id) REFERENCES audit_rules(rule_id) ON DELETE CASCADE,
    FOREIGN KEY (prescription_id) REFERENCES prescriptions(prescription_id) ON DELETE CASCADE
);
"""

CREATE_TABLE_DATA_QUALITY_ISSUES = """
CREATE TABLE IF NOT EXISTS data_quality_issues (
    issue_id TEXT PRIMARY KEY,
    pharmacy_id TEXT NOT NULL,
    opportunity_id TEXT,
    patient_id TEXT,
    prescription_id TEXT,
    issue_type TEXT NOT NULL,
    issue_description TEXT,
    field_name TEXT,
    original_value TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','resolved','ignored')),
    resolved_value TEXT,
    resolved_at TEXT,
    resolved_by TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (pharmacy_id) REFERENCES pharmacies(pharmacy_id) ON DELETE CASCADE,
    FOREIGN KEY (opportunity_id) REFERENCES opportunities(opportunity_id) ON DELETE CASCADE
);
"""

CREATE_TABLE_PENDING_OPPORTUNITY_TYPES = """
CREATE TABLE IF NOT EXISTS pending_opportunity_types (
    pending_type_id TEXT PRIMARY KEY,
    recommended_drug_name TEXT NOT NULL,
    current_drug_name TEXT,
    opportunity_type TEXT NOT NULL,
    source TEXT NOT NULL,
    source_details TEXT NOT NULL DEFAULT '{}',
    affected_pharmacies TEXT NOT NULL DEFAULT '[]',
    total_patient_count INTEGER NOT NULL DEFAULT 0,
    estimated_annual_margin REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','approved','rejected')),
    reviewed_by TEXT,
    reviewed_at TEXT,
    review_notes TEXT,
    created_trigger_id TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

CREATE_TABLE_INGESTION_LOGS = """
CREATE TABLE IF NOT EXISTS ingestion_logs (
    ingestion_id TEXT PRIMARY KEY,
    pharmacy_id TEXT NOT NULL,
    filename TEXT,
    source_email TEXT,
    status TEXT NOT NULL DEFAULT 'processing' CHECK (status IN (
        'processing','completed','completed_with_errors','failed'
    )),
    total_records INTEGER NOT NULL DEFAULT 0,
    inserted INTEGER NOT NULL DEFAULT 0,
    duplicates INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0,
    error_details TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    completed_at TEXT,
    FOREIGN KEY (pharmacy_id) REFERENCES pharmacies(pharmacy_id) ON DELETE CASCADE
);
"""

CREATE_TABLE_SCAN_RUNS = """
CREATE TABLE IF NOT EXISTS scan_runs (
    scan_id TEXT PRIMARY KEY,
    scan_type TEXT NOT NULL CHECK (scan_type IN ('manual','nightly','ingestion')),
    pharmacy_ids TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'running' CHECK (status IN ('running','completed','failed')),
    opportunities_created INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    started_at TEXT NOT NULL DEFAULT (datetime('now')),
    completed_at TEXT
);
"""

CREATE_TABLES = [
    CREATE_TABLE_PHARMACIES,
    CREATE_TABLE_USERS,
    CREATE_TABLE_PATIENTS,
    CREATE_TABLE_PRESCRIPTIONS,
    CREATE_TABLE_TRIGGERS,
    CREATE_TABLE_TRIGGER_BIN_VALUES,
    CREATE_TABLE_OPPORTUNITIES,
    CREATE_TABLE_AUDIT_RULES,
    CREATE_TABLE_AUDIT_FLAGS,
    CREATE_TABLE_DATA_QUALITY_ISSUES,
    CREATE_TABLE_PENDING_OPPORTUNITY_TYPES,
    CREATE_TABLE_INGESTION_LOGS,
    CREATE_TABLE_SCAN_RUNS,
]

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_patients_pharmacy ON patients(pharmacy_id);",
    "CREATE INDEX IF NOT EXISTS idx_rx_patient ON prescriptions(patient_id);",
    "CREATE INDEX IF NOT EXISTS idx_rx_bin_group ON prescriptions(insurance_bin, insurance_group);",
    "CREATE INDEX IF NOT EXISTS idx_rx_dispensed ON prescriptions(dispensed_date);",
    "CREATE INDEX IF NOT EXISTS idx_opps_pharmacy_status ON opportunities(pharmacy_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_opps_patient ON opportunities(patient_id);",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_opps_patient_trigger ON opportunities(patient_id, trigger_id) WHERE trigger_id IS NOT NULL;",
    "CREATE INDEX IF NOT EXISTS idx_dq_status ON data_quality_issues(status);",
]

# Columns holding JSON text, decoded by ``row_to_dict``
JSON_COLUMNS = {
    "settings",
    "detection_keywords",
    "exclude_keywords",
    "if_has_keywords",
    "if_not_has_keywords",
    "bin_inclusions",
    "bin_exclusions",
    "group_inclusions",
    "group_exclusions",
    "contract_prefix_exclusions",
    "pharmacy_inclusions",
    "drug_keywords",
    "allowed_daw_codes",
    "source_details",
    "affected_pharmacies",
    "pharmacy_ids",
    "error_details",
}


def get_connection(db_path: Optional[str] = None) -> Connection:
    """Create a SQLite connection shared by one service instance.

    - Row factory is sqlite3.Row for dict-like access
    - Foreign keys enforced, WAL journal, busy timeout
    - ``check_same_thread`` is off; callers serialize access with a lock
    """
    path = db_path or get_settings().db_path
    conn = sqlite3.connect(path, timeout=5, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 3000;")
    if path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def init_db(conn: Connection) -> None:
    """Create the schema if it doesn't exist. Safe to call multiple times."""
    with conn:
        for ddl in CREATE_TABLES:
            conn.execute(ddl)
        for ddl in CREATE_INDEXES:
            conn.execute(ddl)
    log.debug("[DB] Schema ready")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> str:
    """Timestamp in the same format as sqlite's datetime('now')."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    out: Dict[str, Any] = {}
    for key in row.keys():
        value = row[key]
        if key in JSON_COLUMNS and isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                log.warning("[DB] Column %s holds invalid JSON; returned raw", key)
        out[key] = value
    return out


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list:
    return [row_to_dict(r) for r in rows]
