"""
Data access layer (DAO/Service) for TheRxOS.

``TheRxService`` owns one sqlite connection and serializes access with a lock so
the API worker threads, background scans and the nightly scheduler can share it.
The scan/ingest engines live in their own modules and use ``transaction`` /
``fetch_all`` from here.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import get_settings
from .database import (
    get_connection,
    init_db,
    new_id,
    row_to_dict,
    rows_to_dicts,
    to_json,
    utcnow,
)
from .normalize import clean_list, normalize_bin
from .passwords import check_password_strength, hash_password, verify_password

log = logging.getLogger(__name__)

OPPORTUNITY_STATUSES = (
    "Not Submitted",
    "Submitted",
    "Approved",
    "Completed",
    "Denied",
    "Didn't Work",
    "Flagged",
)
ACTIVE_STATUSES = ("Not Submitted", "Submitted", "Approved")
ACTIONED_STATUSES = ("Submitted", "Approved", "Completed")

USER_ROLES = ("super_admin", "admin", "pharmacist", "technician")
PHARMACY_STATUSES = ("onboarding", "active", "suspended", "demo")

TRIGGER_TYPES = (
    "therapeutic_interchange",
    "missing_therapy",
    "ndc_optimization",
    "brand_to_generic",
    "formulation_change",
    "combo_therapy",
)
PRIORITIES = ("low", "medium", "high", "critical")
MATCH_MODES = ("any", "all")
COVERAGE_STATUSES = ("works", "excluded", "verified", "unknown")

AUDIT_RULE_TYPES = (
    "quantity_mismatch",
    "days_supply_mismatch",
    "daw_violation",
    "sig_quantity_mismatch",
    "high_gp_risk",
)
SEVERITIES = ("critical", "warning", "info")
DQ_STATUSES = ("pending", "resolved", "ignored")

DEFAULT_PHARMACY_SETTINGS: Dict[str, Any] = {
    "prescriber_warn_threshold": 5,
    "prescriber_block_threshold": None,
    "prescriber_window_days": 30,
}

TRIGGER_LIST_FIELDS = (
    "detection_keywords",
    "exclude_keywords",
    "if_has_keywords",
    "if_not_has_keywords",
)
TRIGGER_NULLABLE_LIST_FIELDS = (
    "bin_inclusions",
    "bin_exclusions",
    "group_inclusions",
    "group_exclusions",
    "contract_prefix_exclusions",
    "pharmacy_inclusions",
)
TRIGGER_SCALAR_FIELDS = (
    "trigger_code",
    "display_name",
    "trigger_type",
    "category",
    "recommended_drug",
    "recommended_ndc",
    "action_instructions",
    "clinical_rationale",
    "priority",
    "annual_fills",
    "default_gp_value",
    "keyword_match_mode",
    "is_enabled",
    "expected_qty",
    "expected_days_supply",
)
AUDIT_RULE_FIELDS = (
    "rule_code",
    "rule_name",
    "rule_description",
    "rule_type",
    "drug_keywords",
    "ndc_pattern",
    "expected_quantity",
    "min_quantity",
    "max_quantity",
    "quantity_tolerance",
    "min_days_supply",
    "max_days_supply",
    "allowed_daw_codes",
    "has_generic_available",
    "gp_threshold",
    "severity",
    "audit_risk_score",
    "is_enabled",
)
# Opportunity columns a resolved data-quality issue may write back
DQ_WRITABLE_FIELDS = (
    "prescriber_name",
    "insurance_bin",
    "insurance_group",
    "current_ndc",
    "current_drug_name",
    "recommended_drug_name",
)

OPPORTUNITY_SELECT = """
    SELECT o.*, p.first_name AS patient_first_name, p.last_name AS patient_last_name,
           p.date_of_birth AS patient_dob, p.patient_hash, p.insurance_pcn,
           p.contract_id, p.plan_name, ph.pharmacy_name
    FROM opportunities o
    JOIN patients p ON p.patient_id = o.patient_id
    JOIN pharmacies ph ON ph.pharmacy_id = o.pharmacy_id
"""

# annual_margin_gain when set, otherwise twelve monthly fills
ANNUAL_VALUE_SQL = (
    "(CASE WHEN COALESCE({a}.annual_margin_gain,0) > 0 THEN {a}.annual_margin_gain "
    "WHEN COALESCE({a}.potential_margin_gain,0) > 0 THEN {a}.potential_margin_gain * 12 ELSE 0 END)"
)


def annual_value_sql(alias: str = "o") -> str:
    return ANNUAL_VALUE_SQL.format(a=alias)


def annual_value(opp: Dict[str, Any]) -> float:
    annual = opp.get("annual_margin_gain") or 0
    potential = opp.get("potential_margin_gain") or 0
    if annual > 0:
        return float(annual)
    if potential > 0:
        return float(potential) * 12
    return 0.0


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


class NotFoundError(LookupError):
    """Raised when a requested row does not exist (or is outside the caller's scope)."""


class TheRxService:
    """High-level service that wraps common operations.

    It manages its own connection and ensures the schema exists.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or get_settings().db_path
        self.conn = get_connection(self.db_path)
        self.lock = threading.RLock()
        init_db(self.conn)
        log.info("[Service] Connected to database at '%s'", self.db_path)

    # --- Low level helpers -------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.lock:
            with self.conn:
                yield self.conn

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.lock:
            return rows_to_dicts(self.conn.execute(sql, params).fetchall())

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.lock:
            return row_to_dict(self.conn.execute(sql, params).fetchone())

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        with self.lock:
            row = self.conn.execute(sql, params).fetchone()
        return row[0] if row else None

    # --- Pharmacy operations ----------------------------------------------
    def create_pharmacy(
        self,
        pharmacy_name: str,
        state: Optional[str] = None,
        status: str = "active",
        submitter_email: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        pharmacy_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not pharmacy_name or not pharmacy_name.strip():
            raise ValueError("pharmacy_name required")
        if status not in PHARMACY_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Allowed: {list(PHARMACY_STATUSES)}")
        pid = pharmacy_id or new_id()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO pharmacies (pharmacy_id, pharmacy_name, state, status, submitter_email, settings)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (pid, pharmacy_name.strip(), state, status, submitter_email, to_json(settings or {})),
            )
        log.info("[Pharmacies] Added pharmacy id=%s name='%s'", pid, pharmacy_name)
        return self.get_pharmacy(pid)

    def get_pharmacy(self, pharmacy_id: str) -> Dict[str, Any]:
        row = self.fetch_one("SELECT * FROM pharmacies WHERE pharmacy_id = ?", (pharmacy_id,))
        if not row:
            raise NotFoundError("pharmacy not found")
        return row

    def list_pharmacies(self) -> List[Dict[str, Any]]:
        return self.fetch_all(
            f"""
            SELECT ph.pharmacy_id, ph.pharmacy_name, ph.state, ph.status, ph.submitter_email, ph.created_at,
                   (SELECT COUNT(*) FROM patients p WHERE p.pharmacy_id = ph.pharmacy_id) AS patient_count,
                   (SELECT COUNT(*) FROM users u WHERE u.pharmacy_id = ph.pharmacy_id) AS user_count,
                   (SELECT COUNT(*) FROM opportunities o WHERE o.pharmacy_id = ph.pharmacy_id
                        AND o.status IN ({_placeholders(ACTIVE_STATUSES)})) AS opportunity_count,
                   (SELECT COALESCE(SUM({annual_value_sql()}),0) FROM opportunities o
                        WHERE o.pharmacy_id = ph.pharmacy_id
                        AND o.status IN ({_placeholders(ACTIVE_STATUSES)})) AS total_value,
                   (SELECT COALESCE(SUM({annual_value_sql()}),0) FROM opportunities o
                        WHERE o.pharmacy_id = ph.pharmacy_id AND o.status = 'Completed') AS captured_value,
                   (SELECT MAX(o.updated_at) FROM opportunities o WHERE o.pharmacy_id = ph.pharmacy_id) AS last_activity
            FROM pharmacies ph
            ORDER BY ph.pharmacy_name ASC
            """,
            (*ACTIVE_STATUSES, *ACTIVE_STATUSES),
        )

    def active_pharmacy_ids(self) -> List[str]:
        rows = self.fetch_all(
            "SELECT pharmacy_id FROM pharmacies WHERE status IN ('active','onboarding','demo') ORDER BY created_at"
        )
        return [r["pharmacy_id"] for r in rows]

    def get_pharmacy_settings(self, pharmacy_id: str) -> Dict[str, Any]:
        pharmacy = self.get_pharmacy(pharmacy_id)
        merged = dict(DEFAULT_PHARMACY_SETTINGS)
        merged.update(pharmacy.get("settings") or {})
        return merged

    def update_pharmacy_settings(self, pharmacy_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        current = self.get_pharmacy(pharmacy_id).get("settings") or {}
        for key in ("prescriber_warn_threshold", "prescriber_block_threshold", "prescriber_window_days"):
            value = changes.get(key)
            if value is not None and (not isinstance(value, int) or value < 1):
                raise ValueError(f"{key} must be a positive integer")
        current.update(changes)
        with self.transaction() as conn:
            conn.execute(
                "UPDATE pharmacies SET settings = ? WHERE pharmacy_id = ?",
                (to_json(current), pharmacy_id),
            )
        log.info("[Pharmacies] Updated settings for pharmacy id=%s keys=%s", pharmacy_id, sorted(changes))
        return self.get_pharmacy_settings(pharmacy_id)

    # --- User operations ---------------------------------------------------
    def create_user(
        self,
        email: str,
        password: str,
        role: str,
        pharmacy_id: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        must_change_password: bool = False,
    ) -> Dict[str, Any]:
        if role not in USER_ROLES:
            raise ValueError(f"Invalid role '{role}'. Allowed: {list(USER_ROLES)}")
        if role != "super_admin" and not pharmacy_id:
            raise ValueError("pharmacy_id required for pharmacy users")
        if not email or "@" not in email:
            raise ValueError("valid email required")
        check_password_strength(password)
        uid = new_id()
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO users (user_id, pharmacy_id, email, password_hash, first_name, last_name,
                                       role, must_change_password)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (uid, pharmacy_id, email.strip().lower(), hash_password(password),
                     first_name, last_name, role, int(must_change_password)),
                )
        except sqlite3.IntegrityError as e:
            log.error("[Users][Error] Integrity error adding user: %s", e)
            raise ValueError("email already registered") from e
        log.info("[Users] Added user id=%s role=%s pharmacy=%s", uid, role, pharmacy_id)
        return self.get_user(uid, include_secret=False)

    def get_user(self, user_id: str, include_secret: bool = True) -> Optional[Dict[str, Any]]:
        row = self.fetch_one(
            """
            SELECT u.*, ph.pharmacy_name FROM users u
            LEFT JOIN pharmacies ph ON ph.pharmacy_id = u.pharmacy_id
            WHERE u.user_id = ?
            """,
            (user_id,),
        )
        if row and not include_secret:
            row.pop("password_hash", None)
        return row

    def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        row = self.fetch_one(
            """
            SELECT u.*, ph.pharmacy_name FROM users u
            LEFT JOIN pharmacies ph ON ph.pharmacy_id = u.pharmacy_id
            WHERE u.email = ?
            """,
            ((email or "").strip().lower(),),
        )
        if not row or not row["is_active"] or not verify_password(password, row["password_hash"]):
            log.info("[Auth] Failed login for '%s'", email)
            return None
        stamp = utcnow()
        with self.transaction() as conn:
            conn.execute("UPDATE users SET last_login = ? WHERE user_id = ?", (stamp, row["user_id"]))
        row["last_login"] = stamp
        row.pop("password_hash", None)
        return row

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        row = self.get_user(user_id)
        if not row:
            raise NotFoundError("user not found")
        if not verify_password(current_password, row["password_hash"]):
            raise ValueError("current password is incorrect")
        if current_password == new_password:
            raise ValueError("new password must differ from the current password")
        check_password_strength(new_password)
        with self.transaction() as conn:
            conn.execute(
                "UPDATE users SET password_hash = ?, must_change_password = 0 WHERE user_id = ?",
                (hash_password(new_password), user_id),
            )
        log.info("[Users] Password changed for user id=%s", user_id)

    def list_users(self, pharmacy_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = (
            "SELECT user_id, pharmacy_id, email, first_name, last_name, role, is_active, "
            "must_change_password, last_login, created_at FROM users"
        )
        params: List[Any] = []
        if pharmacy_id:
            sql += " WHERE pharmacy_id = ?"
            params.append(pharmacy_id)
        sql += " ORDER BY last_name, first_name, email"
        return self.fetch_all(sql, params)

    def update_user(self, user_id: str, changes: Dict[str, Any], pharmacy_id: Optional[str] = None) -> Dict[str, Any]:
        user = self.get_user(user_id, include_secret=False)
        if not user or (pharmacy_id and user["pharmacy_id"] != pharmacy_id):
            raise NotFoundError("user not found")
        fields: List[str] = []
        params: List[Any] = []
        for col in ("first_name", "last_name", "role", "is_active"):
            if col in changes and changes[col] is not None:
                value = changes[col]
                if col == "role" and value not in USER_ROLES:
                    raise ValueError(f"Invalid role '{value}'. Allowed: {list(USER_ROLES)}")
                if col == "is_active":
                    value = int(bool(value))
                fields.append(f"{col} = ?")
                params.append(value)
        if not fields:
            return user
        params.append(user_id)
        with self.transaction() as conn:
            conn.execute(f"UPDATE users SET {', '.join(fields)} WHERE user_id = ?", params)
        log.info("[Users] Updated user id=%s fields=%s", user_id, [f.split(" ")[0] for f in fields])
        return self.get_user(user_id, include_secret=False)

    # --- Patient operations ------------------------------------------------
    def list_patients(
        self,
        pharmacy_id: Optional[str],
        search: Optional[str] = None,
        has_opportunities: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        where: List[str] = []
        params: List[Any] = []
        if pharmacy_id:
            where.append("p.pharmacy_id = ?")
            params.append(pharmacy_id)
        if search:
            like = f"%{search.strip()}%"
            where.append("(p.first_name LIKE ? OR p.last_name LIKE ? OR p.patient_hash LIKE ? OR p.external_id LIKE ?)")
            params.extend([like, like, like, like])
        opp_count = (
            f"(SELECT COUNT(*) FROM opportunities o WHERE o.patient_id = p.patient_id "
            f"AND o.status IN ({_placeholders(ACTIVE_STATUSES)}))"
        )
        if has_opportunities is True:
            where.append(f"{opp_count} > 0")
            params.extend(ACTIVE_STATUSES)
        elif has_opportunities is False:
            where.append(f"{opp_count} = 0")
            params.extend(ACTIVE_STATUSES)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        total = self.scalar(f"SELECT COUNT(*) FROM patients p {clause}", params)
        rows = self.fetch_all(
            f"""
            SELECT p.*, {opp_count} AS opportunity_count,
                   (SELECT COALESCE(SUM({annual_value_sql()}),0) FROM opportunities o
                        WHERE o.patient_id = p.patient_id
                        AND o.status IN ({_placeholders(ACTIVE_STATUSES)})) AS total_annual_value,
                   (SELECT MAX(r.dispensed_date) FROM prescriptions r WHERE r.patient_id = p.patient_id) AS last_fill_date,
                   (SELECT COUNT(*) FROM prescriptions r WHERE r.patient_id = p.patient_id) AS prescription_count
            FROM patients p {clause}
            ORDER BY total_annual_value DESC, p.last_name, p.first_name
            LIMIT ? OFFSET ?
            """,
            (*ACTIVE_STATUSES, *ACTIVE_STATUSES, *params, limit, offset),
        )
        return {"patients": rows, "total": total}

    def get_patient(self, patient_id: str, pharmacy_id: Optional[str] = None) -> Dict[str, Any]:
        patient = self.fetch_one("SELECT * FROM patients WHERE patient_id = ?", (patient_id,))
        if not patient or (pharmacy_id and patient["pharmacy_id"] != pharmacy_id):
            raise NotFoundError("patient not found")
        patient["prescriptions"] = self.fetch_all(
            "SELECT * FROM prescriptions WHERE patient_id = ? ORDER BY dispensed_date DESC, rx_number DESC",
            (patient_id,),
        )
        patient["opportunities"] = self.fetch_all(
            f"{OPPORTUNITY_SELECT} WHERE o.patient_id = ? ORDER BY o.annual_margin_gain DESC",
            (patient_id,),
        )
        return patient

    def enroll_med_sync(self, patient_id: str, sync_date: int, pharmacy_id: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(sync_date, int) or not 1 <= sync_date <= 28:
            raise ValueError("syncDate must be a day of month between 1 and 28")
        self.get_patient(patient_id, pharmacy_id)
        with self.transaction() as conn:
            conn.execute(
                "UPDATE patients SET med_sync_enrolled = 1, med_sync_date = ? WHERE patient_id = ?",
                (sync_date, patient_id),
            )
        log.info("[Patients] Med sync enrolled patient id=%s day=%s", patient_id, sync_date)
        return self.fetch_one("SELECT * FROM patients WHERE patient_id = ?", (patient_id,))

    # --- Opportunity operations -------------------------------------------
    def list_opportunities(
        self,
        pharmacy_id: Optional[str],
        status: Optional[str] = None,
        opportunity_type: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 500,
        offset: int = 0,
        include_blocked: bool = False,
    ) -> Dict[str, Any]:
        """Filtered opportunity list plus per-status counts over the whole pharmacy.

        Opportunities with a pending data-quality issue are held back unless
        ``include_blocked`` is set.
        """
        where: List[str] = []
        params: List[Any] = []
        if pharmacy_id:
            where.append("o.pharmacy_id = ?")
            params.append(pharmacy_id)
        scope_where = list(where)
        scope_params = list(params)
        if status:
            if status not in OPPORTUNITY_STATUSES:
                raise ValueError(f"Invalid status '{status}'. Allowed: {list(OPPORTUNITY_STATUSES)}")
            where.append("o.status = ?")
            params.append(status)
        if opportunity_type:
            where.append("o.opportunity_type = ?")
            params.append(opportunity_type)
        if priority:
            where.append("o.clinical_priority = ?")
            params.append(priority)
        if search:
            like = f"%{search.strip()}%"
            where.append(
                "(p.first_name LIKE ? OR p.last_name LIKE ? OR p.patient_hash LIKE ? "
                "OR o.current_drug_name LIKE ? OR o.recommended_drug_name LIKE ? OR o.prescriber_name LIKE ?)"
            )
            params.extend([like] * 6)
        if not include_blocked:
            blocked = (
                "NOT EXISTS (SELECT 1 FROM data_quality_issues dq "
                "WHERE dq.opportunity_id = o.opportunity_id AND dq.status = 'pending')"
            )
            where.append(blocked)
            scope_where.append(blocked)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        total = self.scalar(
            f"SELECT COUNT(*) FROM opportunities o JOIN patients p ON p.patient_id = o.patient_id {clause}",
            params,
        )
        rows = self.fetch_all(
            f"{OPPORTUNITY_SELECT} {clause} ORDER BY {annual_value_sql()} DESC, o.created_at DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        scope_clause = f"WHERE {' AND '.join(scope_where)}" if scope_where else ""
        count_rows = self.fetch_all(
            f"""
            SELECT o.status, COUNT(*) AS count, COALESCE(SUM(o.potential_margin_gain),0) AS total_margin
            FROM opportunities o {scope_clause} GROUP BY o.status
            """,
            scope_params,
        )
        counts = {r["status"]: {"count": r["count"], "totalMargin": round(r["total_margin"], 2)} for r in count_rows}
        return {"opportunities": rows, "counts": counts, "total": total}

    def get_opportunity(self, opportunity_id: str, pharmacy_id: Optional[str] = None) -> Dict[str, Any]:
        row = self.fetch_one(f"{OPPORTUNITY_SELECT} WHERE o.opportunity_id = ?", (opportunity_id,))
        if not row or (pharmacy_id and row["pharmacy_id"] != pharmacy_id):
            raise NotFoundError("opportunity not found")
        return row

    def get_opportunities(self, opportunity_ids: Sequence[str], pharmacy_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if not opportunity_ids:
            return []
        sql = f"{OPPORTUNITY_SELECT} WHERE o.opportunity_id IN ({_placeholders(opportunity_ids)})"
        params: List[Any] = list(opportunity_ids)
        if pharmacy_id:
            sql += " AND o.pharmacy_id = ?"
            params.append(pharmacy_id)
        return self.fetch_all(sql, params)

    def update_opportunity(
        self,
        opportunity_id: str,
        pharmacy_id: Optional[str] = None,
        status: Optional[str] = None,
        staff_notes: Optional[str] = None,
        dismissed_reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if status is not None and status not in OPPORTUNITY_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Allowed: {list(OPPORTUNITY_STATUSES)}")
        current = self.get_opportunity(opportunity_id, pharmacy_id)
        stamp = utcnow()
        fields = ["updated_at = ?"]
        params: List[Any] = [stamp]
        if status is not None:
            fields.append("status = ?")
            params.append(status)
            if status in ACTIONED_STATUSES and current["status"] != status:
                fields.extend(["actioned_at = ?", "actioned_by = ?"])
                params.extend([stamp, user_id])
        if staff_notes is not None:
            fields.append("staff_notes = ?")
            params.append(staff_notes)
        if dismissed_reason is not None:
            fields.append("dismissed_reason = ?")
            params.append(dismissed_reason)
        params.append(opportunity_id)
        with self.transaction() as conn:
            conn.execute(f"UPDATE opportunities SET {', '.join(fields)} WHERE opportunity_id = ?", params)
        if status is not None and status != current["status"]:
            log.info("[Opportunities] id=%s %s -> %s by user=%s", opportunity_id, current["status"], status, user_id)
        return self.get_opportunity(opportunity_id)

    def bulk_update_opportunities(
        self,
        opportunity_ids: Sequence[str],
        status: str,
        staff_notes: Optional[str] = None,
        pharmacy_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        if not opportunity_ids:
            raise ValueError("opportunityIds required")
        if status not in OPPORTUNITY_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Allowed: {list(OPPORTUNITY_STATUSES)}")
        stamp = utcnow()
        sql = "UPDATE opportunities SET status = ?, updated_at = ?"
        params: List[Any] = [status, stamp]
        if status in ACTIONED_STATUSES:
            sql += ", actioned_at = CASE WHEN status = ? THEN actioned_at ELSE ? END, actioned_by = ?"
            params.extend([status, stamp, user_id])
        if staff_notes is not None:
            sql += ", staff_notes = ?"
            params.append(staff_notes)
        sql += f" WHERE opportunity_id IN ({_placeholders(opportunity_ids)})"
        params.extend(opportunity_ids)
        if pharmacy_id:
            sql += " AND pharmacy_id = ?"
            params.append(pharmacy_id)
        with self.transaction() as conn:
            cur = conn.execute(sql, params)
        log.info("[Opportunities] Bulk update %s rows -> %s", cur.rowcount, status)
        return cur.rowcount

    def delete_opportunity(self, opportunity_id: str, pharmacy_id: Optional[str] = None) -> None:
        self.get_opportunity(opportunity_id, pharmacy_id)
        with self.transaction() as conn:
            conn.execute("DELETE FROM data_quality_issues WHERE opportunity_id = ?", (opportunity_id,))
            conn.execute("DELETE FROM opportunities WHERE opportunity_id = ?", (opportunity_id,))
        log.info("[Opportunities] Deleted opportunity id=%s", opportunity_id)

    def opportunity_stats(self, pharmacy_id: Optional[str]) -> Dict[str, Any]:
        where = "WHERE o.pharmacy_id = ?" if pharmacy_id else ""
        params = [pharmacy_id] if pharmacy_id else []
        by_status = self.fetch_all(
            f"""
            SELECT o.status, COUNT(*) AS count, COALESCE(SUM(o.potential_margin_gain),0) AS monthly_margin,
                   COALESCE(SUM({annual_value_sql()}),0) AS annual_margin
            FROM opportunities o {where} GROUP BY o.status
            """,
            params,
        )
        by_type = self.fetch_all(
            f"""
            SELECT o.opportunity_type, COUNT(*) AS count, COALESCE(SUM({annual_value_sql()}),0) AS annual_margin
            FROM opportunities o {where} GROUP BY o.opportunity_type ORDER BY annual_margin DESC
            """,
            params,
        )
        active = [r for r in by_status if r["status"] in ACTIVE_STATUSES]
        return {
            "by_status": by_status,
            "by_type": by_type,
            "active_count": sum(r["count"] for r in active),
            "active_annual_margin": round(sum(r["annual_margin"] for r in active), 2),
            "captured_annual_margin": round(
                sum(r["annual_margin"] for r in by_status if r["status"] == "Completed"), 2
            ),
        }

    def prescriber_warning(self, pharmacy_id: str, prescriber_name: str) -> Dict[str, Any]:
        """How many patients this prescriber was already contacted about recently."""
        settings = self.get_pharmacy_settings(pharmacy_id)
        window = int(settings.get("prescriber_window_days") or 30)
        row = self.fetch_one(
            f"""
            SELECT COUNT(DISTINCT patient_id) AS patients, COUNT(*) AS opps
            FROM opportunities
            WHERE pharmacy_id = ? AND prescriber_name = ? COLLATE NOCASE
              AND status IN ({_placeholders(ACTIONED_STATUSES)})
              AND actioned_at >= datetime('now', ?)
            """,
            (pharmacy_id, prescriber_name, *ACTIONED_STATUSES, f"-{window} day"),
        ) or {}
        warn = settings.get("prescriber_warn_threshold")
        block = settings.get("prescriber_block_threshold")
        patients = row.get("patients") or 0
        return {
            "prescriberName": prescriber_name,
            "uniquePatientsActioned": patients,
            "totalOppsActioned": row.get("opps") or 0,
            "warnThreshold": warn,
            "blockThreshold": block,
            "shouldWarn": warn is not None and patients >= warn,
            "shouldBlock": block is not None and patients >= block,
        }

    def didnt_work_queue(self, pharmacy_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Opportunities marked "Didn't Work", with how many active ones share the same plan and group."""
        where = "WHERE o.status = 'Didn''t Work'"
        params: List[Any] = []
        if pharmacy_id:
            where += " AND o.pharmacy_id = ?"
            params.append(pharmacy_id)
        return self.fetch_all(
            f"""
            SELECT o.opportunity_id, o.opportunity_type, o.trigger_group, o.current_drug_name,
                   o.recommended_drug_name, o.potential_margin_gain, o.annual_margin_gain, o.staff_notes,
                   o.updated_at, o.pharmacy_id, ph.pharmacy_name, o.insurance_bin, o.insurance_group,
                   p.plan_name, p.first_name AS patient_first_name, p.last_name AS patient_last_name,
                   (SELECT COUNT(*) FROM opportunities x
                        WHERE x.status IN ({_placeholders(ACTIVE_STATUSES)})
                        AND COALESCE(x.trigger_group, x.opportunity_type) = COALESCE(o.trigger_group, o.opportunity_type)
                        AND COALESCE(x.insurance_bin,'') = COALESCE(o.insurance_bin,'')
                        AND COALESCE(x.insurance_group,'') = COALESCE(o.insurance_group,'')) AS affected_count,
                   (SELECT COALESCE(SUM({annual_value_sql('x')}),0) FROM opportunities x
                        WHERE x.status IN ({_placeholders(ACTIVE_STATUSES)})
                        AND COALESCE(x.trigger_group, x.opportunity_type) = COALESCE(o.trigger_group, o.opportunity_type)
                        AND COALESCE(x.insurance_bin,'') = COALESCE(o.insurance_bin,'')
                        AND COALESCE(x.insurance_group,'') = COALESCE(o.insurance_group,'')) AS affected_value
            FROM opportunities o
            JOIN patients p ON p.patient_id = o.patient_id
            JOIN pharmacies ph ON ph.pharmacy_id = o.pharmacy_id
            {where}
            ORDER BY affected_value DESC, o.updated_at DESC
            """,
            (*ACTIVE_STATUSES, *ACTIVE_STATUSES, *params),
        )

    # --- Trigger operations -------------------------------------------------
    def _trigger_values(self, data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for col in TRIGGER_SCALAR_FIELDS:
            if col in data:
                values[col] = data[col]
        for col in TRIGGER_LIST_FIELDS:
            if col in data:
                values[col] = to_json(clean_list(data[col]) or [])
        for col in TRIGGER_NULLABLE_LIST_FIELDS:
            if col in data:
                items = clean_list(data[col])
                if items and col.startswith("bin_"):
                    items = [normalize_bin(b) for b in items]
                values[col] = to_json(items) if items else None
        if not partial:
            for col in ("trigger_code", "display_name", "trigger_type"):
                if not values.get(col):
                    raise ValueError(f"{col} required")
        if "trigger_type" in values and values["trigger_type"] not in TRIGGER_TYPES:
            raise ValueError(f"Invalid trigger_type '{values['trigger_type']}'. Allowed: {list(TRIGGER_TYPES)}")
        if values.get("priority") is not None and values["priority"] not in PRIORITIES:
            raise ValueError(f"Invalid priority '{values['priority']}'. Allowed: {list(PRIORITIES)}")
        if values.get("keyword_match_mode") is not None and values["keyword_match_mode"] not in MATCH_MODES:
            raise ValueError(f"Invalid keyword_match_mode '{values['keyword_match_mode']}'")
        if values.get("annual_fills") is not None and int(values["annual_fills"]) < 1:
            raise ValueError("annual_fills must be positive")
        if "is_enabled" in values and values["is_enabled"] is not None:
            values["is_enabled"] = int(bool(values["is_enabled"]))
        return {k: v for k, v in values.items() if v is not None or k in data}

    def create_trigger(self, data: Dict[str, Any]) -> Dict[str, Any]:
        with self.transaction() as conn:
            tid = self._insert_trigger(conn, data)
        return self.get_trigger(tid)

    def _insert_trigger(self, conn: sqlite3.Connection, data: Dict[str, Any]) -> str:
        values = self._trigger_values(data, partial=False)
        tid = new_id()
        values["trigger_id"] = tid
        cols = list(values)
        try:
            conn.execute(
                f"INSERT INTO triggers ({', '.join(cols)}) VALUES ({_placeholders(cols)})",
                [values[c] for c in cols],
            )
        except sqlite3.IntegrityError as e:
            log.error("[Triggers][Error] Integrity error adding trigger: %s", e)
            raise ValueError(f"trigger_code '{values['trigger_code']}' already exists") from e
        if data.get("bin_values"):
            self._replace_bin_values(conn, tid, data["bin_values"])
        log.info("[Triggers] Added trigger id=%s code=%s", tid, values["trigger_code"])
        return tid

    def update_trigger(self, trigger_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.get_trigger(trigger_id)
        values = self._trigger_values(data, partial=True)
        with self.transaction() as conn:
            if values:
                conn.execute(
                    f"UPDATE triggers SET {', '.join(f'{c} = ?' for c in values)} WHERE trigger_id = ?",
                    [*values.values(), trigger_id],
                )
            if data.get("bin_values") is not None:
                self._replace_bin_values(conn, trigger_id, data["bin_values"])
        log.info("[Triggers] Updated trigger id=%s fields=%s", trigger_id, sorted(values))
        return self.get_trigger(trigger_id)

    def delete_trigger(self, trigger_id: str) -> None:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM triggers WHERE trigger_id = ?", (trigger_id,))
        if cur.rowcount == 0:
            raise NotFoundError("trigger not found")
        log.info("[Triggers] Deleted trigger id=%s", trigger_id)

    def _replace_bin_values(self, conn: sqlite3.Connection, trigger_id: str, bin_values: List[Dict[str, Any]]) -> None:
        conn.execute("DELETE FROM trigger_bin_values WHERE trigger_id = ?", (trigger_id,))
        for bv in bin_values:
            bin_ = normalize_bin(bv.get("bin"))
            if not bin_:
                raise ValueError("bin_values entries need a bin")
            excluded = bool(bv.get("isExcluded", bv.get("is_excluded", False)))
            status = bv.get("coverageStatus") or bv.get("coverage_status") or ("excluded" if excluded else "works")
            if status not in COVERAGE_STATUSES:
                raise ValueError(f"Invalid coverageStatus '{status}'")
            conn.execute(
                """
                INSERT INTO trigger_bin_values (trigger_id, insurance_bin, insurance_group, gp_value,
                                                is_excluded, coverage_status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (trigger_id, bin_, (bv.get("group") or "").strip(), bv.get("gpValue", bv.get("gp_value")),
                 int(excluded), status),
            )

    def trigger_bin_values(self, trigger_id: str) -> List[Dict[str, Any]]:
        return self.fetch_all(
            "SELECT * FROM trigger_bin_values WHERE trigger_id = ? ORDER BY insurance_bin, insurance_group",
            (trigger_id,),
        )

    @staticmethod
    def _bin_value_out(row: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "bin": row["insurance_bin"],
            "group": row["insurance_group"] or None,
            "gpValue": row["gp_value"],
            "isExcluded": bool(row["is_excluded"]),
            "coverageStatus": row["coverage_status"],
            "verifiedAt": row["verified_at"],
            "verifiedClaimCount": row["verified_claim_count"],
            "avgReimbursement": row["avg_reimbursement"],
            "avgQty": row["avg_qty"],
            "bestDrugName": row["best_drug_name"],
            "bestNdc": row["best_ndc"],
        }

    def get_trigger(self, trigger_id: str) -> Dict[str, Any]:
        row = self.fetch_one("SELECT * FROM triggers WHERE trigger_id = ?", (trigger_id,))
        if not row:
            raise NotFoundError("trigger not found")
        row["is_enabled"] = bool(row["is_enabled"])
        row["bin_values"] = [self._bin_value_out(b) for b in self.trigger_bin_values(trigger_id)]
        return row

    def list_triggers(self, enabled_only: bool = False, with_stats: bool = True) -> List[Dict[str, Any]]:
        sql = "SELECT trigger_id FROM triggers"
        if enabled_only:
            sql += " WHERE is_enabled = 1"
        sql += " ORDER BY display_name"
        triggers = [self.get_trigger(r["trigger_id"]) for r in self.fetch_all(sql)]
        if not with_stats:
            return triggers
        for trig in triggers:
            stats = self.fetch_all(
                f"""
                SELECT o.pharmacy_id, ph.pharmacy_name, COUNT(*) AS opportunity_count,
                       COUNT(DISTINCT o.patient_id) AS patient_count,
                       COALESCE(SUM({annual_value_sql()}),0) AS total_margin
                FROM opportunities o JOIN pharmacies ph ON ph.pharmacy_id = o.pharmacy_id
                WHERE o.trigger_id = ? AND o.status IN ({_placeholders(ACTIVE_STATUSES)})
                GROUP BY o.pharmacy_id ORDER BY total_margin DESC
                """,
                (trig["trigger_id"], *ACTIVE_STATUSES),
            )
            trig["pharmacy_stats"] = stats
            trig["total_opportunities"] = sum(s["opportunity_count"] for s in stats)
            trig["total_patients"] = sum(s["patient_count"] for s in stats)
            trig["total_margin"] = round(sum(s["total_margin"] for s in stats), 2)
            dist = {"verified": 0, "likely": 0, "unknown": 0, "excluded": 0}
            for bv in trig["bin_values"]:
                if bv["isExcluded"] or bv["coverageStatus"] == "excluded":
                    dist["excluded"] += 1
                elif bv["coverageStatus"] == "verified":
                    dist["verified"] += 1
                elif bv["coverageStatus"] == "works":
                    dist["likely"] += 1
                else:
                    dist["unknown"] += 1
            trig["confidence_distribution"] = dist
        return triggers

    # --- Audit rule operations ----------------------------------------------
    def _audit_rule_values(self, data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for col in AUDIT_RULE_FIELDS:
            if col not in data:
                continue
            value = data[col]
            if col in ("drug_keywords", "allowed_daw_codes"):
                items = clean_list(value)
                value = to_json(items) if items else None
            elif col in ("is_enabled", "has_generic_available") and value is not None:
                value = int(bool(value))
            values[col] = value
        if not partial:
            for col in ("rule_code", "rule_name", "rule_type"):
                if not values.get(col):
                    raise ValueError(f"{col} required")
        if "rule_type" in values and values["rule_type"] not in AUDIT_RULE_TYPES:
            raise ValueError(f"Invalid rule_type '{values['rule_type']}'. Allowed: {list(AUDIT_RULE_TYPES)}")
        if values.get("severity") is not None and values["severity"] not in SEVERITIES:
            raise ValueError(f"Invalid severity '{values['severity']}'. Allowed: {list(SEVERITIES)}")
        tol = values.get("quantity_tolerance")
        if tol is not None and not 0 <= float(tol) < 1:
            raise ValueError("quantity_tolerance must be a fraction between 0 and 1")
        return values

    def create_audit_rule(self, data: Dict[str, Any]) -> Dict[str, Any]:
        values = self._audit_rule_values(data, partial=False)
        values = {k: v for k, v in values.items() if v is not None}
        rid = new_id()
        values["rule_id"] = rid
        cols = list(values)
        try:
            with self.transaction() as conn:
                conn.execute(
                    f"INSERT INTO audit_rules ({', '.join(cols)}) VALUES ({_placeholders(cols)})",
                    [values[c] for c in cols],
                )
        except sqlite3.IntegrityError as e:
            log.error("[Audit][Error] Integrity error adding rule: %s", e)
            raise ValueError(f"rule_code '{values['rule_code']}' already exists") from e
        log.info("[Audit] Added rule id=%s code=%s", rid, values["rule_code"])
        return self.get_audit_rule(rid)

    def update_audit_rule(self, rule_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.get_audit_rule(rule_id)
        values = self._audit_rule_values(data, partial=True)
        if values:
            with self.transaction() as conn:
                conn.execute(
                    f"UPDATE audit_rules SET {', '.join(f'{c} = ?' for c in values)} WHERE rule_id = ?",
                    [*values.values(), rule_id],
                )
        return self.get_audit_rule(rule_id)

    def delete_audit_rule(self, rule_id: str) -> None:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM audit_rules WHERE rule_id = ?", (rule_id,))
        if cur.rowcount == 0:
            raise NotFoundError("audit rule not found")
        log.info("[Audit] Deleted rule id=%s", rule_id)

    def get_audit_rule(self, rule_id: str) -> Dict[str, Any]:
        row = self.fetch_one("SELECT * FROM audit_rules WHERE rule_id = ?", (rule_id,))
        if not row:
            raise NotFoundError("audit rule not found")
        row["is_enabled"] = bool(row["is_enabled"])
        if row["has_generic_available"] is not None:
            row["has_generic_available"] = bool(row["has_generic_available"])
        return row

    def list_audit_rules(self, enabled_only: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT rule_id FROM audit_rules"
        if enabled_only:
            sql += " WHERE is_enabled = 1"
        sql += " ORDER BY rule_name"
        rules = [self.get_audit_rule(r["rule_id"]) for r in self.fetch_all(sql)]
        for rule in rules:
            stats = self.fetch_all(
                """
                SELECT f.pharmacy_id, ph.pharmacy_name, COUNT(*) AS risk_count,
                       COUNT(DISTINCT f.patient_id) AS patient_count,
                       COALESCE(SUM(f.exposure),0) AS total_exposure
                FROM audit_flags f JOIN pharmacies ph ON ph.pharmacy_id = f.pharmacy_id
                WHERE f.rule_id = ? AND f.status = 'open'
                GROUP BY f.pharmacy_id ORDER BY total_exposure DESC
                """,
                (rule["rule_id"],),
            )
            rule["pharmacy_stats"] = stats
            rule["total_risks"] = sum(s["risk_count"] for s in stats)
            rule["total_patients"] = sum(s["patient_count"] for s in stats)
            rule["total_exposure"] = round(sum(s["total_exposure"] for s in stats), 2)
        return rules

    def list_audit_flags(self, pharmacy_id: Optional[str], limit: int = 500) -> List[Dict[str, Any]]:
        sql = """
            SELECT f.*, r.rule_name, p.first_name AS patient_first_name, p.last_name AS patient_last_name
            FROM audit_flags f
            JOIN audit_rules r ON r.rule_id = f.rule_id
            JOIN patients p ON p.patient_id = f.patient_id
            WHERE f.status = 'open'
        """
        params: List[Any] = []
        if pharmacy_id:
            sql += " AND f.pharmacy_id = ?"
            params.append(pharmacy_id)
        sql += " ORDER BY CASE f.severity WHEN 'critical' THEN 0 WHEN 'warning' THEN 1 ELSE 2 END, f.exposure DESC LIMIT ?"
        params.append(limit)
        return self.fetch_all(sql, params)

    # --- Data quality operations --------------------------------------------
    def add_data_quality_issue(
        self,
        conn: sqlite3.Connection,
        pharmacy_id: str,
        issue_type: str,
        description: str,
        field_name: Optional[str] = None,
        original_value: Optional[str] = None,
        patient_id: Optional[str] = None,
        prescription_id: Optional[str] = None,
        opportunity_id: Optional[str] = None,
    ) -> str:
        """Insert inside the caller's transaction."""
        iid = new_id()
        conn.execute(
            """
            INSERT INTO data_quality_issues (issue_id, pharmacy_id, opportunity_id, patient_id, prescription_id,
                                             issue_type, issue_description, field_name, original_value)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (iid, pharmacy_id, opportunity_id, patient_id, prescription_id, issue_type, description,
             field_name, original_value),
        )
        return iid

    def list_data_quality(
        self,
        pharmacy_id: Optional[str],
        status: Optional[str] = "pending",
        issue_type: Optional[str] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        where: List[str] = []
        params: List[Any] = []
        if pharmacy_id:
            where.append("dq.pharmacy_id = ?")
            params.append(pharmacy_id)
        if status:
            if status not in DQ_STATUSES:
                raise ValueError(f"Invalid status '{status}'. Allowed: {list(DQ_STATUSES)}")
            where.append("dq.status = ?")
            params.append(status)
        if issue_type:
            where.append("dq.issue_type = ?")
            params.append(issue_type)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        return self.fetch_all(
            f"""
            SELECT dq.*, ph.pharmacy_name,
                   TRIM(COALESCE(p.first_name,'') || ' ' || COALESCE(p.last_name,'')) AS patient_name,
                   COALESCE({annual_value_sql()}, 0) AS annual_margin_gain,
                   o.current_drug_name AS current_drug, o.recommended_drug_name AS recommended_drug
            FROM data_quality_issues dq
            JOIN pharmacies ph ON ph.pharmacy_id = dq.pharmacy_id
            LEFT JOIN patients p ON p.patient_id = dq.patient_id
            LEFT JOIN opportunities o ON o.opportunity_id = dq.opportunity_id
            {clause}
            ORDER BY annual_margin_gain DESC, dq.created_at DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )

    def data_quality_stats(self, pharmacy_id: Optional[str]) -> Dict[str, Any]:
        where = "WHERE dq.pharmacy_id = ?" if pharmacy_id else ""
        params = [pharmacy_id] if pharmacy_id else []
        by_status = {
            r["status"]: r["n"]
            for r in self.fetch_all(
                f"SELECT dq.status, COUNT(*) AS n FROM data_quality_issues dq {where} GROUP BY dq.status", params
            )
        }
        pending_where = f"{where} {'AND' if where else 'WHERE'} dq.status = 'pending'"
        by_type = {
            r["issue_type"]: r["n"]
            for r in self.fetch_all(
                f"SELECT dq.issue_type, COUNT(*) AS n FROM data_quality_issues dq {pending_where} GROUP BY dq.issue_type",
                params,
            )
        }
        blocked = self.scalar(
            f"""
            SELECT COALESCE(SUM({annual_value_sql()}),0) FROM opportunities o
            WHERE o.opportunity_id IN (SELECT dq.opportunity_id FROM data_quality_issues dq {pending_where})
            """,
            params,
        )
        return {
            "total_pending": by_status.get("pending", 0),
            "total_resolved": by_status.get("resolved", 0),
            "total_ignored": by_status.get("ignored", 0),
            "blocked_margin": round(blocked or 0, 2),
            "by_type": by_type,
        }

    def update_data_quality_issue(
        self,
        issue_id: str,
        status: str,
        resolved_value: Optional[str] = None,
        user_id: Optional[str] = None,
        pharmacy_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if status not in DQ_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Allowed: {list(DQ_STATUSES)}")
        issue = self.fetch_one("SELECT * FROM data_quality_issues WHERE issue_id = ?", (issue_id,))
        if not issue or (pharmacy_id and issue["pharmacy_id"] != pharmacy_id):
            raise NotFoundError("data quality issue not found")
        stamp = utcnow() if status != "pending" else None
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE data_quality_issues SET status = ?, resolved_value = ?, resolved_at = ?, resolved_by = ?
                WHERE issue_id = ?
                """,
                (status, resolved_value, stamp, user_id if stamp else None, issue_id),
            )
            field = issue["field_name"]
            if (status == "resolved" and resolved_value and issue["opportunity_id"]
                    and field in DQ_WRITABLE_FIELDS):
                conn.execute(
                    f"UPDATE opportunities SET {field} = ?, updated_at = ? WHERE opportunity_id = ?",
                    (resolved_value, utcnow(), issue["opportunity_id"]),
                )
        log.info("[DataQuality] Issue id=%s -> %s", issue_id, status)
        return self.fetch_one("SELECT * FROM data_quality_issues WHERE issue_id = ?", (issue_id,))

    # --- Approval queue ------------------------------------------------------
    def add_pending_type(
        self,
        conn: sqlite3.Connection,
        recommended_drug_name: str,
        current_drug_name: Optional[str],
        opportunity_type: str,
        source: str,
        source_details: Dict[str, Any],
        affected_pharmacies: List[str],
        total_patient_count: int,
        estimated_annual_margin: float,
    ) -> str:
        """Insert inside the caller's transaction."""
        pid = new_id()
        conn.execute(
            """
            INSERT INTO pending_opportunity_types (pending_type_id, recommended_drug_name, current_drug_name,
                opportunity_type, source, source_details, affected_pharmacies, total_patient_count,
                estimated_annual_margin)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (pid, recommended_drug_name, current_drug_name, opportunity_type, source, to_json(source_details),
             to_json(affected_pharmacies), total_patient_count, estimated_annual_margin),
        )
        return pid

    def pending_type_exists(self, current_drug_name: str, recommended_drug_name: str) -> bool:
        return bool(self.scalar(
            """
            SELECT 1 FROM pending_opportunity_types
            WHERE status IN ('pending','approved') AND current_drug_name = ? AND recommended_drug_name = ?
            """,
            (current_drug_name, recommended_drug_name),
        ))

    def get_pending_type(self, pending_type_id: str) -> Dict[str, Any]:
        row = self.fetch_one(
            """
            SELECT t.*, u.first_name AS reviewer_first, u.last_name AS reviewer_last
            FROM pending_opportunity_types t LEFT JOIN users u ON u.user_id = t.reviewed_by
            WHERE t.pending_type_id = ?
            """,
            (pending_type_id,),
        )
        if not row:
            raise NotFoundError("pending opportunity type not found")
        names = {p["pharmacy_id"]: p["pharmacy_name"] for p in self.fetch_all(
            "SELECT pharmacy_id, pharmacy_name FROM pharmacies")}
        row["affected_pharmacy_names"] = [names.get(p, p) for p in row.get("affected_pharmacies") or []]
        return row

    def list_pending_types(self, status: Optional[str] = "pending", limit: int = 200, offset: int = 0) -> Dict[str, Any]:
        sql = "SELECT pending_type_id FROM pending_opportunity_types"
        params: List[Any] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY estimated_annual_margin DESC, created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        items = [self.get_pending_type(r["pending_type_id"]) for r in self.fetch_all(sql, params)]
        counts = {
            r["status"]: r["n"]
            for r in self.fetch_all("SELECT status, COUNT(*) AS n FROM pending_opportunity_types GROUP BY status")
        }
        return {"items": items, "counts": counts}

    def approve_pending_type(
        self,
        pending_type_id: str,
        user_id: Optional[str],
        notes: Optional[str] = None,
        trigger_overrides: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Approve a queued opportunity type by turning it into an enabled trigger."""
        item = self.get_pending_type(pending_type_id)
        if item["status"] != "pending":
            raise ValueError(f"already {item['status']}")
        details = item.get("source_details") or {}
        trigger_type = item["opportunity_type"] if item["opportunity_type"] in TRIGGER_TYPES else "therapeutic_interchange"
        detection = details.get("detection_keywords") or [item.get("current_drug_name") or ""]
        data: Dict[str, Any] = {
            "trigger_code": f"{item['source'].upper()}-{pending_type_id[:8]}",
            "display_name": f"{(item.get('current_drug_name') or '').title()} -> {item['recommended_drug_name'].title()}",
            "trigger_type": trigger_type,
            "category": details.get("therapeutic_class"),
            "detection_keywords": detection,
            "recommended_drug": item["recommended_drug_name"],
            "clinical_rationale": details.get("rationale"),
            "default_gp_value": details.get("default_gp_value"),
            "bin_values": details.get("bin_values") or [],
        }
        data.update(trigger_overrides or {})
        with self.transaction() as conn:
            status = conn.execute(
                "SELECT status FROM pending_opportunity_types WHERE pending_type_id = ?", (pending_type_id,)
            ).fetchone()["status"]
            if status != "pending":
                raise ValueError(f"already {status}")
            trigger_id = self._insert_trigger(conn, data)
            conn.execute(
                """
                UPDATE pending_opportunity_types SET status = 'approved', reviewed_by = ?, reviewed_at = ?,
                       review_notes = ?, created_trigger_id = ?
                WHERE pending_type_id = ?
                """,
                (user_id, utcnow(), notes, trigger_id, pending_type_id),
            )
        log.info("[Approval] Approved pending type id=%s -> trigger id=%s", pending_type_id, trigger_id)
        return {"pendingType": self.get_pending_type(pending_type_id), "trigger": self.get_trigger(trigger_id)}

    def reject_pending_type(self, pending_type_id: str, user_id: Optional[str], notes: Optional[str] = None) -> Dict[str, Any]:
        item = self.get_pending_type(pending_type_id)
        if item["status"] != "pending":
            raise ValueError(f"already {item['status']}")
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE pending_opportunity_types SET status = 'rejected', reviewed_by = ?, reviewed_at = ?,
                       review_notes = ?
                WHERE pending_type_id = ?
                """,
                (user_id, utcnow(), notes, pending_type_id),
            )
        log.info("[Approval] Rejected pending type id=%s", pending_type_id)
        return self.get_pending_type(pending_type_id)

    # --- Platform stats ----------------------------------------------------------
    def admin_stats(self) -> Dict[str, Any]:
        return {
            "pharmacies": self.scalar("SELECT COUNT(*) FROM pharmacies"),
            "users": self.scalar("SELECT COUNT(*) FROM users"),
            "patients": self.scalar("SELECT COUNT(*) FROM patients"),
            "prescriptions": self.scalar("SELECT COUNT(*) FROM prescriptions"),
            "opportunities": self.scalar(
                f"SELECT COUNT(*) FROM opportunities WHERE status IN ({_placeholders(ACTIVE_STATUSES)})",
                ACTIVE_STATUSES,
            ),
            "total_value": round(self.scalar(
                f"SELECT COALESCE(SUM({annual_value_sql()}),0) FROM opportunities o "
                f"WHERE o.status IN ({_placeholders(ACTIVE_STATUSES)})",
                ACTIVE_STATUSES,
            ), 2),
            "captured_value": round(self.scalar(
                f"SELECT COALESCE(SUM({annual_value_sql()}),0) FROM opportunities o WHERE o.status = 'Completed'"
            ), 2),
            "pending_approvals": self.scalar(
                "SELECT COUNT(*) FROM pending_opportunity_types WHERE status = 'pending'"
            ),
            "pending_data_quality": self.scalar(
                "SELECT COUNT(*) FROM data_quality_issues WHERE status = 'pending'"
            ),
            "last_scan": self.fetch_one("SELECT * FROM scan_runs ORDER BY started_at DESC LIMIT 1"),
        }

    # --- Utility ------------------------------------------------------------
    def close(self) -> None:
        with self.lock:
            self.conn.close()
        log.info("[Service] Connection closed")


_service: Optional[TheRxService] = None
_service_lock = threading.Lock()


def get_service() -> TheRxService:
    """Process-wide service; the API overrides this dependency in tests."""
    global _service
    with _service_lock:
        if _service is None:
            _service = TheRxService()
        return _service
