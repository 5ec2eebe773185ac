"""Dashboard and report aggregates over opportunities, claims and uploads."""
from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from .service import ACTIONED_STATUSES, ACTIVE_STATUSES, TheRxService, _placeholders, annual_value_sql

log = logging.getLogger(__name__)

AV = annual_value_sql()


def _scope(pharmacy_id: Optional[str], alias: str = "o") -> Tuple[str, List[Any]]:
    if pharmacy_id:
        return f"{alias}.pharmacy_id = ?", [pharmacy_id]
    return "1 = 1", []


def _since(days: int, today: Optional[date] = None) -> str:
    return ((today or date.today()) - timedelta(days=days)).isoformat()


def _round(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    for row in rows:
        for key, value in row.items():
            if isinstance(value, float):
                row[key] = round(value, 2)
    return rows


def dashboard(service: TheRxService, pharmacy_id: Optional[str], period_days: int = 30) -> Dict[str, Any]:
    where, params = _scope(pharmacy_id)
    active = _placeholders(ACTIVE_STATUSES)
    row = service.fetch_one(
        f"""
        SELECT
            SUM(CASE WHEN o.status IN ({active}) THEN 1 ELSE 0 END) AS pending_opportunities,
            COALESCE(SUM(CASE WHEN o.status IN ({active}) THEN o.potential_margin_gain END),0) AS pending_monthly,
            COALESCE(SUM(CASE WHEN o.status IN ({active}) THEN {AV} END),0) AS pending_annual,
            SUM(CASE WHEN o.status = 'Completed' THEN 1 ELSE 0 END) AS captured_opportunities,
            COALESCE(SUM(CASE WHEN o.status = 'Completed' THEN {AV} END),0) AS captured_annual,
            SUM(CASE WHEN o.created_at >= ? THEN 1 ELSE 0 END) AS new_in_period,
            COUNT(DISTINCT CASE WHEN o.status IN ({active}) THEN o.patient_id END) AS patients_with_opportunities
        FROM opportunities o WHERE {where}
        """,
        (*ACTIVE_STATUSES, *ACTIVE_STATUSES, *ACTIVE_STATUSES, _since(period_days), *ACTIVE_STATUSES, *params),
    ) or {}
    pwhere, pparams = _scope(pharmacy_id, "p")
    total_patients = service.scalar(f"SELECT COUNT(*) FROM patients p WHERE {pwhere}", pparams)
    last_upload = service.scalar(
        f"SELECT MAX(l.created_at) FROM ingestion_logs l WHERE {_scope(pharmacy_id, 'l')[0]}", pparams
    )
    out = {k: (v or 0) for k, v in row.items()}
    out["captured_monthly"] = round(out["captured_annual"] / 12, 2)
    out.update({
        "period_days": period_days,
        "total_patients": total_patients,
        "last_upload": last_upload,
    })
    return _round([out])[0]


def by_type(service: TheRxService, pharmacy_id: Optional[str], status: Optional[str] = None) -> List[Dict[str, Any]]:
    where, params = _scope(pharmacy_id)
    if status:
        where += " AND o.status = ?"
        params.append(status)
    else:
        where += f" AND o.status IN ({_placeholders(ACTIVE_STATUSES)})"
        params.extend(ACTIVE_STATUSES)
    return _round(service.fetch_all(
        f"""
        SELECT o.opportunity_type, COUNT(*) AS count, COALESCE(SUM(o.potential_margin_gain),0) AS monthly_margin,
               COALESCE(SUM({AV}),0) AS total_margin, COUNT(DISTINCT o.patient_id) AS patient_count
        FROM opportunities o WHERE {where}
        GROUP BY o.opportunity_type ORDER BY total_margin DESC
        """,
        params,
    ))


def trends(service: TheRxService, pharmacy_id: Optional[str], days: int = 30) -> Dict[str, Any]:
    where, params = _scope(pharmacy_id)
    since = _since(days)
    created = service.fetch_all(
        f"""
        SELECT date(o.created_at) AS day, COUNT(*) AS created, COALESCE(SUM(o.potential_margin_gain),0) AS created_margin
        FROM opportunities o WHERE {where} AND o.created_at >= ? GROUP BY day
        """,
        (*params, since),
    )
    actioned = service.fetch_all(
        f"""
        SELECT date(o.actioned_at) AS day, COUNT(*) AS actioned,
               COALESCE(SUM(CASE WHEN o.status = 'Completed' THEN o.potential_margin_gain END),0) AS captured_margin
        FROM opportunities o WHERE {where} AND o.actioned_at >= ? GROUP BY day
        """,
        (*params, since),
    )
    by_day: Dict[str, Dict[str, Any]] = {}
    start = date.today() - timedelta(days=days)
    for i in range(days + 1):
        d = (start + timedelta(days=i)).isoformat()
        by_day[d] = {"date": d, "created": 0, "created_margin": 0.0, "actioned": 0, "captured_margin": 0.0}
    for row in created:
        by_day.setdefault(row["day"], {"date": row["day"], "actioned": 0, "captured_margin": 0.0}).update(
            created=row["created"], created_margin=row["created_margin"])
    for row in actioned:
        by_day.setdefault(row["day"], {"date": row["day"], "created": 0, "created_margin": 0.0}).update(
            actioned=row["actioned"], captured_margin=row["captured_margin"])
    return {"days": days, "trends": _round([by_day[k] for k in sorted(by_day)])}


def top_patients(service: TheRxService, pharmacy_id: Optional[str], limit: int = 10) -> List[Dict[str, Any]]:
    where, params = _scope(pharmacy_id)
    return _round(service.fetch_all(
        f"""
        SELECT o.patient_id, p.first_name, p.last_name, p.patient_hash, COUNT(*) AS opportunity_count,
               COALESCE(SUM({AV}),0) AS total_margin
        FROM opportunities o JOIN patients p ON p.patient_id = o.patient_id
        WHERE {where} AND o.status IN ({_placeholders(ACTIVE_STATUSES)})
        GROUP BY o.patient_id ORDER BY total_margin DESC LIMIT ?
        """,
        (*params, *ACTIVE_STATUSES, limit),
    ))


def _period_numbers(service: TheRxService, pharmacy_id: Optional[str], start: str, end: str) -> Dict[str, Any]:
    where, params = _scope(pharmacy_id)
    actioned = _placeholders(ACTIONED_STATUSES)
    row = service.fetch_one(
        f"""
        SELECT
            SUM(CASE WHEN o.created_at >= ? AND o.created_at < ? THEN 1 ELSE 0 END) AS created,
            SUM(CASE WHEN o.actioned_at >= ? AND o.actioned_at < ? AND o.status IN ({actioned}) THEN 1 ELSE 0 END) AS actioned,
            SUM(CASE WHEN o.actioned_at >= ? AND o.actioned_at < ? AND o.status = 'Completed' THEN 1 ELSE 0 END) AS completed,
            COALESCE(SUM(CASE WHEN o.actioned_at >= ? AND o.actioned_at < ? AND o.status = 'Completed'
                         THEN {AV} END),0) AS captured_value
        FROM opportunities o WHERE {where}
        """,
        (start, end, start, end, *ACTIONED_STATUSES, start, end, start, end, *params),
    ) or {}
    return {k: (v or 0) for k, v in row.items()}


def _pct_change(current: float, previous: float) -> Optional[float]:
    if not previous:
        return None
    return round((current - previous) * 100.0 / previous, 1)


def performance(service: TheRxService, pharmacy_id: Optional[str], days: int = 30) -> Dict[str, Any]:
    today = date.today()
    end = (today + timedelta(days=1)).isoformat()
    start = (today - timedelta(days=days - 1)).isoformat()
    prev_start = (today - timedelta(days=2 * days - 1)).isoformat()
    current = _period_numbers(service, pharmacy_id, start, end)
    previous = _period_numbers(service, pharmacy_id, prev_start, start)
    where, params = _scope(pharmacy_id)
    by_user = _round(service.fetch_all(
        f"""
        SELECT u.user_id, TRIM(COALESCE(u.first_name,'') || ' ' || COALESCE(u.last_name,'')) AS name, u.role,
               COUNT(*) AS actioned_count,
               SUM(CASE WHEN o.status = 'Completed' THEN 1 ELSE 0 END) AS completed_count,
               COALESCE(SUM(CASE WHEN o.status = 'Completed' THEN {AV} END),0) AS captured_value
        FROM opportunities o JOIN users u ON u.user_id = o.actioned_by
        WHERE {where} AND o.actioned_at >= ?
        GROUP BY u.user_id ORDER BY captured_value DESC
        """,
        (*params, start),
    ))
    for row in by_user:
        row["avg_value_per_capture"] = round(row["captured_value"] / row["completed_count"], 2) if row["completed_count"] else 0.0
    capture_rate = round(current["completed"] * 100.0 / current["created"], 1) if current["created"] else 0.0
    return {
        "days": days,
        "current": _round([current])[0],
        "previous": _round([previous])[0],
        "capture_rate": capture_rate,
        "changes": {k: _pct_change(current[k], previous[k]) for k in current},
        "by_user": by_user,
    }


def ingestion_status(service: TheRxService, pharmacy_id: Optional[str], limit: int = 10) -> Dict[str, Any]:
    where, params = _scope(pharmacy_id, "l")
    logs = service.fetch_all(
        f"""
        SELECT l.*, ph.pharmacy_name FROM ingestion_logs l JOIN pharmacies ph ON ph.pharmacy_id = l.pharmacy_id
        WHERE {where} ORDER BY l.created_at DESC LIMIT ?
        """,
        (*params, limit),
    )
    rwhere, rparams = _scope(pharmacy_id, "r")
    claims = service.fetch_one(
        f"SELECT COUNT(*) AS total, MAX(r.dispensed_date) AS latest FROM prescriptions r WHERE {rwhere}", rparams
    ) or {}
    return {
        "recent": logs,
        "last_upload": logs[0]["created_at"] if logs else None,
        "total_prescriptions": claims.get("total") or 0,
        "latest_dispensed_date": claims.get("latest"),
    }


def prescriber_stats(service: TheRxService, pharmacy_id: Optional[str], limit: int = 25) -> Dict[str, Any]:
    where, params = _scope(pharmacy_id)
    actioned = _placeholders(ACTIONED_STATUSES)
    rows = service.fetch_all(
        f"""
        SELECT COALESCE(NULLIF(TRIM(o.prescriber_name),''),'Unknown') AS prescriber_name,
               COUNT(*) AS opportunity_count, COUNT(DISTINCT o.patient_id) AS patient_count,
               COALESCE(SUM(o.potential_margin_gain),0) AS monthly_potential,
               COALESCE(SUM({AV}),0) AS annual_potential,
               SUM(CASE WHEN o.status IN ({actioned}) THEN 1 ELSE 0 END) AS actioned_count
        FROM opportunities o
        WHERE {where} AND o.status NOT IN ('Denied', 'Didn''t Work')
        GROUP BY 1
        """,
        (*ACTIONED_STATUSES, *params),
    )
    for row in rows:
        row["avg_opportunity_value"] = row["annual_potential"] / row["opportunity_count"]
        row["action_rate"] = round(row["actioned_count"] * 100.0 / row["opportunity_count"], 1)
    _round(rows)
    known = [r for r in rows if r["prescriber_name"] != "Unknown"]
    by_type_rows = service.fetch_all(
        f"""
        SELECT o.prescriber_name, o.opportunity_type AS type, COUNT(*) AS count, COALESCE(SUM({AV}),0) AS annual_value
        FROM opportunities o
        WHERE {where} AND o.prescriber_name IS NOT NULL AND o.status NOT IN ('Denied', 'Didn''t Work')
        GROUP BY o.prescriber_name, o.opportunity_type
        """,
        params,
    )
    top_by_value = sorted(known, key=lambda r: r["annual_potential"], reverse=True)[:limit]
    top_names = {r["prescriber_name"] for r in top_by_value}
    by_prescriber_type: Dict[str, List[Dict[str, Any]]] = {}
    for row in _round(by_type_rows):
        if row["prescriber_name"] in top_names:
            by_prescriber_type.setdefault(row["prescriber_name"], []).append(
                {"type": row["type"], "count": row["count"], "annual_value": row["annual_value"]}
            )
    return {
        "summary": {
            "total_prescribers": len(rows),
            "known_prescribers": len(known),
            "total_opportunities": sum(r["opportunity_count"] for r in rows),
            "total_annual_value": round(sum(r["annual_potential"] for r in rows), 2),
        },
        "top_by_value": top_by_value,
        "top_by_count": [
            {k: r[k] for k in ("prescriber_name", "opportunity_count", "annual_potential")}
            for r in sorted(known, key=lambda r: r["opportunity_count"], reverse=True)[:limit]
        ],
        "top_by_action_rate": [
            {k: r[k] for k in ("prescriber_name", "opportunity_count", "actioned_count", "action_rate", "annual_potential")}
            for r in sorted((r for r in known if r["opportunity_count"] >= 3),
                            key=lambda r: r["action_rate"], reverse=True)[:limit]
        ],
        "by_prescriber_type": by_prescriber_type,
    }


def recommended_drug_stats(service: TheRxService, pharmacy_id: Optional[str], limit: int = 20) -> Dict[str, Any]:
    where, params = _scope(pharmacy_id)
    top = service.fetch_all(
        f"""
        SELECT o.recommended_drug_name AS recommended_drug, COUNT(*) AS opportunity_count,
               COUNT(DISTINCT o.patient_id) AS patient_count,
               COALESCE(SUM(o.potential_margin_gain),0) AS monthly_potential,
               COALESCE(SUM({AV}),0) AS annual_potential,
               COALESCE(AVG(o.potential_margin_gain),0) AS avg_gp_per_fill,
               SUM(CASE WHEN o.status = 'Not Submitted' THEN 1 ELSE 0 END) AS pending,
               SUM(CASE WHEN o.status IN ('Submitted','Approved') THEN 1 ELSE 0 END) AS in_progress,
               SUM(CASE WHEN o.status = 'Completed' THEN 1 ELSE 0 END) AS captured
        FROM opportunities o
        WHERE {where} AND o.recommended_drug_name IS NOT NULL AND o.status NOT IN ('Denied', 'Didn''t Work')
        GROUP BY o.recommended_drug_name ORDER BY annual_potential DESC LIMIT ?
        """,
        (*params, limit),
    )
    current = service.fetch_all(
        f"""
        SELECT o.current_drug_name, o.recommended_drug_name AS recommended_drug, COUNT(*) AS opportunity_count,
               COALESCE(SUM({AV}),0) AS annual_potential
        FROM opportunities o
        WHERE {where} AND o.current_drug_name IS NOT NULL AND o.status IN ({_placeholders(ACTIVE_STATUSES)})
        GROUP BY o.current_drug_name, o.recommended_drug_name ORDER BY annual_potential DESC LIMIT ?
        """,
        (*params, *ACTIVE_STATUSES, limit),
    )
    return {"top_recommended_drugs": _round(top), "top_current_drugs": _round(current)}


def month_bounds(month: int, year: int) -> Tuple[str, str]:
    if not 1 <= month <= 12:
        raise ValueError("month must be 1-12")
    last = calendar.monthrange(year, month)[1]
    start = date(year, month, 1)
    return start.isoformat(), (date(year, month, last) + timedelta(days=1)).isoformat()


def monthly(service: TheRxService, pharmacy_id: Optional[str], month: int, year: int) -> Dict[str, Any]:
    """Monthly activity report: what was found, submitted and captured in the month."""
    start, end = month_bounds(month, year)
    where, params = _scope(pharmacy_id)
    in_created = "o.created_at >= ? AND o.created_at < ?"
    in_actioned = "o.actioned_at >= ? AND o.actioned_at < ?"
    totals = service.fetch_one(
        f"""
        SELECT SUM(CASE WHEN {in_created} THEN 1 ELSE 0 END) AS new_opportunities,
               SUM(CASE WHEN {in_actioned} AND o.status IN ('Submitted','Approved','Completed') THEN 1 ELSE 0 END) AS submitted,
               SUM(CASE WHEN {in_actioned} AND o.status = 'Completed' THEN 1 ELSE 0 END) AS captured,
               SUM(CASE WHEN o.updated_at >= ? AND o.updated_at < ? AND o.status IN ('Denied','Didn''t Work') THEN 1 ELSE 0 END) AS rejected,
               COALESCE(SUM(CASE WHEN {in_created} THEN {AV} END),0) AS total_value,
               COALESCE(SUM(CASE WHEN {in_actioned} AND o.status = 'Completed' THEN {AV} END),0) AS captured_value
        FROM opportunities o WHERE {where}
        """,
        (start, end, start, end, start, end, start, end, start, end, start, end, *params),
    ) or {}
    out: Dict[str, Any] = {k: (v or 0) for k, v in totals.items()}
    out["month"], out["year"] = month, year
    out["submission_rate"] = round(out["submitted"] * 100.0 / out["new_opportunities"], 1) if out["new_opportunities"] else 0.0
    out["capture_rate"] = round(out["captured"] * 100.0 / out["submitted"], 1) if out["submitted"] else 0.0

    out["by_type"] = _round(service.fetch_all(
        f"""
        SELECT o.opportunity_type AS type, COUNT(*) AS count, COALESCE(SUM({AV}),0) AS value,
               SUM(CASE WHEN o.status = 'Completed' THEN 1 ELSE 0 END) AS captured
        FROM opportunities o WHERE {where} AND {in_created} GROUP BY o.opportunity_type ORDER BY value DESC
        """,
        (*params, start, end),
    ))
    out["by_status"] = _round(service.fetch_all(
        f"""
        SELECT o.status, COUNT(*) AS count, COALESCE(SUM({AV}),0) AS value
        FROM opportunities o WHERE {where} AND {in_created} GROUP BY o.status
        """,
        (*params, start, end),
    ))
    out["by_bin"] = _round(service.fetch_all(
        f"""
        SELECT COALESCE(o.insurance_bin,'Unknown') AS bin, COUNT(*) AS count, COALESCE(SUM({AV}),0) AS value,
               SUM(CASE WHEN o.status = 'Completed' THEN 1 ELSE 0 END) AS captured,
               COALESCE(SUM(CASE WHEN o.status = 'Completed' THEN {AV} END),0) AS captured_value
        FROM opportunities o WHERE {where} AND {in_created} GROUP BY 1 ORDER BY value DESC
        """,
        (*params, start, end),
    ))
    out["daily_activity"] = service.fetch_all(
        f"""
        SELECT date(o.actioned_at) AS date,
               SUM(CASE WHEN o.status IN ('Submitted','Approved') THEN 1 ELSE 0 END) AS submitted,
               SUM(CASE WHEN o.status = 'Completed' THEN 1 ELSE 0 END) AS captured
        FROM opportunities o WHERE {where} AND {in_actioned} GROUP BY 1 ORDER BY 1
        """,
        (*params, start, end),
    )
    out["weekly_activity"] = _round(service.fetch_all(
        f"""
        SELECT date(o.actioned_at, 'weekday 0', '-6 days') AS week_start, COUNT(*) AS actioned_count,
               COALESCE(SUM({AV}),0) AS actioned_value
        FROM opportunities o WHERE {where} AND {in_actioned} GROUP BY 1 ORDER BY 1
        """,
        (*params, start, end),
    ))
    staff = _round(service.fetch_all(
        f"""
        SELECT u.user_id, TRIM(COALESCE(u.first_name,'') || ' ' || COALESCE(u.last_name,'')) AS name, u.role,
               COUNT(*) AS actioned_count,
               SUM(CASE WHEN o.status = 'Completed' THEN 1 ELSE 0 END) AS completed_count,
               COALESCE(SUM(CASE WHEN o.status = 'Completed' THEN {AV} END),0) AS captured_value
        FROM opportunities o JOIN users u ON u.user_id = o.actioned_by
        WHERE {where} AND {in_actioned} GROUP BY u.user_id ORDER BY captured_value DESC
        """,
        (*params, start, end),
    ))
    for row in staff:
        row["avg_value_per_capture"] = round(row["captured_value"] / row["completed_count"], 2) if row["completed_count"] else 0.0
    out["staff_performance"] = staff
    return _round([out])[0]


def monthly_export_csv(service: TheRxService, pharmacy_id: Optional[str], month: int, year: int) -> str:
    """Opportunities created or actioned in the month, as CSV text."""
    start, end = month_bounds(month, year)
    where, params = _scope(pharmacy_id)
    sql = f"""
        SELECT ph.pharmacy_name, p.last_name AS patient_last_name, p.first_name AS patient_first_name,
               o.opportunity_type, o.current_drug_name, o.recommended_drug_name, o.prescriber_name,
               o.insurance_bin, o.insurance_group, o.status, o.potential_margin_gain,
               {AV} AS annual_value, o.created_at, o.actioned_at, o.staff_notes
        FROM opportunities o
        JOIN patients p ON p.patient_id = o.patient_id
        JOIN pharmacies ph ON ph.pharmacy_id = o.pharmacy_id
        WHERE {where} AND ((o.created_at >= ? AND o.created_at < ?) OR (o.actioned_at >= ? AND o.actioned_at < ?))
        ORDER BY o.created_at
    """
    with service.lock:
        df = pd.read_sql_query(sql, service.conn, params=[*params, start, end, start, end])
    log.info("[Analytics] Monthly export %s-%02d rows=%s", year, month, len(df))
    return df.round(2).to_csv(index=False)
