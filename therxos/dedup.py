"""
Opportunity deduplication.

Different triggers can recommend the same kind of change for one patient (two
statin triggers, say). Within a therapeutic category a patient should carry a
single open opportunity, otherwise the dashboard double counts its value.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .service import ACTIVE_STATUSES, TheRxService, _placeholders, annual_value

log = logging.getLogger(__name__)

KEEP_PREFERRED = ("Submitted", "Approved")


def _active_opportunities(service: TheRxService, pharmacy_id: Optional[str]) -> List[Dict[str, Any]]:
    sql = f"""
        SELECT o.opportunity_id, o.patient_id, o.pharmacy_id, o.status, o.current_drug_name,
               o.recommended_drug_name, o.potential_margin_gain, o.annual_margin_gain, o.created_at,
               COALESCE(t.category, o.opportunity_type) AS category,
               TRIM(COALESCE(p.first_name,'') || ' ' || COALESCE(p.last_name,'')) AS patient_name,
               p.date_of_birth AS dob, ph.pharmacy_name
        FROM opportunities o
        JOIN patients p ON p.patient_id = o.patient_id
        JOIN pharmacies ph ON ph.pharmacy_id = o.pharmacy_id
        LEFT JOIN triggers t ON t.trigger_id = o.trigger_id
        WHERE o.status IN ({_placeholders(ACTIVE_STATUSES)})
    """
    params: List[Any] = list(ACTIVE_STATUSES)
    if pharmacy_id:
        sql += " AND o.pharmacy_id = ?"
        params.append(pharmacy_id)
    sql += " ORDER BY o.created_at"
    return service.fetch_all(sql, params)


def _groups(opps: List[Dict[str, Any]]) -> Dict[tuple, List[Dict[str, Any]]]:
    groups: Dict[tuple, List[Dict[str, Any]]] = {}
    for opp in opps:
        groups.setdefault((opp["patient_id"], opp["category"]), []).append(opp)
    return {k: v for k, v in groups.items() if len(v) > 1}


def pick_keeper(group: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Highest-value actioned entry if any was actioned, otherwise the highest value overall."""
    actioned = [o for o in group if o["status"] in KEEP_PREFERRED]
    pool = actioned or group
    return max(pool, key=annual_value)


def _removable(group: List[Dict[str, Any]], keeper: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [o for o in group if o is not keeper and o["status"] == "Not Submitted"]


def find_duplicates(service: TheRxService, pharmacy_id: Optional[str] = None) -> Dict[str, Any]:
    groups = _groups(_active_opportunities(service, pharmacy_id))
    duplicates = []
    inflated = 0.0
    extra = 0
    for (patient_id, category), group in groups.items():
        keeper = pick_keeper(group)
        inflated += sum(annual_value(o) for o in _removable(group, keeper))
        extra += len(group) - 1
        first = group[0]
        duplicates.append({
            "patient_id": patient_id,
            "pharmacy_id": first["pharmacy_id"],
            "patient_name": first["patient_name"],
            "dob": first["dob"],
            "pharmacy_name": first["pharmacy_name"],
            "category": category,
            "count": len(group),
            "opp_ids": [o["opportunity_id"] for o in group],
            "drugs": [o["recommended_drug_name"] for o in group],
            "values": [round(annual_value(o), 2) for o in group],
        })
    duplicates.sort(key=lambda d: sum(d["values"]), reverse=True)
    return {
        "duplicates": duplicates,
        "summary": {
            "patientsAffected": len({d["patient_id"] for d in duplicates}),
            "totalDuplicateOpportunities": extra,
            "inflatedMargin": f"{inflated:.2f}",
        },
    }


def deduplicate(service: TheRxService, pharmacy_id: Optional[str] = None, dry_run: bool = True) -> Dict[str, Any]:
    """Keep one opportunity per patient and category; only untouched entries are removed."""
    groups = _groups(_active_opportunities(service, pharmacy_id))
    results = []
    to_delete: List[str] = []
    for (patient_id, category), group in groups.items():
        keeper = pick_keeper(group)
        removable = _removable(group, keeper)
        if not removable:
            continue
        to_delete.extend(o["opportunity_id"] for o in removable)
        results.append({
            "category": category,
            "patientId": patient_id,
            "pharmacyId": keeper["pharmacy_id"],
            "keptOpportunityId": keeper["opportunity_id"],
            "keptValue": round(annual_value(keeper), 2),
            "removedCount": len(removable),
            "removedMargin": round(sum(annual_value(o) for o in removable), 2),
        })
    removed_margin = round(sum(r["removedMargin"] for r in results), 2)
    if not dry_run and to_delete:
        with service.transaction() as conn:
            for start in range(0, len(to_delete), 500):
                chunk = to_delete[start:start + 500]
                conn.execute(
                    f"DELETE FROM opportunities WHERE status = 'Not Submitted' "
                    f"AND opportunity_id IN ({_placeholders(chunk)})",
                    chunk,
                )
    verb = "Would remove" if dry_run else "Removed"
    message = (
        f"{verb} {len(to_delete)} duplicate opportunities across {len(results)} patient categories "
        f"(${removed_margin:,.2f} annual)"
    )
    log.info("[Dedup] %s pharmacy=%s", message, pharmacy_id or "all")
    return {
        "dryRun": dry_run,
        "summary": {
            "groupsProcessed": len(results),
            "opportunitiesRemoved": len(to_delete),
            "marginRemoved": removed_margin,
        },
        "results": results,
        "message": message,
    }
