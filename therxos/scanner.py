"""
Opportunity engine.

Triggers are matched against each patient's claims; a match becomes an
opportunity whose value comes from the trigger's per-BIN GP table. A patient
gets at most one opportunity per trigger, ever: once staff mark one as Denied
or "Didn't Work" it is not recreated by the next scan.

Also here: the coverage scan that learns per-BIN GP values from real claims,
BIN exclusion, and the negative-GP scan that feeds the approval queue.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pandas as pd

from .config import Settings, get_settings
from .database import new_id, to_json, utcnow
from .metrics import load_claims, negative_gp_losers
from .normalize import base_drug_name, gp_per_30, keyword_in, normalize_bin, normalize_ndc
from .service import ACTIVE_STATUSES, NotFoundError, TheRxService, _placeholders

log = logging.getLogger(__name__)

ADDITIVE_TYPES = ("missing_therapy", "combo_therapy")


# ----------------------------- Matching --------------------------------------
def _any_keyword(keywords: Iterable[str], text: str) -> bool:
    return any(keyword_in(k, text) for k in keywords or [])


def match_trigger(trigger: Dict[str, Any], claim: Dict[str, Any], patient_drugs: Sequence[str]) -> bool:
    """True when ``claim`` (one of the patient's fills) fires ``trigger``.

    ``patient_drugs`` holds every drug name on the patient's profile.
    """
    drug = claim.get("drug_name") or ""
    detection = [k for k in trigger.get("detection_keywords") or [] if k and k.strip()]
    if not detection:
        return False
    if trigger.get("keyword_match_mode") == "all":
        if not all(keyword_in(k, drug) for k in detection):
            return False
    elif not _any_keyword(detection, drug):
        return False
    if _any_keyword(trigger.get("exclude_keywords"), drug):
        return False

    others = [d for d in patient_drugs if d != drug]
    if trigger.get("if_has_keywords") and not any(_any_keyword(trigger["if_has_keywords"], d) for d in others):
        return False
    if trigger.get("if_not_has_keywords") and any(
        _any_keyword(trigger["if_not_has_keywords"], d) for d in patient_drugs
    ):
        return False

    if trigger.get("trigger_type") == "ndc_optimization":
        rec_ndc = normalize_ndc(trigger.get("recommended_ndc"))
        if rec_ndc and normalize_ndc(claim.get("ndc")) == rec_ndc:
            return False
    else:
        rec = base_drug_name(trigger.get("recommended_drug"))
        if rec and any(keyword_in(rec, d) for d in patient_drugs):
            return False

    bin_ = normalize_bin(claim.get("insurance_bin"))
    group = (claim.get("insurance_group") or "").strip()
    if trigger.get("bin_inclusions") and bin_ not in trigger["bin_inclusions"]:
        return False
    if trigger.get("bin_exclusions") and bin_ in trigger["bin_exclusions"]:
        return False
    groups_upper = group.upper()
    if trigger.get("group_inclusions") and groups_upper not in {g.upper() for g in trigger["group_inclusions"]}:
        return False
    if trigger.get("group_exclusions") and groups_upper in {g.upper() for g in trigger["group_exclusions"]}:
        return False
    contract = (claim.get("contract_id") or "").upper()
    if contract and any(contract.startswith(p.upper()) for p in trigger.get("contract_prefix_exclusions") or []):
        return False
    return True


def resolve_gp_value(trigger: Dict[str, Any], bin_: Optional[str], group: Optional[str]) -> Optional[float]:
    """Per-fill GP of the recommended drug on this BIN/GROUP, or None when excluded."""
    bin_ = normalize_bin(bin_)
    group = (group or "").strip()
    rows = trigger.get("bin_values") or []
    row = None
    if bin_:
        if group:
            row = next((r for r in rows if r["bin"] == bin_ and (r.get("group") or "") == group), None)
        if row is None:
            row = next((r for r in rows if r["bin"] == bin_ and not r.get("group")), None)
    if row is not None:
        if row.get("isExcluded") or row.get("coverageStatus") == "excluded":
            return None
        if row.get("gpValue") is not None:
            return float(row["gpValue"])
    default = trigger.get("default_gp_value")
    return float(default) if default is not None else None


def is_dme(trigger: Dict[str, Any]) -> bool:
    return "DME" in (trigger.get("category") or "").upper()


def min_margin_for(trigger: Dict[str, Any], settings: Optional[Settings] = None) -> float:
    settings = settings or get_settings()
    return settings.dme_min_margin if is_dme(trigger) else settings.scan_min_margin


def margin_gain(trigger: Dict[str, Any], gp_value: float, current_gp_30: Optional[float]) -> float:
    if trigger.get("trigger_type") in ADDITIVE_TYPES:
        return gp_value
    if current_gp_30 is not None and current_gp_30 > 0:
        return gp_value - current_gp_30
    return gp_value


# ----------------------------- Scanning --------------------------------------
def _pharmacy_claims(service: TheRxService, pharmacy_id: str, lookback_days: int) -> Dict[str, List[Dict[str, Any]]]:
    """Claims per patient, newest first, inside the lookback window."""
    latest = service.scalar("SELECT MAX(dispensed_date) FROM prescriptions WHERE pharmacy_id = ?", (pharmacy_id,))
    if not latest:
        return {}
    start = (pd.Timestamp(latest) - pd.Timedelta(days=lookback_days)).strftime("%Y-%m-%d")
    rows = service.fetch_all(
        """
        SELECT r.prescription_id, r.patient_id, r.ndc, r.drug_name, r.quantity, r.days_supply, r.dispensed_date,
               r.prescriber_name, r.gross_profit,
               COALESCE(r.insurance_bin, p.insurance_bin) AS insurance_bin,
               COALESCE(r.insurance_group, p.insurance_group) AS insurance_group,
               COALESCE(r.contract_id, p.contract_id) AS contract_id
        FROM prescriptions r JOIN patients p ON p.patient_id = r.patient_id
        WHERE r.pharmacy_id = ? AND r.dispensed_date >= ?
        ORDER BY r.dispensed_date DESC, r.created_at DESC
        """,
        (pharmacy_id, start),
    )
    by_patient: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        by_patient.setdefault(row["patient_id"], []).append(row)
    return by_patient


def _load_triggers(service: TheRxService, trigger_ids: Optional[Sequence[str]]) -> List[Dict[str, Any]]:
    if trigger_ids:
        return [service.get_trigger(t) for t in trigger_ids]
    return service.list_triggers(enabled_only=True, with_stats=False)


def scan_pharmacy(
    service: TheRxService,
    pharmacy_id: str,
    trigger_ids: Optional[Sequence[str]] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Create opportunities for one pharmacy from the enabled triggers."""
    settings = settings or get_settings()
    service.get_pharmacy(pharmacy_id)
    triggers = [
        t for t in _load_triggers(service, trigger_ids)
        if t["is_enabled"] and (not t.get("pharmacy_inclusions") or pharmacy_id in t["pharmacy_inclusions"])
    ]
    claims = _pharmacy_claims(service, pharmacy_id, settings.scan_lookback_days)
    existing: Set[Tuple[str, str]] = {
        (r["patient_id"], r["trigger_id"])
        for r in service.fetch_all(
            "SELECT patient_id, trigger_id FROM opportunities WHERE pharmacy_id = ? AND trigger_id IS NOT NULL",
            (pharmacy_id,),
        )
    }
    # an open opportunity in the same category blocks a second one for that patient
    open_categories: Set[Tuple[str, str]] = {
        (r["patient_id"], r["category"])
        for r in service.fetch_all(
            f"""
            SELECT o.patient_id, COALESCE(t.category, o.opportunity_type) AS category
            FROM opportunities o LEFT JOIN triggers t ON t.trigger_id = o.trigger_id
            WHERE o.pharmacy_id = ? AND o.status IN ({_placeholders(ACTIVE_STATUSES)})
            """,
            (pharmacy_id, *ACTIVE_STATUSES),
        )
    }
    result: Dict[str, Any] = {
        "pharmacyId": pharmacy_id,
        "triggersScanned": len(triggers),
        "patientsMatched": 0,
        "opportunitiesCreated": 0,
        "skippedExisting": 0,
        "skippedLowMargin": 0,
        "skippedNoValue": 0,
        "byTrigger": {},
    }
    matched_patients: Set[str] = set()
    stamp = utcnow()
    with service.transaction() as conn:
        for trigger in triggers:
            created = 0
            floor = min_margin_for(trigger, settings)
            category = trigger.get("category") or trigger["trigger_type"]
            for patient_id, patient_claims in claims.items():
                drugs = list(dict.fromkeys(c["drug_name"] for c in patient_claims))
                claim = next((c for c in patient_claims if match_trigger(trigger, c, drugs)), None)
                if claim is None:
                    continue
                matched_patients.add(patient_id)
                if (patient_id, trigger["trigger_id"]) in existing or (patient_id, category) in open_categories:
                    result["skippedExisting"] += 1
                    continue
                gp_value = resolve_gp_value(trigger, claim["insurance_bin"], claim["insurance_group"])
                if gp_value is None:
                    result["skippedNoValue"] += 1
                    continue
                gain = margin_gain(trigger, gp_value, gp_per_30(claim["gross_profit"], claim["days_supply"]))
                if gain < floor:
                    result["skippedLowMargin"] += 1
                    continue
                opp_id = new_id()
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO opportunities (
                        opportunity_id, pharmacy_id, patient_id, prescription_id, trigger_id, opportunity_type,
                        trigger_group, current_ndc, current_drug_name, recommended_drug_name, recommended_ndc,
                        potential_margin_gain, annual_margin_gain, avg_dispensed_qty, clinical_rationale,
                        clinical_priority, prescriber_name, insurance_bin, insurance_group, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (opp_id, pharmacy_id, patient_id, claim["prescription_id"], trigger["trigger_id"],
                     trigger["trigger_type"], trigger["display_name"], claim["ndc"], claim["drug_name"],
                     trigger.get("recommended_drug"), trigger.get("recommended_ndc"), round(gain, 2),
                     round(gain * (trigger.get("annual_fills") or 12), 2), claim["quantity"],
                     trigger.get("clinical_rationale"), trigger.get("priority") or "medium",
                     claim["prescriber_name"], normalize_bin(claim["insurance_bin"]) or None,
                     claim["insurance_group"], stamp, stamp),
                )
                existing.add((patient_id, trigger["trigger_id"]))
                open_categories.add((patient_id, category))
                if cur.rowcount == 0:
                    result["skippedExisting"] += 1
                    continue
                created += 1
                if not claim["prescriber_name"]:
                    service.add_data_quality_issue(
                        conn, pharmacy_id, "missing_prescriber",
                        f"Source claim for {trigger['display_name']} has no prescriber",
                        field_name="prescriber_name", patient_id=patient_id,
                        prescription_id=claim["prescription_id"], opportunity_id=opp_id,
                    )
            result["byTrigger"][trigger["trigger_code"]] = created
            result["opportunitiesCreated"] += created
    result["patientsMatched"] = len(matched_patients)
    log.info(
        "[Scanner] pharmacy=%s triggers=%s created=%s skipped_existing=%s low_margin=%s",
        pharmacy_id, len(triggers), result["opportunitiesCreated"], result["skippedExisting"],
        result["skippedLowMargin"],
    )
    return result


def run_scan(
    service: TheRxService,
    pharmacy_ids: Optional[Sequence[str]] = None,
    scan_type: str = "manual",
    trigger_ids: Optional[Sequence[str]] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Scan several pharmacies (all active ones by default) and record a scan run."""
    pharmacy_ids = list(pharmacy_ids or service.active_pharmacy_ids())
    scan_id = new_id()
    with service.transaction() as conn:
        conn.execute(
            "INSERT INTO scan_runs (scan_id, scan_type, pharmacy_ids) VALUES (?, ?, ?)",
            (scan_id, scan_type, to_json(pharmacy_ids)),
        )
    log.info("[Scanner] %s scan id=%s over %s pharmacies", scan_type, scan_id, len(pharmacy_ids))
    results = []
    try:
        for pid in pharmacy_ids:
            results.append(scan_pharmacy(service, pid, trigger_ids=trigger_ids, settings=settings))
    except Exception as e:
        with service.transaction() as conn:
            conn.execute(
                "UPDATE scan_runs SET status = 'failed', error = ?, completed_at = ? WHERE scan_id = ?",
                (str(e), utcnow(), scan_id),
            )
        log.error("[Scanner][Error] scan id=%s failed: %s", scan_id, e)
        raise
    total = sum(r["opportunitiesCreated"] for r in results)
    with service.transaction() as conn:
        conn.execute(
            "UPDATE scan_runs SET status = 'completed', opportunities_created = ?, completed_at = ? WHERE scan_id = ?",
            (total, utcnow(), scan_id),
        )
    return {
        "scanId": scan_id,
        "scanType": scan_type,
        "pharmaciesScanned": len(results),
        "triggersScanned": max((r["triggersScanned"] for r in results), default=0),
        "opportunitiesCreated": total,
        "totalCreated": total,
        "totalSkipped": sum(r["skippedExisting"] for r in results),
        "totalPatientsMatched": sum(r["patientsMatched"] for r in results),
        "results": results,
    }


# ----------------------------- Coverage --------------------------------------
def _recommended_claims(trigger: Dict[str, Any], claims: pd.DataFrame) -> pd.DataFrame:
    rec_ndc = normalize_ndc(trigger.get("recommended_ndc"))
    if rec_ndc:
        hits = claims["ndc"] == rec_ndc
    else:
        words = [w for w in (trigger.get("recommended_drug") or "").upper().split() if len(w) > 2]
        if not words:
            return claims.iloc[0:0]
        # every significant word of the recommended drug must appear
        hits = pd.Series(True, index=claims.index)
        for word in words:
            hits &= claims["drug_name"].str.contains(word, regex=False, na=False)
    return claims[hits]


def scan_coverage(
    service: TheRxService,
    trigger_id: str,
    lookback_days: Optional[int] = None,
    min_claims: int = 1,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Learn per-BIN/GROUP GP values for a trigger's recommended drug from paid claims."""
    settings = settings or get_settings()
    trigger = service.get_trigger(trigger_id)
    claims = load_claims(service, lookback_days or settings.scan_lookback_days)
    matches = _recommended_claims(trigger, claims)
    floor = min_margin_for(trigger, settings)
    result: Dict[str, Any] = {
        "triggerId": trigger_id,
        "triggerName": trigger["display_name"],
        "triggerType": trigger["trigger_type"],
        "binCount": 0,
        "prescriptionCount": int(len(matches)),
        "verifiedCount": 0,
        "binValues": [],
        "drugVariations": [],
    }
    if matches.empty:
        log.info("[Coverage] trigger=%s no matching claims", trigger["trigger_code"])
        return result

    variations = [
        {"drugName": name, "claimCount": int(len(grp)), "ndcCount": int(grp["ndc"].nunique()),
         "ndcs": sorted(grp["ndc"].unique().tolist())}
        for name, grp in matches.groupby("drug_name")
    ]
    result["drugVariations"] = sorted(variations, key=lambda v: v["claimCount"], reverse=True)

    excluded = {
        (b["bin"], b.get("group") or "")
        for b in trigger["bin_values"]
        if b["isExcluded"] or b["coverageStatus"] == "excluded"
    }
    stamp = utcnow()
    with service.transaction() as conn:
        for (bin_, group), grp in matches.groupby(["insurance_bin", "insurance_group"]):
            if not bin_ or len(grp) < min_claims:
                continue
            by_drug = grp.groupby(["drug_name", "ndc"])["gp_30"].mean().sort_values(ascending=False)
            best_drug, best_ndc = by_drug.index[0]
            entry = {
                "bin": bin_,
                "group": group or None,
                "gpValue": round(float(grp["gp_30"].mean()), 2),
                "avgQty": round(float(grp["quantity"].mean()), 2),
                "avgReimbursement": round(float(grp["reimbursement"].mean()), 2),
                "claimCount": int(len(grp)),
                "bestDrugName": best_drug,
                "bestNdc": best_ndc,
                "coverageStatus": "verified",
            }
            if (bin_, group) in excluded:
                entry["coverageStatus"] = "excluded"
            elif entry["gpValue"] < floor:
                entry["coverageStatus"] = "below_margin"
            else:
                conn.execute(
                    """
                    INSERT INTO trigger_bin_values (trigger_id, insurance_bin, insurance_group, gp_value,
                        coverage_status, verified_at, verified_claim_count, avg_reimbursement, avg_qty,
                        best_drug_name, best_ndc)
                    VALUES (?, ?, ?, ?, 'verified', ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (trigger_id, insurance_bin, insurance_group) DO UPDATE SET
                        gp_value = excluded.gp_value, coverage_status = 'verified',
                        verified_at = excluded.verified_at, verified_claim_count = excluded.verified_claim_count,
                        avg_reimbursement = excluded.avg_reimbursement, avg_qty = excluded.avg_qty,
                        best_drug_name = excluded.best_drug_name, best_ndc = excluded.best_ndc
                    WHERE trigger_bin_values.is_excluded = 0
                    """,
                    (trigger_id, bin_, group, entry["gpValue"], stamp, entry["claimCount"],
                     entry["avgReimbursement"], entry["avgQty"], best_drug, best_ndc),
                )
                result["verifiedCount"] += 1
            result["binValues"].append(entry)
        conn.execute("UPDATE triggers SET synced_at = ? WHERE trigger_id = ?", (stamp, trigger_id))
    result["binValues"].sort(key=lambda b: b["gpValue"], reverse=True)
    result["binCount"] = len(result["binValues"])
    log.info(
        "[Coverage] trigger=%s claims=%s bins=%s verified=%s",
        trigger["trigger_code"], result["prescriptionCount"], result["binCount"], result["verifiedCount"],
    )
    return result


def verify_all_coverage(service: TheRxService, settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    results: List[Dict[str, Any]] = []
    no_matches: List[Dict[str, Any]] = []
    for trigger in service.list_triggers(enabled_only=True, with_stats=False):
        scan = scan_coverage(service, trigger["trigger_id"], settings=settings)
        if scan["verifiedCount"]:
            results.append({
                "triggerId": scan["triggerId"],
                "triggerName": scan["triggerName"],
                "triggerType": scan["triggerType"],
                "verifiedCount": scan["verifiedCount"],
                "topBins": [
                    {
                        "bin": b["bin"],
                        "group": b["group"],
                        "bestDrug": b["bestDrugName"],
                        "avgMargin": f"{b['gpValue']:.2f}",
                        "avgQty": f"{b['avgQty']:.1f}",
                    }
                    for b in scan["binValues"] if b["coverageStatus"] == "verified"
                ][:5],
                "drugVariations": scan["drugVariations"],
            })
            continue
        if not scan["prescriptionCount"]:
            reason = "No claims found for the recommended drug"
            if not trigger.get("recommended_drug") and not trigger.get("recommended_ndc"):
                reason = "Trigger has no recommended drug or NDC"
        else:
            reason = "All matching BIN/GROUPs are below the minimum margin or excluded"
        no_matches.append({"triggerId": trigger["trigger_id"], "triggerName": trigger["display_name"], "reason": reason})
    summary = {
        "totalTriggers": len(results) + len(no_matches),
        "triggersWithMatches": len(results),
        "triggersWithNoMatches": len(no_matches),
        "minMarginUsed": settings.scan_min_margin,
        "dmeMinMarginUsed": settings.dme_min_margin,
    }
    log.info("[Coverage] verify-all %s", summary)
    return {"summary": summary, "results": results, "noMatches": no_matches}


def find_trigger(service: TheRxService, trigger_id: Optional[str] = None, trigger_group: Optional[str] = None) -> Dict[str, Any]:
    """Trigger by id, or by the code / display name stored on opportunities as ``trigger_group``."""
    if trigger_id:
        return service.get_trigger(trigger_id)
    if trigger_group:
        row = service.fetch_one(
            "SELECT trigger_id FROM triggers WHERE trigger_code = ? OR display_name = ? LIMIT 1",
            (trigger_group, trigger_group),
        )
        if row:
            return service.get_trigger(row["trigger_id"])
    raise NotFoundError("trigger not found")


def exclude_bin(service: TheRxService, trigger_id: str, bin_: str, group: Optional[str] = None) -> Dict[str, Any]:
    """Stop recommending a trigger on a BIN (or BIN+GROUP) and drop its untouched opportunities there."""
    trigger = service.get_trigger(trigger_id)
    bin_ = normalize_bin(bin_)
    if not bin_:
        raise ValueError("bin required")
    group = (group or "").strip()
    with service.transaction() as conn:
        conn.execute(
            """
            INSERT INTO trigger_bin_values (trigger_id, insurance_bin, insurance_group, is_excluded, coverage_status)
            VALUES (?, ?, ?, 1, 'excluded')
            ON CONFLICT (trigger_id, insurance_bin, insurance_group) DO UPDATE SET
                is_excluded = 1, coverage_status = 'excluded'
            """,
            (trigger_id, bin_, group),
        )
        sql = "DELETE FROM opportunities WHERE trigger_id = ? AND status = 'Not Submitted' AND insurance_bin = ?"
        params: List[Any] = [trigger_id, bin_]
        if group:
            sql += " AND insurance_group = ?"
            params.append(group)
        removed = conn.execute(sql, params).rowcount
    log.info("[Scanner] Excluded bin=%s group=%s from trigger=%s removed=%s", bin_, group or "*",
             trigger["trigger_code"], removed)
    return {"triggerId": trigger_id, "bin": bin_, "group": group or None, "removed": removed}


# ----------------------------- Negative GP -----------------------------------
NEGATIVE_GP_DEFAULTS: Dict[str, Any] = {
    "min_fills_negative": 3,
    "max_avg_gp": -2,
    "min_fills_alternative": 3,
    "min_avg_gp_alternative": 5,
    "lookback_days": 180,
    "min_margin_gain": 50,
    "max_results": 100,
}


def _class_for(drug_name: str, triggers: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for trigger in triggers:
        if trigger.get("category") and _any_keyword(trigger.get("detection_keywords"), drug_name):
            return trigger
    return None


def _in_class(drug_name: str, category: str, triggers: List[Dict[str, Any]]) -> bool:
    for trigger in triggers:
        if trigger.get("category") != category:
            continue
        rec = base_drug_name(trigger.get("recommended_drug"))
        if rec and keyword_in(rec, drug_name):
            return True
        if _any_keyword(trigger.get("detection_keywords"), drug_name):
            return True
    return False


def scan_negative_gp(service: TheRxService, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Find money-losing drugs and queue better-paying same-class alternatives for approval."""
    cfg = dict(NEGATIVE_GP_DEFAULTS)
    cfg.update({k: v for k, v in (config or {}).items() if v is not None})
    started = time.monotonic()
    out: Dict[str, Any] = {
        "success": True,
        "losersFound": 0,
        "candidatesGenerated": 0,
        "submittedToQueue": 0,
        "skippedExisting": 0,
        "skippedNoClass": 0,
        "skippedNoAlternative": 0,
        "skippedLowGain": 0,
        "processingTimeMs": 0,
        "errors": [],
        "details": [],
    }
    losers = negative_gp_losers(
        service,
        min_fills=cfg["min_fills_negative"],
        max_avg_gp=cfg["max_avg_gp"],
        lookback_days=cfg["lookback_days"],
        limit=cfg["max_results"],
    )["losers"]
    out["losersFound"] = len(losers)
    if not losers:
        out["processingTimeMs"] = int((time.monotonic() - started) * 1000)
        return out

    triggers = service.list_triggers(enabled_only=True, with_stats=False)
    claims = load_claims(service, cfg["lookback_days"])
    alt_groups = (
        claims.groupby(["base_drug_name", "drug_name", "insurance_bin", "insurance_group"])
        .agg(fills=("prescription_id", "count"), patients=("patient_id", "nunique"), avg_gp=("gp_30", "mean"))
        .reset_index()
    )
    queued_pairs: Set[Tuple[str, str]] = set()
    with service.transaction() as conn:
        for loser in losers:
            try:
                cls = _class_for(loser["drug_name"], triggers)
                if cls is None:
                    out["skippedNoClass"] += 1
                    continue
                category = cls["category"]
                same_bin = alt_groups[
                    (alt_groups["insurance_bin"] == (loser["insurance_bin"] or ""))
                    & (alt_groups["base_drug_name"] != loser["base_drug_name"])
                    & (alt_groups["fills"] >= cfg["min_fills_alternative"])
                    & (alt_groups["avg_gp"] >= cfg["min_avg_gp_alternative"])
                ]
                if loser.get("insurance_group"):
                    same_bin = same_bin[same_bin["insurance_group"] == loser["insurance_group"]]
                same_bin = same_bin[same_bin["drug_name"].map(lambda d: _in_class(d, category, triggers))]
                if same_bin.empty:
                    out["skippedNoAlternative"] += 1
                    continue
                alt = same_bin.sort_values("avg_gp", ascending=False).iloc[0]
                gain_per_patient = (float(alt["avg_gp"]) - loser["avg_gp"]) * 12
                if gain_per_patient < cfg["min_margin_gain"]:
                    out["skippedLowGain"] += 1
                    continue
                out["candidatesGenerated"] += 1
                detail = {
                    "currentDrug": loser["drug_name"],
                    "bin": loser["insurance_bin"],
                    "group": loser.get("insurance_group"),
                    "avgGP": loser["avg_gp"],
                    "fills": loser["fill_count"],
                    "patients": loser["patient_count"],
                    "totalLoss": loser["total_loss"],
                    "therapeuticClass": category,
                    "recommendedDrug": alt["drug_name"],
                    "altAvgGP": round(float(alt["avg_gp"]), 2),
                    "altFills": int(alt["fills"]),
                    "estimatedAnnualGainPerPatient": round(gain_per_patient, 2),
                    "estimatedTotalAnnualGain": round(gain_per_patient * loser["patient_count"], 2),
                }
                out["details"].append(detail)
                pair = (loser["drug_name"], alt["drug_name"])
                if pair in queued_pairs or service.pending_type_exists(*pair):
                    out["skippedExisting"] += 1
                    continue
                affected = _affected_pharmacies(claims, loser)
                service.add_pending_type(
                    conn,
                    recommended_drug_name=alt["drug_name"],
                    current_drug_name=loser["drug_name"],
                    opportunity_type="therapeutic_interchange",
                    source="negative_gp_scan",
                    source_details={
                        **detail,
                        "therapeutic_class": category,
                        "detection_keywords": [loser["base_drug_name"]],
                        "rationale": (
                            f"{loser['drug_name']} averages ${loser['avg_gp']:.2f} GP per 30 days on BIN "
                            f"{loser['insurance_bin']}; {alt['drug_name']} averages ${float(alt['avg_gp']):.2f}."
                        ),
                        "bin_values": [{
                            "bin": loser["insurance_bin"],
                            "group": loser.get("insurance_group"),
                            "gpValue": round(float(alt["avg_gp"]), 2),
                            "coverageStatus": "verified",
                        }],
                    },
                    affected_pharmacies=affected,
                    total_patient_count=int(loser["patient_count"]),
                    estimated_annual_margin=detail["estimatedTotalAnnualGain"],
                )
                queued_pairs.add(pair)
                out["submittedToQueue"] += 1
            except (KeyError, TypeError, ValueError) as e:
                log.warning("[NegativeGP] Skipped %s: %s", loser.get("drug_name"), e)
                out["errors"].append({"drug": loser.get("drug_name"), "error": str(e)})
    out["processingTimeMs"] = int((time.monotonic() - started) * 1000)
    log.info(
        "[NegativeGP] losers=%s candidates=%s queued=%s existing=%s no_class=%s no_alt=%s low_gain=%s",
        out["losersFound"], out["candidatesGenerated"], out["submittedToQueue"], out["skippedExisting"],
        out["skippedNoClass"], out["skippedNoAlternative"], out["skippedLowGain"],
    )
    return out


def _affected_pharmacies(claims: pd.DataFrame, loser: Dict[str, Any]) -> List[str]:
    hit = claims[
        (claims["drug_name"] == loser["drug_name"])
        & (claims["insurance_bin"] == (loser["insurance_bin"] or ""))
    ]
    if loser.get("insurance_group"):
        hit = hit[hit["insurance_group"] == loser["insurance_group"]]
    return sorted(hit["pharmacy_id"].unique().tolist())
