"""
Audit-risk rules.

Each enabled rule is checked against a pharmacy's claims; a claim that breaks
the rule is flagged once (rule + prescription is unique) so rescans only add
new findings.
"""
from __future__ import annotations

import fnmatch
import logging
import re
from typing import Any, Dict, List, Optional

from .database import new_id
from .normalize import keyword_in, normalize_ndc
from .service import TheRxService

log = logging.getLogger(__name__)

WORD_NUMBERS = {"one": 1.0, "two": 2.0, "three": 3.0, "four": 4.0, "half": 0.5}
_DOSE = re.compile(r"^\s*(?:take|inject|inhale|use|apply|instill|give)?\s*(\d+(?:\.\d+)?(?:/\d+)?|one|two|three|four|half)\b")
_EVERY_HOURS = re.compile(r"\b(?:every|q)\s*(\d+)\s*(?:hours?|hrs?|h)\b")
FREQUENCIES = [
    (re.compile(r"\b(?:qid|four times)\b"), 4.0),
    (re.compile(r"\b(?:tid|three times)\b"), 3.0),
    (re.compile(r"\b(?:bid|twice)\b"), 2.0),
    (re.compile(r"\b(?:qd|daily|once a day|every day|qhs|at bedtime|every morning|every evening)\b"), 1.0),
]


def _dose_units(text: str) -> Optional[float]:
    m = _DOSE.match(text)
    if not m:
        return None
    token = m.group(1)
    if token in WORD_NUMBERS:
        return WORD_NUMBERS[token]
    if "/" in token:
        num, den = token.split("/", 1)
        return float(num) / float(den) if float(den) else None
    return float(token)


def parse_sig_daily_units(sig: Optional[str]) -> Optional[float]:
    """Units per day from directions like "TAKE 1 TABLET BY MOUTH TWICE DAILY".

    Returns None when the dose or the frequency can't be read.
    """
    if not sig:
        return None
    text = sig.lower()
    dose = _dose_units(text)
    if dose is None:
        return None
    m = _EVERY_HOURS.search(text)
    if m and int(m.group(1)) > 0:
        return dose * (24.0 / int(m.group(1)))
    for pattern, per_day in FREQUENCIES:
        if pattern.search(text):
            return dose * per_day
    return None


def rule_applies(rule: Dict[str, Any], claim: Dict[str, Any]) -> bool:
    keywords = rule.get("drug_keywords") or []
    pattern = (rule.get("ndc_pattern") or "").strip()
    if not keywords and not pattern:
        return True
    if keywords and any(keyword_in(k, claim.get("drug_name") or "") for k in keywords):
        return True
    if pattern:
        glob = pattern.replace("%", "*")
        return fnmatch.fnmatch(normalize_ndc(claim.get("ndc")), glob)
    return False


def _within(value: float, expected: float, tolerance: float) -> bool:
    return expected * (1 - tolerance) <= value <= expected * (1 + tolerance)


def evaluate(rule: Dict[str, Any], claim: Dict[str, Any]) -> Optional[str]:
    """Violation message for ``claim`` under ``rule``, or None when it passes."""
    rtype = rule["rule_type"]
    qty = float(claim.get("quantity") or 0)
    ds = int(claim.get("days_supply") or 0)
    tol = float(rule.get("quantity_tolerance") if rule.get("quantity_tolerance") is not None else 0.1)

    if rtype == "quantity_mismatch":
        lo, hi = rule.get("min_quantity"), rule.get("max_quantity")
        if lo is not None and qty < lo:
            return f"Quantity {qty:g} below minimum {lo:g}"
        if hi is not None and qty > hi:
            return f"Quantity {qty:g} above maximum {hi:g}"
        expected = rule.get("expected_quantity")
        if expected is not None and not _within(qty, float(expected), tol):
            return f"Quantity {qty:g} differs from expected {float(expected):g} by more than {tol:.0%}"
        return None

    if rtype == "days_supply_mismatch":
        lo, hi = rule.get("min_days_supply"), rule.get("max_days_supply")
        if lo is not None and ds < lo:
            return f"Days supply {ds} below minimum {lo}"
        if hi is not None and ds > hi:
            return f"Days supply {ds} above maximum {hi}"
        return None

    if rtype == "daw_violation":
        if rule.get("has_generic_available") is False:
            return None
        allowed = [str(c).strip() for c in rule.get("allowed_daw_codes") or []]
        daw = str(claim.get("daw_code") or "0").strip()
        if allowed and daw not in allowed:
            return f"DAW code {daw} not in allowed codes {', '.join(allowed)}"
        return None

    if rtype == "sig_quantity_mismatch":
        per_day = parse_sig_daily_units(claim.get("sig"))
        if per_day is None or ds <= 0:
            return None
        expected = per_day * ds
        if not _within(qty, expected, tol):
            return f"Quantity {qty:g} does not match sig ({per_day:g}/day x {ds} days = {expected:g})"
        return None

    if rtype == "high_gp_risk":
        gp = claim.get("gross_profit")
        threshold = float(rule.get("gp_threshold") if rule.get("gp_threshold") is not None else 50)
        if gp is not None and gp >= threshold:
            return f"Gross profit ${gp:.2f} at or above ${threshold:.2f}"
        return None

    raise ValueError(f"Unknown rule_type '{rtype}'")


def scan_pharmacy(service: TheRxService, rule_id: str, pharmacy_id: str) -> Dict[str, Any]:
    """Flag a pharmacy's claims against one rule; returns the open-flag totals for that pair."""
    rule = service.get_audit_rule(rule_id)
    service.get_pharmacy(pharmacy_id)
    claims = service.fetch_all(
        """
        SELECT prescription_id, patient_id, drug_name, ndc, quantity, days_supply, daw_code, sig, gross_profit,
               COALESCE(patient_pay,0) + COALESCE(insurance_pay,0) AS reimbursement
        FROM prescriptions WHERE pharmacy_id = ?
        """,
        (pharmacy_id,),
    )
    new_flags = 0
    with service.transaction() as conn:
        for claim in claims:
            if not rule_applies(rule, claim):
                continue
            message = evaluate(rule, claim)
            if message is None:
                continue
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO audit_flags (flag_id, rule_id, pharmacy_id, patient_id, prescription_id,
                    rule_type, severity, drug_name, ndc, dispensed_quantity, days_supply, daw_code, gross_profit,
                    exposure, violation_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (new_id(), rule_id, pharmacy_id, claim["patient_id"], claim["prescription_id"], rule["rule_type"],
                 rule["severity"], claim["drug_name"], claim["ndc"], claim["quantity"], claim["days_supply"],
                 claim["daw_code"], claim["gross_profit"], claim["reimbursement"], message),
            )
            new_flags += cur.rowcount
    totals = service.fetch_one(
        """
        SELECT COUNT(*) AS risk_count, COUNT(DISTINCT patient_id) AS patient_count,
               COALESCE(SUM(exposure),0) AS total_exposure
        FROM audit_flags WHERE rule_id = ? AND pharmacy_id = ? AND status = 'open'
        """,
        (rule_id, pharmacy_id),
    )
    log.info("[Audit] rule=%s pharmacy=%s new_flags=%s open=%s", rule["rule_code"], pharmacy_id, new_flags,
             totals["risk_count"])
    return {
        "ruleId": rule_id,
        "pharmacyId": pharmacy_id,
        "newFlags": new_flags,
        "risk_count": totals["risk_count"],
        "patient_count": totals["patient_count"],
        "total_exposure": round(totals["total_exposure"], 2),
    }


def scan_all(service: TheRxService, pharmacy_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Every enabled rule against every (or the given) pharmacy."""
    pharmacy_ids = pharmacy_ids or service.active_pharmacy_ids()
    results = [
        scan_pharmacy(service, rule["rule_id"], pid)
        for rule in service.list_audit_rules(enabled_only=True)
        for pid in pharmacy_ids
    ]
    return {
        "rulesScanned": len({r["ruleId"] for r in results}),
        "pharmaciesScanned": len(pharmacy_ids),
        "newFlags": sum(r["newFlags"] for r in results),
        "results": results,
    }
