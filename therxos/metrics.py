"""
Gross-profit analysis over dispensed claims.

Claims are pulled into a pandas DataFrame and aggregated by drug, BIN/GROUP
and NDC. GP per fill is normalized to a 30-day supply before averaging so a
90-day fill does not look three times as profitable as a 30-day one.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from .normalize import base_drug_name
from .service import ACTIVE_STATUSES, TheRxService, _placeholders, annual_value_sql

log = logging.getLogger(__name__)

CLAIM_COLUMNS = [
    "prescription_id", "pharmacy_id", "patient_id", "ndc", "drug_name", "quantity", "days_supply",
    "dispensed_date", "insurance_bin", "insurance_group", "prescriber_name", "acquisition_cost",
    "patient_pay", "insurance_pay", "gross_profit",
]
GROUP_KEYS = ["base_drug_name", "drug_name", "insurance_bin", "insurance_group"]


def load_claims(
    service: TheRxService,
    lookback_days: Optional[int] = None,
    pharmacy_id: Optional[str] = None,
) -> pd.DataFrame:
    """Claims with a known GP inside the lookback window, plus derived columns.

    The window ends at the latest dispensed date in scope (today when there are
    no claims), so old demo data still produces results.
    """
    where = ["gross_profit IS NOT NULL"]
    params: List[Any] = []
    if pharmacy_id:
        where.append("pharmacy_id = ?")
        params.append(pharmacy_id)
    sql = f"SELECT {', '.join(CLAIM_COLUMNS)} FROM prescriptions WHERE {' AND '.join(where)}"
    with service.lock:
        df = pd.read_sql_query(sql, service.conn, params=params)
    if df.empty:
        return _with_derived(df)
    if lookback_days:
        end = pd.to_datetime(df["dispensed_date"]).max()
        start = (end - pd.Timedelta(days=int(lookback_days))).strftime("%Y-%m-%d")
        df = df[df["dispensed_date"] >= start]
    return _with_derived(df.copy())


def _with_derived(df: pd.DataFrame) -> pd.DataFrame:
    for col in CLAIM_COLUMNS:
        if col not in df.columns:
            df[col] = pd.Series(dtype="object")
    df["insurance_bin"] = df["insurance_bin"].fillna("")
    df["insurance_group"] = df["insurance_group"].fillna("")
    ds = pd.to_numeric(df["days_supply"], errors="coerce").fillna(0)
    gp = pd.to_numeric(df["gross_profit"], errors="coerce")
    df["gp_30"] = gp.where(ds <= 0, gp * 30.0 / ds.where(ds > 0, 1))
    df["reimbursement"] = df["patient_pay"].fillna(0) + df["insurance_pay"].fillna(0)
    df["base_drug_name"] = df["drug_name"].map(base_drug_name)
    return df


def _group_out(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    for rec in records:
        if "insurance_group" in rec and not rec["insurance_group"]:
            rec["insurance_group"] = None
        for key, value in rec.items():
            if isinstance(value, float):
                rec[key] = round(value, 2)
    return records


def _drug_groups(df: pd.DataFrame) -> pd.DataFrame:
    return (
        df.groupby(GROUP_KEYS, dropna=False)
        .agg(
            fill_count=("prescription_id", "count"),
            patient_count=("patient_id", "nunique"),
            pharmacy_count=("pharmacy_id", "nunique"),
            avg_gp=("gp_30", "mean"),
            total_gp=("gross_profit", "sum"),
            worst_gp=("gp_30", "min"),
            best_gp=("gp_30", "max"),
            avg_acq_cost=("acquisition_cost", "mean"),
            avg_reimbursement=("reimbursement", "mean"),
        )
        .reset_index()
    )


def negative_gp_losers(
    service: TheRxService,
    min_fills: int = 3,
    max_avg_gp: float = -2,
    lookback_days: int = 180,
    limit: int = 200,
    pharmacy_id: Optional[str] = None,
) -> Dict[str, Any]:
    df = load_claims(service, lookback_days, pharmacy_id)
    if df.empty:
        return {"losers": [], "count": 0, "totalLoss": 0.0, "totalPatients": 0}
    groups = _drug_groups(df)
    losers = groups[(groups["fill_count"] >= min_fills) & (groups["avg_gp"] <= max_avg_gp)]
    losers = losers.rename(columns={"total_gp": "total_loss"}).sort_values("total_loss").head(limit)
    cols = GROUP_KEYS + ["fill_count", "patient_count", "pharmacy_count", "avg_gp", "total_loss", "worst_gp", "best_gp"]
    records = _group_out(losers[cols].to_dict("records"))
    return {
        "losers": records,
        "count": len(records),
        "totalLoss": round(sum(r["total_loss"] for r in records), 2),
        "totalPatients": int(sum(r["patient_count"] for r in records)),
    }


def positive_gp_winners(
    service: TheRxService,
    min_fills: int = 3,
    min_avg_gp: float = 10,
    lookback_days: int = 180,
    limit: int = 200,
    pharmacy_id: Optional[str] = None,
) -> Dict[str, Any]:
    df = load_claims(service, lookback_days, pharmacy_id)
    if df.empty:
        return {"winners": [], "count": 0, "totalProfit": 0.0, "totalPatients": 0}
    groups = _drug_groups(df)
    winners = groups[(groups["fill_count"] >= min_fills) & (groups["avg_gp"] >= min_avg_gp)]
    winners = winners.rename(columns={"total_gp": "total_profit"})
    winners = winners.sort_values("total_profit", ascending=False).head(limit)
    cols = GROUP_KEYS + ["fill_count", "patient_count", "pharmacy_count", "avg_gp", "total_profit", "best_gp",
                         "avg_acq_cost", "avg_reimbursement"]
    records = _group_out(winners[cols].fillna(0).to_dict("records"))
    return {
        "winners": records,
        "count": len(records),
        "totalProfit": round(sum(r["total_profit"] for r in records), 2),
        "totalPatients": int(sum(r["patient_count"] for r in records)),
    }


def ndc_optimization(
    service: TheRxService,
    min_fills: int = 3,
    min_gp_difference: float = 3,
    lookback_days: int = 180,
    limit: int = 200,
    pharmacy_id: Optional[str] = None,
) -> Dict[str, Any]:
    """NDCs of the same drug on the same BIN/GROUP that pay worse than the best NDC."""
    df = load_claims(service, lookback_days, pharmacy_id)
    if df.empty:
        return {"opportunities": [], "count": 0, "totalAnnualGain": 0.0}
    keys = ["base_drug_name", "insurance_bin", "insurance_group"]
    per_ndc = (
        df.groupby(keys + ["ndc"], dropna=False)
        .agg(
            drug_name=("drug_name", lambda s: s.mode().iat[0]),
            fills=("prescription_id", "count"),
            patients=("patient_id", "nunique"),
            avg_gp=("gp_30", "mean"),
            acq_cost=("acquisition_cost", "mean"),
            reimbursement=("reimbursement", "mean"),
        )
        .reset_index()
    )
    per_ndc = per_ndc[per_ndc["fills"] >= min_fills]
    if per_ndc.empty:
        return {"opportunities": [], "count": 0, "totalAnnualGain": 0.0}
    best = per_ndc.loc[per_ndc.groupby(keys, dropna=False)["avg_gp"].idxmax()]
    pairs = per_ndc.merge(best, on=keys, suffixes=("_cur", "_best"))
    pairs = pairs[pairs["ndc_cur"] != pairs["ndc_best"]]
    pairs = pairs.assign(gp_difference=pairs["avg_gp_best"] - pairs["avg_gp_cur"])
    pairs = pairs[pairs["gp_difference"] >= min_gp_difference]
    pairs = pairs.assign(rank_value=pairs["gp_difference"] * pairs["patients_cur"])
    pairs = pairs.sort_values("rank_value", ascending=False).head(limit)
    out = pd.DataFrame({
        "base_drug": pairs["base_drug_name"],
        "current_drug": pairs["drug_name_cur"],
        "current_ndc": pairs["ndc_cur"],
        "better_drug": pairs["drug_name_best"],
        "better_ndc": pairs["ndc_best"],
        "insurance_bin": pairs["insurance_bin"],
        "insurance_group": pairs["insurance_group"],
        "current_fills": pairs["fills_cur"],
        "current_patients": pairs["patients_cur"],
        "current_avg_gp": pairs["avg_gp_cur"],
        "current_acq_cost": pairs["acq_cost_cur"].fillna(0),
        "current_reimbursement": pairs["reimbursement_cur"],
        "better_fills": pairs["fills_best"],
        "better_avg_gp": pairs["avg_gp_best"],
        "better_acq_cost": pairs["acq_cost_best"].fillna(0),
        "better_reimbursement": pairs["reimbursement_best"],
        "gp_difference": pairs["gp_difference"],
        "annual_gain_per_patient": pairs["gp_difference"] * 12,
    })
    records = _group_out(out.to_dict("records"))
    return {
        "opportunities": records,
        "count": len(records),
        "totalAnnualGain": round(sum(r["annual_gain_per_patient"] * r["current_patients"] for r in records), 2),
    }


def gp_metrics(service: TheRxService, pharmacy_id: Optional[str], lookback_days: Optional[int] = None) -> Dict[str, Any]:
    """Pharmacy-wide GP per Rx and its BIN / GROUP / prescriber breakdowns."""
    df = load_claims(service, lookback_days, pharmacy_id)
    where = f"o.status IN ({_placeholders(ACTIVE_STATUSES)})"
    params: List[Any] = list(ACTIVE_STATUSES)
    if pharmacy_id:
        where += " AND o.pharmacy_id = ?"
        params.append(pharmacy_id)
    opp_sql = (
        f"SELECT COALESCE(o.insurance_bin,'') AS insurance_bin, COALESCE(o.insurance_group,'') AS insurance_group, "
        f"COALESCE(o.prescriber_name,'') AS prescriber_name, o.potential_margin_gain, "
        f"{annual_value_sql()} AS annual_value FROM opportunities o WHERE {where}"
    )
    with service.lock:
        opps = pd.read_sql_query(opp_sql, service.conn, params=params)

    rx_count = int(len(df))
    total_gp = float(df["gross_profit"].sum()) if rx_count else 0.0
    impact = float(opps["potential_margin_gain"].sum()) if not opps.empty else 0.0
    df = df.assign(prescriber_name=df["prescriber_name"].fillna(""))

    def breakdown(keys: List[str], names: Dict[str, str]) -> List[Dict[str, Any]]:
        if df.empty:
            return []
        claims = df.groupby(keys).agg(rx_count=("prescription_id", "count"),
                                      gross_profit=("gross_profit", "sum")).reset_index()
        if opps.empty:
            claims["opportunity_count"] = 0
            claims["opportunity_value"] = 0.0
        else:
            o = opps.groupby(keys).agg(opportunity_count=("annual_value", "count"),
                                       opportunity_value=("annual_value", "sum")).reset_index()
            claims = claims.merge(o, on=keys, how="left")
            claims["opportunity_count"] = claims["opportunity_count"].fillna(0).astype(int)
            claims["opportunity_value"] = claims["opportunity_value"].fillna(0.0)
        claims["gp_per_rx"] = claims["gross_profit"] / claims["rx_count"]
        claims = claims.sort_values("rx_count", ascending=False).rename(columns=names)
        records = claims.to_dict("records")
        for rec in records:
            for key, value in rec.items():
                if isinstance(value, float):
                    rec[key] = round(value, 2)
        return records

    return {
        "pharmacy_wide": {
            "total_rx_count": rx_count,
            "total_gross_profit": round(total_gp, 2),
            "gp_per_rx": round(total_gp / rx_count, 2) if rx_count else 0.0,
            "opportunity_impact": round(impact, 2),
            "projected_gp_per_rx": round((total_gp + impact) / rx_count, 2) if rx_count else 0.0,
        },
        "by_bin": breakdown(["insurance_bin"], {"insurance_bin": "bin"}),
        "by_group": breakdown(["insurance_bin", "insurance_group"], {"insurance_bin": "bin", "insurance_group": "group"}),
        "by_prescriber": breakdown(["prescriber_name"], {}),
    }
