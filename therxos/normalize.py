"""Small value normalizers shared by ingestion, metrics and the scanner."""
from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional

_NON_DIGIT = re.compile(r"\D")
_SPACES = re.compile(r"\s+")


def digits(value: Any) -> str:
    if value is None:
        return ""
    return _NON_DIGIT.sub("", str(value))


def normalize_ndc(value: Any) -> str:
    """NDC as 11 digits; anything shorter is left-padded with zeros."""
    d = digits(value)
    if not d:
        return ""
    return d.zfill(11) if len(d) <= 11 else d


def is_valid_ndc(raw: Any) -> bool:
    return len(digits(raw)) in (10, 11)


def normalize_bin(value: Any) -> str:
    d = digits(value)
    return d.zfill(6) if d else ""


def normalize_drug_name(value: Any) -> str:
    if value is None:
        return ""
    return _SPACES.sub(" ", str(value)).strip().upper()


def base_drug_name(drug_name: Optional[str]) -> str:
    name = normalize_drug_name(drug_name)
    return name.split(" ", 1)[0] if name else ""


def gp_per_30(gross_profit: Optional[float], days_supply: Optional[float]) -> Optional[float]:
    """Gross profit scaled to a 30 day supply."""
    if gross_profit is None:
        return None
    ds = days_supply or 0
    if ds <= 0:
        return float(gross_profit)
    return float(gross_profit) * 30.0 / float(ds)


def clean_list(value: Any) -> Optional[List[str]]:
    """Accept a list or a comma separated string; returns stripped, non-empty items."""
    if value is None:
        return None
    items: Iterable[Any] = value.split(",") if isinstance(value, str) else value
    out = [str(v).strip() for v in items if v is not None and str(v).strip()]
    return out


def keyword_in(keyword: str, text: str) -> bool:
    return bool(keyword) and keyword.strip().upper() in (text or "").upper()
