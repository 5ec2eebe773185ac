"""
Demo data: one pharmacy, its staff, a few triggers and an audit rule, plus a
small claims export loaded through the normal ingestion path.

    python -m therxos.seed [--db PATH]
"""
from __future__ import annotations

import argparse
import logging
from typing import Any, Dict, Optional, Sequence

from .config import configure_logging
from .ingestion import ingest_csv
from .service import TheRxService

log = logging.getLogger(__name__)

DEMO_PASSWORD = "TheRxOS-demo1"

DEMO_USERS = [
    {"email": "admin@therxos.com", "role": "super_admin", "first_name": "Platform", "last_name": "Admin"},
    {"email": "owner@demo-pharmacy.com", "role": "admin", "first_name": "Olivia", "last_name": "Owner"},
    {"email": "pharmacist@demo-pharmacy.com", "role": "pharmacist", "first_name": "Paul", "last_name": "Reyes"},
    {"email": "tech@demo-pharmacy.com", "role": "technician", "first_name": "Tara", "last_name": "Nguyen"},
]

DEMO_TRIGGERS = [
    {
        "trigger_code": "DME-METER-STRIPS",
        "display_name": "Diabetic Testing Supplies",
        "trigger_type": "missing_therapy",
        "category": "DME",
        "detection_keywords": ["METFORMIN"],
        "if_not_has_keywords": ["TEST STRIP", "LANCET"],
        "recommended_drug": "ACCU-CHEK GUIDE TEST STRIPS",
        "action_instructions": "Request a meter and strips prescription from the prescriber.",
        "clinical_rationale": "Patients on oral diabetes therapy should be able to monitor glucose.",
        "priority": "medium",
        "default_gp_value": 18,
    },
    {
        "trigger_code": "STATIN-PRAVA-ROSU",
        "display_name": "Pravastatin to Rosuvastatin",
        "trigger_type": "therapeutic_interchange",
        "category": "Statin",
        "detection_keywords": ["PRAVASTATIN"],
        "recommended_drug": "ROSUVASTATIN CALCIUM 10MG TAB",
        "clinical_rationale": "Higher-intensity statin with better reimbursement on most Part D plans.",
        "priority": "high",
        "default_gp_value": 15,
        "bin_values": [
            {"bin": "610014", "gpValue": 22, "coverageStatus": "works"},
            {"bin": "004336", "isExcluded": True},
        ],
    },
    {
        "trigger_code": "NDC-METFORMIN-ER",
        "display_name": "Metformin ER Preferred NDC",
        "trigger_type": "ndc_optimization",
        "category": "Diabetes",
        "detection_keywords": ["METFORMIN ER"],
        "recommended_drug": "METFORMIN ER 500MG TAB",
        "recommended_ndc": "00093-7268-01",
        "priority": "low",
        "default_gp_value": 12,
    },
]

DEMO_AUDIT_RULE = {
    "rule_code": "OZEMPIC-QTY",
    "rule_name": "Ozempic pen quantity",
    "rule_description": "Ozempic pens are billed per pen; a 28 day fill is 3 mL.",
    "rule_type": "quantity_mismatch",
    "drug_keywords": ["OZEMPIC"],
    "expected_quantity": 3,
    "quantity_tolerance": 0.1,
    "severity": "critical",
    "audit_risk_score": 8,
}

DEMO_CSV = """\
Rx #,Patient First Name,Patient Last Name,DOB,Dispensed Item Name,Dispensed Item NDC,Qty Dispensed,Days Supply,Date Filled,Prescriber,Primary BIN,Primary Group,Primary PCN,Acq Cost,Patient Pay,Insurance Paid,SIG,DAW
1001,John,Smith,1950-03-14,METFORMIN HCL 500MG TAB,00093-1048-01,60,30,2025-01-05,DR ADAMS,610014,RXGRP1,MEDDPRIME,$4.10,$0.00,$9.50,TAKE 1 TABLET BY MOUTH TWICE DAILY,0
1002,John,Smith,1950-03-14,PRAVASTATIN SODIUM 40MG TAB,68180-0487-09,30,30,2025-01-05,DR ADAMS,610014,RXGRP1,MEDDPRIME,$3.00,$0.00,$5.00,TAKE 1 TABLET BY MOUTH DAILY,0
1003,Jane,Doe,1948-07-02,PRAVASTATIN SODIUM 40MG TAB,68180-0487-09,30,30,2025-01-08,DR BAKER,004336,ADV01,ADV,$3.00,$1.00,$4.50,TAKE 1 TABLET BY MOUTH DAILY,0
1004,Alice,Brown,1962-11-20,METFORMIN HCL 500MG TAB,00093-1048-01,60,30,2025-01-10,DR ADAMS,610014,RXGRP1,MEDDPRIME,$4.10,$0.00,$9.50,TAKE 1 TABLET BY MOUTH TWICE DAILY,0
1005,Alice,Brown,1962-11-20,ACCU-CHEK GUIDE TEST STRIPS,65702-0711-10,100,25,2025-01-10,DR ADAMS,610014,RXGRP1,MEDDPRIME,$20.00,$0.00,$45.00,TEST 4 TIMES DAILY,0
1006,Maria,Garcia,1970-05-30,METFORMIN ER 500MG TAB,00378-7185-01,60,30,2025-01-12,,610014,RXGRP1,MEDDPRIME,$6.00,$0.00,$7.50,TAKE 2 TABLETS BY MOUTH DAILY,0
1007,Kim,Lee,1980-09-09,OZEMPIC 1MG/DOSE PEN,00169-4130-13,6,28,2025-01-15,DR CHEN,003858,MEDCO1,A4,$850.00,$25.00,$910.00,INJECT 1MG SUBCUTANEOUSLY ONCE WEEKLY,0
1008,Tom,White,1955-01-01,LISINOPRIL 10MG TAB,68180-0513-01,30,30,not-a-date,DR ADAMS,610014,RXGRP1,MEDDPRIME,$1.00,$0.00,$3.00,TAKE 1 TABLET BY MOUTH DAILY,0
1009,Tom,White,1955-01-01,LISINOPRIL 10MG TAB,1234,30,30,2025-01-16,DR ADAMS,,,,$1.00,$0.00,$3.00,TAKE 1 TABLET BY MOUTH DAILY,0
"""


def seed_demo(service: TheRxService, pharmacy_name: str = "Demo Pharmacy") -> Dict[str, Any]:
    """Create the demo tenant and return the ids a caller needs to log in and scan."""
    pharmacy = service.create_pharmacy(pharmacy_name, state="TX", status="demo",
                                       submitter_email="owner@demo-pharmacy.com")
    pharmacy_id = pharmacy["pharmacy_id"]
    users: Dict[str, Dict[str, Any]] = {}
    for demo in DEMO_USERS:
        users[demo["role"]] = service.create_user(
            email=demo["email"],
            password=DEMO_PASSWORD,
            role=demo["role"],
            pharmacy_id=None if demo["role"] == "super_admin" else pharmacy_id,
            first_name=demo["first_name"],
            last_name=demo["last_name"],
        )
    triggers = {t["trigger_code"]: service.create_trigger(t)["trigger_id"] for t in DEMO_TRIGGERS}
    rule = service.create_audit_rule(DEMO_AUDIT_RULE)
    ingestion = ingest_csv(service, pharmacy_id, DEMO_CSV.encode("utf-8"), filename="demo_claims.csv",
                           source_email="owner@demo-pharmacy.com")
    log.info("[Seed] Demo pharmacy id=%s users=%s triggers=%s", pharmacy_id, len(users), len(triggers))
    return {
        "pharmacy_id": pharmacy_id,
        "users": {role: u["user_id"] for role, u in users.items()},
        "emails": {role: u["email"] for role, u in users.items()},
        "password": DEMO_PASSWORD,
        "triggers": triggers,
        "audit_rule_id": rule["rule_id"],
        "ingestion": ingestion,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Load TheRxOS demo data.")
    parser.add_argument("--db", default=None, help="SQLite database path (default from THERXOS_DB_PATH).")
    args = parser.parse_args(argv)
    configure_logging()
    service = TheRxService(args.db)
    try:
        seeded = seed_demo(service)
    finally:
        service.close()
    print(f"Demo pharmacy {seeded['pharmacy_id']} ready. Log in as {seeded['emails']['admin']} / {DEMO_PASSWORD}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
