"""
Example usage for the TheRxOS engine.
Run this file to see the service in action:

    python -m therxos.example

It builds a throwaway database, loads the demo pharmacy, scans it and prints
what was found.
"""
from __future__ import annotations

import os
import tempfile

from . import audit, dedup
from .config import configure_logging
from .scanner import run_scan
from .seed import seed_demo
from .service import TheRxService


def main() -> None:
    configure_logging("WARNING")
    db_path = os.path.join(tempfile.mkdtemp(prefix="therxos-"), "example.db")
    service = TheRxService(db_path)
    seeded = seed_demo(service)
    ingestion = seeded["ingestion"]
    print(f"\n[Report] Loaded {ingestion['inserted']} claims ({ingestion['errors']} rejected, "
          f"{ingestion['dataQualityIssues']} data-quality issues)")

    scan = run_scan(service, [seeded["pharmacy_id"]])
    print(f"[Report] Scan created {scan['opportunitiesCreated']} opportunities:")
    listing = service.list_opportunities(seeded["pharmacy_id"], include_blocked=True)
    for opp in listing["opportunities"]:
        print(
            f" - {opp['patient_last_name']}, {opp['patient_first_name']}: {opp['current_drug_name']} -> "
            f"{opp['recommended_drug_name']} (${opp['potential_margin_gain']:.2f}/fill, "
            f"${opp['annual_margin_gain']:.2f}/yr)"
        )

    flags = audit.scan_all(service)
    print(f"[Report] Audit rules flagged {flags['newFlags']} claims")
    for flag in service.list_audit_flags(seeded["pharmacy_id"]):
        print(f" - [{flag['severity']}] {flag['drug_name']}: {flag['violation_message']}")

    print(f"[Report] {dedup.find_duplicates(service)['summary']}")
    service.close()


if __name__ == "__main__":
    main()
