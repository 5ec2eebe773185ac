"""
Nightly opportunity scan.

The API starts a ``NightlyScanner`` on startup; it can also be run on its own:

    python -m therxos.scheduler --once            # scan now and exit
    python -m therxos.scheduler --pharmacy ID     # scan one pharmacy now
    python -m therxos.scheduler                   # nightly schedule in the foreground
"""
from __future__ import annotations

import argparse
import json
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

from apscheduler.schedulers.background import BackgroundScheduler

from .config import configure_logging, get_settings
from .scanner import run_scan
from .service import TheRxService

log = logging.getLogger(__name__)

JOB_ID = "therxos-nightly-scan"


class NightlyScanner:
    """Runs ``run_scan(scan_type='nightly')`` every day at ``hour``:00 on an APScheduler cron job."""

    def __init__(
        self,
        service: TheRxService,
        hour: Optional[int] = None,
        scan: Callable[..., Dict[str, Any]] = run_scan,
    ) -> None:
        self.hour = get_settings().nightly_scan_hour if hour is None else hour
        if not 0 <= self.hour <= 23:
            raise ValueError("hour must be 0-23")
        self.service = service
        self.scan = scan
        self.scheduler = BackgroundScheduler()
        self.last_result: Optional[Dict[str, Any]] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self.scheduler.running

    @property
    def next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def run_once(self) -> Optional[Dict[str, Any]]:
        try:
            self.last_result = self.scan(self.service, scan_type="nightly")
        except Exception:
            log.exception("[Scheduler] Nightly scan failed")
            return None
        finally:
            self.runs += 1
        log.info("[Scheduler] Nightly scan created %s opportunities", self.last_result["opportunitiesCreated"])
        return self.last_result

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_once, "cron", hour=self.hour, minute=0,
            id=JOB_ID, replace_existing=True, coalesce=True, max_instances=1,
        )
        self.scheduler.start()
        log.info("[Scheduler] Nightly scanner started, next run %s", self.next_run_time)

    def stop(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            log.info("[Scheduler] Nightly scanner stopped")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TheRxOS opportunity scan scheduler.")
    parser.add_argument("--once", action="store_true", help="Run one scan immediately and exit.")
    parser.add_argument(
        "--pharmacy",
        action="append",
        dest="pharmacies",
        metavar="ID",
        help="Pharmacy id to scan (repeatable). Implies --once.",
    )
    parser.add_argument("--db", default=None, help="SQLite database path (default from THERXOS_DB_PATH).")
    parser.add_argument("--hour", type=int, default=None, help="Hour of day for the nightly scan.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    service = TheRxService(args.db)
    try:
        if args.once or args.pharmacies:
            result = run_scan(service, pharmacy_ids=args.pharmacies, scan_type="manual")
            summary = {k: v for k, v in result.items() if k != "results"}
            print(json.dumps(summary, indent=2))
            return 0
        scanner = NightlyScanner(service, hour=args.hour)
        scanner.start()
        try:
            while scanner.running:
                time.sleep(1.0)
        except KeyboardInterrupt:
            scanner.stop(wait=True)
        return 0
    finally:
        service.close()


if __name__ == "__main__":
    raise SystemExit(main())
