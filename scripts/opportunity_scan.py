import argparse
import json
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import structlog  # noqa: E402

from app.config import settings  # noqa: E402
from app.core.observability import setup_logging  # noqa: E402
from app.db import SessionLocal  # noqa: E402
from app.services import run_scheduled_scans  # noqa: E402

log = structlog.get_logger("detailos.scan_worker")


def process_once(business_slugs: list[str] | None) -> list[dict]:
    reports = run_scheduled_scans(SessionLocal, business_slugs=business_slugs)
    return [
        {
            "business": r.business_slug,
            "status": r.status,
            "failures": r.failures,
            **r.summary,
        }
        for r in reports
    ]


def main() -> int:
    parser = argparse.ArgumentParser(description="DetailOS opportunity scanner")
    parser.add_argument("--business", action="append", default=None, help="Business slug (repeatable, default: all)")
    parser.add_argument("--interval-minutes", type=float, default=float(settings.SCAN_INTERVAL_MINUTES))
    parser.add_argument("--once", action="store_true", help="Scan once and exit")
    args = parser.parse_args()

    setup_logging()
    while True:
        results = process_once(args.business)
        if args.once:
            print(json.dumps(results, ensure_ascii=True, indent=2))
            failed = [r for r in results if r["status"] == "failed"]
            return 1 if failed else 0
        log.info("scan_cycle_completed", businesses=len(results))
        time.sleep(max(1.0, float(args.interval_minutes) * 60.0))


if __name__ == "__main__":
    raise SystemExit(main())
