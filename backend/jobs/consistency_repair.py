"""
Passe de réparation des statuts de stock, lancée hors API (cron).

    python -m backend.jobs.consistency_repair [--dry-run]
"""

from __future__ import annotations

import argparse
import json
import logging

from backend.app.core.config import get_settings
from backend.app.core.logging import setup_logging
from backend.app.db.session import SessionLocal
from backend.services.consistency import check_and_fix_status_consistency

logger = logging.getLogger(__name__)


def run(dry_run: bool = False) -> int:
    db = SessionLocal()
    try:
        report = check_and_fix_status_consistency(db, dry_run=dry_run)
    finally:
        db.close()

    print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2, default=str))
    # code retour != 0 si des unités violent shipped <= total
    return 1 if report.violations else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Realign inventory unit statuses with their quantities")
    parser.add_argument("--dry-run", action="store_true", help="report mismatches without writing")
    args = parser.parse_args(argv)

    setup_logging(get_settings().LOG_LEVEL)
    return run(dry_run=args.dry_run)


if __name__ == "__main__":
    raise SystemExit(main())
