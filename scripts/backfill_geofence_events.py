"""
Backfill synthetic geofence events for historical shifts of one business.

Usage:
    python scripts/backfill_geofence_events.py --business-id <uuid> [options]

Options:
    --days <n>                    Lookback window in days (default 60)
    --max-events-per-entry <n>    Events per shift, 0-3 (default 3)
    --dry-run [true|false]        Default true; nothing is written unless false
    --overwrite [true|false]      Default false; shifts with events are skipped
"""
import sys
import os
import argparse
import json
import uuid

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from crewclock.config import settings
from crewclock.db import SessionLocal
from crewclock.logging import setup_logging
from crewclock.services.backfill import BackfillAborted, BackfillConfig, clamp_max_events, run_backfill


TRUE_VALUES = {"1", "true", "yes", "y", "on"}
FALSE_VALUES = {"0", "false", "no", "n", "off"}


def parse_bool(default: bool):
    """argparse type for [true|false] flags; unknown words keep the default."""
    def _parse(value: str) -> bool:
        normalized = value.strip().lower()
        if normalized in TRUE_VALUES:
            return True
        if normalized in FALSE_VALUES:
            return False
        return default
    return _parse


def positive_int(default: int):
    def _parse(value: str) -> int:
        try:
            parsed = int(value)
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return _parse


def non_negative_int(default: int):
    def _parse(value: str) -> int:
        try:
            parsed = int(value)
        except ValueError:
            return default
        return parsed if parsed >= 0 else default
    return _parse


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill synthetic geofence events for historical shifts")
    parser.add_argument("--business-id", required=True)
    parser.add_argument("--days", type=positive_int(settings.backfill_default_days), default=settings.backfill_default_days)
    parser.add_argument("--max-events-per-entry", type=non_negative_int(3), default=3)
    # Bare flag means true
    parser.add_argument("--dry-run", nargs="?", const=True, default=True, type=parse_bool(True))
    parser.add_argument("--overwrite", nargs="?", const=True, default=False, type=parse_bool(False))
    return parser


def parse_config(argv=None) -> BackfillConfig:
    args = build_parser().parse_args(argv)
    try:
        business_id = uuid.UUID(args.business_id.strip())
    except ValueError:
        raise SystemExit(f"--business-id must be a UUID, got {args.business_id!r}")
    return BackfillConfig(
        business_id=business_id,
        days=args.days,
        max_events_per_entry=clamp_max_events(args.max_events_per_entry),
        dry_run=args.dry_run,
        overwrite=args.overwrite,
    )


def main(argv=None) -> int:
    setup_logging()
    config = parse_config(argv)
    db = SessionLocal()
    try:
        report = run_backfill(db, config)
    except BackfillAborted as e:
        print(json.dumps({"status": "aborted", "error": e.message, **e.report.to_dict()}))
        return 1
    finally:
        db.close()
    print(json.dumps({"status": "complete", **report.to_dict()}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
