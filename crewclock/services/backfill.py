"""
Backfill of synthetic geofence events for historical shifts.

Shifts that predate event capture get a plausible enter / exit / re-enter
sequence positioned around the site, so compliance reports have something to
show. Generation is pure given a random.Random; run_backfill does the I/O.
"""
import math
import random
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Project, TimeEntry, GeofenceEvent
from .errors import StorageFailure
from .geofence import effective_radius, measure, offset_point, to_coordinate
from .time_rules import ensure_utc, utcnow


logger = structlog.get_logger(__name__)

MAX_EVENTS_CAP = 3
EXISTING_LOOKUP_CHUNK = 200

PLACEHOLDER_SHIFT = timedelta(hours=2)
MIN_SHIFT = timedelta(minutes=1)
EXIT_MIN_SHIFT = timedelta(minutes=30)


def clamp(value, low, high):
    return max(low, min(high, value))


def clamp_max_events(value: Optional[int]) -> int:
    if value is None:
        return MAX_EVENTS_CAP
    return max(0, min(MAX_EVENTS_CAP, int(value)))


def _minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


def _uniform_time(rng: random.Random, low: datetime, high: datetime) -> datetime:
    return low + (high - low) * rng.random()


def plan_event_times(
    clock_in: datetime,
    clock_out: Optional[datetime],
    max_events: int,
    rng: random.Random,
) -> List[tuple]:
    """
    Timeline of (event_type, occurred_at) for one shift, before positions.

    Without a clock-out the shift is treated as two hours long for timing only.
    Exit and re-enter are only planned for closed shifts over 30 minutes.
    """
    if max_events <= 0:
        return []

    start = ensure_utc(clock_in)
    has_clock_out = clock_out is not None
    end = ensure_utc(clock_out) if has_clock_out else start + PLACEHOLDER_SHIFT
    bounded_end = max(end, start + MIN_SHIFT)
    duration = bounded_end - start

    planned = []
    enter_at = clamp(start + _minutes(rng.uniform(-5, 10)), start, bounded_end)
    planned.append(("enter", enter_at))

    if has_clock_out and max_events > 1 and duration > EXIT_MIN_SHIFT:
        exit_at = clamp(
            _uniform_time(rng, start + duration * 0.2, start + duration * 0.7),
            enter_at + _minutes(5),
            bounded_end - _minutes(10),
        )
        if exit_at > enter_at:
            planned.append(("exit", exit_at))

            if max_events > 2:
                reenter_at = clamp(
                    _uniform_time(rng, exit_at + _minutes(5), bounded_end - _minutes(1)),
                    exit_at + _minutes(1),
                    bounded_end,
                )
                if exit_at < reenter_at <= bounded_end:
                    # Re-entering the site is recorded as a plain enter
                    planned.append(("enter", reenter_at))

    return planned[:max_events]


def generate_position(site, event_type: str, rng: random.Random) -> Optional[Dict]:
    """
    Plausible device position for a synthesized event, or None without site coordinates.

    Enters land 3-25 m from the center; exits at clamp(radius + 8..22, 18, 50) m.
    Distance and inside are measured from the generated point.
    """
    center = to_coordinate(getattr(site, "lat", None), getattr(site, "lng", None))
    if center is None:
        return None

    radius = effective_radius(getattr(site, "geo_radius_m", None))
    enter_jitter = rng.uniform(3, 25)
    exit_target = clamp(radius + rng.uniform(8, 22), 18, 50)
    meters = enter_jitter if event_type == "enter" else exit_target
    bearing = rng.uniform(0, math.pi * 2)

    point = offset_point(center, meters, bearing)
    distance_m, inside = measure(point, center.lat, center.lng, radius)
    if distance_m is None:
        return None
    return {"lat": point.lat, "lng": point.lng, "distance_m": distance_m, "inside": inside}


def generate_events_for_entry(entry, site, max_events: int, rng: Optional[random.Random] = None) -> List[Dict]:
    """Insertable geofence event rows (as dicts) for one shift."""
    rng = rng or random.Random()
    max_events = clamp_max_events(max_events)
    if max_events == 0 or entry.clock_in is None:
        return []

    rows = []
    for event_type, occurred_at in plan_event_times(entry.clock_in, entry.clock_out, max_events, rng):
        position = generate_position(site, event_type, rng)
        if position is None:
            continue
        rows.append({
            "business_id": entry.business_id,
            "project_id": entry.project_id,
            "employee_id": entry.employee_id,
            "time_entry_id": entry.id,
            "event_type": event_type,
            "occurred_at": occurred_at,
            "source": "system",
            **position,
        })
    return rows


@dataclass
class BackfillConfig:
    business_id: uuid.UUID
    days: int = 60
    max_events_per_entry: int = MAX_EVENTS_CAP
    dry_run: bool = True
    overwrite: bool = False


@dataclass
class BackfillReport:
    entries_scanned: int = 0
    skipped_already_had_events: int = 0
    skipped_missing_project_data: int = 0
    events_generated: int = 0
    events_inserted: int = 0
    dry_run: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


class BackfillAborted(StorageFailure):
    """A batch insert failed; report holds the counts completed before the failure."""

    def __init__(self, message: str, report: BackfillReport):
        super().__init__(message, code="BACKFILL_ABORTED", details=report.to_dict())
        self.report = report


def _chunks(items: list, size: int):
    for index in range(0, len(items), size):
        yield items[index:index + size]


def fetch_entry_ids_with_events(db: Session, business_id, entry_ids: List[uuid.UUID]) -> set:
    existing = set()
    for chunk in _chunks(entry_ids, EXISTING_LOOKUP_CHUNK):
        rows = (
            db.query(GeofenceEvent.time_entry_id)
            .filter(GeofenceEvent.business_id == business_id, GeofenceEvent.time_entry_id.in_(chunk))
            .distinct()
            .all()
        )
        existing.update(r[0] for r in rows if r[0] is not None)
    return existing


def run_backfill(
    db: Session,
    config: BackfillConfig,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    batch_size: Optional[int] = None,
) -> BackfillReport:
    rng = rng or random.Random()
    now = ensure_utc(now) if now else utcnow()
    batch_size = batch_size or settings.backfill_insert_batch_size
    max_events = clamp_max_events(config.max_events_per_entry)
    since = now - timedelta(days=config.days)

    logger.info(
        "backfill_started",
        business_id=str(config.business_id),
        days=config.days,
        max_events_per_entry=max_events,
        dry_run=config.dry_run,
        overwrite=config.overwrite,
        since=since.isoformat(),
    )

    entries = (
        db.query(TimeEntry)
        .filter(TimeEntry.business_id == config.business_id, TimeEntry.clock_in >= since)
        .order_by(TimeEntry.clock_in.asc())
        .all()
    )
    projects = {p.id: p for p in db.query(Project).filter(Project.business_id == config.business_id).all()}

    existing = set()
    if not config.overwrite and entries:
        existing = fetch_entry_ids_with_events(db, config.business_id, [e.id for e in entries])

    report = BackfillReport(entries_scanned=len(entries), dry_run=config.dry_run)
    to_insert: List[Dict] = []

    for entry in entries:
        if not config.overwrite and entry.id in existing:
            report.skipped_already_had_events += 1
            continue

        project = projects.get(entry.project_id)
        if project is None or to_coordinate(project.lat, project.lng) is None:
            report.skipped_missing_project_data += 1
            continue

        to_insert.extend(generate_events_for_entry(entry, project, max_events, rng))

    report.events_generated = len(to_insert)

    if not config.dry_run:
        for batch in _chunks(to_insert, batch_size):
            try:
                db.add_all([GeofenceEvent(**row) for row in batch])
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("backfill_batch_failed", error=str(e), **report.to_dict())
                raise BackfillAborted(f"Backfill aborted: {e}", report)
            report.events_inserted += len(batch)
            logger.info("backfill_batch_inserted", count=len(batch))

    logger.info("backfill_complete", **report.to_dict())
    return report
