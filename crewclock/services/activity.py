"""
Activity timeline: geofence and clock events for a business, newest first.
"""
import uuid
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import User, Project, TimeEntry, TimeEntryEvent, GeofenceEvent
from .reports import CLOCK_IN_TYPES, CLOCK_OUT_TYPES, SOURCE_EVENTS, SOURCE_SHIFTS, display_name, _load
from .time_rules import ensure_utc


logger = structlog.get_logger(__name__)

SOURCE_GEOFENCE = "geofence_events"


def _as_uuid(value) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _map_clock_type(event_type: str) -> Optional[str]:
    if event_type in CLOCK_IN_TYPES:
        return "clock_in"
    if event_type in CLOCK_OUT_TYPES:
        return "clock_out"
    return None


def _raw(id_: str, occurred_at, type_: str, employee_id, project_id, source: str, distance_m=None, inside=None) -> Dict:
    return {
        "id": id_,
        "occurred_at": ensure_utc(occurred_at),
        "type": type_,
        "employee_id": employee_id,
        "project_id": project_id,
        "source": source,
        "distance_m": distance_m,
        "inside": inside,
    }


def _geofence_rows(db: Session, business_id, start, end, worker_id, project_id) -> List[Dict]:
    q = db.query(GeofenceEvent).filter(
        GeofenceEvent.business_id == business_id,
        GeofenceEvent.occurred_at >= start,
        GeofenceEvent.occurred_at <= end,
    )
    if worker_id:
        q = q.filter(GeofenceEvent.employee_id == worker_id)
    if project_id:
        q = q.filter(GeofenceEvent.project_id == project_id)
    return [
        _raw(f"geofence-{ev.id}", ev.occurred_at, ev.event_type, ev.employee_id, ev.project_id,
             SOURCE_GEOFENCE, ev.distance_m, ev.inside)
        for ev in q.order_by(GeofenceEvent.occurred_at.desc()).all()
    ]


def _clock_event_rows(db: Session, business_id, start, end, worker_id, project_id) -> List[Dict]:
    """Clock events from the audit stream. A failed read yields no rows so the caller falls back."""
    try:
        q = db.query(TimeEntryEvent, TimeEntry.project_id).outerjoin(
            TimeEntry, TimeEntry.id == TimeEntryEvent.time_entry_id
        ).filter(
            TimeEntryEvent.business_id == business_id,
            TimeEntryEvent.occurred_at >= start,
            TimeEntryEvent.occurred_at <= end,
            TimeEntryEvent.event_type.in_(CLOCK_IN_TYPES + CLOCK_OUT_TYPES),
        )
        if worker_id:
            q = q.filter(TimeEntryEvent.employee_id == worker_id)
        rows = q.order_by(TimeEntryEvent.occurred_at.desc()).all()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("time_entry_events_unavailable", business_id=str(business_id), error=str(e))
        return []

    out = []
    for ev, shift_project_id in rows:
        mapped = _map_clock_type(ev.event_type)
        meta_project = _as_uuid((ev.event_metadata or {}).get("project_id"))
        resolved_project = shift_project_id or meta_project
        if mapped is None or not resolved_project:
            continue
        if project_id and str(resolved_project) != str(project_id):
            continue
        out.append(_raw(f"clock-event-{ev.id}", ev.occurred_at, mapped, ev.employee_id, resolved_project, SOURCE_EVENTS))
    return out


def _shift_rows(db: Session, business_id, start, end, worker_id, project_id) -> List[Dict]:
    q = db.query(TimeEntry).filter(TimeEntry.business_id == business_id, TimeEntry.clock_in <= end)
    if worker_id:
        q = q.filter(TimeEntry.employee_id == worker_id)
    if project_id:
        q = q.filter(TimeEntry.project_id == project_id)

    start, end = ensure_utc(start), ensure_utc(end)
    out = []
    for entry in q.order_by(TimeEntry.clock_in.desc()).all():
        clock_in = ensure_utc(entry.clock_in)
        if start <= clock_in <= end:
            out.append(_raw(f"clock-in-{entry.id}", clock_in, "clock_in", entry.employee_id, entry.project_id, SOURCE_SHIFTS))
        clock_out = ensure_utc(entry.clock_out)
        if clock_out is not None and start <= clock_out <= end:
            out.append(_raw(f"clock-out-{entry.id}", clock_out, "clock_out", entry.employee_id, entry.project_id, SOURCE_SHIFTS))
    return out


def build_activity_timeline(
    db: Session,
    business_id,
    start: datetime,
    end: datetime,
    worker_id=None,
    project_id=None,
    max_rows: Optional[int] = None,
) -> Dict:
    """
    Merged geofence + clock feed for [start, end], newest first.

    Clock rows come from time_entry_events when any are found; otherwise they
    are derived from shift clock-in/out timestamps. The flags say which.
    """
    max_rows = max_rows or settings.activity_max_rows

    raw = _load("geofence events", lambda: _geofence_rows(db, business_id, start, end, worker_id, project_id))

    clock_rows = _clock_event_rows(db, business_id, start, end, worker_id, project_id)
    used_time_entry_events = len(clock_rows) > 0
    used_time_entries_fallback = not used_time_entry_events
    if used_time_entry_events:
        raw.extend(clock_rows)
    else:
        raw.extend(_load("time entries", lambda: _shift_rows(db, business_id, start, end, worker_id, project_id)))

    employee_ids = list({r["employee_id"] for r in raw})
    project_ids = list({r["project_id"] for r in raw})
    profiles = {}
    projects = {}
    if employee_ids:
        profiles = {p.id: p for p in _load("worker profiles", lambda: db.query(User).filter(User.id.in_(employee_ids)).all())}
    if project_ids:
        projects = {p.id: p for p in _load("projects", lambda: db.query(Project).filter(Project.id.in_(project_ids)).all())}

    raw.sort(key=lambda r: r["occurred_at"], reverse=True)
    rows = []
    for r in raw[:max_rows]:
        project = projects.get(r["project_id"])
        rows.append({
            "id": r["id"],
            "occurred_at": r["occurred_at"].isoformat(),
            "type": r["type"],
            "employee_id": str(r["employee_id"]),
            "employee_name": display_name(profiles.get(r["employee_id"]), r["employee_id"]),
            "project_id": str(r["project_id"]),
            "project_name": project.name if project else str(r["project_id"]),
            "source": r["source"],
            "distance_m": r["distance_m"],
            "inside": r["inside"],
        })

    return {
        "rows": rows,
        "used_time_entry_events": used_time_entry_events,
        "used_time_entries_fallback": used_time_entries_fallback,
    }
