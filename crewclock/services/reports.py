"""
Manager-facing attendance reports.

Aggregates shifts, clock events and geofence events for one business into
hours totals, per-project/per-worker breakdowns, attendance rows with
inside/outside flags and per-project geofence compliance.
"""
import math
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import (
    User,
    Business,
    BusinessMembership,
    Project,
    TimeEntry,
    TimeEntryEvent,
    GeofenceEvent,
)
from .errors import Forbidden, ReportError
from .geofence import measure, to_coordinate
from .permissions import can_view_reports
from .time_rules import ReportRange, ensure_utc, resolve_range, this_week_range, utcnow


logger = structlog.get_logger(__name__)

CLOCK_IN_TYPES = ("clock_in",)
CLOCK_OUT_TYPES = ("clock_out", "manager_clock_out")

SOURCE_EVENTS = "time_entry_events"
SOURCE_SHIFTS = "time_entries"


@dataclass
class ReportFilters:
    range: str = "last7"
    start: Optional[str] = None
    end: Optional[str] = None
    project_id: Optional[uuid.UUID] = None
    worker_id: Optional[uuid.UUID] = None


def display_name(profile: Optional[User], fallback_id) -> str:
    """Full name, else phone, else the id."""
    if profile is None:
        return str(fallback_id)
    full = f"{(profile.first_name or '').strip()} {(profile.last_name or '').strip()}".strip()
    return full or profile.phone or str(fallback_id)


def percent(part: int, total: int) -> Optional[int]:
    if total <= 0:
        return None
    # Half-up to the nearest integer
    return int(math.floor(part / total * 100 + 0.5))


def resolve_duration_seconds(entry: TimeEntry, now: datetime) -> int:
    if entry.duration_seconds is not None and math.isfinite(entry.duration_seconds):
        return max(0, int(math.floor(entry.duration_seconds + 0.5)))
    start = ensure_utc(entry.clock_in)
    if start is None:
        return 0
    end = ensure_utc(entry.clock_out) if entry.clock_out else ensure_utc(now)
    return max(0, int(math.floor((end - start).total_seconds() + 0.5)))


def _iso(dt: Optional[datetime]) -> Optional[str]:
    dt = ensure_utc(dt)
    return dt.isoformat() if dt else None


def _load(label: str, fn: Callable):
    """Run one report read; any storage failure fails the whole report."""
    try:
        return fn()
    except SQLAlchemyError as e:
        logger.error("report_load_failed", what=label, error=str(e))
        raise ReportError(f"Unable to load {label} for reports.")


def _position_inside(project: Optional[Project], lat, lng) -> Optional[bool]:
    if project is None:
        return None
    _, inside = measure(to_coordinate(lat, lng), project.lat, project.lng, project.geo_radius_m)
    return inside


def check_report_access(db: Session, actor: Optional[User], business_id) -> Business:
    if actor is None:
        raise ReportError("You must be logged in to view reports.")
    if not actor.is_active:
        raise ReportError("Your account is inactive.")
    if (actor.role or "").lower() == "worker":
        raise Forbidden("Reports are available to managers and admins only.", code="REPORTS_FORBIDDEN")
    if business_id is None:
        raise ReportError("Select a business to view reports.", code="ACTIVE_BUSINESS_REQUIRED")

    business = _load("business", lambda: db.query(Business).filter(Business.id == business_id).first())
    if business is None:
        raise ReportError("Active business not found.", code="BUSINESS_NOT_FOUND")
    if business.account_id != actor.account_id:
        raise Forbidden("You do not have access to this business.", code="BUSINESS_ACCESS_DENIED")
    if not can_view_reports(db, actor, business_id):
        raise Forbidden("Reports are available to managers and admins only.", code="REPORTS_FORBIDDEN")
    return business


def load_clock_events(db: Session, business_id, entry_ids: List[uuid.UUID]) -> Optional[Dict]:
    """
    Clock events per shift id: {entry_id: {"clock_in": [...], "clock_out": [...]}}.

    Returns None when the event stream cannot be read, so callers fall back to
    the shift rows instead of failing.
    """
    if not entry_ids:
        return {}
    try:
        rows = (
            db.query(TimeEntryEvent)
            .filter(
                TimeEntryEvent.business_id == business_id,
                TimeEntryEvent.time_entry_id.in_(entry_ids),
                TimeEntryEvent.event_type.in_(CLOCK_IN_TYPES + CLOCK_OUT_TYPES),
            )
            .order_by(TimeEntryEvent.occurred_at.asc())
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("time_entry_events_unavailable", business_id=str(business_id), error=str(e))
        return None

    by_entry: Dict = defaultdict(lambda: {"clock_in": [], "clock_out": []})
    for row in rows:
        kind = "clock_in" if row.event_type in CLOCK_IN_TYPES else "clock_out"
        by_entry[row.time_entry_id][kind].append(row)
    return by_entry


def classify_punches(entry: TimeEntry, project: Optional[Project], events: Optional[Dict]) -> Dict:
    """
    Inside/outside for a shift's clock-in and clock-out.

    Uses the first clock_in event and last clock_out event when they carry an
    inside flag; otherwise measures the coordinates saved on the shift row.
    """
    clock_in_inside = None
    clock_out_inside = None
    used_events = False

    if events:
        with_flag_in = [e for e in events.get("clock_in", []) if e.inside is not None]
        with_flag_out = [e for e in events.get("clock_out", []) if e.inside is not None]
        if with_flag_in:
            clock_in_inside = with_flag_in[0].inside
            used_events = True
        if with_flag_out:
            clock_out_inside = with_flag_out[-1].inside
            used_events = True

    if clock_in_inside is None:
        clock_in_inside = _position_inside(project, entry.clock_in_lat, entry.clock_in_lng)
    if clock_out_inside is None and entry.clock_out is not None:
        clock_out_inside = _position_inside(project, entry.clock_out_lat, entry.clock_out_lng)

    return {
        "clock_in_inside": clock_in_inside,
        "clock_out_inside": clock_out_inside,
        "source": SOURCE_EVENTS if used_events else SOURCE_SHIFTS,
    }


def minutes_outside_by_project(events: List[GeofenceEvent]) -> Dict:
    """
    Minutes spent outside per project, from exit -> next enter pairs per worker.

    Only projects with at least one geofence event appear; an exit without a
    later enter in range contributes nothing.
    """
    by_key = defaultdict(list)
    for ev in events:
        by_key[(ev.project_id, ev.employee_id)].append(ev)

    seconds = defaultdict(float)
    for (project_id, _), rows in by_key.items():
        seconds[project_id] += 0.0
        rows.sort(key=lambda r: ensure_utc(r.occurred_at))
        open_exit = None
        for row in rows:
            if row.event_type == "exit":
                if open_exit is None:
                    open_exit = ensure_utc(row.occurred_at)
            elif row.event_type == "enter" and open_exit is not None:
                seconds[project_id] += (ensure_utc(row.occurred_at) - open_exit).total_seconds()
                open_exit = None

    return {pid: int(math.floor(total / 60 + 0.5)) for pid, total in seconds.items()}


def build_report(
    db: Session,
    actor: Optional[User],
    business_id,
    filters: Optional[ReportFilters] = None,
    now: Optional[datetime] = None,
) -> Dict:
    filters = filters or ReportFilters()
    now = ensure_utc(now) if now else utcnow()
    business = check_report_access(db, actor, business_id)

    selected: ReportRange = resolve_range(filters.range, filters.start, filters.end, now=now)
    week: ReportRange = this_week_range(now=now)
    query_start = min(selected.start, week.start)
    query_end = max(selected.end, week.end)

    projects = _load(
        "projects",
        lambda: db.query(Project).filter(Project.business_id == business_id).order_by(Project.name).all(),
    )
    project_by_id = {p.id: p for p in projects}

    memberships = _load(
        "crew memberships",
        lambda: db.query(BusinessMembership).filter(BusinessMembership.business_id == business_id).all(),
    )

    def _entries():
        q = db.query(TimeEntry).filter(
            TimeEntry.business_id == business_id,
            TimeEntry.clock_in >= query_start,
            TimeEntry.clock_in <= query_end,
        )
        if filters.project_id:
            q = q.filter(TimeEntry.project_id == filters.project_id)
        if filters.worker_id:
            q = q.filter(TimeEntry.employee_id == filters.worker_id)
        return q.order_by(TimeEntry.clock_in.desc()).all()

    entries = _load("time entries", _entries)

    profile_ids = {m.user_id for m in memberships} | {e.employee_id for e in entries} | {actor.id}
    profiles = _load("worker profiles", lambda: db.query(User).filter(User.id.in_(list(profile_ids))).all())
    profile_by_id = {p.id: p for p in profiles}
    membership_role = {m.user_id: m.role for m in memberships if m.is_active}

    selected_entries = []
    week_seconds = 0
    for entry in entries:
        seconds = resolve_duration_seconds(entry, now)
        if selected.contains(entry.clock_in):
            selected_entries.append((entry, seconds))
        if week.contains(entry.clock_in):
            week_seconds += seconds

    total_seconds = sum(s for _, s in selected_entries)
    active_crew_ids = {m.user_id for m in memberships if m.is_active}
    active_sites = sum(1 for p in projects if p.status == "active")

    # Per project and per worker buckets
    project_seconds = defaultdict(int)
    project_workers = defaultdict(lambda: defaultdict(int))
    crew_seconds = defaultdict(int)
    crew_projects = defaultdict(set)
    for entry, seconds in selected_entries:
        project_seconds[entry.project_id] += seconds
        project_workers[entry.project_id][entry.employee_id] += seconds
        crew_seconds[entry.employee_id] += seconds
        crew_projects[entry.employee_id].add(entry.project_id)

    projects_report = []
    for project_id, seconds in project_seconds.items():
        project = project_by_id.get(project_id)
        breakdown = [
            {
                "worker_id": str(worker_id),
                "worker_name": display_name(profile_by_id.get(worker_id), worker_id),
                "seconds": worker_seconds,
            }
            for worker_id, worker_seconds in project_workers[project_id].items()
        ]
        breakdown.sort(key=lambda r: r["seconds"], reverse=True)
        projects_report.append({
            "project_id": str(project_id),
            "project_name": project.name if project else "Unknown project",
            "project_address": project.address if project else None,
            "seconds": seconds,
            "worker_breakdown": breakdown,
        })
    projects_report.sort(key=lambda r: r["seconds"], reverse=True)

    crew_report = []
    for worker_id, seconds in crew_seconds.items():
        profile = profile_by_id.get(worker_id)
        crew_report.append({
            "worker_id": str(worker_id),
            "worker_name": display_name(profile, worker_id),
            "phone": profile.phone if profile else "",
            "role": profile.role if profile else "unknown",
            "seconds": seconds,
            "project_ids": [str(pid) for pid in crew_projects[worker_id]],
            "projects_worked": len(crew_projects[worker_id]),
        })
    crew_report.sort(key=lambda r: r["seconds"], reverse=True)

    top_n = settings.report_top_n
    top_projects = [{"id": r["project_id"], "name": r["project_name"], "seconds": r["seconds"]} for r in projects_report[:top_n]]
    top_workers = [{"id": r["worker_id"], "name": r["worker_name"], "seconds": r["seconds"]} for r in crew_report[:top_n]]

    # Attendance: prefer the clock event stream, fall back per punch to shift coordinates
    clock_events = load_clock_events(db, business_id, [e.id for e, _ in selected_entries])
    attendance = []
    compliance = {p.id: {"inside": 0, "total": 0, "exits": 0} for p in projects}
    for entry, seconds in sorted(selected_entries, key=lambda pair: ensure_utc(pair[0].clock_in), reverse=True):
        project = project_by_id.get(entry.project_id)
        punches = classify_punches(entry, project, clock_events.get(entry.id) if clock_events else None)
        attendance.append({
            "id": str(entry.id),
            "clock_in": _iso(entry.clock_in),
            "clock_out": _iso(entry.clock_out),
            "project_id": str(entry.project_id),
            "project_name": project.name if project else "Unknown project",
            "worker_id": str(entry.employee_id),
            "worker_name": display_name(profile_by_id.get(entry.employee_id), entry.employee_id),
            "duration_seconds": seconds,
            "clock_in_inside": punches["clock_in_inside"],
            "clock_out_inside": punches["clock_out_inside"],
            "clock_in_outside_geofence": punches["clock_in_inside"] is False,
            "clock_out_outside_geofence": punches["clock_out_inside"] is False,
            "source": punches["source"],
        })

        bucket = compliance.get(entry.project_id)
        if bucket is None:
            continue
        if punches["clock_in_inside"] is not None:
            bucket["total"] += 1
            bucket["inside"] += 1 if punches["clock_in_inside"] else 0
        if punches["clock_out_inside"] is not None:
            bucket["total"] += 1
            if punches["clock_out_inside"]:
                bucket["inside"] += 1
            else:
                bucket["exits"] += 1

    def _geofence_events():
        q = db.query(GeofenceEvent).filter(
            GeofenceEvent.business_id == business_id,
            GeofenceEvent.occurred_at >= selected.start,
            GeofenceEvent.occurred_at <= selected.end,
        )
        if filters.project_id:
            q = q.filter(GeofenceEvent.project_id == filters.project_id)
        if filters.worker_id:
            q = q.filter(GeofenceEvent.employee_id == filters.worker_id)
        return q.all()

    minutes_outside = minutes_outside_by_project(_load("geofence events", _geofence_events))

    geofence = [
        {
            "project_id": str(p.id),
            "project_name": p.name,
            "project_address": p.address,
            "punches_inside": compliance[p.id]["inside"],
            "punches_total": compliance[p.id]["total"],
            "percent_inside": percent(compliance[p.id]["inside"], compliance[p.id]["total"]),
            "exits": compliance[p.id]["exits"],
            "minutes_outside": minutes_outside.get(p.id),
        }
        for p in projects
    ]
    geofence.sort(key=lambda r: r["project_name"].lower())

    used_events = any(row["source"] == SOURCE_EVENTS for row in attendance)

    options_workers = [
        {
            "id": str(pid),
            "name": display_name(profile_by_id.get(pid), pid),
            "phone": profile_by_id[pid].phone if pid in profile_by_id else "",
            "role": profile_by_id[pid].role if pid in profile_by_id else "worker",
            "membership_role": membership_role.get(pid),
        }
        for pid in active_crew_ids
    ]
    options_workers.sort(key=lambda r: r["name"].lower())

    return {
        "business": {"id": str(business.id), "name": business.name},
        "actor": {"id": str(actor.id), "role": actor.role},
        "generated_at": now.isoformat(),
        "filters": {
            "range": selected.preset,
            "project_id": str(filters.project_id) if filters.project_id else "",
            "worker_id": str(filters.worker_id) if filters.worker_id else "",
            "start": selected.start_input,
            "end": selected.end_input,
            "from_iso": selected.start.isoformat(),
            "to_iso": selected.end.isoformat(),
        },
        "options": {
            "projects": sorted(
                [{"id": str(p.id), "name": p.name, "status": p.status} for p in projects],
                key=lambda r: r["name"].lower(),
            ),
            "workers": options_workers,
        },
        "overview": {
            "total_hours_this_week_seconds": week_seconds,
            "total_hours_selected_range_seconds": total_seconds,
            "total_crew_count": len(active_crew_ids),
            "active_sites_count": active_sites,
            "top_projects": top_projects,
            "top_workers": top_workers,
        },
        "attendance": attendance,
        "attendance_source": SOURCE_EVENTS if used_events else SOURCE_SHIFTS,
        "used_time_entry_events": used_events,
        "used_time_entries_fallback": clock_events is None or any(row["source"] == SOURCE_SHIFTS for row in attendance),
        "projects": projects_report,
        "crew": crew_report,
        "geofence": geofence,
    }
