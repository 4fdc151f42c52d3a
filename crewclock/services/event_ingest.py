"""
Event ingestion for geofence (enter/exit) and time entry (clock) events.

Both streams follow the same path: authorise the actor, resolve the owning
business, measure the position against the project's current geometry and
insert under a per-key lock so near-duplicate submissions collapse into one row.
"""
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import User, Project, TimeEntry, GeofenceEvent, TimeEntryEvent, EventDedupLock
from ..schemas.events import GeofenceEventIn, TimeEntryEventIn
from .errors import Forbidden, NotFound, StorageFailure, ValidationFailed
from .geofence import Coordinate, measure
from .permissions import require_active_actor, require_business_access, is_worker
from .time_rules import ensure_utc


logger = structlog.get_logger(__name__)

GEOFENCE_STREAM = "geofence"
TIME_ENTRY_STREAM = "time_entry"

# Shift edits are corrections, every one of them is kept
NON_DEDUPED_TYPES = {"edit"}


@dataclass(frozen=True)
class BusinessResolution:
    """
    Which business an event is recorded under.

    used_fallback is set when the ambient (client-selected) business was not
    what decided it: either it was absent or the shift's business overrode it.
    mismatch is set only for the override case.
    """
    business_id: Optional[uuid.UUID]
    used_fallback: bool = False
    mismatch: bool = False


@dataclass(frozen=True)
class IngestResult:
    event: Any
    deduped: bool
    resolution: BusinessResolution


def resolve_business(
    shift_business_id: Optional[uuid.UUID],
    active_business_id: Optional[uuid.UUID],
    project_business_id: Optional[uuid.UUID] = None,
) -> BusinessResolution:
    if shift_business_id is not None:
        mismatch = active_business_id is not None and active_business_id != shift_business_id
        return BusinessResolution(
            business_id=shift_business_id,
            used_fallback=active_business_id is None or mismatch,
            mismatch=mismatch,
        )
    if active_business_id is not None:
        return BusinessResolution(business_id=active_business_id)
    if project_business_id is not None:
        return BusinessResolution(business_id=project_business_id, used_fallback=True)
    return BusinessResolution(business_id=None, used_fallback=True)


def load_shift(
    db: Session,
    time_entry_id: uuid.UUID,
    attempts: Optional[int] = None,
    delay_ms: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> TimeEntry:
    """
    Read a shift, retrying to absorb replication lag right after clock-in.

    Raises NotFound(TIME_ENTRY_NOT_FOUND) once all attempts are used.
    """
    attempts = max(1, attempts if attempts is not None else settings.shift_lookup_attempts)
    delay_ms = settings.shift_lookup_delay_ms if delay_ms is None else delay_ms
    read_error_code = None

    for attempt in range(1, attempts + 1):
        try:
            shift = db.query(TimeEntry).filter(TimeEntry.id == time_entry_id).first()
        except SQLAlchemyError as e:
            db.rollback()
            shift = None
            read_error_code = type(e).__name__
            logger.warning("time_entry_lookup_failed", time_entry_id=str(time_entry_id), attempt=attempt, error=str(e))
        if shift is not None:
            return shift
        if attempt < attempts:
            sleep(delay_ms / 1000.0)

    details = {"attempts": attempts}
    if read_error_code:
        details["read_error_code"] = read_error_code
    raise NotFound("Time entry not found.", code="TIME_ENTRY_NOT_FOUND", details=details)


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StorageFailure(f"Unsupported database dialect: {dialect}")
    return insert


def _lock_dedup_key(db: Session, business_id, project_id, employee_id, stream: str, event_type: str) -> EventDedupLock:
    """Create the lock row for this key if needed, then hold it for the rest of the transaction."""
    insert = _dialect_insert(db)
    stmt = insert(EventDedupLock).values(
        id=uuid.uuid4(),
        business_id=business_id,
        project_id=project_id,
        employee_id=employee_id,
        stream=stream,
        event_type=event_type,
    ).on_conflict_do_nothing(
        index_elements=["business_id", "project_id", "employee_id", "stream", "event_type"]
    )
    db.execute(stmt)
    return db.execute(
        select(EventDedupLock)
        .where(
            EventDedupLock.business_id == business_id,
            EventDedupLock.project_id == project_id,
            EventDedupLock.employee_id == employee_id,
            EventDedupLock.stream == stream,
            EventDedupLock.event_type == event_type,
        )
        .with_for_update()
    ).scalar_one()


def _latest_geofence_event(db: Session, business_id, project_id, employee_id, event_type: str):
    return (
        db.query(GeofenceEvent)
        .filter(
            GeofenceEvent.business_id == business_id,
            GeofenceEvent.project_id == project_id,
            GeofenceEvent.employee_id == employee_id,
            GeofenceEvent.event_type == event_type,
        )
        .order_by(GeofenceEvent.occurred_at.desc(), GeofenceEvent.created_at.desc())
        .first()
    )


def _latest_time_entry_event(db: Session, business_id, project_id, employee_id, event_type: str):
    # Project comes from the metadata override when present, else from the shift
    meta_project = TimeEntryEvent.event_metadata["project_id"].as_string()
    return (
        db.query(TimeEntryEvent)
        .join(TimeEntry, TimeEntry.id == TimeEntryEvent.time_entry_id)
        .filter(
            TimeEntryEvent.business_id == business_id,
            TimeEntryEvent.employee_id == employee_id,
            TimeEntryEvent.event_type == event_type,
            or_(
                meta_project == str(project_id),
                and_(meta_project.is_(None), TimeEntry.project_id == project_id),
            ),
        )
        .order_by(TimeEntryEvent.occurred_at.desc(), TimeEntryEvent.created_at.desc())
        .first()
    )


def _within_window(a, b) -> bool:
    window = timedelta(seconds=settings.dedup_window_seconds)
    return abs(ensure_utc(a) - ensure_utc(b)) <= window


def _insert_deduped(
    db: Session,
    stream: str,
    business_id,
    project_id,
    employee_id,
    event_type: str,
    occurred_at,
    find_latest: Callable,
    build_row: Callable[[], Any],
):
    """Check-then-insert under the dedup key lock. Returns (row, deduped)."""
    try:
        if event_type not in NON_DEDUPED_TYPES:
            _lock_dedup_key(db, business_id, project_id, employee_id, stream, event_type)
            latest = find_latest(db, business_id, project_id, employee_id, event_type)
            if latest is not None and _within_window(latest.occurred_at, occurred_at):
                db.commit()
                return latest, True

        row = build_row()
        db.add(row)
        db.commit()
        db.refresh(row)
        return row, False
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("event_insert_failed", stream=stream, event_type=event_type, error=str(e))
        raise StorageFailure("Unable to record event.", code="EVENT_INSERT_FAILED")


def _log_resolution(resolution: BusinessResolution, active_business_id, shift: Optional[TimeEntry]):
    if resolution.mismatch:
        logger.info(
            "business_mismatch_using_time_entry_business",
            active_business_id=str(active_business_id),
            time_entry_business_id=str(resolution.business_id),
            time_entry_id=str(shift.id) if shift else None,
        )


def record_geofence_event(
    db: Session,
    actor: Optional[User],
    payload: GeofenceEventIn,
    active_business_id: Optional[uuid.UUID] = None,
) -> IngestResult:
    actor = require_active_actor(actor)

    shift = None
    if payload.time_entry_id is not None:
        shift = load_shift(db, payload.time_entry_id)
        if shift.employee_id != actor.id:
            raise Forbidden("Time entry does not belong to you.", code="TIME_ENTRY_FORBIDDEN")

    project = db.get(Project, payload.project_id)
    if project is None:
        raise NotFound("Project not found.", code="PROJECT_NOT_FOUND", details={"project_id": str(payload.project_id)})

    resolution = resolve_business(
        shift.business_id if shift else None,
        active_business_id,
        project.business_id,
    )
    _log_resolution(resolution, active_business_id, shift)
    business_id = resolution.business_id
    require_business_access(db, actor, business_id)

    distance_m, inside = (None, None)
    if project.business_id == business_id:
        distance_m, inside = measure(Coordinate(payload.lat, payload.lng), project.lat, project.lng, project.geo_radius_m)

    def build_row():
        return GeofenceEvent(
            business_id=business_id,
            project_id=project.id,
            employee_id=actor.id,
            time_entry_id=shift.id if shift else None,
            event_type=payload.event_type.value,
            occurred_at=payload.occurred_at,
            lat=payload.lat,
            lng=payload.lng,
            distance_m=distance_m,
            inside=inside,
            source=payload.source.value,
        )

    row, deduped = _insert_deduped(
        db,
        GEOFENCE_STREAM,
        business_id,
        project.id,
        actor.id,
        payload.event_type.value,
        payload.occurred_at,
        _latest_geofence_event,
        build_row,
    )
    logger.info(
        "geofence_event_deduped" if deduped else "geofence_event_recorded",
        event_id=str(row.id),
        business_id=str(business_id),
        project_id=str(project.id),
        employee_id=str(actor.id),
        event_type=row.event_type,
        inside=row.inside,
    )
    return IngestResult(event=row, deduped=deduped, resolution=resolution)


def record_time_entry_event(
    db: Session,
    actor: Optional[User],
    payload: TimeEntryEventIn,
    active_business_id: Optional[uuid.UUID] = None,
) -> IngestResult:
    actor = require_active_actor(actor)
    shift = load_shift(db, payload.time_entry_id)

    project_id = payload.project_id or shift.project_id
    project = db.get(Project, project_id) if project_id else None

    resolution = resolve_business(
        shift.business_id,
        active_business_id,
        project.business_id if project else None,
    )
    if resolution.business_id is None:
        raise ValidationFailed("Select a business before sending time entry events.", code="ACTIVE_BUSINESS_REQUIRED")
    _log_resolution(resolution, active_business_id, shift)
    business_id = resolution.business_id
    require_business_access(db, actor, business_id)

    if is_worker(actor) and shift.employee_id != actor.id:
        raise Forbidden("Workers can only log their own time entry events.", code="WORKER_EVENT_FORBIDDEN")

    distance_m, inside = (None, None)
    if payload.lat is not None and payload.lng is not None and project is not None and project.business_id == business_id:
        distance_m, inside = measure(Coordinate(payload.lat, payload.lng), project.lat, project.lng, project.geo_radius_m)

    metadata = dict(payload.metadata)
    metadata.setdefault("source", payload.source or "unknown")
    if payload.project_id is not None:
        metadata["project_id"] = str(payload.project_id)

    def build_row():
        return TimeEntryEvent(
            business_id=business_id,
            time_entry_id=shift.id,
            employee_id=shift.employee_id,
            event_type=payload.event_type.value,
            occurred_at=payload.occurred_at,
            lat=payload.lat,
            lng=payload.lng,
            distance_m=distance_m,
            inside=inside,
            event_metadata=metadata,
        )

    row, deduped = _insert_deduped(
        db,
        TIME_ENTRY_STREAM,
        business_id,
        project_id,
        shift.employee_id,
        payload.event_type.value,
        payload.occurred_at,
        _latest_time_entry_event,
        build_row,
    )
    logger.info(
        "time_entry_event_deduped" if deduped else "time_entry_event_recorded",
        event_id=str(row.id),
        business_id=str(business_id),
        time_entry_id=str(shift.id),
        actor_id=str(actor.id),
        event_type=row.event_type,
        inside=row.inside,
    )
    return IngestResult(event=row, deduped=deduped, resolution=resolution)
