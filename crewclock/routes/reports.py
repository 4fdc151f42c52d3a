"""
Report API routes.
Managers and admins of the active business only.
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..auth.security import get_current_user, get_active_business_id
from ..services.activity import build_activity_timeline
from ..services.errors import ValidationFailed
from ..services.reports import ReportFilters, build_report, check_report_access
from ..services.time_rules import resolve_range

router = APIRouter(prefix="/reports", tags=["reports"])


def _optional_uuid(value: Optional[str], field: str) -> Optional[uuid.UUID]:
    if not value or not value.strip():
        return None
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        raise ValidationFailed(f"{field} must be a UUID.", field=field)


@router.get("")
def get_report(
    range: str = Query(default="last7"),
    start: Optional[str] = Query(default=None),
    end: Optional[str] = Query(default=None),
    project_id: Optional[str] = Query(default=None),
    worker_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    active_business_id: Optional[uuid.UUID] = Depends(get_active_business_id),
):
    filters = ReportFilters(
        range=range,
        start=start,
        end=end,
        project_id=_optional_uuid(project_id, "project_id"),
        worker_id=_optional_uuid(worker_id, "worker_id"),
    )
    return {"ok": True, "data": build_report(db, user, active_business_id, filters)}


@router.get("/activity")
def get_activity(
    range: str = Query(default="last7"),
    start: Optional[str] = Query(default=None),
    end: Optional[str] = Query(default=None),
    project_id: Optional[str] = Query(default=None),
    worker_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    active_business_id: Optional[uuid.UUID] = Depends(get_active_business_id),
):
    check_report_access(db, user, active_business_id)
    window = resolve_range(range, start, end)
    data = build_activity_timeline(
        db,
        active_business_id,
        window.start,
        window.end,
        worker_id=_optional_uuid(worker_id, "worker_id"),
        project_id=_optional_uuid(project_id, "project_id"),
    )
    return {"ok": True, "range": window.preset, "from_iso": window.start.isoformat(), "to_iso": window.end.isoformat(), **data}
