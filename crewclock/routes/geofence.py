"""
Geofence API routes.
Records enter/exit events and suggests the job site for a position.
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User, Business, BusinessMembership, Project
from ..auth.security import get_current_user, get_active_business_id
from ..schemas.events import GeofenceEventIn, GeofenceEventOut, NearbySitesIn, NearbySiteOut, NearbySitesOut, parse_payload
from ..services.event_ingest import record_geofence_event
from ..services.geofence import Coordinate, effective_radius, round_meters
from ..services.permissions import is_admin
from ..services.site_resolver import select_site

router = APIRouter(prefix="/geofence", tags=["geofence"])


@router.post("/event")
def create_geofence_event(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    active_business_id: Optional[uuid.UUID] = Depends(get_active_business_id),
):
    data = parse_payload(GeofenceEventIn, payload)
    result = record_geofence_event(db, user, data, active_business_id)
    body = {
        "ok": True,
        "deduped": result.deduped,
        "event": GeofenceEventOut.model_validate(result.event).model_dump(mode="json"),
    }
    return JSONResponse(status_code=200 if result.deduped else 201, content=body)


def accessible_active_projects(db: Session, user: User, business_id: Optional[uuid.UUID] = None):
    """Active projects in businesses the user can act in (admins: every business of their account)."""
    q = db.query(Project).filter(Project.status == "active")
    if is_admin(user):
        q = q.join(Business, Business.id == Project.business_id).filter(Business.account_id == user.account_id)
    else:
        q = q.join(BusinessMembership, BusinessMembership.business_id == Project.business_id).filter(
            BusinessMembership.user_id == user.id,
            BusinessMembership.is_active == True,  # noqa: E712
        )
    if business_id is not None:
        q = q.filter(Project.business_id == business_id)
    return q.all()


def _site_out(match) -> NearbySiteOut:
    return NearbySiteOut(
        project_id=match.site.id,
        business_id=match.site.business_id,
        name=match.site.name,
        distance_m=round_meters(match.distance_m),
        radius_m=effective_radius(match.site.geo_radius_m),
    )


@router.post("/nearby", response_model=NearbySitesOut)
def nearby_sites(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    active_business_id: Optional[uuid.UUID] = Depends(get_active_business_id),
):
    data = parse_payload(NearbySitesIn, payload)
    sites = accessible_active_projects(db, user, active_business_id)
    selection = select_site(Coordinate(data.lat, data.lng), sites)
    return NearbySitesOut(
        match=_site_out(selection.match) if selection.match else None,
        candidates=[_site_out(m) for m in selection.candidates],
        ambiguous=selection.ambiguous,
    )
