import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..auth.security import get_current_user, get_active_business_id
from ..schemas.events import TimeEntryEventIn, TimeEntryEventOut, parse_payload
from ..services.event_ingest import record_time_entry_event

router = APIRouter(prefix="/time-entries", tags=["time-entries"])


@router.post("/event")
def create_time_entry_event(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    active_business_id: Optional[uuid.UUID] = Depends(get_active_business_id),
):
    data = parse_payload(TimeEntryEventIn, payload)
    result = record_time_entry_event(db, user, data, active_business_id)
    body = {
        "ok": True,
        "deduped": result.deduped,
        "business_id": str(result.resolution.business_id),
        "business_fallback_used": result.resolution.used_fallback,
        "event": TimeEntryEventOut.model_validate(result.event).model_dump(mode="json"),
    }
    return JSONResponse(status_code=200 if result.deduped else 201, content=body)
