import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Identity / organisation records. Owned by the identity provider and the
# business admin screens; the attendance pipeline only reads them.

class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[uuid.UUID] = uuid_pk()
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class User(Base):
    """Worker/manager profile as provisioned by the identity provider."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    account_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    phone: Mapped[str] = mapped_column(String(50), default="")
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="worker")  # admin|manager|worker
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class BusinessMembership(Base):
    __tablename__ = "business_memberships"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="worker")  # manager|worker
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        UniqueConstraint("business_id", "user_id", name="uq_business_membership"),
        Index("idx_business_memberships_business_active", "business_id", "is_active"),
    )


class Project(Base):
    """Job site. lat/lng/geo_radius_m define the geofence; admins may edit them at any time."""
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500))
    lat: Mapped[Optional[float]] = mapped_column(Float)
    lng: Mapped[Optional[float]] = mapped_column(Float)
    geo_radius_m: Mapped[Optional[int]] = mapped_column(Integer, default=300)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active|archived|completed
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class TimeEntry(Base):
    """One worker's clock-in to clock-out session at a project (a shift)."""
    __tablename__ = "time_entries"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    employee_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    clock_in: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    clock_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    clock_in_lat: Mapped[Optional[float]] = mapped_column(Float)
    clock_in_lng: Mapped[Optional[float]] = mapped_column(Float)
    clock_out_lat: Mapped[Optional[float]] = mapped_column(Float)
    clock_out_lng: Mapped[Optional[float]] = mapped_column(Float)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)  # Precomputed once clocked out
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_time_entries_business_clock_in", "business_id", "clock_in"),
        Index("idx_time_entries_employee_clock_in", "employee_id", "clock_in"),
    )


# Attendance event streams. Append-only: rows are never updated by the pipeline.

class GeofenceEvent(Base):
    __tablename__ = "geofence_events"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    employee_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    time_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("time_entries.id", ondelete="SET NULL"), index=True)
    event_type: Mapped[str] = mapped_column(String(10), nullable=False)  # enter|exit
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    # Computed once from the site geometry at insert time; null when the project could not be resolved
    distance_m: Mapped[Optional[int]] = mapped_column(Integer)
    inside: Mapped[Optional[bool]] = mapped_column(Boolean)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="mobile")  # mobile|web|system
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_geofence_events_business_occurred_at", "business_id", "occurred_at"),
        Index("idx_geofence_events_employee_occurred_at", "employee_id", "occurred_at"),
        Index("idx_geofence_events_project_occurred_at", "project_id", "occurred_at"),
    )


class TimeEntryEvent(Base):
    """Audit-style clock event stream keyed to a time entry."""
    __tablename__ = "time_entry_events"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    time_entry_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("time_entries.id", ondelete="CASCADE"), nullable=False)
    employee_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)  # clock_in|clock_out|manager_clock_out|edit
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    lat: Mapped[Optional[float]] = mapped_column(Float)
    lng: Mapped[Optional[float]] = mapped_column(Float)
    distance_m: Mapped[Optional[int]] = mapped_column(Integer)
    inside: Mapped[Optional[bool]] = mapped_column(Boolean)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_time_entry_events_business_occurred_at", "business_id", "occurred_at"),
        Index("idx_time_entry_events_time_entry_occurred_at", "time_entry_id", "occurred_at"),
    )


class EventDedupLock(Base):
    """One row per dedup key; held FOR UPDATE while checking the window and inserting."""
    __tablename__ = "event_dedup_locks"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    employee_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    stream: Mapped[str] = mapped_column(String(20), nullable=False)  # geofence|time_entry
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)

    __table_args__ = (
        UniqueConstraint("business_id", "project_id", "employee_id", "stream", "event_type", name="uq_event_dedup_key"),
    )
