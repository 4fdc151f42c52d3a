import os
import uuid
from datetime import datetime, timezone

# Must be set before crewclock.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from crewclock.db import Base, get_db
from crewclock.models.models import Business, User, BusinessMembership, Project, TimeEntry
from crewclock.auth.security import create_access_token


SITE_LAT = 39.0
SITE_LNG = -105.0


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()
    try:
        yield session
    finally:
        session.close()


class World:
    """A business with an admin, a manager, two workers and one geofenced site."""

    def __init__(self, db):
        self.db = db
        self.account_id = uuid.uuid4()
        self.business = Business(account_id=self.account_id, name="Acme Roofing")
        self.other_business = Business(account_id=self.account_id, name="Acme Siding")
        db.add_all([self.business, self.other_business])
        db.flush()

        self.admin = User(account_id=self.account_id, first_name="Ada", last_name="Admin", role="admin")
        self.manager = User(account_id=self.account_id, first_name="Max", last_name="Manager", role="manager")
        self.worker = User(account_id=self.account_id, first_name="Wes", last_name="Worker", phone="555-0101", role="worker")
        self.other_worker = User(account_id=self.account_id, first_name="", last_name="", phone="555-0202", role="worker")
        db.add_all([self.admin, self.manager, self.worker, self.other_worker])
        db.flush()

        db.add_all([
            BusinessMembership(business_id=self.business.id, user_id=self.manager.id, role="manager"),
            BusinessMembership(business_id=self.business.id, user_id=self.worker.id, role="worker"),
            BusinessMembership(business_id=self.business.id, user_id=self.other_worker.id, role="worker"),
            BusinessMembership(business_id=self.other_business.id, user_id=self.worker.id, role="worker"),
        ])

        self.project = Project(
            business_id=self.business.id,
            name="Main Street",
            address="1 Main St",
            lat=SITE_LAT,
            lng=SITE_LNG,
            geo_radius_m=300,
            status="active",
        )
        self.other_project = Project(
            business_id=self.other_business.id,
            name="Elm Yard",
            lat=39.5,
            lng=-105.5,
            geo_radius_m=150,
            status="active",
        )
        db.add_all([self.project, self.other_project])
        db.commit()

    def shift(self, employee=None, project=None, business=None, clock_in=None, clock_out=None, **kw) -> TimeEntry:
        project = project or self.project
        entry = TimeEntry(
            business_id=(business or self.business).id if business is not False else None,
            project_id=project.id,
            employee_id=(employee or self.worker).id,
            clock_in=clock_in or utc(2024, 1, 1, 8, 0, 0),
            clock_out=clock_out,
            **kw,
        )
        self.db.add(entry)
        self.db.commit()
        return entry


@pytest.fixture()
def world(db):
    return World(db)


@pytest.fixture()
def app(db):
    from crewclock.main import app as fastapi_app

    def _get_db():
        yield db

    fastapi_app.dependency_overrides[get_db] = _get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    return TestClient(app)


def auth_headers(user, business=None) -> dict:
    headers = {"Authorization": f"Bearer {create_access_token(str(user.id))}"}
    if business is not None:
        headers["X-Active-Business-Id"] = str(business.id)
    return headers
