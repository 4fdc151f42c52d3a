import random
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import utc
from crewclock.models.models import GeofenceEvent, Project
from crewclock.services.backfill import (
    BackfillAborted,
    BackfillConfig,
    clamp_max_events,
    generate_events_for_entry,
    plan_event_times,
    run_backfill,
)
from scripts.backfill_geofence_events import parse_config


NOW = utc(2024, 1, 10, 12, 0, 0)
CLOCK_IN = utc(2024, 1, 1, 8, 0, 0)
CLOCK_OUT = utc(2024, 1, 1, 16, 0, 0)


def test_clamp_max_events():
    assert clamp_max_events(None) == 3
    assert clamp_max_events(7) == 3
    assert clamp_max_events(-2) == 0
    assert clamp_max_events(2) == 2


def test_zero_cap_plans_nothing():
    assert plan_event_times(CLOCK_IN, CLOCK_OUT, 0, random.Random(1)) == []


@pytest.mark.parametrize("seed", range(25))
def test_eight_hour_shift_timeline(seed):
    planned = plan_event_times(CLOCK_IN, CLOCK_OUT, 3, random.Random(seed))

    assert [t for t, _ in planned] == ["enter", "exit", "enter"]
    (_, enter_at), (_, exit_at), (_, reenter_at) = planned
    assert CLOCK_IN <= enter_at <= CLOCK_IN + timedelta(minutes=10)
    assert utc(2024, 1, 1, 9, 36) <= exit_at <= utc(2024, 1, 1, 13, 36)
    assert exit_at < reenter_at <= CLOCK_OUT


@pytest.mark.parametrize("cap", [1, 2])
def test_cap_truncates_timeline(cap):
    planned = plan_event_times(CLOCK_IN, CLOCK_OUT, cap, random.Random(3))
    assert [t for t, _ in planned] == ["enter", "exit"][:cap]


def test_open_or_short_shift_only_enters():
    assert [t for t, _ in plan_event_times(CLOCK_IN, None, 3, random.Random(4))] == ["enter"]
    short = plan_event_times(CLOCK_IN, CLOCK_IN + timedelta(minutes=20), 3, random.Random(4))
    assert [t for t, _ in short] == ["enter"]


def test_generated_positions(world):
    entry = world.shift(clock_in=CLOCK_IN, clock_out=CLOCK_OUT)
    rows = generate_events_for_entry(entry, world.project, 3, random.Random(11))

    assert [r["event_type"] for r in rows] == ["enter", "exit", "enter"]
    assert all(r["source"] == "system" for r in rows)
    assert all(r["time_entry_id"] == entry.id for r in rows)
    enters = [r for r in rows if r["event_type"] == "enter"]
    assert all(3 <= r["distance_m"] <= 25 and r["inside"] is True for r in enters)
    # Exit distance is clamped to 18..50 m around the center
    [exit_row] = [r for r in rows if r["event_type"] == "exit"]
    assert 49 <= exit_row["distance_m"] <= 51


def test_missing_site_coordinates_yield_no_rows(world):
    entry = world.shift(clock_in=CLOCK_IN, clock_out=CLOCK_OUT)
    site = Project(business_id=world.business.id, name="No pin", lat=None, lng=None)
    assert generate_events_for_entry(entry, site, 3, random.Random(1)) == []


def test_dry_run_reports_without_writing(db, world):
    world.shift(clock_in=CLOCK_IN, clock_out=CLOCK_OUT)
    world.shift(clock_in=NOW - timedelta(days=90), clock_out=NOW - timedelta(days=90, hours=-4))

    report = run_backfill(db, BackfillConfig(business_id=world.business.id), now=NOW, rng=random.Random(5))

    assert report.dry_run is True
    assert report.entries_scanned == 1
    assert report.events_generated == 3
    assert report.events_inserted == 0
    assert db.query(GeofenceEvent).count() == 0


def test_write_then_skip_then_overwrite(db, world):
    world.shift(clock_in=CLOCK_IN, clock_out=CLOCK_OUT)
    config = BackfillConfig(business_id=world.business.id, dry_run=False)

    first = run_backfill(db, config, now=NOW, rng=random.Random(5))
    assert first.events_inserted == 3
    assert db.query(GeofenceEvent).filter(GeofenceEvent.source == "system").count() == 3

    second = run_backfill(db, config, now=NOW, rng=random.Random(5))
    assert second.skipped_already_had_events == 1
    assert second.events_generated == 0

    third = run_backfill(
        db, BackfillConfig(business_id=world.business.id, dry_run=False, overwrite=True), now=NOW, rng=random.Random(5)
    )
    assert third.events_inserted == 3
    assert db.query(GeofenceEvent).count() == 6


def test_projects_without_coordinates_are_skipped(db, world):
    unpinned = Project(business_id=world.business.id, name="Unpinned", lat=None, lng=None, status="active")
    db.add(unpinned)
    db.commit()
    world.shift(project=unpinned, clock_in=CLOCK_IN, clock_out=CLOCK_OUT)

    report = run_backfill(db, BackfillConfig(business_id=world.business.id), now=NOW)
    assert report.skipped_missing_project_data == 1
    assert report.events_generated == 0


def test_failed_batch_aborts_with_partial_counts(db, world, monkeypatch):
    world.shift(clock_in=CLOCK_IN, clock_out=CLOCK_OUT)
    real_commit = db.commit
    calls = []

    def flaky_commit():
        calls.append(1)
        if len(calls) > 1:
            raise OperationalError("INSERT", {}, Exception("disk full"))
        real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)

    with pytest.raises(BackfillAborted) as exc:
        run_backfill(
            db, BackfillConfig(business_id=world.business.id, dry_run=False), now=NOW, rng=random.Random(5), batch_size=2
        )
    assert exc.value.code == "BACKFILL_ABORTED"
    assert exc.value.report.events_inserted == 2
    assert exc.value.report.events_generated == 3


def test_script_arguments():
    business_id = str(uuid.uuid4())

    defaults = parse_config(["--business-id", business_id])
    assert (defaults.days, defaults.max_events_per_entry, defaults.dry_run, defaults.overwrite) == (60, 3, True, False)

    config = parse_config([
        "--business-id", business_id,
        "--days", "0",
        "--max-events-per-entry", "9",
        "--dry-run", "false",
        "--overwrite",
    ])
    assert config.business_id == uuid.UUID(business_id)
    assert config.days == 60
    assert config.max_events_per_entry == 3
    assert config.dry_run is False
    assert config.overwrite is True

    with pytest.raises(SystemExit):
        parse_config(["--business-id", "nope"])
