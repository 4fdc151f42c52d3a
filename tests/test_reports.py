from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import utc, SITE_LAT, SITE_LNG
from crewclock.models.models import GeofenceEvent, TimeEntry, TimeEntryEvent
from crewclock.services.errors import Forbidden, ReportError
from crewclock.services.geofence import Coordinate, offset_point
from crewclock.services.reports import ReportFilters, build_report, display_name, percent
from crewclock.services.time_rules import resolve_range


# Wednesday; America/New_York is the default report time zone
NOW = utc(2024, 1, 3, 17, 0, 0)
CENTER = Coordinate(SITE_LAT, SITE_LNG)
NEAR = offset_point(CENTER, 50, 0.0)
FAR = offset_point(CENTER, 900, 0.0)


def geofence_row(world, event_type, at, employee=None):
    return GeofenceEvent(
        business_id=world.business.id,
        project_id=world.project.id,
        employee_id=(employee or world.worker).id,
        event_type=event_type,
        occurred_at=at,
        lat=SITE_LAT,
        lng=SITE_LNG,
        source="mobile",
    )


def row_for(report, project):
    return next(r for r in report["geofence"] if r["project_id"] == str(project.id))


def test_percent_rounds_half_up():
    assert percent(1, 3) == 33
    assert percent(2, 3) == 67
    assert percent(1, 8) == 13
    assert percent(0, 0) is None


def test_display_name_falls_back_to_phone_then_id(world):
    assert display_name(world.worker, world.worker.id) == "Wes Worker"
    assert display_name(world.other_worker, world.other_worker.id) == "555-0202"
    assert display_name(None, "abc") == "abc"


def test_workers_cannot_view_reports(db, world):
    with pytest.raises(Forbidden) as exc:
        build_report(db, world.worker, world.business.id, now=NOW)
    assert exc.value.code == "REPORTS_FORBIDDEN"


def test_business_is_required(db, world):
    with pytest.raises(ReportError) as exc:
        build_report(db, world.manager, None, now=NOW)
    assert exc.value.code == "ACTIVE_BUSINESS_REQUIRED"


def test_manager_without_membership_is_refused(db, world):
    with pytest.raises(Forbidden) as exc:
        build_report(db, world.manager, world.other_business.id, now=NOW)
    assert exc.value.code == "REPORTS_FORBIDDEN"


def test_empty_business_reports_unknown_compliance(db, world):
    report = build_report(db, world.manager, world.business.id, now=NOW)

    row = row_for(report, world.project)
    assert row["punches_total"] == 0
    assert row["percent_inside"] is None
    assert row["minutes_outside"] is None
    assert report["attendance"] == []
    assert report["overview"]["total_crew_count"] == 3
    assert report["overview"]["active_sites_count"] == 1
    assert report["filters"]["range"] == "last7"


def test_shift_coordinates_are_the_fallback(db, world):
    world.shift(
        clock_in=utc(2024, 1, 2, 13, 0, 0),
        clock_out=utc(2024, 1, 2, 21, 0, 0),
        clock_in_lat=NEAR.lat,
        clock_in_lng=NEAR.lng,
        clock_out_lat=FAR.lat,
        clock_out_lng=FAR.lng,
    )

    report = build_report(db, world.manager, world.business.id, now=NOW)

    [attendance] = report["attendance"]
    assert attendance["clock_in_inside"] is True
    assert attendance["clock_out_inside"] is False
    assert attendance["clock_out_outside_geofence"] is True
    assert attendance["source"] == "time_entries"
    assert attendance["duration_seconds"] == 8 * 3600
    assert report["used_time_entry_events"] is False
    assert report["used_time_entries_fallback"] is True

    row = row_for(report, world.project)
    assert (row["punches_inside"], row["punches_total"], row["percent_inside"], row["exits"]) == (1, 2, 50, 1)


def test_clock_events_take_precedence_over_shift_row(db, world):
    entry = world.shift(
        clock_in=utc(2024, 1, 2, 13, 0, 0),
        clock_in_lat=NEAR.lat,
        clock_in_lng=NEAR.lng,
    )
    db.add(TimeEntryEvent(
        business_id=world.business.id,
        time_entry_id=entry.id,
        employee_id=world.worker.id,
        event_type="clock_in",
        occurred_at=utc(2024, 1, 2, 13, 0, 0),
        inside=False,
        event_metadata={"source": "mobile"},
    ))
    db.commit()

    report = build_report(db, world.manager, world.business.id, now=NOW)

    [attendance] = report["attendance"]
    assert attendance["clock_in_inside"] is False
    assert attendance["clock_out_inside"] is None
    assert attendance["source"] == "time_entry_events"
    assert report["attendance_source"] == "time_entry_events"
    assert report["used_time_entry_events"] is True
    assert report["used_time_entries_fallback"] is False
    # Open shift: duration runs to "now"
    assert attendance["duration_seconds"] == int((NOW - utc(2024, 1, 2, 13, 0, 0)).total_seconds())


def test_minutes_outside_pairs_exits_with_next_enter(db, world):
    db.add_all([
        geofence_row(world, "exit", utc(2024, 1, 2, 15, 0, 0)),
        geofence_row(world, "enter", utc(2024, 1, 2, 15, 15, 0)),
        geofence_row(world, "exit", utc(2024, 1, 2, 16, 0, 0)),
        geofence_row(world, "exit", utc(2024, 1, 2, 15, 30, 0), employee=world.other_worker),
        geofence_row(world, "enter", utc(2024, 1, 2, 15, 40, 0), employee=world.other_worker),
    ])
    db.commit()

    report = build_report(db, world.manager, world.business.id, now=NOW)
    assert row_for(report, world.project)["minutes_outside"] == 25


def test_totals_and_top_workers(db, world):
    world.shift(clock_in=utc(2024, 1, 2, 13, 0, 0), clock_out=utc(2024, 1, 2, 17, 0, 0))
    world.shift(
        employee=world.other_worker,
        clock_in=utc(2024, 1, 2, 14, 0, 0),
        clock_out=utc(2024, 1, 2, 15, 0, 0),
        duration_seconds=3599.6,
    )
    # Outside the selected range and this week
    world.shift(clock_in=utc(2023, 12, 1, 13, 0, 0), clock_out=utc(2023, 12, 1, 14, 0, 0))

    report = build_report(db, world.manager, world.business.id, now=NOW)

    overview = report["overview"]
    assert overview["total_hours_selected_range_seconds"] == 4 * 3600 + 3600
    assert overview["total_hours_this_week_seconds"] == 4 * 3600 + 3600
    assert [w["name"] for w in overview["top_workers"]] == ["Wes Worker", "555-0202"]
    assert overview["top_projects"][0]["name"] == "Main Street"

    [project] = report["projects"]
    assert [b["seconds"] for b in project["worker_breakdown"]] == [4 * 3600, 3600]
    assert report["crew"][0]["projects_worked"] == 1


def test_worker_filter_narrows_attendance(db, world):
    world.shift(clock_in=utc(2024, 1, 2, 13, 0, 0), clock_out=utc(2024, 1, 2, 17, 0, 0))
    world.shift(employee=world.other_worker, clock_in=utc(2024, 1, 2, 14, 0, 0), clock_out=utc(2024, 1, 2, 15, 0, 0))

    report = build_report(
        db, world.admin, world.business.id, ReportFilters(worker_id=world.other_worker.id), now=NOW
    )
    assert [a["worker_id"] for a in report["attendance"]] == [str(world.other_worker.id)]
    assert report["filters"]["worker_id"] == str(world.other_worker.id)


def test_range_presets():
    last7 = resolve_range("last7", now=NOW)
    assert (last7.start_input, last7.end_input) == ("2023-12-28", "2024-01-03")
    # Midnight in New York (EST, UTC-5)
    assert last7.start == utc(2023, 12, 28, 5, 0, 0)

    week = resolve_range("thisWeek", now=NOW)
    assert week.start_input == "2023-12-31"

    last30 = resolve_range("last30", now=NOW)
    assert last30.start_input == "2023-12-05"

    custom = resolve_range("custom", "2024-01-01", "2024-01-02", now=NOW)
    assert custom.preset == "custom"
    assert custom.end - custom.start == timedelta(days=2) - timedelta(microseconds=1)


@pytest.mark.parametrize("preset,start,end", [
    ("custom", "2024-01-05", "2024-01-01"),
    ("custom", "not-a-date", "2024-01-01"),
    ("fortnight", None, None),
])
def test_bad_ranges_fall_back_to_last7(preset, start, end):
    assert resolve_range(preset, start, end, now=NOW).preset == "last7"


def fail_reads_of(db, monkeypatch, model):
    """Make every session query touching `model` fail like a missing table."""
    real_query = db.query

    def query(*entities, **kwargs):
        if model in entities:
            raise OperationalError("SELECT", {}, Exception(f"no such table: {model.__tablename__}"))
        return real_query(*entities, **kwargs)

    monkeypatch.setattr(db, "query", query)


def test_unreadable_clock_events_fall_back_to_shift_rows(db, world, monkeypatch):
    world.shift(
        clock_in=utc(2024, 1, 2, 13, 0, 0),
        clock_out=utc(2024, 1, 2, 21, 0, 0),
        clock_in_lat=NEAR.lat,
        clock_in_lng=NEAR.lng,
    )
    fail_reads_of(db, monkeypatch, TimeEntryEvent)

    report = build_report(db, world.manager, world.business.id, now=NOW)

    [attendance] = report["attendance"]
    assert attendance["source"] == "time_entries"
    assert attendance["clock_in_inside"] is True
    assert report["used_time_entry_events"] is False
    assert report["used_time_entries_fallback"] is True


def test_failed_shift_read_fails_the_whole_report(db, world, monkeypatch):
    world.shift(clock_in=utc(2024, 1, 2, 13, 0, 0))
    fail_reads_of(db, monkeypatch, TimeEntry)

    with pytest.raises(ReportError) as exc:
        build_report(db, world.manager, world.business.id, now=NOW)
    assert exc.value.code == "REPORT_FAILED"
    assert exc.value.message == "Unable to load time entries for reports."
    assert exc.value.to_dict() == {"ok": False, "code": "REPORT_FAILED", "error": "Unable to load time entries for reports."}
