from conftest import auth_headers, SITE_LAT, SITE_LNG
from crewclock.services.geofence import Coordinate, offset_point


CENTER = Coordinate(SITE_LAT, SITE_LNG)


def event_body(world, event_type="enter", meters=120, occurred_at="2024-01-01T09:00:00Z"):
    point = offset_point(CENTER, meters, 0.0)
    return {
        "project_id": str(world.project.id),
        "event_type": event_type,
        "occurred_at": occurred_at,
        "lat": point.lat,
        "lng": point.lng,
    }


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_geofence_event_created_then_deduplicated(client, world):
    headers = auth_headers(world.worker, world.business)

    first = client.post("/geofence/event", json=event_body(world), headers=headers)
    assert first.status_code == 201
    body = first.json()
    assert body["ok"] is True
    assert body["deduped"] is False
    assert body["event"]["inside"] is True
    assert body["event"]["distance_m"] == 120
    assert body["event"]["occurred_at"].startswith("2024-01-01T09:00:00")
    assert first.headers["cache-control"] == "no-store"

    again = client.post(
        "/geofence/event", json=event_body(world, occurred_at="2024-01-01T09:00:12Z"), headers=headers
    )
    assert again.status_code == 200
    assert again.json()["deduped"] is True
    assert again.json()["event"]["id"] == body["event"]["id"]


def test_geofence_event_rejects_bad_coordinates(client, world):
    body = event_body(world)
    body["lat"] = "north-ish"
    r = client.post("/geofence/event", json=body, headers=auth_headers(world.worker, world.business))
    assert r.status_code == 400
    assert r.json()["ok"] is False
    assert r.json()["code"] == "INVALID_COORDINATES"


def test_geofence_event_requires_token(client, world):
    r = client.post("/geofence/event", json=event_body(world))
    assert r.status_code == 401


def test_membership_error_is_rendered(client, world):
    body = event_body(world)
    body["project_id"] = str(world.other_project.id)
    r = client.post("/geofence/event", json=body, headers=auth_headers(world.manager))
    assert r.status_code == 403
    assert r.json()["code"] == "MEMBERSHIP_REQUIRED"


def test_time_entry_event_reports_business_fallback(client, world):
    entry = world.shift()
    point = offset_point(CENTER, 40, 1.0)
    r = client.post(
        "/time-entries/event",
        json={
            "time_entry_id": str(entry.id),
            "event_type": "clock_in",
            "occurred_at": "2024-01-01T08:00:00Z",
            "lat": point.lat,
            "lng": point.lng,
            "source": "mobile",
        },
        headers=auth_headers(world.worker, world.other_business),
    )
    assert r.status_code == 201
    data = r.json()
    assert data["business_id"] == str(world.business.id)
    assert data["business_fallback_used"] is True
    assert data["event"]["inside"] is True
    assert data["event"]["metadata"] == {"source": "mobile"}


def test_time_entry_event_unknown_shift(client, world):
    r = client.post(
        "/time-entries/event",
        json={"time_entry_id": "6a1f4a3e-7f6b-4b8e-9d9c-1f0e2d3c4b5a", "event_type": "clock_in"},
        headers=auth_headers(world.worker, world.business),
    )
    assert r.status_code == 404
    assert r.json()["code"] == "TIME_ENTRY_NOT_FOUND"
    assert r.json()["details"]["attempts"] == 3


def test_nearby_sites(client, world):
    point = offset_point(CENTER, 60, 2.0)
    r = client.post("/geofence/nearby", json={"lat": point.lat, "lng": point.lng}, headers=auth_headers(world.worker))
    assert r.status_code == 200
    data = r.json()
    assert data["match"]["name"] == "Main Street"
    assert data["match"]["distance_m"] == 60
    assert data["ambiguous"] is False


def test_reports_forbidden_for_workers(client, world):
    r = client.get("/reports", headers=auth_headers(world.worker, world.business))
    assert r.status_code == 403
    assert r.json()["code"] == "REPORTS_FORBIDDEN"


def test_reports_for_manager(client, world):
    r = client.get("/reports?range=thisWeek", headers=auth_headers(world.manager, world.business))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["business"]["name"] == "Acme Roofing"
    assert data["filters"]["range"] == "thisWeek"
    assert r.headers["cache-control"] == "no-store"


def test_reports_reject_malformed_worker_filter(client, world):
    r = client.get("/reports?worker_id=abc", headers=auth_headers(world.manager, world.business))
    assert r.status_code == 400
    assert r.json()["details"]["field"] == "worker_id"


def test_activity_feed(client, world):
    world.shift()
    r = client.get(
        "/reports/activity?range=custom&start=2024-01-01&end=2024-01-01",
        headers=auth_headers(world.manager, world.business),
    )
    assert r.status_code == 200
    body = r.json()
    assert body["range"] == "custom"
    assert body["used_time_entries_fallback"] is True
    assert [row["type"] for row in body["rows"]] == ["clock_in"]
