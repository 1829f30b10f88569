import json
import logging

import httpx
import pytest_asyncio

from reservation_service.main import create_app

from conftest import next_weekday, schedule_on

HOST = {"X-User-Sub": "host-1", "X-User-Roles": '["host"]'}
CLIENT = {"X-User-Sub": "client-1", "X-User-Roles": '["user"]'}
ADMIN = {"X-User-Sub": "admin-1", "X-User-Roles": '["admin"]'}


@pytest_asyncio.fixture
async def http(services):
    app = create_app(services=services, run_background=False)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http


async def _published_space(http) -> str:
    resp = await http.post("/spaces", json={"name": "Hall", "rate_per_hour": "30.00", "status": "published"}, headers=HOST)
    assert resp.status_code == 201
    space_id = resp.json()["id"]
    resp = await http.post(
        f"/spaces/{space_id}/availability",
        json={"day": "Mon", "start_time": "09:00", "end_time": "17:00", "similar_days": ["Tue"]},
        headers=HOST,
    )
    assert resp.status_code == 201
    assert {row["day"] for row in resp.json()} == {"Mon", "Tue"}
    return space_id


async def test_health(http):
    resp = await http.get("/health")
    assert resp.json()["status"] == "ok"
    assert "X-Request-Id" in resp.headers


async def test_requests_are_logged_once(http, caplog):
    caplog.set_level(logging.INFO, logger="reservation_service.access")
    resp = await http.get("/bookings", headers={**CLIENT, "X-Request-Id": "req-1"})

    lines = [json.loads(r.getMessage()) for r in caplog.records if r.name == "reservation_service.access"]
    assert resp.headers["X-Request-Id"] == "req-1"
    assert lines == [{
        "request_id": "req-1",
        "method": "GET",
        "path": "/bookings",
        "status": 200,
        "duration_ms": lines[0]["duration_ms"],
        "user_sub": "client-1",
    }]


async def test_booking_flow_over_http(http):
    space_id = await _published_space(http)
    monday = next_weekday("Mon")
    sched = schedule_on(monday, "10:00", "12:00")

    quote = await http.post(f"/spaces/{space_id}/slots/check", json=sched)
    assert quote.json() == {"available": True, "reason": None, "gross_amount": "60.00"}

    resp = await http.post("/bookings", json={"space_id": space_id, "type": "normal", **sched}, headers=CLIENT)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "payment-pending"
    assert body["payment"]["stripe_client_secret"]

    quote = await http.post(f"/spaces/{space_id}/slots/check", json=sched)
    assert quote.json()["reason"] == "SlotTaken"

    resp = await http.post(
        "/payments/results", json={"succeeded": True, "booking_id": body["id"]}, headers=CLIENT
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["kind"] == "Forbidden"

    resp = await http.post("/payments/results", json={"succeeded": True, "booking_id": body["id"]}, headers=ADMIN)
    assert resp.json()["status"] == "succeeded"

    resp = await http.get(f"/bookings/{body['id']}", headers=CLIENT)
    assert resp.json()["status"] == "accepted"


async def test_errors_carry_kind_and_retryability(http):
    space_id = await _published_space(http)
    monday = next_weekday("Mon")

    resp = await http.post(
        "/bookings", json={"space_id": space_id, "type": "normal", **schedule_on(monday, "10:00", "11:00")}, headers=HOST
    )
    assert resp.status_code == 403
    assert resp.json() == {"error": {"kind": "Forbidden", "reason": "hosts cannot book their own space", "retryable": False}}

    resp = await http.post("/bookings", json={"space_id": space_id, "type": "normal"}, headers=CLIENT)
    assert resp.status_code == 400
    assert resp.json()["error"]["kind"] == "ValidationError"

    resp = await http.post(
        "/bookings", json={"space_id": space_id, "type": "normal", **schedule_on(monday, "07:00", "08:00")}, headers=CLIENT
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "OutsideAvailability"

    resp = await http.get("/bookings/missing", headers=CLIENT)
    assert resp.status_code == 404

    resp = await http.get("/no-such-path")
    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "NotFound"


async def test_identity_is_required(http):
    resp = await http.get("/bookings")
    assert resp.status_code == 401
    assert resp.json()["error"]["kind"] == "Unauthenticated"


async def test_time_change_over_http(http):
    space_id = await _published_space(http)
    monday = next_weekday("Mon")
    resp = await http.post(
        "/bookings", json={"space_id": space_id, "type": "custom", **schedule_on(monday, "10:00", "11:00")}, headers=CLIENT
    )
    booking_id = resp.json()["id"]
    await http.post(f"/bookings/{booking_id}/respond", json={"accept": True}, headers=HOST)

    resp = await http.post(f"/bookings/{booking_id}/time-changes", json=schedule_on(monday, "11:00", "12:00"), headers=HOST)
    assert resp.status_code == 201
    change_id = resp.json()["id"]

    resp = await http.post(f"/time-changes/{change_id}/respond", json={"accept": True}, headers=HOST)
    assert resp.status_code == 403

    resp = await http.post(f"/time-changes/{change_id}/respond", json={"accept": True}, headers=CLIENT)
    assert resp.json()["status"] == "accepted"

    resp = await http.get(f"/bookings/{booking_id}", headers=CLIENT)
    assert resp.json()["start_time"] == "11:00"


async def test_space_with_bookings_cannot_be_deleted(http):
    space_id = await _published_space(http)
    monday = next_weekday("Mon")
    await http.post(
        "/bookings", json={"space_id": space_id, "type": "custom", **schedule_on(monday, "10:00", "11:00")}, headers=CLIENT
    )
    resp = await http.delete(f"/spaces/{space_id}", headers=HOST)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "SpaceInUse"


async def test_amending_a_time_change_over_http(http):
    space_id = await _published_space(http)
    monday = next_weekday("Mon")
    resp = await http.post(
        "/bookings", json={"space_id": space_id, "type": "custom", **schedule_on(monday, "10:00", "11:00")}, headers=CLIENT
    )
    booking_id = resp.json()["id"]
    await http.post(f"/bookings/{booking_id}/respond", json={"accept": True}, headers=HOST)

    resp = await http.post(f"/bookings/{booking_id}/time-changes", json=schedule_on(monday, "11:00", "12:00"), headers=CLIENT)
    change_id = resp.json()["id"]

    resp = await http.patch(f"/time-changes/{change_id}", json=schedule_on(monday, "13:00", "14:00"), headers=HOST)
    assert resp.status_code == 403

    resp = await http.patch(f"/time-changes/{change_id}", json=schedule_on(monday, "13:00", "14:00"), headers=CLIENT)
    assert resp.status_code == 200
    assert resp.json()["new_start_time"] == "13:00"
    assert resp.json()["old_start_time"] == "10:00"
