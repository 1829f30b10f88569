import json
from datetime import date, datetime, timedelta
from decimal import Decimal

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy import event

from shared.database import Base, get_engine, get_session

from reservation_service import models  # noqa: F401
from reservation_service.container import build_services
from reservation_service.db import new_id
from reservation_service.errors import DependencyFailure
from reservation_service.models import Availability, Booking, Space
from reservation_service.processor import PaymentProcessor
from reservation_service.scheduling import DAYS, Schedule
from reservation_service.schemas import CreateBookingRequest, TimeChangeRequest
from reservation_service.security import Actor


class FakeProcessor(PaymentProcessor):
    """In-memory processor; set fail_on to make an operation raise DependencyFailure."""

    def __init__(self):
        self.calls = []
        self.fail_on = set()
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _record(self, op: str, **kwargs):
        self.calls.append((op, kwargs))
        if op in self.fail_on:
            raise DependencyFailure(f"{op} failed")

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]

    async def authorize(self, amount, currency, metadata, idempotency_key):
        self._record("authorize", amount=amount, key=idempotency_key)
        intent_id = self._next("pi")
        return {"intent_id": intent_id, "client_secret": f"{intent_id}_secret"}

    async def cancel(self, intent_id, idempotency_key):
        self._record("cancel", intent_id=intent_id, key=idempotency_key)

    async def refund(self, intent_id, amount, idempotency_key):
        self._record("refund", intent_id=intent_id, amount=amount, key=idempotency_key)
        return {"refund_id": self._next("re")}

    async def transfer(self, account_id, amount, currency, idempotency_key):
        self._record("transfer", account_id=account_id, amount=amount, key=idempotency_key)
        return {"transfer_id": self._next("tr")}


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.messages = []

    async def publish(self, routing_key: str, message_body: str):
        self.messages.append((routing_key, json.loads(message_body)))

    def event_types(self) -> list[str]:
        return [rk for rk, _ in self.messages]


def next_weekday(name: str, weeks_ahead: int = 1) -> date:
    today = date.today()
    delta = (DAYS.index(name) - today.weekday()) % 7
    return today + timedelta(days=delta + 7 * weeks_ahead)


def schedule_on(on_date: date, start: str, end: str, end_date: date | None = None) -> dict:
    return {
        "day": DAYS[on_date.weekday()],
        "start_date": on_date.isoformat(),
        "start_time": start,
        "end_date": (end_date or on_date).isoformat(),
        "end_time": end,
    }


def schedule_between(start: datetime, end: datetime) -> dict:
    return {
        "day": DAYS[start.weekday()],
        "start_date": start.date().isoformat(),
        "start_time": start.strftime("%H:%M"),
        "end_date": end.date().isoformat(),
        "end_time": end.strftime("%H:%M"),
    }


def booking_request(space_id: str, sched: dict, booking_type: str = "normal", **extra) -> CreateBookingRequest:
    return CreateBookingRequest(space_id=space_id, type=booking_type, **sched, **extra)


def change_request(sched: dict) -> TimeChangeRequest:
    return TimeChangeRequest(**sched)


@pytest.fixture
def host():
    return Actor("host-1", frozenset({"host"}))


@pytest.fixture
def client():
    return Actor("client-1", frozenset({"user"}))


@pytest.fixture
def other_client():
    return Actor("client-2", frozenset({"user"}))


@pytest.fixture
def admin():
    return Actor("admin-1", frozenset({"admin"}))


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}")

    # FOR UPDATE is a no-op on sqlite; BEGIN IMMEDIATE serializes writers instead
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def services(session_factory, processor, publisher):
    return build_services(session_factory, processor, publisher)


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def space(session_factory, host):
    """Published space, open Mondays 09:00-17:00, 20.00 per hour."""
    async with session_factory() as db, db.begin():
        space = Space(
            id=new_id(),
            host_id=host.user_id,
            name="Studio A",
            rate_per_hour=Decimal("20.00"),
            time_zone="UTC",
            status="published",
        )
        db.add(space)
        db.add(Availability(id=new_id(), space_id=space.id, day="Mon", start_time="09:00", end_time="17:00"))
    return space


@pytest.fixture
def monday():
    return next_weekday("Mon")


async def insert_booking(session_factory, space: Space, sched: dict, status: str, client_id: str = "client-1", **extra) -> Booking:
    """Writes a booking row directly, bypassing the time and availability rules."""
    schedule = Schedule(**sched)
    gross = Decimal(space.rate_per_hour) * Decimal(int(schedule.duration.total_seconds() // 60)) / 60
    async with session_factory() as db, db.begin():
        booking = Booking(
            id=new_id(),
            client_id=client_id,
            host_id=space.host_id,
            space_id=space.id,
            type=extra.pop("type", "normal"),
            status=status,
            gross_amount=gross.quantize(Decimal("0.01")),
            **sched,
            **extra,
        )
        db.add(booking)
    return booking
