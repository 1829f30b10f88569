import logging
from datetime import timedelta

from sqlalchemy import select, update

from .config import (
    CANCELLATION_CUTOFF_HOURS,
    MAX_CUSTOM_BOOKING_DAYS,
    MAX_NORMAL_BOOKING_HOURS,
    MIN_BOOKING_MINUTES,
    PAYMENT_PENDING_TTL_MINUTES,
)
from .db import new_id, transaction, utcnow
from .errors import Conflict, DomainError, Forbidden, InvalidTransition, NotFound, ValidationError
from .ledger import accrue, authorize_booking_payment, get_payment, money, price_for, release_payment
from .models import (
    ACCEPTED,
    CANCELLED,
    COMPLETED,
    PAYMENT_PENDING,
    REJECTED,
    REQUEST_PENDING,
    TERMINAL_STATUSES,
    Booking,
    BookingLog,
    Payment,
    Space,
    TimeChange,
)
from .scheduling import Schedule, local_now, validate_schedule
from .security import Actor
from .slots import check_slot, lock_space_days

logger = logging.getLogger(__name__)

BOOKING_TYPES = ("normal", "custom")

CHECK_FIELDS = {
    ("client", "checkin"): "client_checkin",
    ("host", "checkin"): "host_checkin",
    ("client", "checkout"): "client_checkout",
    ("host", "checkout"): "host_checkout",
}


def validate_request(booking_type: str, schedule_data) -> Schedule:
    """Everything that can be checked without the database."""
    if booking_type not in BOOKING_TYPES:
        raise ValidationError(f"type must be one of {', '.join(BOOKING_TYPES)}")

    schedule = validate_schedule(schedule_data)

    duration = schedule.duration
    if duration < timedelta(minutes=MIN_BOOKING_MINUTES):
        raise ValidationError(f"a booking lasts at least {MIN_BOOKING_MINUTES} minutes")
    if booking_type == "normal" and duration > timedelta(hours=MAX_NORMAL_BOOKING_HOURS):
        raise ValidationError(f"normal bookings last at most {MAX_NORMAL_BOOKING_HOURS} hours, use a custom booking")
    if booking_type == "custom" and duration > timedelta(days=MAX_CUSTOM_BOOKING_DAYS):
        raise ValidationError(f"custom bookings last at most {MAX_CUSTOM_BOOKING_DAYS} days")
    return schedule


def role_of(actor: Actor, booking: Booking) -> str | None:
    if actor.user_id == booking.client_id:
        return "client"
    if actor.user_id == booking.host_id:
        return "host"
    if actor.is_admin:
        return "admin"
    return None


def ensure_open(booking: Booking):
    if booking.status in TERMINAL_STATUSES:
        raise InvalidTransition(f"booking is {booking.status}, no further transitions are allowed")


async def close_pending_changes(db, booking_id: str):
    await db.execute(
        update(TimeChange)
        .where(TimeChange.booking_id == booking_id, TimeChange.status == "pending")
        .values(status="rejected", responded_at=utcnow())
    )


async def get_space_for_booking(db, space_id: str) -> Space:
    space = await db.get(Space, space_id)
    if space is None:
        raise NotFound(f"space {space_id} not found")
    return space


def check_space_rules(space: Space, schedule: Schedule):
    """Rules that depend on the space: no past slots, the host's minimum length."""
    if schedule.start <= local_now(space.time_zone):
        raise ValidationError("cannot book a slot in the past")
    if space.min_hours and schedule.duration < timedelta(hours=space.min_hours):
        raise ValidationError(f"this space is booked for at least {space.min_hours} hours")


class BookingService:
    def __init__(self, session_factory, processor, notifier):
        self.session_factory = session_factory
        self.processor = processor
        self.notifier = notifier

    async def _load(self, db, booking_id: str, for_update: bool = False) -> Booking:
        booking = await db.get(Booking, booking_id, with_for_update=for_update)
        if booking is None:
            raise NotFound(f"booking {booking_id} not found")
        return booking

    # ---------------- creation ----------------

    async def create_booking(self, actor: Actor, data) -> tuple[Booking, Payment | None]:
        schedule = validate_request(data.type, data.model_dump())

        async with transaction(self.session_factory) as db:
            space = await get_space_for_booking(db, data.space_id)
            if space.status != "published":
                raise Conflict("space is not open for booking", "SpaceUnavailable")
            if space.host_id == actor.user_id:
                raise Forbidden("hosts cannot book their own space")

            check_space_rules(space, schedule)

            await lock_space_days(db, space.id, schedule.dates())
            await check_slot(db, space, schedule)

            gross = price_for(space, schedule)
            if data.gross_amount is not None and money(data.gross_amount) != gross:
                raise ValidationError(f"quoted amount {data.gross_amount} does not match price {gross}")

            booking = Booking(
                id=new_id(),
                client_id=actor.user_id,
                host_id=space.host_id,
                space_id=space.id,
                vehicle_id=data.vehicle_id,
                type=data.type,
                status=PAYMENT_PENDING if data.type == "normal" else REQUEST_PENDING,
                gross_amount=gross,
                **schedule.as_dict(),
            )
            db.add(booking)
            await db.flush()

            payment = None
            if booking.type == "normal":
                payment = await authorize_booking_payment(db, self.processor, booking)

        logger.info("booking %s created on space %s (%s)", booking.id, booking.space_id, booking.status)
        await self.notifier.emit("booking.created", booking.id, actor.user_id, {
            "space_id": booking.space_id,
            "host_id": booking.host_id,
            "status": booking.status,
            "type": booking.type,
            **schedule.as_dict(),
            "gross_amount": booking.gross_amount,
        })
        return booking, payment

    # ---------------- host response ----------------

    async def respond_to_booking(self, booking_id: str, actor: Actor, accept: bool) -> Booking:
        async with transaction(self.session_factory) as db:
            booking = await self._load(db, booking_id, for_update=True)
            role = role_of(actor, booking)
            if role not in ("host", "admin"):
                raise Forbidden("only the host can accept or reject a request")
            ensure_open(booking)
            if booking.status != REQUEST_PENDING:
                raise InvalidTransition(f"booking is {booking.status}, not awaiting a host response")

            if accept:
                booking.status = ACCEPTED
                await db.flush()
                await authorize_booking_payment(db, self.processor, booking)
            else:
                booking.status = REJECTED
                await close_pending_changes(db, booking.id)

        event = "booking.accepted" if accept else "booking.rejected"
        await self.notifier.emit(event, booking.id, actor.user_id, {"status": booking.status})
        return booking

    # ---------------- cancellation ----------------

    async def _cancel(self, db, booking: Booking, role: str) -> Payment | None:
        payment = await release_payment(db, self.processor, booking, role)
        booking.status = CANCELLED
        booking.canceled_by = role
        await close_pending_changes(db, booking.id)
        return payment

    async def cancel_booking(self, booking_id: str, actor: Actor) -> Booking:
        async with transaction(self.session_factory) as db:
            booking = await self._load(db, booking_id, for_update=True)
            role = role_of(actor, booking)
            if role is None:
                raise Forbidden("not a party to this booking")
            ensure_open(booking)

            if role == "host" and booking.status != ACCEPTED:
                raise InvalidTransition("hosts reject pending requests instead of cancelling them")

            if role in ("client", "host") and booking.status == ACCEPTED:
                space = await get_space_for_booking(db, booking.space_id)
                cutoff = Schedule.of(booking).start - timedelta(hours=CANCELLATION_CUTOFF_HOURS)
                if local_now(space.time_zone) > cutoff:
                    raise InvalidTransition(
                        f"bookings can only be cancelled {CANCELLATION_CUTOFF_HOURS} hours before the start",
                        "CancellationWindowClosed",
                    )

            payment = await self._cancel(db, booking, role)

        await self.notifier.emit("booking.cancelled", booking.id, actor.user_id, {
            "canceled_by": booking.canceled_by,
            "refund_amount": payment.refund_amount if payment else None,
        })
        return booking

    # ---------------- completion ----------------

    async def complete_booking(self, booking_id: str, actor: Actor | None = None) -> Booking:
        if actor is not None and not actor.is_admin:
            raise Forbidden("bookings complete automatically; only admins can force it")

        async with transaction(self.session_factory) as db:
            booking = await self._load(db, booking_id, for_update=True)
            ensure_open(booking)
            if booking.status != ACCEPTED:
                raise InvalidTransition(f"booking is {booking.status}, only accepted bookings complete")

            space = await get_space_for_booking(db, booking.space_id)
            if Schedule.of(booking).end > local_now(space.time_zone):
                raise InvalidTransition("booking has not ended yet")

            booking.status = COMPLETED
            await close_pending_changes(db, booking.id)
            await db.flush()

            payout = None
            payment = await get_payment(db, booking.id)
            if payment is not None and payment.status == "succeeded":
                payout = await accrue(db, booking)

        await self.notifier.emit("booking.completed", booking.id, actor.user_id if actor else None, {
            "payout_id": payout.id if payout else None,
        })
        return booking

    # ---------------- check-in / check-out ----------------

    async def record_presence(self, booking_id: str, actor: Actor, kind: str, location: str | None = None) -> BookingLog:
        async with transaction(self.session_factory) as db:
            booking = await self._load(db, booking_id)
            role = role_of(actor, booking)
            if role not in ("client", "host"):
                raise Forbidden("only the client or the host can check in or out")
            if booking.status != ACCEPTED:
                raise InvalidTransition(f"booking is {booking.status}, check-in requires an accepted booking")

            res = await db.execute(select(BookingLog).where(BookingLog.booking_id == booking.id))
            log = res.scalar_one_or_none()
            if log is None:
                log = BookingLog(id=new_id(), booking_id=booking.id)
                db.add(log)

            field = CHECK_FIELDS[(role, kind)]
            if getattr(log, field):
                raise InvalidTransition(f"{role} {kind} already recorded")
            if kind == "checkout" and not getattr(log, CHECK_FIELDS[(role, "checkin")]):
                raise InvalidTransition(f"{role} has not checked in")

            setattr(log, field, {"done": True, "at": utcnow().isoformat(), "location": location})

        await self.notifier.emit(f"booking.{kind}", booking.id, actor.user_id, {"role": role})
        return log

    async def check_in(self, booking_id: str, actor: Actor, location: str | None = None) -> BookingLog:
        return await self.record_presence(booking_id, actor, "checkin", location)

    async def check_out(self, booking_id: str, actor: Actor, location: str | None = None) -> BookingLog:
        return await self.record_presence(booking_id, actor, "checkout", location)

    async def get_log(self, booking_id: str, actor: Actor) -> BookingLog | None:
        async with transaction(self.session_factory) as db:
            booking = await self._load(db, booking_id)
            if role_of(actor, booking) is None:
                raise Forbidden("not a party to this booking")
            res = await db.execute(select(BookingLog).where(BookingLog.booking_id == booking.id))
            return res.scalar_one_or_none()

    # ---------------- queries ----------------

    async def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        async with transaction(self.session_factory) as db:
            booking = await self._load(db, booking_id)
            if role_of(actor, booking) is None:
                raise Forbidden("not a party to this booking")
            return booking

    async def list_bookings(
        self,
        actor: Actor,
        as_role: str = "client",
        status: str | None = None,
        space_id: str | None = None,
    ) -> list[Booking]:
        stmt = select(Booking).order_by(Booking.start_date, Booking.start_time)
        if as_role == "client":
            stmt = stmt.where(Booking.client_id == actor.user_id)
        elif as_role == "host":
            stmt = stmt.where(Booking.host_id == actor.user_id)
        elif as_role == "admin":
            if not actor.is_admin:
                raise Forbidden("admin only")
        else:
            raise ValidationError("role must be client, host or admin")
        if status:
            stmt = stmt.where(Booking.status == status)
        if space_id:
            stmt = stmt.where(Booking.space_id == space_id)

        async with transaction(self.session_factory) as db:
            res = await db.execute(stmt)
            return list(res.scalars().all())

    # ---------------- periodic maintenance ----------------

    async def _candidates(self, status: str, date_field, horizon_days: int = 1) -> list[tuple[str, Schedule, str]]:
        # widest timezone offset is +14h, so one day of slack covers every zone
        horizon = (utcnow().date() + timedelta(days=horizon_days)).isoformat()
        async with transaction(self.session_factory) as db:
            res = await db.execute(
                select(Booking, Space.time_zone)
                .join(Space, Space.id == Booking.space_id)
                .where(Booking.status == status, date_field <= horizon)
            )
            return [(b.id, Schedule.of(b), tz_name) for b, tz_name in res.all()]

    async def expire_unpaid(self) -> list[str]:
        """
        Cancels payment-pending bookings older than the payment TTL, and accepted
        bookings that reached their start without a captured payment.
        """
        expired = []
        threshold = utcnow() - timedelta(minutes=PAYMENT_PENDING_TTL_MINUTES)

        async with transaction(self.session_factory) as db:
            res = await db.execute(
                select(Booking.id).where(Booking.status == PAYMENT_PENDING, Booking.created_at < threshold)
            )
            stale = list(res.scalars().all())

        started = [
            booking_id
            for booking_id, schedule, tz_name in await self._candidates(ACCEPTED, Booking.start_date)
            if schedule.start <= local_now(tz_name)
        ]

        for booking_id in stale + started:
            try:
                if await self._expire_one(booking_id):
                    expired.append(booking_id)
            except DomainError as e:
                logger.warning("could not expire booking %s: %s", booking_id, e.reason)
        return expired

    async def _expire_one(self, booking_id: str) -> bool:
        async with transaction(self.session_factory) as db:
            booking = await self._load(db, booking_id, for_update=True)
            if booking.status not in (PAYMENT_PENDING, ACCEPTED):
                return False
            payment = await get_payment(db, booking.id)
            if payment is not None and payment.status == "succeeded":
                return False
            await self._cancel(db, booking, "admin")

        logger.info("booking %s expired without payment", booking_id)
        await self.notifier.emit("booking.cancelled", booking_id, None, {
            "canceled_by": "admin",
            "reason": "payment_not_received",
        })
        return True

    async def complete_due(self) -> list[str]:
        completed = []
        for booking_id, schedule, tz_name in await self._candidates(ACCEPTED, Booking.end_date):
            if schedule.end > local_now(tz_name):
                continue
            try:
                await self.complete_booking(booking_id)
                completed.append(booking_id)
            except DomainError as e:
                logger.warning("could not complete booking %s: %s", booking_id, e.reason)
        return completed
