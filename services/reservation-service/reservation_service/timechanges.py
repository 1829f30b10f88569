import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .bookings import check_space_rules, ensure_open, get_space_for_booking, role_of, validate_request
from .config import RESCHEDULE_CUTOFF_HOURS
from .db import new_id, transaction, utcnow
from .errors import (
    ACTIVE_TIME_CHANGE,
    STALE_PROPOSAL,
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .ledger import price_for, reprice_booking
from .models import Booking, Space, TimeChange
from .scheduling import Schedule, local_now
from .security import Actor
from .slots import check_slot, lock_space_days

logger = logging.getLogger(__name__)

PENDING = "pending"


def ensure_reschedulable(space: Space, booking: Booking):
    cutoff = Schedule.of(booking).start - timedelta(hours=RESCHEDULE_CUTOFF_HOURS)
    if local_now(space.time_zone) > cutoff:
        raise InvalidTransition(
            f"a booking can only be rescheduled {RESCHEDULE_CUTOFF_HOURS} hours before its start",
            "RescheduleWindowClosed",
        )


class TimeChangeService:
    """
    Reschedule negotiation. A proposal snapshots the booking's schedule; acceptance
    only applies while that snapshot is still the live schedule.

    Every write path locks the Booking row before any TimeChange row.
    """

    def __init__(self, session_factory, processor, notifier):
        self.session_factory = session_factory
        self.processor = processor
        self.notifier = notifier

    async def _lock(self, db, time_change_id: str) -> tuple[TimeChange, Booking]:
        change = await db.get(TimeChange, time_change_id)
        if change is None:
            raise NotFound(f"time change {time_change_id} not found")
        booking = await db.get(Booking, change.booking_id, with_for_update=True, populate_existing=True)
        change = await db.get(TimeChange, time_change_id, with_for_update=True, populate_existing=True)
        return change, booking

    async def _new_schedule(self, db, booking: Booking, space: Space, data) -> Schedule:
        schedule = validate_request(booking.type, data.model_dump())
        if schedule == Schedule.of(booking):
            raise ValidationError("the proposed schedule equals the current one")
        check_space_rules(space, schedule)
        # early feedback only; acceptance checks again under lock
        await check_slot(db, space, schedule, exclude_booking_id=booking.id)
        return schedule

    async def propose_change(self, booking_id: str, actor: Actor, data) -> TimeChange:
        async with transaction(self.session_factory) as db:
            booking = await db.get(Booking, booking_id, with_for_update=True)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")

            role = role_of(actor, booking)
            if role not in ("client", "host"):
                raise Forbidden("only the client or the host can propose a new time")
            ensure_open(booking)

            res = await db.execute(
                select(TimeChange.id).where(TimeChange.booking_id == booking.id, TimeChange.status == PENDING)
            )
            if res.first() is not None:
                raise Conflict("a time change is already awaiting a response", ACTIVE_TIME_CHANGE)

            space = await get_space_for_booking(db, booking.space_id)
            ensure_reschedulable(space, booking)
            schedule = await self._new_schedule(db, booking, space, data)

            change = TimeChange(
                id=new_id(),
                booking_id=booking.id,
                proposed_by=actor.user_id,
                proposer_role=role,
                status=PENDING,
                **Schedule.of(booking).as_dict("old_"),
                **schedule.as_dict("new_"),
            )
            db.add(change)
            try:
                await db.flush()
            except IntegrityError:
                raise Conflict("a time change is already awaiting a response", ACTIVE_TIME_CHANGE)

        await self.notifier.emit("timechange.proposed", booking.id, actor.user_id, {
            "time_change_id": change.id,
            "proposer_role": role,
            **schedule.as_dict("new_"),
        })
        return change

    async def update_change(self, time_change_id: str, actor: Actor, data) -> TimeChange:
        """Lets the proposer amend a proposal that is still awaiting an answer."""
        async with transaction(self.session_factory) as db:
            change, booking = await self._lock(db, time_change_id)
            if actor.user_id != change.proposed_by:
                raise Forbidden("only the proposer can amend a time change")
            if change.status != PENDING:
                raise InvalidTransition(f"time change is {change.status}")
            ensure_open(booking)

            space = await get_space_for_booking(db, booking.space_id)
            ensure_reschedulable(space, booking)
            schedule = await self._new_schedule(db, booking, space, data)

            for field, value in schedule.as_dict("new_").items():
                setattr(change, field, value)

        await self.notifier.emit("timechange.updated", change.booking_id, actor.user_id, {
            "time_change_id": change.id,
            **schedule.as_dict("new_"),
        })
        return change

    async def respond_to_change(self, time_change_id: str, actor: Actor, accept: bool) -> TimeChange:
        async with transaction(self.session_factory) as db:
            change, booking = await self._lock(db, time_change_id)
            role = role_of(actor, booking)
            if role is None:
                raise Forbidden("not a party to this booking")
            if actor.user_id == change.proposed_by:
                raise Forbidden("the proposer cannot answer their own time change")

            if accept:
                # a change committed since the proposal makes this one stale
                if Schedule.of(change, "old_") != Schedule.of(booking):
                    raise Conflict("the booking was rescheduled after this proposal", STALE_PROPOSAL)

            if change.status != PENDING:
                raise InvalidTransition(f"time change is {change.status}")

            if accept:
                ensure_open(booking)
                schedule = Schedule.of(change, "new_")
                space = await get_space_for_booking(db, booking.space_id)
                check_space_rules(space, schedule)

                await lock_space_days(db, space.id, Schedule.of(booking).dates() + schedule.dates())
                await check_slot(db, space, schedule, exclude_booking_id=booking.id)

                gross = price_for(space, schedule)
                await reprice_booking(db, self.processor, booking, gross)

                for field, value in schedule.as_dict().items():
                    setattr(booking, field, value)
                booking.gross_amount = gross

            change.status = "accepted" if accept else "rejected"
            change.responded_by = actor.user_id
            change.responded_at = utcnow()

        event = "timechange.accepted" if accept else "timechange.rejected"
        logger.info("time change %s %s by %s", change.id, change.status, actor.user_id)
        await self.notifier.emit(event, change.booking_id, actor.user_id, {
            "time_change_id": change.id,
            **Schedule.of(booking).as_dict(),
        })
        return change

    async def list_time_changes(self, booking_id: str, actor: Actor) -> list[TimeChange]:
        async with transaction(self.session_factory) as db:
            booking = await db.get(Booking, booking_id)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            if role_of(actor, booking) is None:
                raise Forbidden("not a party to this booking")
            res = await db.execute(
                select(TimeChange).where(TimeChange.booking_id == booking_id).order_by(TimeChange.created_at)
            )
            return list(res.scalars().all())
