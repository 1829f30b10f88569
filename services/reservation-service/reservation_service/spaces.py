import logging
from decimal import Decimal

from sqlalchemy import delete, select

from .db import new_id, transaction
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .ledger import money, price_for
from .models import Availability, Booking, Space
from .scheduling import DAYS, parse_date, parse_time, validate_schedule
from .security import Actor
from .slots import check_slot

logger = logging.getLogger(__name__)

SPACE_STATUSES = ("draft", "published")


def _ensure_owner(actor: Actor, space: Space):
    if actor.user_id != space.host_id and not actor.is_admin:
        raise Forbidden("only the space's host can change it")


def validate_day(day: str) -> str:
    if day in DAYS:
        return day
    return parse_date(day, "day").isoformat()


class SpaceService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _load(self, db, space_id: str) -> Space:
        space = await db.get(Space, space_id)
        if space is None:
            raise NotFound(f"space {space_id} not found")
        return space

    async def create_space(self, actor: Actor, data) -> Space:
        if Decimal(data.rate_per_hour) <= 0:
            raise ValidationError("rate_per_hour must be positive")
        if data.status not in SPACE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(SPACE_STATUSES)}")

        async with transaction(self.session_factory) as db:
            space = Space(
                id=new_id(),
                host_id=actor.user_id,
                name=data.name,
                rate_per_hour=money(data.rate_per_hour),
                min_hours=data.min_hours,
                discount_hours=data.discount_hours,
                time_zone=data.time_zone or "UTC",
                status=data.status,
            )
            db.add(space)
        logger.info("space %s created by %s", space.id, actor.user_id)
        return space

    async def get_space(self, space_id: str) -> Space:
        async with transaction(self.session_factory) as db:
            return await self._load(db, space_id)

    async def set_status(self, space_id: str, actor: Actor, status: str) -> Space:
        if status not in SPACE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(SPACE_STATUSES)}")
        async with transaction(self.session_factory) as db:
            space = await self._load(db, space_id)
            _ensure_owner(actor, space)
            space.status = status
            return space

    async def delete_space(self, space_id: str, actor: Actor):
        async with transaction(self.session_factory) as db:
            space = await self._load(db, space_id)
            _ensure_owner(actor, space)

            res = await db.execute(
                select(Booking.id).where(Booking.space_id == space_id).limit(1)
            )
            if res.first() is not None:
                # booking history keeps the space; hosts unpublish it instead
                raise Conflict("the space has bookings, set it to draft instead", "SpaceInUse")

            await db.execute(delete(Availability).where(Availability.space_id == space_id))
            await db.delete(space)

    # ---------------- availability ----------------

    async def add_availability(
        self,
        space_id: str,
        actor: Actor,
        day: str,
        start_time: str,
        end_time: str,
        similar_days: list[str] | None = None,
    ) -> list[Availability]:
        days = [validate_day(day)]
        for extra in similar_days or []:
            extra = validate_day(extra)
            if extra not in days:
                days.append(extra)

        start = parse_time(start_time, "start_time")
        end = parse_time(end_time, "end_time", allow_midnight_end=True)
        if start >= end:
            raise ValidationError("start_time must be before end_time")

        async with transaction(self.session_factory) as db:
            space = await self._load(db, space_id)
            _ensure_owner(actor, space)

            rows = [
                Availability(id=new_id(), space_id=space_id, day=d, start_time=start_time, end_time=end_time)
                for d in days
            ]
            db.add_all(rows)
        return rows

    async def list_availability(self, space_id: str) -> list[Availability]:
        async with transaction(self.session_factory) as db:
            await self._load(db, space_id)
            res = await db.execute(
                select(Availability).where(Availability.space_id == space_id).order_by(Availability.day, Availability.start_time)
            )
            return list(res.scalars().all())

    async def remove_availability(self, space_id: str, availability_id: str, actor: Actor):
        async with transaction(self.session_factory) as db:
            space = await self._load(db, space_id)
            _ensure_owner(actor, space)
            row = await db.get(Availability, availability_id)
            if row is None or row.space_id != space_id:
                raise NotFound(f"availability {availability_id} not found")
            await db.delete(row)

    async def quote(self, space_id: str, schedule_data) -> dict:
        """Read-only slot check: availability, conflicts and the resulting price."""
        schedule = validate_schedule(schedule_data)
        async with transaction(self.session_factory) as db:
            space = await self._load(db, space_id)
            try:
                await check_slot(db, space, schedule)
            except Conflict as e:
                return {"available": False, "reason": e.code or e.kind, "gross_amount": None}
            return {"available": True, "reason": None, "gross_amount": price_for(space, schedule)}
