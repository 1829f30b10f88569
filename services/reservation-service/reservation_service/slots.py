import logging
from datetime import date, datetime

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import contains, get_open_intervals
from .errors import Conflict, NotFound, OUTSIDE_AVAILABILITY, SLOT_TAKEN
from .models import BLOCKING_STATUSES, Booking, Space
from .scheduling import Schedule

logger = logging.getLogger(__name__)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    # half-open: touching intervals do not overlap
    return a_start < b_end and b_start < a_end


async def lock_space_days(db: AsyncSession, space_id: str, days: list[date]):
    """
    Serialize writers per (space, date) until the transaction ends.
    Keys are taken in sorted order so two writers never deadlock.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    for d in sorted(set(days)):
        await db.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"space:{space_id}:{d.isoformat()}"},
        )


async def check_slot(
    db: AsyncSession,
    space: Space,
    schedule: Schedule,
    exclude_booking_id: str | None = None,
) -> None:
    """
    Raises Conflict(OutsideAvailability) or Conflict(SlotTaken); returns None when free.
    Call under lock_space_days in the transaction that writes the booking.
    """
    for on_date, seg_start, seg_end in schedule.segments():
        try:
            intervals = await get_open_intervals(db, space.id, on_date)
        except NotFound:
            intervals = []
        if not contains(intervals, seg_start, seg_end):
            raise Conflict(
                f"{on_date.isoformat()} {seg_start // 60:02d}:{seg_start % 60:02d}-"
                f"{seg_end // 60:02d}:{seg_end % 60:02d} is outside the space's open hours",
                OUTSIDE_AVAILABILITY,
            )

    stmt = select(Booking).where(
        Booking.space_id == space.id,
        Booking.status.in_(BLOCKING_STATUSES),
        Booking.start_date <= schedule.end_date,
        Booking.end_date >= schedule.start_date,
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.id != exclude_booking_id)

    res = await db.execute(stmt)
    start, end = schedule.start, schedule.end
    for other in res.scalars().all():
        theirs = Schedule.of(other)
        if overlaps(start, end, theirs.start, theirs.end):
            logger.info("slot taken on space %s by booking %s", space.id, other.id)
            raise Conflict("the requested slot overlaps an existing booking", SLOT_TAKEN)
