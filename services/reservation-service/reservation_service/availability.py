from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound
from .models import Availability
from .scheduling import parse_time, weekday


def merge_intervals(intervals: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Sorted, disjoint union; overlapping or touching intervals coalesce."""
    merged: list[list[int]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [(s, e) for s, e in merged]


async def get_open_intervals(db: AsyncSession, space_id: str, on_date: date) -> list[tuple[int, int]]:
    """
    Open minutes [start, end) of a space on one calendar date.
    Rows keyed by the weekday and rows keyed by the exact date both apply.
    Raises NotFound when nothing is open that day.
    """
    res = await db.execute(
        select(Availability.start_time, Availability.end_time).where(
            Availability.space_id == space_id,
            Availability.day.in_((weekday(on_date), on_date.isoformat())),
        )
    )
    rows = res.all()
    if not rows:
        raise NotFound(f"space {space_id} has no availability on {on_date.isoformat()}")

    return merge_intervals([
        (parse_time(start), parse_time(end, allow_midnight_end=True))
        for start, end in rows
    ])


def contains(intervals: list[tuple[int, int]], start: int, end: int) -> bool:
    return any(s <= start and end <= e for s, e in intervals)
