""" Overlap rules of the two booking kinds.

Device bookings claim whole days, so their date ranges are inclusive on both
ends: a booking ending on the 20th and another starting on the 20th
overlap. Room bookings are hourly and half-open: a booking ending at 10:00
does not overlap one starting at 10:00.

"""
from __future__ import annotations

from datetime import timedelta


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from collections.abc import Iterator
    from datetime import date, datetime


def range_overlaps(
    a_start: date,
    a_end: date | None,
    b_start: date,
    b_end: date | None
) -> bool:
    """ Returns True if the two inclusive date ranges share at least one
    day. A missing end means the range only covers its start day.

    """
    a_end = a_end or a_start
    b_end = b_end or b_start

    return a_end >= b_start and b_end >= a_start


def hourly_overlaps(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime
) -> bool:
    """ Returns True if the two half-open intervals [start, end) overlap. """
    return a_start < b_end and b_start < a_end


def days_in_range(start: date, end: date | None = None) -> Iterator[date]:
    """ Yields each day from start to end, both included. """
    end = end or start
    day = start

    while day <= end:
        yield day
        day += timedelta(days=1)


def peak_occupancy(
    ranges: Iterable[tuple[date, date | None]],
    start: date,
    end: date | None = None
) -> int:
    """ Returns the highest number of the given inclusive ranges covering a
    single day between start and end.

    Two bookings of a device with quantity 2 may well both overlap a
    requested week without ever being active on the same day, which is why
    counting overlapping ranges is not enough.

    """
    end = end or start
    counts = dict.fromkeys(days_in_range(start, end), 0)

    for range_start, range_end in ranges:
        if not range_overlaps(range_start, range_end, start, end):
            continue

        for day in days_in_range(
            max(range_start, start),
            min(range_end or range_start, end)
        ):
            counts[day] += 1

    return max(counts.values(), default=0)
