from __future__ import annotations

import sedate

from datetime import datetime, timedelta
from typing import NamedTuple

from slotkeeper.modules import errors
from slotkeeper.modules.intervals import hourly_overlaps


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterable
    from collections.abc import Sequence
    from datetime import date
    from sedate.types import TzInfoOrName
    from typing_extensions import TypeAlias

    from slotkeeper.modules.workhours import WorkHours

    OccupancyCheck: TypeAlias = Callable[[datetime, datetime], bool]


class Slot(NamedTuple):
    """ A bookable time unit. Start and end are timezone aware. """

    start: datetime
    end: datetime
    available: bool

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def generate_slots(
    day: date,
    hours: WorkHours | None,
    timezone: TzInfoOrName,
    is_occupied: OccupancyCheck | None = None,
    now: datetime | None = None
) -> list[Slot]:
    """ Turns the effective hours of a day into the ordered list of slots of
    that day.

    Slots are stepped from the start of the hours in steps of the slot
    duration, as long as the whole slot ends before or at the end of the
    hours. Slots overlapping the lunch break are left out entirely. All
    other slots are returned, each marked available if it is not occupied
    and does not start in the past.

    :day:
        The day to generate slots for.

    :hours:
        The resolved :class:`slotkeeper.modules.workhours.WorkHours` of the
        day. None (closed) yields no slots.

    :timezone:
        The timezone the hours are expressed in.

    :is_occupied:
        Called with the start and end of each slot, returns True if the slot
        is taken. Without it, no slot is considered occupied.

    :now:
        The current time. Read from the clock if not given, never cached
        between calls.

    """
    if hours is None:
        return []

    now = now or sedate.utcnow()
    step = timedelta(minutes=hours.slot_duration)

    opens = datetime.combine(day, hours.start)
    closes = datetime.combine(day, hours.end)

    lunch: tuple[datetime, datetime] | None = None
    if hours.has_lunch:
        assert hours.lunch_start is not None
        assert hours.lunch_end is not None
        lunch = (
            datetime.combine(day, hours.lunch_start),
            datetime.combine(day, hours.lunch_end)
        )

    slots = []
    cursor = opens

    while cursor + step <= closes:
        slot_end = cursor + step

        if lunch is None or not hourly_overlaps(cursor, slot_end, *lunch):
            start = sedate.replace_timezone(cursor, timezone)
            end = sedate.replace_timezone(slot_end, timezone)

            occupied = is_occupied(start, end) if is_occupied else False
            slots.append(Slot(start, end, not occupied and not start < now))

        cursor = slot_end

    return slots


def available_slots(slots: Iterable[Slot]) -> list[Slot]:
    return [slot for slot in slots if slot.available]


def consecutive_runs(slots: Iterable[Slot]) -> list[list[Slot]]:
    """ Groups the available slots into maximal runs of adjacent slots,
    where each slot ends exactly when the next one starts.

    """
    runs: list[list[Slot]] = []
    run: list[Slot] = []

    for slot in slots:
        if not slot.available:
            if run:
                runs.append(run)
            run = []
            continue

        if run and run[-1].end != slot.start:
            runs.append(run)
            run = []

        run.append(slot)

    if run:
        runs.append(run)

    return runs


def run_from(slots: Sequence[Slot], start: datetime) -> list[Slot]:
    """ Returns the adjacent available slots beginning with the slot that
    starts at the given time. Empty if there is no such available slot.

    """
    for run in consecutive_runs(slots):
        for index, slot in enumerate(run):
            if slot.start == start:
                return run[index:]

    return []


def duration_options(
    slots: Sequence[Slot],
    start: datetime,
    limit: int | None = None
) -> list[int]:
    """ Returns the booking durations in minutes offered for the given start,
    one for each prefix of the run of adjacent available slots beginning
    there (run length times slot duration).

    :limit:
        The maximum number of slots a single booking may span.

    """
    run = run_from(slots, start)

    if limit is not None:
        run = run[:limit]

    minutes = 0
    options = []

    for slot in run:
        minutes += int(slot.duration.total_seconds() // 60)
        options.append(minutes)

    return options


def can_book_consecutive(
    slots: Sequence[Slot],
    start: datetime,
    count: int
) -> bool:
    return count > 0 and len(run_from(slots, start)) >= count


def aligned_slots(
    slots: Sequence[Slot],
    start: datetime,
    end: datetime
) -> list[Slot]:
    """ Returns the adjacent slots exactly covering start to end, regardless
    of their availability.

    Raises :class:`slotkeeper.modules.errors.SlotMisaligned` if start or end
    are not slot boundaries, or if the interval spans a gap like the lunch
    break.

    """
    covering = [
        slot for slot in slots
        if hourly_overlaps(slot.start, slot.end, start, end)
    ]

    if not covering:
        raise errors.SlotMisaligned(f'No slots between {start} and {end}')

    if covering[0].start != start or covering[-1].end != end:
        raise errors.SlotMisaligned(
            f'{start} to {end} does not match the slot grid'
        )

    for previous, current in zip(covering, covering[1:]):
        if previous.end != current.start:
            raise errors.SlotMisaligned(
                f'{start} to {end} spans a break in the slot grid'
            )

    return covering


def format_duration(minutes: int) -> str:
    """ Formats a duration for display, e.g. '1 h 30 min'. """
    hours, minutes = divmod(minutes, 60)

    if hours and minutes:
        return f'{hours} h {minutes} min'
    elif hours:
        return f'{hours} h'
    else:
        return f'{minutes} min'
