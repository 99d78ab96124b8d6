from __future__ import annotations

from datetime import time
from typing import NamedTuple

from slotkeeper.modules import errors


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from slotkeeper.db.models import ScheduleOverrideMixin, ScheduleMixin


DEFAULT_START = time(10, 0)
DEFAULT_END = time(22, 0)
DEFAULT_SLOT_DURATION = 30


class WorkHours(NamedTuple):
    """ The effective opening hours of a resource on a single day. """

    start: time
    end: time
    lunch_start: time | None = None
    lunch_end: time | None = None
    slot_duration: int = DEFAULT_SLOT_DURATION

    @property
    def has_lunch(self) -> bool:
        return self.lunch_start is not None and self.lunch_end is not None


ALL_DAY = WorkHours(time.min, time.max)


def validate_work_hours(hours: WorkHours) -> WorkHours:
    """ Makes sure the hours are usable, raising
    :class:`slotkeeper.modules.errors.InvalidSchedule` if they are not.

    """
    if hours.end <= hours.start:
        raise errors.InvalidSchedule('The end must be after the start')

    if (hours.lunch_start is None) != (hours.lunch_end is None):
        raise errors.InvalidSchedule('A lunch break needs a start and an end')

    if hours.has_lunch:
        assert hours.lunch_start is not None
        assert hours.lunch_end is not None

        if hours.lunch_end <= hours.lunch_start:
            raise errors.InvalidSchedule(
                'The lunch break must end after it starts'
            )

        if not (hours.start <= hours.lunch_start < hours.end):
            raise errors.InvalidSchedule(
                'The lunch break must start within the opening hours'
            )

        if hours.lunch_end > hours.end:
            raise errors.InvalidSchedule(
                'The lunch break must end within the opening hours'
            )

    if hours.slot_duration <= 0:
        raise errors.InvalidSchedule('The slot duration must be positive')

    return hours


def weekly_hours(schedule: ScheduleMixin | None) -> WorkHours | None:
    if schedule is None or not schedule.is_active:
        return None

    return WorkHours(
        start=schedule.start_time,
        end=schedule.end_time,
        lunch_start=schedule.lunch_start,
        lunch_end=schedule.lunch_end,
        slot_duration=schedule.slot_duration
    )


def resolve_work_hours(
    weekly: WorkHours | None,
    override: ScheduleOverrideMixin | None = None,
    holiday: bool = False,
    default: WorkHours | None = None
) -> WorkHours | None:
    """ Resolves the hours a resource is open on a given day, returning None
    if it is closed.

    :weekly:
        The hours of the weekly schedule for the weekday of the day, or None
        if there is no (active) schedule for it.

    :override:
        The override for the exact day, if any. An override always wins. A
        closed override closes the day, an override with hours replaces the
        weekly hours and an open override without hours keeps the weekly
        hours, even on a holiday.

    :holiday:
        True if the day is a holiday, which closes the day unless there is
        an override.

    :default:
        Hours used when there is no weekly schedule. None means closed.

    """
    base = weekly or default

    if override is not None:
        if override.is_closed:
            return None

        if override.start_time is not None and override.end_time is not None:
            return WorkHours(
                start=override.start_time,
                end=override.end_time,
                lunch_start=override.lunch_start,
                lunch_end=override.lunch_end,
                slot_duration=(
                    base.slot_duration if base else DEFAULT_SLOT_DURATION
                )
            )

        return base

    if holiday:
        return None

    return base
