"""Per-entity free/busy lookup built once per generation or audit run.

Raw availability (daily start/end, breaks, leave days) is flattened into a
fixed-size table indexed by weekday ordinal, each cell holding the sorted,
disjoint free intervals for that day. Intervals are half-open
``[start, end)`` in minutes since midnight.
"""

from __future__ import annotations

from bisect import bisect_right
from collections.abc import Iterable, Sequence
import logging
from typing import Protocol

from timetabler.core.exceptions import ValidationError
from timetabler.schemas.domain import (
    DAY_ORDER,
    MINUTES_PER_DAY,
    WEEKDAYS,
    AvailabilityMap,
    Interval,
    Weekday,
    carve_free_windows,
    parse_time_to_minutes,
)

logger = logging.getLogger(__name__)

FULL_DAY: tuple[Interval, ...] = ((0, MINUTES_PER_DAY),)


class SchedulableEntity(Protocol):
    id: str
    availability: AvailabilityMap


def intervals_overlap(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    return start_a < end_b and start_b < end_a


def subtract_intervals(windows: Iterable[Interval], busy: Iterable[Interval]) -> list[Interval]:
    """Remove every busy interval from ``windows``; both inputs may be unsorted."""
    busy_sorted = sorted(busy)
    result: list[Interval] = []
    for window_start, window_end in sorted(windows):
        cursor = window_start
        for busy_start, busy_end in busy_sorted:
            if busy_end <= cursor:
                continue
            if busy_start >= window_end:
                break
            if busy_start > cursor:
                result.append((cursor, busy_start))
            cursor = max(cursor, busy_end)
            if cursor >= window_end:
                break
        if cursor < window_end:
            result.append((cursor, window_end))
    return result


def _as_minutes(value: int | str) -> int:
    if isinstance(value, str):
        return parse_time_to_minutes(value)
    return value


class AvailabilityIndex:
    def __init__(self, windows: dict[str, tuple[tuple[Interval, ...], ...]]) -> None:
        self._windows = windows
        self._starts = {
            entity_id: tuple(tuple(start for start, _ in day_windows) for day_windows in per_day)
            for entity_id, per_day in windows.items()
        }

    @classmethod
    def build(cls, entities: Sequence[SchedulableEntity], *, label: str) -> AvailabilityIndex:
        """Index ``entities`` by id.

        An empty availability map means the entity is unrestricted. Leave days
        (faculty only) are always fully unavailable. Malformed windows raise
        :class:`ValidationError` listing every offending field.
        """
        errors: list[dict] = []
        windows: dict[str, tuple[tuple[Interval, ...], ...]] = {}
        for entity in entities:
            if not entity.availability:
                per_day: list[tuple[Interval, ...]] = [FULL_DAY for _ in WEEKDAYS]
            else:
                per_day = [() for _ in WEEKDAYS]
                for day, window in entity.availability.items():
                    try:
                        per_day[DAY_ORDER[Weekday(day)]] = carve_free_windows(
                            parse_time_to_minutes(window.start),
                            parse_time_to_minutes(window.end),
                            [
                                (parse_time_to_minutes(item.start), parse_time_to_minutes(item.end))
                                for item in window.breaks
                            ],
                        )
                    except ValueError as exc:
                        errors.append(
                            {
                                "loc": [label, entity.id, "availability", str(getattr(day, "value", day))],
                                "msg": str(exc),
                                "type": "value_error",
                            }
                        )
            for day in getattr(entity, "leave_days", ()) or ():
                per_day[DAY_ORDER[Weekday(day)]] = ()
            windows[entity.id] = tuple(per_day)

        if errors:
            raise ValidationError(f"Invalid {label} availability", errors)
        logger.debug("Built %s availability index for %d entities", label, len(windows))
        return cls(windows)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._windows

    def free_windows(self, entity_id: str, day: Weekday) -> tuple[Interval, ...]:
        per_day = self._windows.get(entity_id)
        if per_day is None:
            return ()
        return per_day[DAY_ORDER[day]]

    def is_free(self, entity_id: str, day: Weekday, time: int | str, duration: int) -> bool:
        """True when ``[time, time + duration)`` lies inside one free window."""
        per_day = self._windows.get(entity_id)
        if per_day is None or duration <= 0:
            return False
        start = _as_minutes(time)
        day_index = DAY_ORDER[day]
        position = bisect_right(self._starts[entity_id][day_index], start) - 1
        if position < 0:
            return False
        return per_day[day_index][position][1] >= start + duration

    def total_free_minutes(
        self,
        entity_id: str,
        days: Iterable[Weekday],
        *,
        clip: Interval | None = None,
    ) -> int:
        total = 0
        for day in days:
            for start, end in self.free_windows(entity_id, day):
                if clip is not None:
                    start, end = max(start, clip[0]), min(end, clip[1])
                total += max(0, end - start)
        return total


def placement_windows(
    index: AvailabilityIndex,
    entity: SchedulableEntity,
    day: Weekday,
    teaching_window: Interval,
) -> tuple[Interval, ...]:
    """Windows new sessions may be placed in for ``entity`` on ``day``.

    An entity without declared hours is treated as available for the
    institution's teaching day rather than around the clock.
    """
    if entity.availability:
        return index.free_windows(entity.id, day)
    if day in (getattr(entity, "leave_days", ()) or ()):
        return ()
    return (teaching_window,)
