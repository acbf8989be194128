from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from timetabler.schemas.domain import DAY_ORDER, SessionType, TimetablePayload, Weekday
from timetabler.services.availability import intervals_overlap

ResourceKind = Literal["faculty", "room", "class"]
RESOURCE_KINDS: tuple[ResourceKind, ...] = ("room", "faculty", "class")


@dataclass(frozen=True)
class Placement:
    slot_id: str
    class_id: str
    subject_id: str
    faculty_id: str
    room_id: str
    day: Weekday
    start: int
    end: int
    session_type: SessionType

    def resource_id(self, kind: ResourceKind) -> str:
        if kind == "faculty":
            return self.faculty_id
        if kind == "room":
            return self.room_id
        return self.class_id

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return DAY_ORDER[self.day], self.start, self.slot_id


def placements_from_timetable(timetable: TimetablePayload) -> list[Placement]:
    return [
        Placement(
            slot_id=slot.id,
            class_id=slot.class_id,
            subject_id=slot.subject_id,
            faculty_id=slot.faculty_id,
            room_id=slot.room_id,
            day=slot.day,
            start=slot.start_minutes,
            end=timetable.slot_end_minutes(slot),
            session_type=slot.type,
        )
        for slot in timetable.slots
    ]


class SearchState:
    """Committed placements plus the occupancy they imply.

    Placements are kept in commit order; :meth:`undo` pops the most recent
    one, so the list doubles as the undo log for backtracking.
    """

    def __init__(self) -> None:
        self._committed: list[Placement] = []
        self._busy: dict[tuple[ResourceKind, str, Weekday], list[Placement]] = defaultdict(list)
        self._unit_day_counts: Counter[tuple[str, str, Weekday]] = Counter()
        self._unit_counts: Counter[tuple[str, str]] = Counter()
        self._faculty_minutes: Counter[tuple[str, Weekday]] = Counter()

    @classmethod
    def from_placements(cls, placements: Iterable[Placement]) -> SearchState:
        state = cls()
        for placement in placements:
            state.commit(placement)
        return state

    def __len__(self) -> int:
        return len(self._committed)

    @property
    def placements(self) -> tuple[Placement, ...]:
        return tuple(self._committed)

    def commit(self, placement: Placement) -> None:
        self._committed.append(placement)
        for kind in RESOURCE_KINDS:
            self._busy[(kind, placement.resource_id(kind), placement.day)].append(placement)
        self._unit_day_counts[(placement.class_id, placement.subject_id, placement.day)] += 1
        self._unit_counts[(placement.class_id, placement.subject_id)] += 1
        self._faculty_minutes[(placement.faculty_id, placement.day)] += placement.end - placement.start

    def undo(self) -> Placement:
        placement = self._committed.pop()
        for kind in RESOURCE_KINDS:
            key = (kind, placement.resource_id(kind), placement.day)
            entries = self._busy[key]
            entries.remove(placement)
            if not entries:
                self._busy.pop(key, None)
        self._decrement(self._unit_day_counts, (placement.class_id, placement.subject_id, placement.day))
        self._decrement(self._unit_counts, (placement.class_id, placement.subject_id))
        self._decrement(self._faculty_minutes, (placement.faculty_id, placement.day), placement.end - placement.start)
        return placement

    @staticmethod
    def _decrement(counter: Counter, key: tuple, amount: int = 1) -> None:
        remaining = counter[key] - amount
        if remaining > 0:
            counter[key] = remaining
        else:
            counter.pop(key, None)

    def busy(self, kind: ResourceKind, resource_id: str, day: Weekday) -> list[Placement]:
        return list(self._busy.get((kind, resource_id, day), ()))

    def overlapping(
        self,
        kind: ResourceKind,
        resource_id: str,
        day: Weekday,
        start: int,
        end: int,
        *,
        ignore_slot_id: str | None = None,
    ) -> list[Placement]:
        return [
            item
            for item in self._busy.get((kind, resource_id, day), ())
            if item.slot_id != ignore_slot_id and intervals_overlap(start, end, item.start, item.end)
        ]

    def sessions(self, class_id: str, subject_id: str, day: Weekday | None = None) -> int:
        if day is None:
            return self._unit_counts.get((class_id, subject_id), 0)
        return self._unit_day_counts.get((class_id, subject_id, day), 0)

    def session_days(self, class_id: str, subject_id: str) -> list[Weekday]:
        return sorted(
            (day for (c_id, s_id, day), count in self._unit_day_counts.items() if c_id == class_id and s_id == subject_id and count),
            key=DAY_ORDER.__getitem__,
        )

    def faculty_minutes(self, faculty_id: str, day: Weekday | None = None) -> int:
        if day is not None:
            return self._faculty_minutes.get((faculty_id, day), 0)
        return sum(minutes for (f_id, _), minutes in self._faculty_minutes.items() if f_id == faculty_id)
