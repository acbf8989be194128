"""Constraint predicates shared by the scheduler and the conflict auditor.

Every predicate is a pure function of a candidate placement and the state it
would join; none of them mutate anything. Intervals are half-open, so two
slots that merely touch never conflict.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from timetabler.schemas.conflict import ConflictType, Severity
from timetabler.schemas.domain import (
    DAY_ORDER,
    WEEKDAYS,
    ClassPayload,
    RoomPayload,
    RoomType,
    SessionType,
    SubjectPayload,
    minutes_to_time,
)
from timetabler.schemas.generator import SoftWeights
from timetabler.services.availability import AvailabilityIndex
from timetabler.services.search_state import Placement, ResourceKind, SearchState
from timetabler.services.snapshot import DomainSnapshot


class ConstraintKind(str, Enum):
    faculty_double_booking = "faculty_double_booking"
    room_double_booking = "room_double_booking"
    class_double_booking = "class_double_booking"
    faculty_unavailable = "faculty_unavailable"
    room_unavailable = "room_unavailable"
    room_type_mismatch = "room_type_mismatch"
    room_capacity = "room_capacity"
    daily_limit = "daily_limit"
    weekly_limit = "weekly_limit"
    uneven_distribution = "uneven_distribution"
    faculty_load_imbalance = "faculty_load_imbalance"


HARD_CONSTRAINTS = frozenset(
    {
        ConstraintKind.faculty_double_booking,
        ConstraintKind.room_double_booking,
        ConstraintKind.class_double_booking,
        ConstraintKind.faculty_unavailable,
        ConstraintKind.room_unavailable,
        ConstraintKind.room_type_mismatch,
        ConstraintKind.room_capacity,
    }
)

SEVERITY_BY_KIND: dict[ConstraintKind, Severity] = {
    **{kind: "high" for kind in HARD_CONSTRAINTS},
    ConstraintKind.daily_limit: "medium",
    ConstraintKind.weekly_limit: "medium",
    ConstraintKind.uneven_distribution: "low",
    ConstraintKind.faculty_load_imbalance: "low",
}

CONFLICT_TYPE_BY_KIND: dict[ConstraintKind, ConflictType] = {
    ConstraintKind.faculty_double_booking: "faculty",
    ConstraintKind.room_double_booking: "room",
    ConstraintKind.class_double_booking: "class",
    ConstraintKind.faculty_unavailable: "faculty",
    ConstraintKind.room_unavailable: "room",
    ConstraintKind.room_type_mismatch: "room",
    ConstraintKind.room_capacity: "room",
    ConstraintKind.daily_limit: "class",
    ConstraintKind.weekly_limit: "class",
    ConstraintKind.uneven_distribution: "class",
    ConstraintKind.faculty_load_imbalance: "faculty",
}

DOUBLE_BOOKING_KIND: dict[ResourceKind, ConstraintKind] = {
    "faculty": ConstraintKind.faculty_double_booking,
    "room": ConstraintKind.room_double_booking,
    "class": ConstraintKind.class_double_booking,
}


@dataclass(frozen=True)
class CheckResult:
    kind: ConstraintKind
    satisfied: bool
    severity: Severity | None = None
    detail: str = ""
    blocking_slot_ids: tuple[str, ...] = ()

    @classmethod
    def ok(cls, kind: ConstraintKind) -> CheckResult:
        return cls(kind=kind, satisfied=True)

    @classmethod
    def violated(cls, kind: ConstraintKind, detail: str, blocking_slot_ids: tuple[str, ...] = ()) -> CheckResult:
        return cls(
            kind=kind,
            satisfied=False,
            severity=SEVERITY_BY_KIND[kind],
            detail=detail,
            blocking_slot_ids=blocking_slot_ids,
        )


def _window_label(placement: Placement) -> str:
    return f"{placement.day.value} {minutes_to_time(placement.start)}-{minutes_to_time(placement.end)}"


def check_double_booking(kind: ResourceKind, placement: Placement, state: SearchState) -> CheckResult:
    constraint = DOUBLE_BOOKING_KIND[kind]
    resource_id = placement.resource_id(kind)
    clashes = state.overlapping(
        kind,
        resource_id,
        placement.day,
        placement.start,
        placement.end,
        ignore_slot_id=placement.slot_id,
    )
    if not clashes:
        return CheckResult.ok(constraint)
    return CheckResult.violated(
        constraint,
        f"{kind.capitalize()} {resource_id} is already booked during {_window_label(placement)}",
        tuple(item.slot_id for item in clashes),
    )


def check_faculty_double_booking(placement: Placement, state: SearchState) -> CheckResult:
    return check_double_booking("faculty", placement, state)


def check_room_double_booking(placement: Placement, state: SearchState) -> CheckResult:
    return check_double_booking("room", placement, state)


def check_class_double_booking(placement: Placement, state: SearchState) -> CheckResult:
    return check_double_booking("class", placement, state)


def check_faculty_availability(
    placement: Placement,
    index: AvailabilityIndex,
    leave_days: list | tuple = (),
) -> CheckResult:
    kind = ConstraintKind.faculty_unavailable
    if index.is_free(placement.faculty_id, placement.day, placement.start, placement.end - placement.start):
        return CheckResult.ok(kind)
    if placement.day in leave_days:
        return CheckResult.violated(kind, f"Faculty {placement.faculty_id} is on leave on {placement.day.value}")
    return CheckResult.violated(
        kind,
        f"Faculty {placement.faculty_id} is not available during {_window_label(placement)}",
    )


def check_room_availability(placement: Placement, index: AvailabilityIndex) -> CheckResult:
    kind = ConstraintKind.room_unavailable
    if index.is_free(placement.room_id, placement.day, placement.start, placement.end - placement.start):
        return CheckResult.ok(kind)
    return CheckResult.violated(kind, f"Room {placement.room_id} is not available during {_window_label(placement)}")


def check_room_type(subject: SubjectPayload, room: RoomPayload) -> CheckResult:
    kind = ConstraintKind.room_type_mismatch
    if subject.type == SessionType.lab and room.type != RoomType.lab:
        return CheckResult.violated(kind, f"Lab subject {subject.code} needs a lab room, {room.name} is a {room.type.value}")
    return CheckResult.ok(kind)


def check_room_capacity(klass: ClassPayload, room: RoomPayload) -> CheckResult:
    kind = ConstraintKind.room_capacity
    if room.capacity < klass.student_count:
        return CheckResult.violated(
            kind,
            f"Room {room.name} seats {room.capacity} but {klass.name} has {klass.student_count} students",
        )
    return CheckResult.ok(kind)


def check_daily_limit(subject: SubjectPayload, sessions_on_day: int) -> CheckResult:
    kind = ConstraintKind.daily_limit
    if sessions_on_day > subject.max_classes_per_day:
        return CheckResult.violated(
            kind,
            f"{subject.code} has {sessions_on_day} sessions in one day, limit is {subject.max_classes_per_day}",
        )
    return CheckResult.ok(kind)


def check_weekly_limit(subject: SubjectPayload, sessions_in_week: int) -> CheckResult:
    kind = ConstraintKind.weekly_limit
    if sessions_in_week > subject.max_classes_per_week:
        return CheckResult.violated(
            kind,
            f"{subject.code} has {sessions_in_week} sessions in the week, limit is {subject.max_classes_per_week}",
        )
    return CheckResult.ok(kind)


def adjacent_day_sessions(placement: Placement, state: SearchState) -> int:
    position = DAY_ORDER[placement.day]
    total = 0
    for neighbour in (position - 1, position + 1):
        if 0 <= neighbour < len(WEEKDAYS):
            total += state.sessions(placement.class_id, placement.subject_id, WEEKDAYS[neighbour])
    return total


class ConstraintChecker:
    """Bundles the predicates for one domain snapshot."""

    def __init__(self, snapshot: DomainSnapshot, weights: SoftWeights, period_minutes: int) -> None:
        self.snapshot = snapshot
        self.weights = weights
        self.period_minutes = period_minutes

    def static_violations(self, placement: Placement) -> list[CheckResult]:
        """Checks that do not depend on any other placement."""
        subject = self.snapshot.subjects[placement.subject_id]
        room = self.snapshot.rooms[placement.room_id]
        klass = self.snapshot.classes[placement.class_id]
        faculty = self.snapshot.faculty.get(placement.faculty_id)
        results = [
            check_faculty_availability(
                placement,
                self.snapshot.faculty_index,
                faculty.leave_days if faculty is not None else (),
            ),
            check_room_availability(placement, self.snapshot.room_index),
            check_room_type(subject, room),
            check_room_capacity(klass, room),
        ]
        return [result for result in results if not result.satisfied]

    def booking_violations(self, placement: Placement, state: SearchState) -> list[CheckResult]:
        results = [
            check_faculty_double_booking(placement, state),
            check_room_double_booking(placement, state),
            check_class_double_booking(placement, state),
        ]
        return [result for result in results if not result.satisfied]

    def hard_violations(self, placement: Placement, state: SearchState) -> list[CheckResult]:
        return self.static_violations(placement) + self.booking_violations(placement, state)

    def limit_violations(self, placement: Placement, state: SearchState) -> list[CheckResult]:
        """Per-day and per-week limits as they would stand after adding ``placement``."""
        subject = self.snapshot.subjects[placement.subject_id]
        results = [
            check_daily_limit(subject, state.sessions(placement.class_id, placement.subject_id, placement.day) + 1),
            check_weekly_limit(subject, state.sessions(placement.class_id, placement.subject_id) + 1),
        ]
        return [result for result in results if not result.satisfied]

    def soft_penalty(self, placement: Placement, state: SearchState) -> float:
        weights = self.weights
        room = self.snapshot.rooms[placement.room_id]
        klass = self.snapshot.classes[placement.class_id]

        same_day = state.sessions(placement.class_id, placement.subject_id, placement.day)
        adjacent = adjacent_day_sessions(placement, state)
        faculty_load = state.faculty_minutes(placement.faculty_id, placement.day) / self.period_minutes
        waste = max(0, room.capacity - klass.student_count) / room.capacity

        return (
            weights.same_day_repeat * same_day
            + weights.adjacent_day_repeat * adjacent
            + weights.faculty_daily_load * faculty_load
            + weights.room_fit * waste
        )
