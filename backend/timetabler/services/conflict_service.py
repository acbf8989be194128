from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
import logging

from timetabler.core.config import Settings, get_settings
from timetabler.schemas.conflict import SEVERITY_RANK, ConflictDetail, SlotAlternative
from timetabler.schemas.domain import (
    DAY_ORDER,
    Interval,
    RoomPayload,
    TimetablePayload,
    Weekday,
    minutes_to_time,
    parse_time_to_minutes,
)
from timetabler.schemas.generator import SoftWeights
from timetabler.services.availability import placement_windows
from timetabler.services.constraints import (
    CONFLICT_TYPE_BY_KIND,
    DOUBLE_BOOKING_KIND,
    SEVERITY_BY_KIND,
    CheckResult,
    ConstraintChecker,
    ConstraintKind,
    check_daily_limit,
    check_room_capacity,
    check_room_type,
    check_weekly_limit,
)
from timetabler.services.search_state import RESOURCE_KINDS, Placement, ResourceKind, SearchState, placements_from_timetable
from timetabler.services.snapshot import DomainSnapshot, validate_timetable_references

logger = logging.getLogger(__name__)


class ConflictAuditor:
    """Read-only audit of a timetable against the domain snapshot.

    Overlaps are found with a sorted sweep per (day, resource) group, so the
    cost is dominated by sorting rather than comparing every pair of slots.
    """

    def __init__(self, timetable: TimetablePayload, snapshot: DomainSnapshot, settings: Settings | None = None):
        self.timetable = timetable
        self.snapshot = snapshot
        self.settings = settings or get_settings()
        validate_timetable_references(timetable, snapshot)
        self.period = timetable.period_minutes
        self.working_days = sorted(set(self.settings.working_days), key=DAY_ORDER.__getitem__)
        self.teaching_window: Interval = (
            parse_time_to_minutes(self.settings.teaching_day_start),
            parse_time_to_minutes(self.settings.teaching_day_end),
        )
        self.checker = ConstraintChecker(snapshot, SoftWeights(), self.period)
        self.placements = sorted(placements_from_timetable(timetable), key=lambda item: item.sort_key)
        self.by_id = {item.slot_id: item for item in self.placements}
        self.state = SearchState.from_placements(self.placements)

    # ---------- wording ----------

    def _label(self, placement: Placement) -> str:
        subject = self.snapshot.subjects[placement.subject_id]
        klass = self.snapshot.classes[placement.class_id]
        return f"{subject.code} for {klass.name}"

    def _window(self, placement: Placement) -> str:
        return f"{placement.day.value} {minutes_to_time(placement.start)}-{minutes_to_time(placement.end)}"

    def _resource_name(self, kind: ResourceKind, resource_id: str) -> str:
        if kind == "faculty":
            return self.snapshot.faculty[resource_id].name
        if kind == "room":
            return self.snapshot.rooms[resource_id].name
        return self.snapshot.classes[resource_id].name

    def _suggest(self, placement: Placement, alternative: SlotAlternative | None) -> str | None:
        if alternative is None:
            return None
        room = self.snapshot.rooms[alternative.room_id]
        faculty = self.snapshot.faculty[placement.faculty_id]
        return (
            f"Move {self._label(placement)} to {alternative.day.value} {alternative.time} in {room.name}, "
            f"when {faculty.name} is free"
        )

    def _conflict(
        self,
        conflict_id: str,
        kind: ConstraintKind,
        description: str,
        slot_ids: list[str],
        moved: Placement | None,
        alternative: SlotAlternative | None,
        suggestion: str | None = None,
    ) -> ConflictDetail:
        if suggestion is None and moved is not None:
            suggestion = self._suggest(moved, alternative)
        return ConflictDetail(
            id=conflict_id,
            type=CONFLICT_TYPE_BY_KIND[kind],
            severity=SEVERITY_BY_KIND[kind],
            constraint=kind.value,
            description=description,
            slot_ids=slot_ids,
            suggestion=suggestion,
            alternative=alternative,
        )

    # ---------- alternatives ----------

    def _rooms_for(self, placement: Placement) -> list[RoomPayload]:
        subject = self.snapshot.subjects[placement.subject_id]
        klass = self.snapshot.classes[placement.class_id]
        rooms = [
            room
            for room in sorted(self.snapshot.rooms.values(), key=lambda item: item.id)
            if check_room_type(subject, room).satisfied and check_room_capacity(klass, room).satisfied
        ]
        rooms.sort(key=lambda room: room.id != placement.room_id)
        return rooms

    def nearest_alternative(
        self,
        placement: Placement,
        *,
        exclude_days: tuple[Weekday, ...] = (),
    ) -> SlotAlternative | None:
        """Closest free (day, time, room) for ``placement``, or ``None``.

        Days are probed by distance from the slot's own day and start times by
        distance from its own start. A candidate must be inside the faculty's
        and the room's free windows, clash with no other slot of the same
        faculty, room or class, and keep the subject within its daily limit.
        """
        subject = self.snapshot.subjects[placement.subject_id]
        faculty = self.snapshot.faculty[placement.faculty_id]
        length = placement.end - placement.start
        origin = DAY_ORDER[placement.day]
        rooms = self._rooms_for(placement)
        if not rooms:
            return None

        days = sorted(self.working_days, key=lambda day: (abs(DAY_ORDER[day] - origin), DAY_ORDER[day]))
        for day in days:
            if day in exclude_days:
                continue
            already = self.state.sessions(placement.class_id, placement.subject_id, day)
            if day == placement.day:
                already -= 1
            if already >= subject.max_classes_per_day:
                continue
            starts = sorted(
                {
                    start
                    for window_start, window_end in placement_windows(
                        self.snapshot.faculty_index, faculty, day, self.teaching_window
                    )
                    for start in range(window_start, window_end - length + 1, self.period)
                },
                key=lambda start: (abs(start - placement.start), start),
            )
            for start in starts:
                for room in rooms:
                    if day == placement.day and start == placement.start and room.id == placement.room_id:
                        continue
                    if not self.snapshot.room_index.is_free(room.id, day, start, length):
                        continue
                    candidate = replace(placement, day=day, start=start, end=start + length, room_id=room.id)
                    if self._clashes(candidate):
                        continue
                    return SlotAlternative(day=day, time=minutes_to_time(start), room_id=room.id)
        return None

    def _clashes(self, candidate: Placement) -> bool:
        return any(
            self.state.overlapping(
                kind,
                candidate.resource_id(kind),
                candidate.day,
                candidate.start,
                candidate.end,
                ignore_slot_id=candidate.slot_id,
            )
            for kind in RESOURCE_KINDS
        )

    # ---------- detectors ----------

    def _overlap_conflicts(self) -> list[ConflictDetail]:
        conflicts: list[ConflictDetail] = []
        for kind in RESOURCE_KINDS:
            groups: dict[tuple[str, Weekday], list[Placement]] = defaultdict(list)
            for placement in self.placements:
                groups[(placement.resource_id(kind), placement.day)].append(placement)
            constraint = DOUBLE_BOOKING_KIND[kind]

            for (resource_id, _), members in sorted(groups.items(), key=lambda item: (item[0][0], DAY_ORDER[item[0][1]])):
                members.sort(key=lambda item: (item.start, item.end, item.slot_id))
                active: list[Placement] = []
                for current in members:
                    active = [item for item in active if item.end > current.start]
                    for earlier in active:
                        alternative = self.nearest_alternative(current)
                        conflicts.append(
                            self._conflict(
                                f"{kind}-{earlier.slot_id}-{current.slot_id}",
                                constraint,
                                (
                                    f"{self._resource_name(kind, resource_id)} is double-booked on "
                                    f"{self._window(current)}: {self._label(earlier)} and {self._label(current)}"
                                ),
                                [earlier.slot_id, current.slot_id],
                                current,
                                alternative,
                            )
                        )
                    active.append(current)
        return conflicts

    def _static_conflicts(self) -> list[ConflictDetail]:
        conflicts: list[ConflictDetail] = []
        prefixes = {
            ConstraintKind.faculty_unavailable: "faculty-unavailable",
            ConstraintKind.room_unavailable: "room-unavailable",
            ConstraintKind.room_type_mismatch: "room-type",
            ConstraintKind.room_capacity: "room-capacity",
        }
        for placement in self.placements:
            violations: list[CheckResult] = self.checker.static_violations(placement)
            if not violations:
                continue
            alternative = self.nearest_alternative(placement)
            for violation in violations:
                conflicts.append(
                    self._conflict(
                        f"{prefixes[violation.kind]}-{placement.slot_id}",
                        violation.kind,
                        f"{self._label(placement)} on {self._window(placement)}: {violation.detail}",
                        [placement.slot_id],
                        placement,
                        alternative,
                    )
                )
        return conflicts

    def _unit_groups(self) -> dict[tuple[str, str], list[Placement]]:
        units: dict[tuple[str, str], list[Placement]] = defaultdict(list)
        for placement in self.placements:
            units[(placement.class_id, placement.subject_id)].append(placement)
        return units

    def _limit_conflicts(self) -> list[ConflictDetail]:
        conflicts: list[ConflictDetail] = []
        for (class_id, subject_id), members in sorted(self._unit_groups().items()):
            subject = self.snapshot.subjects[subject_id]
            klass = self.snapshot.classes[class_id]

            weekly = check_weekly_limit(subject, len(members))
            if not weekly.satisfied:
                excess = len(members) - subject.max_classes_per_week
                conflicts.append(
                    self._conflict(
                        f"weekly-limit-{class_id}-{subject_id}",
                        ConstraintKind.weekly_limit,
                        f"{subject.code} for {klass.name}: {weekly.detail}",
                        [item.slot_id for item in members],
                        None,
                        None,
                        suggestion=f"Remove {excess} session(s) of {subject.code} for {klass.name}",
                    )
                )

            by_day: dict[Weekday, list[Placement]] = defaultdict(list)
            for item in members:
                by_day[item.day].append(item)
            for day in sorted(by_day, key=DAY_ORDER.__getitem__):
                daily = check_daily_limit(subject, len(by_day[day]))
                if daily.satisfied:
                    continue
                moved = by_day[day][-1]
                alternative = self.nearest_alternative(moved, exclude_days=(day,))
                conflicts.append(
                    self._conflict(
                        f"daily-limit-{class_id}-{subject_id}-{day.value}",
                        ConstraintKind.daily_limit,
                        f"{subject.code} for {klass.name} on {day.value}: {daily.detail}",
                        [item.slot_id for item in by_day[day]],
                        moved,
                        alternative,
                    )
                )
        return conflicts

    def _distribution_conflicts(self) -> list[ConflictDetail]:
        conflicts: list[ConflictDetail] = []
        for (class_id, subject_id), members in sorted(self._unit_groups().items()):
            subject = self.snapshot.subjects[subject_id]
            by_day: dict[Weekday, list[Placement]] = defaultdict(list)
            for item in members:
                by_day[item.day].append(item)
            spread_possible = min(len(members), len(self.working_days))
            if len(by_day) >= spread_possible:
                continue
            for day in sorted(by_day, key=DAY_ORDER.__getitem__):
                cluster = by_day[day]
                # Clusters above the daily limit are already reported as overflow.
                if len(cluster) < 2 or len(cluster) > subject.max_classes_per_day:
                    continue
                moved = cluster[-1]
                alternative = self.nearest_alternative(moved, exclude_days=tuple(by_day))
                conflicts.append(
                    self._conflict(
                        f"uneven-{class_id}-{subject_id}-{day.value}",
                        ConstraintKind.uneven_distribution,
                        (
                            f"{self._label(moved)} has {len(cluster)} sessions on {day.value} "
                            f"while {len(self.working_days) - len(by_day)} working day(s) have none"
                        ),
                        [item.slot_id for item in cluster],
                        moved,
                        alternative,
                    )
                )
        return conflicts

    def _load_conflicts(self) -> list[ConflictDetail]:
        conflicts: list[ConflictDetail] = []
        by_faculty: dict[str, list[Placement]] = defaultdict(list)
        for placement in self.placements:
            by_faculty[placement.faculty_id].append(placement)
        for faculty_id in sorted(by_faculty):
            members = by_faculty[faculty_id]
            if len(members) < 3:
                continue
            minutes_by_day: dict[Weekday, int] = defaultdict(int)
            for item in members:
                minutes_by_day[item.day] += item.end - item.start
            if len(minutes_by_day) == len(self.working_days):
                continue
            total = sum(minutes_by_day.values())
            busiest = min(minutes_by_day, key=lambda day: (-minutes_by_day[day], DAY_ORDER[day]))
            if minutes_by_day[busiest] * 2 <= total:
                continue
            day_slots = [item for item in members if item.day == busiest]
            moved = day_slots[-1]
            alternative = self.nearest_alternative(moved, exclude_days=(busiest,))
            faculty = self.snapshot.faculty[faculty_id]
            conflicts.append(
                self._conflict(
                    f"faculty-load-{faculty_id}",
                    ConstraintKind.faculty_load_imbalance,
                    (
                        f"{faculty.name} teaches {minutes_by_day[busiest]} of {total} weekly minutes "
                        f"on {busiest.value}"
                    ),
                    [item.slot_id for item in day_slots],
                    moved,
                    alternative,
                )
            )
        return conflicts

    def _sort_key(self, conflict: ConflictDetail) -> tuple:
        earliest = min(self.by_id[slot_id].sort_key[:2] for slot_id in conflict.slot_ids)
        return SEVERITY_RANK[conflict.severity], earliest, conflict.type, conflict.id

    def detect_conflicts(self) -> list[ConflictDetail]:
        conflicts = [
            *self._overlap_conflicts(),
            *self._static_conflicts(),
            *self._limit_conflicts(),
            *self._distribution_conflicts(),
            *self._load_conflicts(),
        ]
        conflicts.sort(key=self._sort_key)
        logger.info(
            "Audited timetable %s slots=%s conflicts=%s high=%s",
            self.timetable.id,
            len(self.placements),
            len(conflicts),
            sum(1 for item in conflicts if item.severity == "high"),
        )
        return conflicts
