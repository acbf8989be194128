from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import json
import logging
import math
import random
import threading
from time import perf_counter

from timetabler.core.config import Settings, get_settings
from timetabler.core.exceptions import SchedulerError
from timetabler.schemas.domain import (
    DAY_ORDER,
    ClassPayload,
    Interval,
    RoomPayload,
    RoomType,
    SessionType,
    SubjectPayload,
    TimetablePayload,
    TimetableSlotPayload,
    Weekday,
    minutes_to_time,
    parse_time_to_minutes,
)
from timetabler.schemas.generator import (
    BlockedDemand,
    GenerationConfig,
    GenerationResult,
    InfeasibilityReport,
    SearchStats,
    SessionCountPolicy,
)
from timetabler.services.availability import placement_windows
from timetabler.services.constraints import ConstraintChecker, ConstraintKind
from timetabler.services.search_state import Placement, SearchState
from timetabler.services.snapshot import DomainSnapshot

logger = logging.getLogger(__name__)

# Timestamp for runs without issued_at; output must not depend on the wall clock.
UNSTAMPED = datetime(1970, 1, 1, tzinfo=timezone.utc)


class CancellationToken:
    """Cooperative cancellation flag, checked between placements."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason


@dataclass(frozen=True)
class PlacementOption:
    day: Weekday
    start: int
    end: int
    room_id: str

    @property
    def order_key(self) -> tuple[int, int, str]:
        return DAY_ORDER[self.day], self.start, self.room_id


@dataclass(frozen=True)
class DemandUnit:
    unit_id: str
    class_id: str
    subject_id: str
    faculty_id: str
    subject_code: str
    session_type: SessionType
    sessions: int
    duration_units: int
    max_per_day: int
    student_count: int
    room_candidate_ids: tuple[str, ...]
    options: tuple[PlacementOption, ...]
    static_rejections: dict[str, int] = field(default_factory=dict)

    @property
    def option_days(self) -> set[Weekday]:
        return {option.day for option in self.options}


@dataclass
class _Frame:
    request_index: int
    candidates: list[PlacementOption]
    cursor: int = 0


@dataclass
class _DeadEnd:
    count: int
    rejections: Counter


def sessions_required(subject: SubjectPayload, policy: SessionCountPolicy) -> int:
    """Weekly session count for one (class, subject) demand unit.

    An explicit ``sessions_per_week`` always wins. Otherwise ``max_per_week``
    uses the subject's weekly ceiling and ``credits`` uses one session per
    credit, capped by that ceiling.
    """
    if subject.sessions_per_week is not None:
        return subject.sessions_per_week
    if policy == "credits":
        return min(subject.credits, subject.max_classes_per_week)
    return subject.max_classes_per_week


def session_periods(subject: SubjectPayload, settings: Settings) -> int:
    if subject.duration is not None:
        return subject.duration
    if subject.type == SessionType.lab:
        return settings.lab_session_periods
    return 1


class Scheduler:
    def __init__(
        self,
        snapshot: DomainSnapshot,
        config: GenerationConfig | None = None,
        *,
        settings: Settings | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.config = config or GenerationConfig()
        self.settings = settings or get_settings()
        self.cancel_token = cancel_token
        self.period = self.settings.period_minutes

        self.working_days = sorted(set(self.settings.working_days), key=DAY_ORDER.__getitem__)
        if not self.working_days:
            raise SchedulerError("No working days configured for timetable generation")
        self.teaching_window: Interval = (
            parse_time_to_minutes(self.settings.teaching_day_start),
            parse_time_to_minutes(self.settings.teaching_day_end),
        )

        self.max_backtrack_steps = (
            self.config.max_backtrack_steps
            if self.config.max_backtrack_steps is not None
            else self.settings.max_backtrack_steps
        )
        self.time_budget_ms = (
            self.config.time_budget_ms if self.config.time_budget_ms is not None else self.settings.time_budget_ms
        )
        self.seed = self.config.random_seed
        self.random = random.Random(self.seed) if self.seed is not None else None
        self.checker = ConstraintChecker(snapshot, self.config.resolved_weights(), self.period)

        self.units = self._build_demand_units()
        self.unit_order = self._unit_priority_order()
        self.requests: list[tuple[int, int]] = [
            (unit_index, ordinal)
            for unit_index in self.unit_order
            for ordinal in range(self.units[unit_index].sessions)
        ]

    # ---------- demand units ----------

    def _room_candidates_for(self, subject: SubjectPayload, klass: ClassPayload, rejections: Counter) -> list[RoomPayload]:
        rooms = sorted(self.snapshot.rooms.values(), key=lambda room: room.id)
        if subject.type == SessionType.lab:
            candidates = [room for room in rooms if room.type == RoomType.lab]
        else:
            candidates = [room for room in rooms if room.type != RoomType.lab]
            if not candidates:
                candidates = rooms
        if not candidates:
            rejections[ConstraintKind.room_type_mismatch.value] += len(rooms) or 1
            return []
        fitting = [room for room in candidates if room.capacity >= klass.student_count]
        if not fitting:
            rejections[ConstraintKind.room_capacity.value] += len(candidates)
        return fitting

    def _faculty_windows(self, faculty_id: str, day: Weekday) -> tuple[Interval, ...]:
        return placement_windows(
            self.snapshot.faculty_index,
            self.snapshot.faculty[faculty_id],
            day,
            self.teaching_window,
        )

    def _build_options(
        self,
        subject: SubjectPayload,
        rooms: list[RoomPayload],
        length: int,
        rejections: Counter,
    ) -> tuple[PlacementOption, ...]:
        options: list[PlacementOption] = []
        room_index = self.snapshot.room_index
        for day in self.working_days:
            windows = self._faculty_windows(subject.faculty_id, day)
            if not windows:
                rejections[ConstraintKind.faculty_unavailable.value] += 1
                continue
            for window_start, window_end in windows:
                if window_end - window_start < length:
                    rejections[ConstraintKind.faculty_unavailable.value] += 1
                    continue
                for start in range(window_start, window_end - length + 1, self.period):
                    for room in rooms:
                        if room_index.is_free(room.id, day, start, length):
                            options.append(PlacementOption(day=day, start=start, end=start + length, room_id=room.id))
                        else:
                            rejections[ConstraintKind.room_unavailable.value] += 1
        return tuple(options)

    def _build_demand_units(self) -> list[DemandUnit]:
        units: list[DemandUnit] = []
        for class_id in sorted(self.snapshot.classes):
            klass = self.snapshot.classes[class_id]
            for subject_id in dict.fromkeys(klass.subjects):
                subject = self.snapshot.subjects[subject_id]
                sessions = sessions_required(subject, self.config.session_count_policy)
                duration = session_periods(subject, self.settings)
                rejections: Counter = Counter()
                rooms = self._room_candidates_for(subject, klass, rejections)
                options = self._build_options(subject, rooms, duration * self.period, rejections) if rooms else ()
                units.append(
                    DemandUnit(
                        unit_id=f"{class_id}:{subject_id}",
                        class_id=class_id,
                        subject_id=subject_id,
                        faculty_id=subject.faculty_id,
                        subject_code=subject.code,
                        session_type=subject.type,
                        sessions=sessions,
                        duration_units=duration,
                        max_per_day=subject.max_classes_per_day,
                        student_count=klass.student_count,
                        room_candidate_ids=tuple(room.id for room in rooms),
                        options=options,
                        static_rejections=dict(rejections),
                    )
                )
        return units

    def _unit_priority_order(self) -> list[int]:
        def sort_key(unit_index: int) -> tuple:
            unit = self.units[unit_index]
            # Fewest options per required session first (most constrained first).
            return (
                len(unit.options) / max(1, unit.sessions),
                -unit.duration_units,
                -unit.student_count,
                unit.class_id,
                unit.subject_id,
            )

        return sorted(range(len(self.units)), key=sort_key)

    # ---------- static feasibility ----------

    def _static_blockers(self) -> list[BlockedDemand]:
        blocked: list[BlockedDemand] = []
        for unit in self.units:
            if unit.sessions == 0:
                continue
            if not unit.options:
                rejections = unit.static_rejections or {ConstraintKind.faculty_unavailable.value: 1}
                constraint = self._dominant(Counter(rejections))
                blocked.append(
                    self._blocked(
                        unit,
                        placed=0,
                        constraint=constraint,
                        rejections=rejections,
                        reason=f"no day, time and room satisfies {constraint.replace('_', ' ')}",
                    )
                )
                continue
            days_needed = math.ceil(unit.sessions / unit.max_per_day)
            days_available = len(unit.option_days)
            if days_available < days_needed:
                blocked.append(
                    self._blocked(
                        unit,
                        placed=0,
                        constraint=ConstraintKind.daily_limit.value,
                        rejections={ConstraintKind.daily_limit.value: days_needed - days_available},
                        reason=(
                            f"needs {days_needed} distinct days at {unit.max_per_day} per day "
                            f"but only {days_available} day(s) are usable"
                        ),
                    )
                )
        return blocked

    @staticmethod
    def _dominant(rejections: Counter) -> str:
        if not rejections:
            return ConstraintKind.daily_limit.value
        return sorted(rejections.items(), key=lambda item: (-item[1], item[0]))[0][0]

    def _blocked(self, unit: DemandUnit, *, placed: int, constraint: str, rejections: dict, reason: str) -> BlockedDemand:
        klass = self.snapshot.classes[unit.class_id]
        return BlockedDemand(
            unit_id=unit.unit_id,
            class_id=unit.class_id,
            subject_id=unit.subject_id,
            required_sessions=unit.sessions,
            placed_sessions=placed,
            constraint=constraint,
            reason=f"{unit.subject_code} for {klass.name}: {reason}",
            rejections=dict(rejections),
        )

    # ---------- search ----------

    def _placement(self, unit: DemandUnit, ordinal: int, option: PlacementOption) -> Placement:
        return Placement(
            slot_id=f"{unit.class_id}-{unit.subject_id}-{ordinal + 1}",
            class_id=unit.class_id,
            subject_id=unit.subject_id,
            faculty_id=unit.faculty_id,
            room_id=option.room_id,
            day=option.day,
            start=option.start,
            end=option.end,
            session_type=unit.session_type,
        )

    @staticmethod
    def _ordering_floor(ordinal: int, state: SearchState) -> tuple[int, int] | None:
        if ordinal == 0:
            return None
        previous = state.placements[-1]
        return DAY_ORDER[previous.day], previous.start

    @staticmethod
    def _before_floor(option: PlacementOption, floor: tuple[int, int] | None) -> bool:
        # Sessions of one unit are interchangeable; place them in time order.
        return floor is not None and (DAY_ORDER[option.day], option.start) <= floor

    def _ranked_candidates(self, request_index: int, state: SearchState) -> list[PlacementOption]:
        unit_index, ordinal = self.requests[request_index]
        unit = self.units[unit_index]
        floor = self._ordering_floor(ordinal, state)

        scored: list[tuple[float, PlacementOption]] = []
        for option in unit.options:
            if self._before_floor(option, floor):
                continue
            placement = self._placement(unit, ordinal, option)
            if self.checker.limit_violations(placement, state):
                continue
            if self.checker.booking_violations(placement, state):
                continue
            scored.append((self.checker.soft_penalty(placement, state), option))

        if self.random is not None:
            self.random.shuffle(scored)
            scored.sort(key=lambda item: item[0])
        else:
            scored.sort(key=lambda item: (item[0], item[1].order_key))
        return [option for _, option in scored]

    def _diagnose(self, request_index: int, state: SearchState) -> tuple[Counter, Counter]:
        """Count why each option of a dead-end frame was rejected.

        Options skipped by the time-order rule are left out. Bookings that
        clash only with the unit's own earlier sessions go into the second
        counter, so another unit's demand is never blamed on them.
        """
        unit_index, ordinal = self.requests[request_index]
        unit = self.units[unit_index]
        floor = self._ordering_floor(ordinal, state)
        own_slots = {
            item.slot_id
            for item in state.placements
            if item.class_id == unit.class_id and item.subject_id == unit.subject_id
        }
        rejections: Counter = Counter()
        own_rejections: Counter = Counter()
        for option in unit.options:
            if self._before_floor(option, floor):
                continue
            placement = self._placement(unit, ordinal, option)
            for violation in self.checker.limit_violations(placement, state):
                rejections[violation.kind.value] += 1
            for violation in self.checker.booking_violations(placement, state):
                if set(violation.blocking_slot_ids) <= own_slots:
                    own_rejections[violation.kind.value] += 1
                else:
                    rejections[violation.kind.value] += 1
        return rejections, own_rejections

    @staticmethod
    def _record_dead_end(dead_ends: dict[int, _DeadEnd], unit_index: int, rejections: Counter) -> None:
        entry = dead_ends.get(unit_index)
        if entry is None:
            dead_ends[unit_index] = _DeadEnd(count=1, rejections=rejections)
        else:
            entry.count += 1

    def _search(self) -> tuple[str, tuple[Placement, ...], dict[int, _DeadEnd], SearchStats, str | None]:
        state = SearchState()
        stats = SearchStats()
        best: tuple[Placement, ...] = ()
        dead_ends: dict[int, _DeadEnd] = {}
        own_dead_ends: dict[int, _DeadEnd] = {}
        total = len(self.requests)
        started = perf_counter()
        deadline = started + self.time_budget_ms / 1000.0

        if total == 0:
            return "complete", best, dead_ends, stats, None

        frames = [_Frame(0, self._ranked_candidates(0, state))]
        status = "infeasible"
        reason: str | None = None
        while frames:
            if self.cancel_token is not None and self.cancel_token.cancelled:
                status, reason = "cancelled", self.cancel_token.reason or "Cancelled by caller"
                break
            if perf_counter() > deadline:
                status, reason = "truncated", f"Time budget of {self.time_budget_ms} ms exhausted"
                break

            frame = frames[-1]
            if frame.cursor >= len(frame.candidates):
                if len(frames) > 1 and stats.backtracks >= self.max_backtrack_steps:
                    status, reason = "truncated", f"Backtrack budget of {self.max_backtrack_steps} steps exhausted"
                    break
                if not frame.candidates:
                    unit_index, _ = self.requests[frame.request_index]
                    rejections, own_rejections = self._diagnose(frame.request_index, state)
                    if rejections:
                        self._record_dead_end(dead_ends, unit_index, rejections)
                    else:
                        self._record_dead_end(own_dead_ends, unit_index, own_rejections)
                frames.pop()
                if frames:
                    undone = state.undo()
                    stats.backtracks += 1
                    logger.debug("Backtracking over %s on %s at %s", undone.slot_id, undone.day.value, undone.start)
                continue

            option = frame.candidates[frame.cursor]
            frame.cursor += 1
            unit_index, ordinal = self.requests[frame.request_index]
            state.commit(self._placement(self.units[unit_index], ordinal, option))
            stats.steps += 1
            if len(state) > len(best):
                best = state.placements
                stats.max_depth = len(best)
            if len(state) == total:
                status = "complete"
                break
            next_index = frame.request_index + 1
            frames.append(_Frame(next_index, self._ranked_candidates(next_index, state)))

        stats.runtime_ms = int((perf_counter() - started) * 1000)
        # Blame a unit's own sessions only when nothing else blocked the search.
        return status, best, dead_ends or own_dead_ends, stats, reason

    # ---------- output ----------

    def timetable_id(self) -> str:
        payload = {
            "classes": [self.snapshot.classes[key].model_dump(mode="json") for key in sorted(self.snapshot.classes)],
            "subjects": [self.snapshot.subjects[key].model_dump(mode="json") for key in sorted(self.snapshot.subjects)],
            "faculty": [self.snapshot.faculty[key].model_dump(mode="json") for key in sorted(self.snapshot.faculty)],
            "rooms": [self.snapshot.rooms[key].model_dump(mode="json") for key in sorted(self.snapshot.rooms)],
            "config": self.config.model_dump(mode="json", exclude={"issued_at"}),
            "period": self.period,
            "days": [day.value for day in self.working_days],
        }
        digest = hashlib.blake2b(json.dumps(payload, sort_keys=True).encode("utf-8"), digest_size=8).hexdigest()
        return f"tt-{digest}"

    def _build_timetable(self, placements: tuple[Placement, ...]) -> TimetablePayload:
        ordered = sorted(placements, key=lambda item: (DAY_ORDER[item.day], item.start, item.class_id, item.room_id))
        issued = self.config.issued_at or UNSTAMPED
        description = self.config.description
        if self.seed is not None:
            description = f"{description} (seed {self.seed})".strip()
        return TimetablePayload(
            id=self.timetable_id(),
            title=self.config.title,
            description=description,
            department=self.config.department,
            semester=self.config.semester,
            year=self.config.year,
            shift=self.config.shift,
            period_minutes=self.period,
            slots=[
                TimetableSlotPayload(
                    id=item.slot_id,
                    day=item.day,
                    time=minutes_to_time(item.start),
                    duration=(item.end - item.start) // self.period,
                    subject_id=item.subject_id,
                    faculty_id=item.faculty_id,
                    room_id=item.room_id,
                    class_id=item.class_id,
                    type=item.session_type,
                )
                for item in ordered
            ],
            created_at=issued,
            updated_at=issued,
        )

    def _infeasibility_from_dead_ends(self, dead_ends: dict[int, _DeadEnd], best: tuple[Placement, ...]) -> InfeasibilityReport:
        placed = Counter((item.class_id, item.subject_id) for item in best)
        blocked: list[BlockedDemand] = []
        for unit_index, entry in sorted(
            dead_ends.items(),
            key=lambda item: (-item[1].count, self.units[item[0]].unit_id),
        ):
            unit = self.units[unit_index]
            constraint = self._dominant(entry.rejections)
            blocked.append(
                self._blocked(
                    unit,
                    placed=placed[(unit.class_id, unit.subject_id)],
                    constraint=constraint,
                    rejections=dict(entry.rejections),
                    reason=(
                        f"could not place all {unit.sessions} session(s); every candidate was blocked, "
                        f"mostly by {constraint.replace('_', ' ')}"
                    ),
                )
            )
        return InfeasibilityReport(
            summary=f"No conflict-free timetable exists; {len(blocked)} demand unit(s) could not be placed",
            blocked=blocked,
        )

    def run(self) -> GenerationResult:
        total = len(self.requests)
        logger.info(
            "Scheduler run units=%s sessions=%s max_backtrack_steps=%s time_budget_ms=%s seed=%s",
            len(self.units),
            total,
            self.max_backtrack_steps,
            self.time_budget_ms,
            self.seed,
        )

        static_blocked = self._static_blockers()
        if static_blocked:
            logger.warning("Generation infeasible before search: %s", ", ".join(item.unit_id for item in static_blocked))
            return GenerationResult(
                status="infeasible",
                infeasibility=InfeasibilityReport(
                    summary=f"{len(static_blocked)} demand unit(s) have no feasible placement",
                    blocked=static_blocked,
                ),
                seed=self.seed,
                required_sessions=total,
            )

        status, best, dead_ends, stats, reason = self._search()
        logger.info(
            "Scheduler finished status=%s placed=%s/%s steps=%s backtracks=%s runtime_ms=%s",
            status,
            len(best),
            total,
            stats.steps,
            stats.backtracks,
            stats.runtime_ms,
        )

        if status == "complete":
            return GenerationResult(
                status="complete",
                timetable=self._build_timetable(best),
                seed=self.seed,
                required_sessions=total,
                stats=stats,
            )
        if status == "infeasible":
            report = self._infeasibility_from_dead_ends(dead_ends, best)
            logger.warning("Generation infeasible: %s", ", ".join(item.unit_id for item in report.blocked))
            return GenerationResult(
                status="infeasible",
                infeasibility=report,
                seed=self.seed,
                required_sessions=total,
                stats=stats,
            )
        logger.warning("Generation %s: %s", status, reason)
        return GenerationResult(
            status=status,
            timetable=self._build_timetable(best),
            truncated=True,
            reason=reason,
            seed=self.seed,
            required_sessions=total,
            stats=stats,
        )
