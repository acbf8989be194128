from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Sequence
import logging
from statistics import mean, pstdev

from timetabler.core.config import Settings, get_settings
from timetabler.schemas.conflict import ConflictDetail, TimetableMetrics
from timetabler.schemas.domain import DAY_ORDER, Interval, RoomType, SessionType, TimetablePayload, parse_time_to_minutes
from timetabler.schemas.generator import FeasibilityEstimate, GenerationConfig
from timetabler.services.availability import placement_windows
from timetabler.services.scheduler import session_periods, sessions_required
from timetabler.services.snapshot import DomainSnapshot

logger = logging.getLogger(__name__)

SEVERITY_PENALTY = {"high": 10.0, "medium": 4.0, "low": 1.0}
LEAVE_WINDOW_DAYS = 30


def _teaching_window(settings: Settings) -> Interval:
    return parse_time_to_minutes(settings.teaching_day_start), parse_time_to_minutes(settings.teaching_day_end)


def _clipped(start: int, end: int, clip: Interval) -> int:
    return max(0, min(end, clip[1]) - max(start, clip[0]))


def _working_days(settings: Settings) -> list:
    return sorted(set(settings.working_days), key=DAY_ORDER.__getitem__)


def room_utilization(timetable: TimetablePayload, snapshot: DomainSnapshot, settings: Settings) -> float:
    """Booked room minutes over free room minutes inside the teaching day, as a percentage."""
    window = _teaching_window(settings)
    days = _working_days(settings)
    available = sum(
        snapshot.room_index.total_free_minutes(room_id, days, clip=window) for room_id in snapshot.rooms
    )
    if available <= 0:
        return 0.0
    booked = sum(
        _clipped(slot.start_minutes, timetable.slot_end_minutes(slot), window)
        for slot in timetable.slots
        if slot.day in days
    )
    return round(min(100.0, booked * 100.0 / available), 1)


def faculty_workload_balance(timetable: TimetablePayload, snapshot: DomainSnapshot) -> float:
    """100 x (1 - coefficient of variation) of weekly teaching minutes."""
    minutes: Counter[str] = Counter()
    for klass in snapshot.classes.values():
        for subject_id in klass.subjects:
            subject = snapshot.subjects.get(subject_id)
            if subject is not None:
                minutes.setdefault(subject.faculty_id, 0)
    for slot in timetable.slots:
        minutes[slot.faculty_id] += timetable.slot_end_minutes(slot) - slot.start_minutes

    loads = [minutes[faculty_id] for faculty_id in sorted(minutes)]
    if len(loads) < 2 or mean(loads) == 0:
        return 100.0
    variation = pstdev(loads) / mean(loads)
    return round(max(0.0, 100.0 * (1.0 - variation)), 1)


def recommendations(metrics: TimetableMetrics, settings: Settings) -> list[str]:
    suggestions: list[str] = []
    high = metrics.severity_counts.get("high", 0)
    if high:
        suggestions.append(f"Consider adding more rooms or faculty hours to resolve {high} high severity conflict(s)")
    if metrics.faculty_workload_balance < settings.low_balance_threshold:
        suggestions.append(
            "Faculty workload is unbalanced. Consider redistributing subjects or hiring additional faculty."
        )
    if metrics.room_utilization < settings.low_utilization_threshold:
        suggestions.append(
            "Room utilization is below target. Consider consolidating smaller classes or releasing rooms."
        )
    return suggestions


def summarize(
    timetable: TimetablePayload,
    snapshot: DomainSnapshot,
    conflicts: Sequence[ConflictDetail],
    settings: Settings | None = None,
) -> TimetableMetrics:
    settings = settings or get_settings()
    severity_counts = {severity: 0 for severity in SEVERITY_PENALTY}
    for conflict in conflicts:
        severity_counts[conflict.severity] += 1
    score = 100.0 - sum(SEVERITY_PENALTY[severity] * count for severity, count in severity_counts.items())

    return TimetableMetrics(
        room_utilization=room_utilization(timetable, snapshot, settings),
        faculty_workload_balance=faculty_workload_balance(timetable, snapshot),
        conflict_count=len(conflicts),
        severity_counts=severity_counts,
        score=max(0.0, score),
        placed_sessions=len(timetable.slots),
    )


def estimate_capacity(
    snapshot: DomainSnapshot,
    config: GenerationConfig | None = None,
    settings: Settings | None = None,
) -> FeasibilityEstimate:
    """Cheap aggregate check run before a search.

    Compares required session minutes with the room time and faculty time on
    offer. A pass does not guarantee a timetable exists; a failure means none
    can.
    """
    config = config or GenerationConfig()
    settings = settings or get_settings()
    window = _teaching_window(settings)
    days = _working_days(settings)
    errors: list[str] = []

    if not snapshot.rooms:
        errors.append("At least one room is required")
    if not snapshot.classes:
        errors.append("At least one class is required")
    if not days:
        errors.append("At least one working day is required")

    required_sessions = 0
    required_minutes = 0
    lab_minutes = 0
    faculty_required: dict[str, int] = defaultdict(int)
    for klass in snapshot.classes.values():
        for subject_id in dict.fromkeys(klass.subjects):
            subject = snapshot.subjects[subject_id]
            sessions = sessions_required(subject, config.session_count_policy)
            minutes = sessions * session_periods(subject, settings) * settings.period_minutes
            required_sessions += sessions
            required_minutes += minutes
            faculty_required[subject.faculty_id] += minutes
            if subject.type == SessionType.lab:
                lab_minutes += minutes

    room_minutes = 0
    lab_room_minutes = 0
    for room in snapshot.rooms.values():
        available = sum(
            end - start
            for day in days
            for start, end in placement_windows(snapshot.room_index, room, day, window)
        )
        room_minutes += available
        if room.type == RoomType.lab:
            lab_room_minutes += available

    if required_minutes > room_minutes:
        errors.append(f"Insufficient room time: {required_minutes} minutes required, {room_minutes} available")
    if lab_minutes > lab_room_minutes:
        errors.append(f"Insufficient lab room time: {lab_minutes} minutes required, {lab_room_minutes} available")

    faculty_minutes = 0
    for faculty_id in sorted(faculty_required):
        member = snapshot.faculty[faculty_id]
        free = sum(
            end - start
            for day in days
            for start, end in placement_windows(snapshot.faculty_index, member, day, window)
        )
        # Leave taken over a month thins out the weekly hours proportionally.
        effective = int(free * max(0.0, 1 - member.leave_day_count / LEAVE_WINDOW_DAYS))
        faculty_minutes += effective
        if faculty_required[faculty_id] > effective:
            errors.append(
                f"Insufficient capacity for faculty {member.name}: "
                f"{faculty_required[faculty_id]} minutes required, {effective} available"
            )

    if errors:
        logger.warning("Capacity pre-check failed: %s", "; ".join(errors))
    return FeasibilityEstimate(
        valid=not errors,
        errors=errors,
        required_sessions=required_sessions,
        required_minutes=required_minutes,
        room_minutes=room_minutes,
        faculty_minutes=faculty_minutes,
    )
