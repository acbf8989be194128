from collections import Counter

import pytest

from conftest import ISSUED_AT

from timetabler.core.exceptions import InfeasibilityError, SchedulerError, SearchTruncated
from timetabler.schemas.domain import Weekday
from timetabler.schemas.generator import GenerationConfig
from timetabler.services import scheduler as scheduler_module
from timetabler.services.engine import audit, generate
from timetabler.services.scheduler import CancellationToken, Scheduler, sessions_required
from timetabler.services.snapshot import build_snapshot


def _generate(data, settings, **config):
    return generate(
        data["classes"],
        data["subjects"],
        data["faculty"],
        data["rooms"],
        GenerationConfig(issued_at=ISSUED_AT, **config),
        settings=settings,
    )


def _audit(timetable, data, settings):
    return audit(timetable, data["classes"], data["subjects"], data["faculty"], data["rooms"], settings=settings)


def test_single_subject_is_spread_over_three_days(scenario_a, settings):
    result = _generate(scenario_a, settings)

    assert result.status == "complete"
    slots = result.timetable.slots
    assert len(slots) == 3
    assert [slot.day for slot in slots] == [Weekday.monday, Weekday.wednesday, Weekday.friday]
    assert {slot.time for slot in slots} == {"09:00"}
    assert {(slot.faculty_id, slot.room_id, slot.class_id) for slot in slots} == {("f1", "r1", "c1")}
    assert result.timetable.period_minutes == 60


def test_generated_slots_stay_inside_faculty_hours(scenario_a, settings):
    result = _generate(scenario_a, settings)

    for slot in result.timetable.slots:
        assert "09:00" <= slot.time <= "14:00"


def test_shared_faculty_is_never_double_booked(shared_faculty, settings):
    data = shared_faculty(
        {
            "Monday": {"start": "09:00", "end": "10:00"},
            "Tuesday": {"start": "09:00", "end": "10:00"},
        }
    )

    result = _generate(data, settings)

    assert result.status == "complete"
    positions = {(slot.day, slot.time) for slot in result.timetable.slots}
    assert positions == {(Weekday.monday, "09:00"), (Weekday.tuesday, "09:00")}
    assert _audit(result.timetable, data, settings) == []


def test_single_shared_window_is_reported_infeasible(shared_faculty, settings):
    data = shared_faculty({"Monday": {"start": "09:00", "end": "10:00"}})

    result = _generate(data, settings)

    assert result.status == "infeasible"
    assert result.timetable is None
    blocked = result.infeasibility.blocked
    assert [item.unit_id for item in blocked] == ["c2:s1"]
    assert blocked[0].constraint == "faculty_double_booking"
    assert blocked[0].placed_sessions == 0
    assert "Class B" in blocked[0].reason
    assert result.stats.backtracks == 1

    with pytest.raises(InfeasibilityError) as exc_info:
        result.raise_for_status()
    assert exc_info.value.status_code == 409
    assert exc_info.value.details["blocked"][0]["unitId"] == "c2:s1"


def test_infeasibility_blames_the_competing_unit_not_its_own_sessions(settings):
    data = {
        "classes": [
            {"id": "c1", "name": "Class A", "studentCount": 30, "subjects": ["s1"]},
            {"id": "c2", "name": "Class B", "studentCount": 30, "subjects": ["s2"]},
        ],
        "subjects": [
            {
                "id": "s1",
                "name": "Algorithms",
                "code": "CS101",
                "credits": 2,
                "type": "lecture",
                "facultyId": "f1",
                "maxClassesPerWeek": 2,
                "maxClassesPerDay": 1,
            },
            {
                "id": "s2",
                "name": "Compilers",
                "code": "CS201",
                "credits": 1,
                "type": "lecture",
                "facultyId": "f1",
                "maxClassesPerWeek": 1,
                "maxClassesPerDay": 1,
            },
        ],
        "faculty": [
            {
                "id": "f1",
                "name": "Prof A",
                "email": "a@example.com",
                "subjects": ["s1", "s2"],
                "availability": {
                    "Monday": {"start": "09:00", "end": "10:00"},
                    "Tuesday": {"start": "09:00", "end": "10:00"},
                },
            }
        ],
        "rooms": [{"id": "r1", "name": "Room 101", "type": "classroom", "capacity": 100}],
    }

    result = _generate(data, settings)

    assert result.status == "infeasible"
    blocked = result.infeasibility.blocked
    assert [item.unit_id for item in blocked] == ["c2:s2"]
    assert blocked[0].constraint == "faculty_double_booking"
    assert "class_double_booking" not in blocked[0].rejections
    assert "daily_limit" not in blocked[0].rejections


def test_lab_without_lab_room_is_infeasible_before_search(department, settings):
    department["rooms"] = [room for room in department["rooms"] if room["type"] != "lab"]

    result = _generate(department, settings)

    assert result.status == "infeasible"
    blocked = {item.unit_id: item for item in result.infeasibility.blocked}
    assert set(blocked) == {"c1:s3"}
    assert blocked["c1:s3"].constraint == "room_type_mismatch"
    assert result.stats.steps == 0


def test_oversized_class_is_infeasible(scenario_a, settings):
    scenario_a["classes"][0]["studentCount"] = 200

    result = _generate(scenario_a, settings)

    assert result.status == "infeasible"
    assert result.infeasibility.blocked[0].constraint == "room_capacity"


def test_too_few_teaching_days_for_daily_limit(scenario_a, settings, weekly_window):
    scenario_a["faculty"][0]["availability"] = weekly_window(days=["Monday", "Tuesday"])

    result = _generate(scenario_a, settings)

    assert result.status == "infeasible"
    blocked = result.infeasibility.blocked[0]
    assert blocked.constraint == "daily_limit"
    assert "3 distinct days" in blocked.reason


def test_department_timetable_is_sound(department, settings):
    result = _generate(department, settings)

    assert result.status == "complete"
    timetable = result.timetable
    assert len(timetable.slots) == result.required_sessions == 3 + 2 + 2 + 3 + 2

    conflicts = _audit(timetable, department, settings)
    assert [item for item in conflicts if item.severity == "high"] == []

    subjects = {item["id"]: item for item in department["subjects"]}
    weekly = Counter((slot.class_id, slot.subject_id) for slot in timetable.slots)
    daily = Counter((slot.class_id, slot.subject_id, slot.day) for slot in timetable.slots)
    for (_, subject_id), count in weekly.items():
        assert count <= subjects[subject_id]["maxClassesPerWeek"]
    for (_, subject_id, _), count in daily.items():
        assert count <= subjects[subject_id]["maxClassesPerDay"]

    labs = [slot for slot in timetable.slots if slot.subject_id == "s3"]
    assert {slot.room_id for slot in labs} == {"r2"}
    assert {slot.duration for slot in labs} == {2}


def test_generation_is_deterministic(department, settings):
    first = _generate(department, settings)
    second = _generate(department, settings)

    assert first.timetable.model_dump_json() == second.timetable.model_dump_json()
    assert first.timetable.id.startswith("tt-")


def test_unstamped_runs_are_byte_identical(scenario_a, settings):
    def run():
        return generate(
            scenario_a["classes"], scenario_a["subjects"], scenario_a["faculty"], scenario_a["rooms"], settings=settings
        )

    first, second = run(), run()

    assert first.timetable.model_dump_json() == second.timetable.model_dump_json()
    assert first.timetable.created_at == scheduler_module.UNSTAMPED


def test_timetable_id_tracks_the_input(department, settings):
    first = _generate(department, settings)
    department["classes"][1]["studentCount"] = 44
    second = _generate(department, settings)

    assert first.timetable.id != second.timetable.id


def test_seeded_runs_repeat_and_record_the_seed(department, settings):
    first = _generate(department, settings, random_seed=7)
    second = _generate(department, settings, random_seed=7)

    assert first.seed == 7
    assert "seed 7" in first.timetable.description
    assert first.timetable.model_dump_json() == second.timetable.model_dump_json()
    assert [item for item in _audit(first.timetable, department, settings) if item.severity == "high"] == []


def test_backtrack_budget_truncates_with_partial_result(shared_faculty, settings):
    data = shared_faculty({"Monday": {"start": "09:00", "end": "10:00"}})

    result = _generate(data, settings, max_backtrack_steps=0)

    assert result.status == "truncated"
    assert result.truncated is True
    assert "Backtrack budget" in result.reason
    assert len(result.timetable.slots) == 1

    with pytest.raises(SearchTruncated) as exc_info:
        result.raise_for_status()
    assert exc_info.value.details == {"status": "truncated", "placed_sessions": 1, "required_sessions": 2}


def test_time_budget_truncates_with_partial_result(shared_faculty, settings, monkeypatch):
    # The clock reads zero at the start and for the first placement, then jumps past the deadline.
    ticks = iter([0.0, 0.0])
    monkeypatch.setattr(scheduler_module, "perf_counter", lambda: next(ticks, 60.0))
    data = shared_faculty({"Monday": {"start": "09:00", "end": "10:00"}})

    result = _generate(data, settings, time_budget_ms=1000)

    assert result.status == "truncated"
    assert result.truncated is True
    assert result.reason == "Time budget of 1000 ms exhausted"
    assert [slot.id for slot in result.timetable.slots] == ["c1-s1-1"]


class CancelAfterChecks(CancellationToken):
    def __init__(self, checks: int) -> None:
        super().__init__()
        self.remaining = checks

    @property
    def cancelled(self) -> bool:
        if self.remaining == 0 and not super().cancelled:
            self.cancel("Superseded mid-search")
        self.remaining -= 1
        return super().cancelled


def test_cancelling_between_placements_keeps_the_partial_timetable(scenario_a, settings):
    result = generate(
        scenario_a["classes"],
        scenario_a["subjects"],
        scenario_a["faculty"],
        scenario_a["rooms"],
        GenerationConfig(issued_at=ISSUED_AT),
        settings=settings,
        cancel_token=CancelAfterChecks(2),
    )

    assert result.status == "cancelled"
    assert result.reason == "Superseded mid-search"
    assert [slot.id for slot in result.timetable.slots] == ["c1-s1-1", "c1-s1-2"]
    assert [slot.day for slot in result.timetable.slots] == [Weekday.monday, Weekday.wednesday]


def test_cancelled_run_returns_reason(scenario_a, settings):
    token = CancellationToken()
    token.cancel("Superseded by a newer request")
    snapshot = build_snapshot(scenario_a["classes"], scenario_a["subjects"], scenario_a["faculty"], scenario_a["rooms"])

    result = Scheduler(snapshot, GenerationConfig(issued_at=ISSUED_AT), settings=settings, cancel_token=token).run()

    assert result.status == "cancelled"
    assert result.truncated is True
    assert result.reason == "Superseded by a newer request"
    assert result.timetable.slots == []


def test_credits_policy_uses_subject_credits(scenario_a, settings):
    scenario_a["subjects"][0]["credits"] = 2

    result = _generate(scenario_a, settings, session_count_policy="credits")

    assert len(result.timetable.slots) == 2


def test_explicit_sessions_per_week_wins(scenario_a):
    snapshot = build_snapshot(scenario_a["classes"], scenario_a["subjects"], scenario_a["faculty"], scenario_a["rooms"])
    subject = snapshot.subjects["s1"].model_copy(update={"sessions_per_week": 1})

    assert sessions_required(subject, "max_per_week") == 1
    assert sessions_required(snapshot.subjects["s1"], "max_per_week") == 3
    assert sessions_required(snapshot.subjects["s1"], "credits") == 3


def test_soft_weight_overrides_are_validated():
    with pytest.raises(ValueError):
        GenerationConfig(soft_weight_overrides={"unknown": 1.0})

    config = GenerationConfig.model_validate({"softWeightOverrides": {"room_fit": 0}})
    assert config.resolved_weights().room_fit == 0
    assert config.resolved_weights().same_day_repeat == 6.0


def test_no_working_days_is_a_configuration_error(scenario_a, settings):
    broken = settings.model_copy(update={"working_days": []})

    with pytest.raises(SchedulerError):
        _generate(scenario_a, broken)
