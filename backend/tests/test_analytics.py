from timetabler.schemas.conflict import ConflictDetail, TimetableMetrics
from timetabler.services.analytics import estimate_capacity, faculty_workload_balance, recommendations, summarize
from timetabler.services.snapshot import build_snapshot, coerce_timetable


def _conflict(severity):
    return ConflictDetail(
        id=f"x-{severity}",
        type="room",
        severity=severity,
        constraint="room_double_booking",
        description="",
        slot_ids=["a"],
        suggestion=None,
    )


def _scenario_a_timetable(make_timetable, make_slot):
    return coerce_timetable(
        make_timetable(
            [
                make_slot("a", "Monday", "09:00", "s1", "f1", "r1", "c1"),
                make_slot("b", "Wednesday", "09:00", "s1", "f1", "r1", "c1"),
                make_slot("c", "Friday", "09:00", "s1", "f1", "r1", "c1"),
            ]
        )
    )


def test_summary_of_clean_timetable(scenario_a, make_timetable, make_slot, settings):
    snapshot = build_snapshot(**scenario_a)
    metrics = summarize(_scenario_a_timetable(make_timetable, make_slot), snapshot, [], settings)

    # 180 booked minutes out of 5 days x 08:00-18:00 in one room.
    assert metrics.room_utilization == 6.0
    assert metrics.faculty_workload_balance == 100.0
    assert metrics.score == 100.0
    assert metrics.conflict_count == 0
    assert metrics.placed_sessions == 3


def test_score_penalises_by_severity(scenario_a, make_timetable, make_slot, settings):
    snapshot = build_snapshot(**scenario_a)
    conflicts = [_conflict("high"), _conflict("medium"), _conflict("low"), _conflict("low")]

    metrics = summarize(_scenario_a_timetable(make_timetable, make_slot), snapshot, conflicts, settings)

    assert metrics.score == 100 - 10 - 4 - 2
    assert metrics.severity_counts == {"high": 1, "medium": 1, "low": 2}


def test_workload_balance_uses_coefficient_of_variation(two_class_entities, make_timetable, make_slot):
    snapshot = build_snapshot(**two_class_entities)
    timetable = coerce_timetable(
        make_timetable(
            [
                make_slot("a", "Monday", "09:00", "s1", "f1", "r1", "c1"),
                make_slot("b", "Tuesday", "09:00", "s1", "f1", "r1", "c1"),
                make_slot("c", "Wednesday", "09:00", "s1", "f1", "r1", "c1"),
                make_slot("d", "Monday", "09:00", "s2", "f2", "r2", "c2"),
            ]
        )
    )

    # Loads of 180 and 60 minutes: mean 120, deviation 60.
    assert faculty_workload_balance(timetable, snapshot) == 50.0


def test_recommendations_follow_thresholds(settings):
    metrics = TimetableMetrics(
        room_utilization=40.0,
        faculty_workload_balance=70.0,
        conflict_count=2,
        severity_counts={"high": 2, "medium": 0, "low": 0},
        score=80.0,
    )

    suggestions = recommendations(metrics, settings)

    assert len(suggestions) == 3
    assert "2 high severity conflict(s)" in suggestions[0]
    assert "unbalanced" in suggestions[1]
    assert "utilization" in suggestions[2]


def test_capacity_estimate_passes_for_small_load(scenario_a, settings):
    estimate = estimate_capacity(build_snapshot(**scenario_a), settings=settings)

    assert estimate.valid
    assert estimate.required_sessions == 3
    assert estimate.required_minutes == 180
    assert estimate.room_minutes == 3000
    assert estimate.faculty_minutes == 1800


def test_capacity_estimate_accounts_for_leave(scenario_a, settings):
    scenario_a["faculty"][0]["leaveDays"] = 30

    estimate = estimate_capacity(build_snapshot(**scenario_a), settings=settings)

    assert not estimate.valid
    assert estimate.errors == ["Insufficient capacity for faculty Prof A: 180 minutes required, 0 available"]


def test_capacity_estimate_flags_missing_lab_time(department, settings):
    department["rooms"] = [room for room in department["rooms"] if room["type"] != "lab"]

    estimate = estimate_capacity(build_snapshot(**department), settings=settings)

    assert not estimate.valid
    assert any(error.startswith("Insufficient lab room time") for error in estimate.errors)
