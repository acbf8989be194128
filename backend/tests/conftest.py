from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from timetabler.core.config import Settings
from timetabler.main import app

WORKING_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
ISSUED_AT = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def settings():
    # Ignore any developer .env so budgets and windows are predictable.
    return Settings(_env_file=None)


@pytest.fixture()
def weekly_window():
    def build(start="09:00", end="15:00", breaks=(), days=WORKING_DAYS):
        return {day: {"start": start, "end": end, "breaks": list(breaks)} for day in days}

    return build


@pytest.fixture()
def scenario_a(weekly_window):
    """One class, one subject (3 per week, 1 per day), faculty free 09:00-15:00."""
    return {
        "classes": [{"id": "c1", "name": "Class A", "studentCount": 30, "subjects": ["s1"]}],
        "subjects": [
            {
                "id": "s1",
                "name": "Algorithms",
                "code": "CS101",
                "credits": 3,
                "type": "lecture",
                "facultyId": "f1",
                "maxClassesPerWeek": 3,
                "maxClassesPerDay": 1,
            }
        ],
        "faculty": [
            {
                "id": "f1",
                "name": "Prof A",
                "email": "a@example.com",
                "subjects": ["s1"],
                "availability": weekly_window(),
            }
        ],
        "rooms": [{"id": "r1", "name": "Room 101", "type": "classroom", "capacity": 40}],
    }


@pytest.fixture()
def shared_faculty():
    """Two classes taking the same subject from one faculty member."""

    def build(availability):
        return {
            "classes": [
                {"id": "c1", "name": "Class A", "studentCount": 40, "subjects": ["s1"]},
                {"id": "c2", "name": "Class B", "studentCount": 35, "subjects": ["s1"]},
            ],
            "subjects": [
                {
                    "id": "s1",
                    "name": "Algorithms",
                    "code": "CS101",
                    "credits": 1,
                    "type": "lecture",
                    "facultyId": "f1",
                    "maxClassesPerWeek": 1,
                    "maxClassesPerDay": 1,
                }
            ],
            "faculty": [
                {
                    "id": "f1",
                    "name": "Prof A",
                    "email": "a@example.com",
                    "subjects": ["s1"],
                    "availability": availability,
                }
            ],
            "rooms": [{"id": "r1", "name": "Room 101", "type": "classroom", "capacity": 100}],
        }

    return build


@pytest.fixture()
def department(weekly_window):
    """Two classes, a lab and a tutorial, faculty with and without declared hours."""
    return {
        "classes": [
            {"id": "c1", "name": "Class A", "studentCount": 30, "subjects": ["s1", "s2", "s3"]},
            {"id": "c2", "name": "Class B", "studentCount": 45, "subjects": ["s1", "s2"]},
        ],
        "subjects": [
            {
                "id": "s1",
                "name": "Algorithms",
                "code": "CS101",
                "credits": 3,
                "type": "lecture",
                "facultyId": "f1",
                "maxClassesPerWeek": 3,
                "maxClassesPerDay": 1,
            },
            {
                "id": "s2",
                "name": "Discrete Maths",
                "code": "MA101",
                "credits": 2,
                "type": "tutorial",
                "facultyId": "f2",
                "maxClassesPerWeek": 2,
                "maxClassesPerDay": 1,
            },
            {
                "id": "s3",
                "name": "Algorithms Lab",
                "code": "CS101L",
                "credits": 2,
                "type": "lab",
                "facultyId": "f1",
                "maxClassesPerWeek": 2,
                "maxClassesPerDay": 1,
            },
        ],
        "faculty": [
            {"id": "f1", "name": "Prof A", "email": "a@example.com", "subjects": ["s1", "s3"]},
            {
                "id": "f2",
                "name": "Prof B",
                "email": "b@example.com",
                "subjects": ["s2"],
                "availability": weekly_window("09:00", "13:00", breaks=["11:00-11:30"]),
            },
        ],
        "rooms": [
            {"id": "r1", "name": "Room 101", "type": "classroom", "capacity": 50},
            {"id": "r2", "name": "Lab 1", "type": "lab", "capacity": 35},
        ],
    }


@pytest.fixture()
def two_class_entities():
    """Entities for hand-built timetables: two classes, two subjects, two faculty."""
    return {
        "classes": [
            {"id": "c1", "name": "Class A", "studentCount": 30, "subjects": ["s1"]},
            {"id": "c2", "name": "Class B", "studentCount": 30, "subjects": ["s2"]},
        ],
        "subjects": [
            {
                "id": "s1",
                "name": "Algorithms",
                "code": "CS101",
                "credits": 3,
                "type": "lecture",
                "facultyId": "f1",
                "maxClassesPerWeek": 3,
                "maxClassesPerDay": 1,
            },
            {
                "id": "s2",
                "name": "Calculus",
                "code": "MA101",
                "credits": 3,
                "type": "lecture",
                "facultyId": "f2",
                "maxClassesPerWeek": 3,
                "maxClassesPerDay": 1,
            },
        ],
        "faculty": [
            {"id": "f1", "name": "Prof A", "email": "a@example.com", "subjects": ["s1"]},
            {"id": "f2", "name": "Prof B", "email": "b@example.com", "subjects": ["s2"]},
        ],
        "rooms": [
            {"id": "r1", "name": "Room 101", "type": "classroom", "capacity": 40},
            {"id": "r2", "name": "Room 102", "type": "classroom", "capacity": 40},
        ],
    }


@pytest.fixture()
def make_timetable():
    def build(slots, **extra):
        return {
            "id": "tt-manual",
            "title": "Hand edited",
            "createdAt": ISSUED_AT.isoformat(),
            "updatedAt": ISSUED_AT.isoformat(),
            "slots": slots,
            **extra,
        }

    return build


@pytest.fixture()
def make_slot():
    def build(slot_id, day, time, subject_id, faculty_id, room_id, class_id, duration=1, type="lecture"):
        return {
            "id": slot_id,
            "day": day,
            "time": time,
            "duration": duration,
            "subjectId": subject_id,
            "facultyId": faculty_id,
            "roomId": room_id,
            "classId": class_id,
            "type": type,
        }

    return build
