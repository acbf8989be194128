import json

import pytest

from timetabler.core.exceptions import ValidationError
from timetabler.services.exchange import export_timetable, import_timetable


def test_export_uses_client_field_names(make_timetable, make_slot):
    timetable = import_timetable(make_timetable([make_slot("a", "Mon", "09:00", "s1", "f1", "r1", "c1")]))

    exported = json.loads(export_timetable(timetable))

    assert exported["periodMinutes"] == 60
    assert "createdAt" in exported
    assert exported["slots"][0]["subjectId"] == "s1"
    assert exported["slots"][0]["day"] == "Monday"
    assert import_timetable(export_timetable(timetable)) == timetable


def test_import_rejects_invalid_json():
    with pytest.raises(ValidationError) as exc_info:
        import_timetable("{not json")

    assert exc_info.value.errors[0]["type"] == "json_invalid"


def test_import_reports_field_errors(make_timetable, make_slot):
    raw = make_timetable(
        [
            make_slot("a", "Monday", "09:00", "s1", "f1", "r1", "c1"),
            make_slot("a", "Tuesday", "09:00", "s1", "f1", "r1", "c1"),
        ]
    )

    with pytest.raises(ValidationError) as exc_info:
        import_timetable(json.dumps(raw))

    assert "Duplicate slot id" in exc_info.value.errors[0]["msg"]
    assert exc_info.value.errors[0]["loc"] == ["timetable"]


def test_import_rejects_non_objects():
    with pytest.raises(ValidationError):
        import_timetable("[]")
