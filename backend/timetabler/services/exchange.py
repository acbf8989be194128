from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from timetabler.core.exceptions import ValidationError
from timetabler.schemas.domain import TimetablePayload
from timetabler.services.snapshot import pydantic_errors


def export_timetable(timetable: TimetablePayload, *, indent: int | None = 2) -> str:
    """Serialise a timetable to JSON using the client's camelCase field names."""
    return timetable.model_dump_json(by_alias=True, indent=indent)


def import_timetable(data: str | bytes | dict[str, Any]) -> TimetablePayload:
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ValidationError(
                "Timetable import is not valid JSON",
                [{"loc": ["timetable"], "msg": exc.msg, "type": "json_invalid"}],
            ) from exc
    if not isinstance(data, dict):
        raise ValidationError(
            "Timetable import must be a JSON object",
            [{"loc": ["timetable"], "msg": "Expected an object", "type": "dict_type"}],
        )
    try:
        return TimetablePayload.model_validate(data)
    except PydanticValidationError as exc:
        errors = pydantic_errors(exc, ("timetable",))
        raise ValidationError(f"Timetable import failed validation with {len(errors)} error(s)", errors) from exc
