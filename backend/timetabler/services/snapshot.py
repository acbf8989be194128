from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from timetabler.core.exceptions import ValidationError
from timetabler.schemas.domain import (
    ClassPayload,
    FacultyPayload,
    RoomPayload,
    SubjectPayload,
    TimetablePayload,
)
from timetabler.services.availability import AvailabilityIndex

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class DomainSnapshot:
    """Validated, id-indexed view of the entities for one run."""

    classes: dict[str, ClassPayload]
    subjects: dict[str, SubjectPayload]
    faculty: dict[str, FacultyPayload]
    rooms: dict[str, RoomPayload]
    faculty_index: AvailabilityIndex
    room_index: AvailabilityIndex


def pydantic_errors(exc: PydanticValidationError, prefix: Sequence[Any] = ()) -> list[dict[str, Any]]:
    return [
        {"loc": [*prefix, *item["loc"]], "msg": item["msg"], "type": item["type"]}
        for item in exc.errors()
    ]


def _coerce(
    label: str,
    model: type[ModelT],
    items: Iterable[Any],
    errors: list[dict[str, Any]],
) -> list[ModelT]:
    coerced: list[ModelT] = []
    for position, item in enumerate(items or []):
        if isinstance(item, model):
            coerced.append(item)
            continue
        try:
            coerced.append(model.model_validate(item))
        except PydanticValidationError as exc:
            errors.extend(pydantic_errors(exc, (label, position)))
    return coerced


def _index_unique(label: str, items: list[ModelT], errors: list[dict[str, Any]]) -> dict[str, ModelT]:
    indexed: dict[str, ModelT] = {}
    for item in items:
        if item.id in indexed:
            errors.append({"loc": [label, item.id], "msg": f"Duplicate {label} id {item.id}", "type": "duplicate_id"})
            continue
        indexed[item.id] = item
    return indexed


def build_snapshot(
    classes: Iterable[Any],
    subjects: Iterable[Any],
    faculty: Iterable[Any],
    rooms: Iterable[Any],
) -> DomainSnapshot:
    """Validate a TimetableState-shaped input and index it.

    Every problem found is collected and raised together as one
    :class:`ValidationError`; nothing is partially processed.
    """
    errors: list[dict[str, Any]] = []
    class_items = _coerce("classes", ClassPayload, classes, errors)
    subject_items = _coerce("subjects", SubjectPayload, subjects, errors)
    faculty_items = _coerce("faculty", FacultyPayload, faculty, errors)
    room_items = _coerce("rooms", RoomPayload, rooms, errors)

    class_map = _index_unique("classes", class_items, errors)
    subject_map = _index_unique("subjects", subject_items, errors)
    faculty_map = _index_unique("faculty", faculty_items, errors)
    room_map = _index_unique("rooms", room_items, errors)

    for klass in class_map.values():
        for subject_id in klass.subjects:
            if subject_id not in subject_map:
                errors.append(
                    {
                        "loc": ["classes", klass.id, "subjects"],
                        "msg": f"Class {klass.id} references unknown subject {subject_id}",
                        "type": "unknown_reference",
                    }
                )

    for subject in subject_map.values():
        member = faculty_map.get(subject.faculty_id)
        if member is None:
            errors.append(
                {
                    "loc": ["subjects", subject.id, "facultyId"],
                    "msg": f"Subject {subject.id} references unknown faculty {subject.faculty_id}",
                    "type": "unknown_reference",
                }
            )
        elif member.subjects and subject.id not in member.subjects:
            logger.warning(
                "Subject %s is assigned to faculty %s who does not list it among their subjects",
                subject.id,
                member.id,
            )

    try:
        faculty_index = AvailabilityIndex.build(list(faculty_map.values()), label="faculty")
    except ValidationError as exc:
        errors.extend(exc.errors)
        faculty_index = None
    try:
        room_index = AvailabilityIndex.build(list(room_map.values()), label="rooms")
    except ValidationError as exc:
        errors.extend(exc.errors)
        room_index = None

    if errors:
        raise ValidationError(f"Input failed validation with {len(errors)} error(s)", errors)

    return DomainSnapshot(
        classes=class_map,
        subjects=subject_map,
        faculty=faculty_map,
        rooms=room_map,
        faculty_index=faculty_index,
        room_index=room_index,
    )


def coerce_timetable(timetable: Any) -> TimetablePayload:
    if isinstance(timetable, TimetablePayload):
        return timetable
    try:
        return TimetablePayload.model_validate(timetable)
    except PydanticValidationError as exc:
        errors = pydantic_errors(exc, ("timetable",))
        raise ValidationError(f"Timetable failed validation with {len(errors)} error(s)", errors) from exc


def validate_timetable_references(timetable: TimetablePayload, snapshot: DomainSnapshot) -> None:
    """Check that every slot points at known entities and honours its subject."""
    errors: list[dict[str, Any]] = []
    for slot in timetable.slots:
        loc = ["timetable", "slots", slot.id]
        subject = snapshot.subjects.get(slot.subject_id)
        if subject is None:
            errors.append({"loc": [*loc, "subjectId"], "msg": f"Unknown subject {slot.subject_id}", "type": "unknown_reference"})
        if slot.faculty_id not in snapshot.faculty:
            errors.append({"loc": [*loc, "facultyId"], "msg": f"Unknown faculty {slot.faculty_id}", "type": "unknown_reference"})
        if slot.room_id not in snapshot.rooms:
            errors.append({"loc": [*loc, "roomId"], "msg": f"Unknown room {slot.room_id}", "type": "unknown_reference"})
        if slot.class_id not in snapshot.classes:
            errors.append({"loc": [*loc, "classId"], "msg": f"Unknown class {slot.class_id}", "type": "unknown_reference"})
        if subject is None:
            continue
        if slot.faculty_id != subject.faculty_id:
            errors.append(
                {
                    "loc": [*loc, "facultyId"],
                    "msg": f"Slot faculty {slot.faculty_id} does not teach subject {subject.id}",
                    "type": "faculty_mismatch",
                }
            )
        if slot.type != subject.type:
            errors.append(
                {
                    "loc": [*loc, "type"],
                    "msg": f"Slot type {slot.type.value} does not match subject type {subject.type.value}",
                    "type": "type_mismatch",
                }
            )
    if errors:
        raise ValidationError(f"Timetable references failed validation with {len(errors)} error(s)", errors)
