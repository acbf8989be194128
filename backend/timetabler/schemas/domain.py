from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator


class Weekday(str, Enum):
    monday = "Monday"
    tuesday = "Tuesday"
    wednesday = "Wednesday"
    thursday = "Thursday"
    friday = "Friday"
    saturday = "Saturday"


WEEKDAYS: tuple[Weekday, ...] = tuple(Weekday)
DAY_ORDER: dict[Weekday, int] = {day: index for index, day in enumerate(WEEKDAYS)}

DAY_SHORT_MAP = {
    "Mon": "Monday",
    "Tue": "Tuesday",
    "Wed": "Wednesday",
    "Thu": "Thursday",
    "Fri": "Friday",
    "Sat": "Saturday",
}


class SessionType(str, Enum):
    lecture = "lecture"
    lab = "lab"
    tutorial = "tutorial"


class RoomType(str, Enum):
    classroom = "classroom"
    lab = "lab"
    auditorium = "auditorium"


class Shift(str, Enum):
    morning = "MORNING"
    evening = "EVENING"


TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
BOUND_PATTERN = re.compile(r"^(([01]\d|2[0-3]):[0-5]\d|24:00)$")
BREAK_PATTERN = re.compile(r"^\s*(\d{2}:\d{2})\s*-\s*(\d{2}:\d{2})\s*$")
MINUTES_PER_DAY = 24 * 60


def parse_time_to_minutes(value: str) -> int:
    if not BOUND_PATTERN.match(value):
        raise ValueError("Time must be in HH:MM 24-hour format")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(value: int) -> str:
    hours = value // 60
    minutes = value % 60
    return f"{hours:02d}:{minutes:02d}"


def normalize_day(value: Any) -> Any:
    if isinstance(value, str):
        cleaned = value.strip().capitalize()
        return DAY_SHORT_MAP.get(cleaned, cleaned)
    return value


Interval = tuple[int, int]


def carve_free_windows(start: int, end: int, breaks: list[Interval]) -> tuple[Interval, ...]:
    """Return the free parts of ``[start, end)`` once ``breaks`` are removed.

    Raises ``ValueError`` for an empty window, a break outside the window or
    overlapping breaks. Breaks that merely touch are accepted.
    """
    if end <= start:
        raise ValueError("End time must be after start time")
    windows: list[Interval] = []
    cursor = start
    for break_start, break_end in sorted(breaks):
        if break_end <= break_start:
            raise ValueError("Break end time must be after its start time")
        if break_start < start or break_end > end:
            raise ValueError("Break must lie within the availability window")
        if break_start < cursor:
            raise ValueError("Break windows must not overlap")
        if break_start > cursor:
            windows.append((cursor, break_start))
        cursor = break_end
    if cursor < end:
        windows.append((cursor, end))
    return tuple(windows)


class BreakWindow(BaseModel):
    start: str
    end: str

    model_config = {"frozen": True}

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not BOUND_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value


class DayAvailability(BaseModel):
    start: str
    end: str
    breaks: list[BreakWindow] = Field(default_factory=list, max_length=24)

    model_config = {"frozen": True}

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not BOUND_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @field_validator("breaks", mode="before")
    @classmethod
    def parse_break_strings(cls, value: Any) -> Any:
        # The mobile client stores breaks as "HH:MM-HH:MM" strings.
        if not isinstance(value, list):
            return value
        parsed: list[Any] = []
        for item in value:
            if isinstance(item, str):
                match = BREAK_PATTERN.match(item)
                if match is None:
                    raise ValueError(f"Invalid break window {item!r}, expected HH:MM-HH:MM")
                parsed.append({"start": match.group(1), "end": match.group(2)})
            else:
                parsed.append(item)
        return parsed

    @model_validator(mode="after")
    def validate_windows(self) -> "DayAvailability":
        carve_free_windows(
            parse_time_to_minutes(self.start),
            parse_time_to_minutes(self.end),
            [(parse_time_to_minutes(item.start), parse_time_to_minutes(item.end)) for item in self.breaks],
        )
        return self


AvailabilityMap = dict[Weekday, DayAvailability]


def _normalize_availability_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {normalize_day(key): item for key, item in value.items()}
    return value


class ClassPayload(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    batch: str = Field(default="", max_length=50)
    semester: str = Field(default="", max_length=50)
    department: str = Field(default="", max_length=200)
    student_count: int = Field(default=0, alias="studentCount", ge=0, le=5000)
    subjects: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True, "frozen": True}


class SubjectPayload(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=1, max_length=50)
    credits: int = Field(ge=1, le=40)
    type: SessionType
    faculty_id: str = Field(alias="facultyId", min_length=1, max_length=64)
    max_classes_per_week: int = Field(alias="maxClassesPerWeek", ge=1, le=40)
    max_classes_per_day: int = Field(alias="maxClassesPerDay", ge=1, le=12)
    sessions_per_week: int | None = Field(default=None, alias="sessionsPerWeek", ge=1, le=40)
    duration: int | None = Field(default=None, ge=1, le=8)

    model_config = {"populate_by_name": True, "frozen": True}

    @model_validator(mode="after")
    def validate_limits(self) -> "SubjectPayload":
        if self.max_classes_per_day > self.max_classes_per_week:
            raise ValueError("maxClassesPerDay cannot exceed maxClassesPerWeek")
        if self.sessions_per_week is not None and self.sessions_per_week > self.max_classes_per_week:
            raise ValueError("sessionsPerWeek cannot exceed maxClassesPerWeek")
        return self


class FacultyPayload(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    department: str = Field(default="", max_length=200)
    subjects: list[str] = Field(default_factory=list)
    availability: AvailabilityMap = Field(default_factory=dict)
    leave_days: list[Weekday] = Field(default_factory=list, alias="leaveDays")
    leave_day_count: int = Field(default=0, alias="leaveDayCount", ge=0, le=366)

    model_config = {"populate_by_name": True, "frozen": True}

    @model_validator(mode="before")
    @classmethod
    def split_leave_count(cls, data: Any) -> Any:
        # leaveDays is a plain count in the mobile client's data.
        if not isinstance(data, dict):
            return data
        for key in ("leaveDays", "leave_days"):
            value = data.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                data = {**data, key: [], "leaveDayCount": value}
        return data

    @field_validator("availability", mode="before")
    @classmethod
    def normalize_availability(cls, value: Any) -> Any:
        return _normalize_availability_keys(value)

    @field_validator("leave_days", mode="before")
    @classmethod
    def normalize_leave_days(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [normalize_day(item) for item in value]
        return value


class RoomPayload(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=100)
    type: RoomType
    capacity: int = Field(ge=1, le=5000)
    equipment: list[str] = Field(default_factory=list)
    availability: AvailabilityMap = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("availability", mode="before")
    @classmethod
    def normalize_availability(cls, value: Any) -> Any:
        return _normalize_availability_keys(value)


class TimetableSlotPayload(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    day: Weekday
    time: str
    duration: int = Field(default=1, ge=1, le=12)
    subject_id: str = Field(alias="subjectId", min_length=1, max_length=64)
    faculty_id: str = Field(alias="facultyId", min_length=1, max_length=64)
    room_id: str = Field(alias="roomId", min_length=1, max_length=64)
    class_id: str = Field(alias="classId", min_length=1, max_length=64)
    type: SessionType

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("day", mode="before")
    @classmethod
    def validate_day(cls, value: Any) -> Any:
        return normalize_day(value)

    @field_validator("time")
    @classmethod
    def validate_time_format(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @property
    def start_minutes(self) -> int:
        return parse_time_to_minutes(self.time)


class TimetablePayload(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    title: str = Field(default="Timetable", max_length=200)
    description: str = Field(default="", max_length=2000)
    department: str = Field(default="", max_length=200)
    semester: str = Field(default="", max_length=50)
    year: str = Field(default="", max_length=20)
    shift: Shift = Shift.morning
    period_minutes: int = Field(default=60, alias="periodMinutes", ge=5, le=240)
    slots: list[TimetableSlotPayload] = Field(default_factory=list)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = {"populate_by_name": True, "frozen": True}

    @model_validator(mode="after")
    def validate_slots(self) -> "TimetablePayload":
        seen: set[str] = set()
        duplicates: set[str] = set()
        for slot in self.slots:
            if slot.id in seen:
                duplicates.add(slot.id)
            else:
                seen.add(slot.id)
            if slot.start_minutes + slot.duration * self.period_minutes > MINUTES_PER_DAY:
                raise ValueError(f"Slot {slot.id} runs past the end of the day")
        if duplicates:
            raise ValueError(f"Duplicate slot id(s): {', '.join(sorted(duplicates))}")
        return self

    def slot_end_minutes(self, slot: TimetableSlotPayload) -> int:
        return slot.start_minutes + slot.duration * self.period_minutes


class TimetableStatePayload(BaseModel):
    classes: list[ClassPayload] = Field(default_factory=list)
    subjects: list[SubjectPayload] = Field(default_factory=list)
    faculty: list[FacultyPayload] = Field(default_factory=list)
    rooms: list[RoomPayload] = Field(default_factory=list)

    model_config = {"populate_by_name": True}
