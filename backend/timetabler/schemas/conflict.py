from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from timetabler.schemas.domain import Weekday

ConflictType = Literal["room", "faculty", "class"]
Severity = Literal["high", "medium", "low"]

SEVERITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2}


class SlotAlternative(BaseModel):
    day: Weekday
    time: str
    room_id: str = Field(alias="roomId")

    model_config = {"populate_by_name": True, "frozen": True}


class ConflictDetail(BaseModel):
    id: str
    type: ConflictType
    severity: Severity
    constraint: str
    description: str
    slot_ids: list[str] = Field(alias="slotIds")  # timetable slot ids involved
    # None means the auditor looked and found no free alternative.
    suggestion: str | None
    alternative: SlotAlternative | None = None

    model_config = {"populate_by_name": True, "frozen": True}


class TimetableMetrics(BaseModel):
    room_utilization: float = Field(alias="roomUtilization", ge=0.0, le=100.0)
    faculty_workload_balance: float = Field(alias="facultyWorkloadBalance", ge=0.0, le=100.0)
    conflict_count: int = Field(alias="conflictCount", ge=0)
    severity_counts: dict[str, int] = Field(default_factory=dict, alias="severityCounts")
    score: float = Field(ge=0.0, le=100.0)
    placed_sessions: int = Field(default=0, alias="placedSessions", ge=0)

    model_config = {"populate_by_name": True}


class AuditReport(BaseModel):
    conflicts: list[ConflictDetail]
    metrics: TimetableMetrics
    recommendations: list[str] = Field(default_factory=list)
