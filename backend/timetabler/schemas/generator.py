from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from timetabler.core.exceptions import InfeasibilityError, SearchTruncated
from timetabler.schemas.domain import Shift, TimetablePayload, TimetableStatePayload


class SoftWeights(BaseModel):
    same_day_repeat: float = Field(default=6.0, ge=0.0, le=1000.0)
    adjacent_day_repeat: float = Field(default=2.0, ge=0.0, le=1000.0)
    faculty_daily_load: float = Field(default=1.0, ge=0.0, le=1000.0)
    room_fit: float = Field(default=0.5, ge=0.0, le=1000.0)


SessionCountPolicy = Literal["max_per_week", "credits"]
GenerationStatus = Literal["complete", "infeasible", "truncated", "cancelled"]


class GenerationConfig(BaseModel):
    max_backtrack_steps: int | None = Field(default=None, alias="maxBacktrackSteps", ge=0, le=10_000_000)
    time_budget_ms: int | None = Field(default=None, alias="timeBudgetMs", ge=1, le=3_600_000)
    random_seed: int | None = Field(default=None, alias="randomSeed", ge=0, le=2_000_000_000)
    soft_weight_overrides: dict[str, float] | None = Field(default=None, alias="softWeightOverrides")
    session_count_policy: SessionCountPolicy = Field(default="max_per_week", alias="sessionCountPolicy")

    title: str = Field(default="Generated timetable", max_length=200)
    description: str = Field(default="", max_length=2000)
    department: str = Field(default="", max_length=200)
    semester: str = Field(default="", max_length=50)
    year: str = Field(default="", max_length=20)
    shift: Shift = Shift.morning
    issued_at: datetime | None = Field(default=None, alias="issuedAt")

    model_config = {"populate_by_name": True}

    @field_validator("soft_weight_overrides")
    @classmethod
    def validate_overrides(cls, value: dict[str, float] | None) -> dict[str, float] | None:
        if value is None:
            return None
        known = set(SoftWeights.model_fields)
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(
                f"Unknown soft weight(s): {', '.join(unknown)}; expected one of {', '.join(sorted(known))}"
            )
        negative = sorted(key for key, weight in value.items() if weight < 0)
        if negative:
            raise ValueError(f"Soft weights must be non-negative: {', '.join(negative)}")
        return value

    def resolved_weights(self) -> SoftWeights:
        return SoftWeights(**{**SoftWeights().model_dump(), **(self.soft_weight_overrides or {})})


class BlockedDemand(BaseModel):
    unit_id: str = Field(alias="unitId")
    class_id: str = Field(alias="classId")
    subject_id: str = Field(alias="subjectId")
    required_sessions: int = Field(alias="requiredSessions", ge=0)
    placed_sessions: int = Field(alias="placedSessions", ge=0)
    constraint: str
    reason: str
    rejections: dict[str, int] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class InfeasibilityReport(BaseModel):
    summary: str
    blocked: list[BlockedDemand] = Field(default_factory=list)


class SearchStats(BaseModel):
    steps: int = 0
    backtracks: int = 0
    max_depth: int = Field(default=0, alias="maxDepth")
    runtime_ms: int = Field(default=0, alias="runtimeMs")

    model_config = {"populate_by_name": True}


class GenerationResult(BaseModel):
    status: GenerationStatus
    timetable: TimetablePayload | None = None
    infeasibility: InfeasibilityReport | None = None
    truncated: bool = False
    reason: str | None = None
    seed: int | None = None
    required_sessions: int = Field(default=0, alias="requiredSessions")
    stats: SearchStats = Field(default_factory=SearchStats)

    model_config = {"populate_by_name": True}

    @property
    def ok(self) -> bool:
        return self.status == "complete"

    def raise_for_status(self) -> TimetablePayload:
        """Return the timetable, or raise the matching engine exception."""
        if self.status == "infeasible" and self.infeasibility is not None:
            raise InfeasibilityError(self.infeasibility)
        if self.status in ("truncated", "cancelled"):
            raise SearchTruncated(self.reason or f"Generation {self.status}", self)
        return self.timetable


class GenerateTimetableRequest(TimetableStatePayload):
    config: GenerationConfig = Field(default_factory=GenerationConfig)


class AuditTimetableRequest(TimetableStatePayload):
    timetable: TimetablePayload


class FeasibilityEstimate(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    required_sessions: int = Field(default=0, alias="requiredSessions")
    required_minutes: int = Field(default=0, alias="requiredMinutes")
    room_minutes: int = Field(default=0, alias="roomMinutes")
    faculty_minutes: int = Field(default=0, alias="facultyMinutes")

    model_config = {"populate_by_name": True}
