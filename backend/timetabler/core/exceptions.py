from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from timetabler.schemas.generator import GenerationResult, InfeasibilityReport


class AppError(Exception):
    """Base class for all engine exceptions."""
    def __init__(self, message: str, status_code: int = 500, details: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppError):
    """Raised when input entities are malformed or reference each other inconsistently."""
    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        self.errors = list(errors or [])
        super().__init__(message, status_code=422, details={"errors": self.errors})


class SchedulerError(AppError):
    """Raised when the scheduler is configured into an unusable state."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=400, details=details)


class InfeasibilityError(AppError):
    """Raised on request when no assignment satisfies the hard constraints."""
    def __init__(self, report: InfeasibilityReport):
        self.report = report
        super().__init__(report.summary, status_code=409, details=report.model_dump(mode="json", by_alias=True))


class SearchTruncated(AppError):
    """Partial-result signal: the search budget ran out or the run was cancelled."""
    def __init__(self, message: str, result: GenerationResult):
        self.result = result
        super().__init__(
            message,
            status_code=202,
            details={
                "status": result.status,
                "placed_sessions": len(result.timetable.slots) if result.timetable else 0,
                "required_sessions": result.required_sessions,
            },
        )
