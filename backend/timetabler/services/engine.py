"""Entry points for one generation or audit run.

Each call validates its inputs into a fresh :class:`DomainSnapshot`, so
concurrent runs never share mutable state.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from timetabler.core.config import Settings, get_settings
from timetabler.schemas.conflict import AuditReport, ConflictDetail
from timetabler.schemas.generator import FeasibilityEstimate, GenerationConfig, GenerationResult
from timetabler.services.analytics import estimate_capacity, recommendations, summarize
from timetabler.services.conflict_service import ConflictAuditor
from timetabler.services.scheduler import CancellationToken, Scheduler
from timetabler.services.snapshot import build_snapshot, coerce_timetable


def _coerce_config(config: GenerationConfig | dict[str, Any] | None) -> GenerationConfig:
    if config is None:
        return GenerationConfig()
    if isinstance(config, GenerationConfig):
        return config
    return GenerationConfig.model_validate(config)


def generate(
    classes: Iterable[Any],
    subjects: Iterable[Any],
    faculty: Iterable[Any],
    rooms: Iterable[Any],
    config: GenerationConfig | dict[str, Any] | None = None,
    *,
    settings: Settings | None = None,
    cancel_token: CancellationToken | None = None,
) -> GenerationResult:
    snapshot = build_snapshot(classes, subjects, faculty, rooms)
    scheduler = Scheduler(snapshot, _coerce_config(config), settings=settings, cancel_token=cancel_token)
    return scheduler.run()


def audit(
    timetable: Any,
    classes: Iterable[Any],
    subjects: Iterable[Any],
    faculty: Iterable[Any],
    rooms: Iterable[Any],
    *,
    settings: Settings | None = None,
) -> list[ConflictDetail]:
    snapshot = build_snapshot(classes, subjects, faculty, rooms)
    return ConflictAuditor(coerce_timetable(timetable), snapshot, settings).detect_conflicts()


def audit_report(
    timetable: Any,
    classes: Iterable[Any],
    subjects: Iterable[Any],
    faculty: Iterable[Any],
    rooms: Iterable[Any],
    *,
    settings: Settings | None = None,
) -> AuditReport:
    settings = settings or get_settings()
    snapshot = build_snapshot(classes, subjects, faculty, rooms)
    payload = coerce_timetable(timetable)
    conflicts = ConflictAuditor(payload, snapshot, settings).detect_conflicts()
    metrics = summarize(payload, snapshot, conflicts, settings)
    return AuditReport(conflicts=conflicts, metrics=metrics, recommendations=recommendations(metrics, settings))


def precheck(
    classes: Iterable[Any],
    subjects: Iterable[Any],
    faculty: Iterable[Any],
    rooms: Iterable[Any],
    config: GenerationConfig | dict[str, Any] | None = None,
    *,
    settings: Settings | None = None,
) -> FeasibilityEstimate:
    snapshot = build_snapshot(classes, subjects, faculty, rooms)
    return estimate_capacity(snapshot, _coerce_config(config), settings)
