from __future__ import annotations

import logging

from fastapi import APIRouter, status

from timetabler.core.config import get_settings
from timetabler.schemas.conflict import AuditReport
from timetabler.schemas.generator import (
    AuditTimetableRequest,
    FeasibilityEstimate,
    GenerateTimetableRequest,
    GenerationResult,
)
from timetabler.services import engine

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/generate", response_model=GenerationResult, status_code=status.HTTP_200_OK)
def generate_timetable(payload: GenerateTimetableRequest) -> GenerationResult:
    result = engine.generate(
        payload.classes,
        payload.subjects,
        payload.faculty,
        payload.rooms,
        payload.config,
        settings=get_settings(),
    )
    if result.status == "infeasible":
        logger.info("Generation returned an infeasibility report for %s demand unit(s)", len(result.infeasibility.blocked))
    return result


@router.post("/audit", response_model=AuditReport)
def audit_timetable(payload: AuditTimetableRequest) -> AuditReport:
    return engine.audit_report(
        payload.timetable,
        payload.classes,
        payload.subjects,
        payload.faculty,
        payload.rooms,
        settings=get_settings(),
    )


@router.post("/precheck", response_model=FeasibilityEstimate)
def precheck_timetable(payload: GenerateTimetableRequest) -> FeasibilityEstimate:
    return engine.precheck(
        payload.classes,
        payload.subjects,
        payload.faculty,
        payload.rooms,
        payload.config,
        settings=get_settings(),
    )
