from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from gapwatch.db import get_session, init_db
from gapwatch.domains import Domain
from gapwatch.errors import BusinessRuleViolation, GapwatchError, NotFound, ValidationError, VersionConflict
from gapwatch.llm import CompletionService
from gapwatch.notifier import NotificationService
from gapwatch.schemas import (
    AnalysisDepth,
    Assessment,
    AssessmentCreate,
    AssessmentGap,
    BulkGapResolutionRequest,
    BulkGapResolutionResponse,
    ExtensionApproval,
    ExtensionRequest,
    GapAnalysisRequest,
    GapAnalysisResponse,
    GapResolutionRequest,
    GapResolutionResponse,
    TimelineExtension,
    TimelineStatusReport,
    TriageValidationOutcome,
    TriageValidationRequest,
)
from gapwatch.services import Engine, default_llm, default_notifier
from gapwatch.settings import EngineSettings

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Gapwatch",
    version="0.1.0",
    description=(
        "Gap detection and delivery-timeline API for business assessments. "
        "Detect missing or weak answers, resolve gaps, validate triage output "
        "and manage the 24/48/72h delivery schedule. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Assessments", "description": "Create and fetch assessments."},
        {"name": "Gaps", "description": "Gap analysis, listing and resolution."},
        {"name": "Timeline", "description": "Delivery timeline status and extensions."},
        {"name": "Triage", "description": "Validate AI triage output with rule-based fallbacks."},
    ],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error_response(status_code: int, exc: GapwatchError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "details": jsonable_encoder(exc.details)})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error_response(404, exc)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(400, exc)


@app.exception_handler(BusinessRuleViolation)
async def business_rule_handler(request: Request, exc: BusinessRuleViolation):
    return _error_response(409, exc)


@app.exception_handler(VersionConflict)
async def version_conflict_handler(request: Request, exc: VersionConflict):
    return _error_response(409, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@lru_cache
def app_settings() -> EngineSettings:
    return EngineSettings.from_env()


@lru_cache
def app_llm() -> CompletionService | None:
    return default_llm()


@lru_cache
def app_notifier() -> NotificationService | None:
    return default_notifier()


def get_engine(
    session: Session = Depends(db_session),
    settings: EngineSettings = Depends(app_settings),
    llm: CompletionService | None = Depends(app_llm),
    notifier: NotificationService | None = Depends(app_notifier),
) -> Engine:
    return Engine(session, settings=settings, llm=llm, notifier=notifier)


# ---------------------------------------------------------------------------
# Routes: Assessments
# ---------------------------------------------------------------------------


@app.post("/api/assessments", response_model=Assessment, status_code=201,
          tags=["Assessments"], summary="Create an assessment")
async def create_assessment(body: AssessmentCreate, engine: Engine = Depends(get_engine)):
    return engine.create_assessment(body)


@app.get("/api/assessments/{assessment_id}", response_model=Assessment,
         tags=["Assessments"], summary="Get an assessment with its latest gap analysis")
async def get_assessment(assessment_id: str, engine: Engine = Depends(get_engine)):
    return engine.get_assessment(assessment_id)


# ---------------------------------------------------------------------------
# Routes: Gaps
# ---------------------------------------------------------------------------


class AnalyzeGapsBody(BaseModel):
    analysis_depth: AnalysisDepth = AnalysisDepth.STANDARD
    focus_domains: list[Domain] | None = None
    force_reanalysis: bool = False


class GapListResponse(BaseModel):
    assessment_id: str
    items: list[AssessmentGap]
    total: int


@app.post("/api/assessments/{assessment_id}/analyze-gaps", response_model=GapAnalysisResponse,
          tags=["Gaps"], summary="Run (or serve cached) gap analysis")
async def analyze_gaps(assessment_id: str, body: AnalyzeGapsBody | None = None, engine: Engine = Depends(get_engine)):
    body = body or AnalyzeGapsBody()
    request = GapAnalysisRequest(assessment_id=assessment_id, **body.model_dump())
    return await engine.detector.analyze(request)


@app.get("/api/assessments/{assessment_id}/gaps", response_model=GapListResponse,
         tags=["Gaps"], summary="List gaps by category and status")
async def list_gaps(
    assessment_id: str,
    category: str | None = Query(None, description="critical, important or nice-to-have"),
    status: str = Query("pending", description="pending or resolved"),
    limit: int = Query(50),
    engine: Engine = Depends(get_engine),
):
    gaps = engine.lifecycle.list_gaps(assessment_id, category, status, limit)
    return GapListResponse(assessment_id=assessment_id, items=gaps, total=len(gaps))


@app.post("/api/gaps/{gap_id}/resolve", response_model=GapResolutionResponse,
          tags=["Gaps"], summary="Resolve a gap with a client response or skip it")
async def resolve_gap(gap_id: str, body: GapResolutionRequest, engine: Engine = Depends(get_engine)):
    if body.gap_id != gap_id:
        raise ValidationError("Gap ID in path does not match request body", {"path": gap_id, "body": body.gap_id})
    return await engine.lifecycle.resolve(body)


@app.post("/api/assessments/{assessment_id}/gaps/bulk-resolve", response_model=BulkGapResolutionResponse,
          tags=["Gaps"], summary="Resolve several gaps; failures are reported per item")
async def bulk_resolve_gaps(assessment_id: str, body: BulkGapResolutionRequest, engine: Engine = Depends(get_engine)):
    if body.assessment_id != assessment_id:
        raise ValidationError("Assessment ID in path does not match request body",
                              {"path": assessment_id, "body": body.assessment_id})
    return await engine.lifecycle.resolve_bulk(body)


# ---------------------------------------------------------------------------
# Routes: Timeline
# ---------------------------------------------------------------------------


@app.get("/api/assessments/{assessment_id}/timeline", response_model=TimelineStatusReport,
         tags=["Timeline"], summary="Derived timeline status, remaining time and next steps")
async def timeline_status(assessment_id: str, engine: Engine = Depends(get_engine)):
    return engine.timeline.get_timeline_status(assessment_id)


@app.post("/api/assessments/{assessment_id}/timeline/extensions", response_model=TimelineExtension,
          status_code=201, tags=["Timeline"], summary="Request a timeline extension")
async def request_extension(assessment_id: str, body: ExtensionRequest, engine: Engine = Depends(get_engine)):
    return await engine.timeline.request_timeline_extension(
        assessment_id, body.extension_type, body.duration_ms, body.justification, body.requested_by,
    )


@app.post("/api/assessments/{assessment_id}/timeline/extensions/{extension_id}/approve",
          response_model=TimelineExtension, tags=["Timeline"], summary="Approve a pending extension")
async def approve_extension(
    assessment_id: str, extension_id: str, body: ExtensionApproval, engine: Engine = Depends(get_engine),
):
    return await engine.timeline.approve_extension(assessment_id, extension_id, body.approved_by)


# ---------------------------------------------------------------------------
# Routes: Triage
# ---------------------------------------------------------------------------


@app.post("/api/assessments/{assessment_id}/triage/validate", response_model=TriageValidationOutcome,
          tags=["Triage"], summary="Validate a triage analysis and apply fallbacks when needed")
async def validate_triage(assessment_id: str, body: TriageValidationRequest, engine: Engine = Depends(get_engine)):
    return engine.validate_triage(assessment_id, body.triage)


def main():
    import uvicorn
    uvicorn.run("gapwatch.app:app", host="127.0.0.1", port=8002, reload=True)
