"""Shared wiring for the HTTP layer and scripts: one ``Engine`` per session."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Generator

from sqlalchemy.orm import Session

from gapwatch.db import session_scope
from gapwatch.errors import AssessmentNotFound, BusinessRuleViolation
from gapwatch.gap_detector import GapDetector
from gapwatch.gap_lifecycle import GapLifecycleManager
from gapwatch.llm import CompletionService, LLMClient
from gapwatch.notifier import FounderNotifier, NotificationService, Notifier
from gapwatch.schemas import Assessment, AssessmentCreate, DeliverySchedule, TriageAnalysis, TriageValidationOutcome
from gapwatch.settings import DEFAULT_SETTINGS, EngineSettings
from gapwatch.store import DocumentStore, Repository
from gapwatch.timeline import TimelineStateMachine
from gapwatch.triage_validator import TriageValidator
from gapwatch.utils import new_id, utcnow

log = logging.getLogger(__name__)

_PROVIDER_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


# ---------------------------------------------------------------------------
# Default collaborators
# ---------------------------------------------------------------------------


def default_llm() -> CompletionService | None:
    """LLM client from the environment, or None when no credentials are set.

    Without a client the detector runs on rule-based checks and static
    follow-up questions only.
    """
    provider = os.environ.get("LLM_PROVIDER", "openai")
    key_var = _PROVIDER_KEYS.get(provider)
    if key_var and not os.environ.get(key_var):
        log.warning("%s not set, gap detection runs without AI follow-ups", key_var)
        return None
    return LLMClient(provider=provider)


def default_notifier() -> NotificationService | None:
    notifier = Notifier()
    if not notifier.is_configured:
        log.warning("SMTP_HOST not set, notifications are disabled")
        return None
    return notifier


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class Engine:
    """All components bound to one database session."""

    def __init__(
        self,
        session: Session,
        *,
        settings: EngineSettings = DEFAULT_SETTINGS,
        llm: CompletionService | None = None,
        notifier: NotificationService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.clock = clock
        self.store = DocumentStore(session)
        self.repo = Repository(self.store)
        self.timeline = TimelineStateMachine(self.repo, notifier, settings, clock)
        founder = FounderNotifier(notifier, settings) if notifier is not None else None
        self.detector = GapDetector(self.repo, llm, self.timeline, founder, settings, clock)
        self.lifecycle = GapLifecycleManager(self.repo, self.detector, self.timeline, settings, clock)
        self.validator = TriageValidator(settings)

    def create_assessment(self, body: AssessmentCreate) -> Assessment:
        now = self.clock()
        assessment = Assessment(
            id=body.id or new_id("asmt"),
            company_id=body.company_id,
            title=body.title,
            contact_email=body.contact_email,
            industry_classification=body.industry_classification,
            domain_responses=body.domain_responses,
            delivery_schedule=body.delivery_schedule or DeliverySchedule.starting_at(now),
            clarification_policy=body.clarification_policy,
            created_at=now,
        )
        if body.id:
            try:
                self.repo.get_assessment(body.id)
            except AssessmentNotFound:
                pass
            else:
                raise BusinessRuleViolation(f"Assessment {body.id} already exists", {"assessment_id": body.id})
        self.repo.put_assessment(assessment)
        log.info("Created assessment %s for company %s", assessment.id, assessment.company_id)
        return assessment

    def get_assessment(self, assessment_id: str) -> Assessment:
        return self.repo.get_assessment(assessment_id)

    def validate_triage(self, assessment_id: str, triage: TriageAnalysis) -> TriageValidationOutcome:
        assessment = self.repo.get_assessment(assessment_id)
        return self.validator.validate(assessment, triage)


@contextmanager
def open_engine(**kwargs) -> Generator[Engine, None, None]:
    """Engine over a fresh session, for scripts and queue consumers.

    Usage::

        with open_engine(llm=default_llm()) as engine:
            await engine.detector.analyze(...)
    """
    with session_scope() as session:
        yield Engine(session, **kwargs)
