"""Gap resolution (single and bulk) and the hand-off to the timeline resume check."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from gapwatch.errors import GapNotFound, GapwatchError, ValidationError, VersionConflict
from gapwatch.gap_detector import GapDetector
from gapwatch.schemas import (
    Actor,
    AssessmentGap,
    BulkGapResolutionRequest,
    BulkGapResolutionResponse,
    DomainResponse,
    FailedResolution,
    GapCategory,
    GapResolutionRequest,
    GapResolutionResponse,
    QuestionResponse,
    ResolutionMethod,
    SideEffectOutcome,
)
from gapwatch.scoring import completeness_impact
from gapwatch.settings import DEFAULT_SETTINGS, EngineSettings
from gapwatch.store import Repository
from gapwatch.utils import best_effort, utcnow

if TYPE_CHECKING:
    from gapwatch.timeline import TimelineStateMachine

log = logging.getLogger(__name__)

GAP_STATUSES = ("pending", "resolved")
MAX_LIST_LIMIT = 100


class GapLifecycleManager:
    def __init__(
        self,
        repo: Repository,
        detector: GapDetector,
        timeline: TimelineStateMachine | None = None,
        settings: EngineSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.detector = detector
        self.timeline = timeline
        self.settings = settings
        self.clock = clock

    @staticmethod
    def validate_request(request: GapResolutionRequest) -> str | None:
        """Return the trimmed client response, or None for a skip.

        Exactly one of a non-empty response or ``skip_gap`` must be given.
        """
        if not (request.gap_id or "").strip():
            raise ValidationError("gapId is required")
        response = (request.client_response or "").strip()
        if request.skip_gap and response:
            raise ValidationError("Provide either clientResponse or skipGap, not both", {"gap_id": request.gap_id})
        if not request.skip_gap and not response:
            raise ValidationError("Either clientResponse or skipGap must be provided", {"gap_id": request.gap_id})
        return None if request.skip_gap else response

    async def resolve(
        self,
        request: GapResolutionRequest,
        *,
        assessment_id: str | None = None,
        check_resume: bool = True,
    ) -> GapResolutionResponse:
        """Resolve one pending gap.

        *assessment_id*, when given, must own the gap. With
        ``check_resume=False`` the caller takes over the resume check.
        """
        response = self.validate_request(request)
        found = self.repo.get_pending_gap_versioned(request.gap_id)
        if found is None:
            raise GapNotFound(request.gap_id)
        gap, version = found
        if assessment_id is not None and gap.assessment_id != assessment_id:
            raise ValidationError("Gap does not belong to this assessment",
                                  {"gap_id": gap.gap_id, "assessment_id": assessment_id})

        gap.resolved = True
        gap.resolved_at = self.clock()
        if response is None:
            gap.resolution_method = ResolutionMethod.FOUNDER_OVERRIDE
        else:
            gap.resolution_method = ResolutionMethod.CLIENT_INPUT
            gap.client_response = response
        try:
            self.repo.mark_gap_resolved(gap, version)
        except VersionConflict as exc:
            # Someone else resolved it between our read and write
            raise GapNotFound(request.gap_id) from exc

        side_effects: list[SideEffectOutcome] = []
        if response is None:
            log.info("Gap %s skipped (founder override)", gap.gap_id)
            impact = 0
            new_gaps = None
            message = "Gap marked as resolved by user"
        else:
            impact = completeness_impact(gap.category, response)
            new_gaps = await self._new_gaps_from_response(gap, response)
            message = "Gap resolved successfully"
            log.info("Gap %s resolved (impact %d, %d new gaps)", gap.gap_id, impact, len(new_gaps))

        if check_resume and gap.category == GapCategory.CRITICAL:
            side_effects.append(await self._resume_check(gap.assessment_id, {gap.gap_id}))

        return GapResolutionResponse(
            gap_id=gap.gap_id,
            resolved=True,
            impact_on_completeness=impact,
            new_gaps=new_gaps,
            message=message,
            side_effects=side_effects,
        )

    async def resolve_bulk(self, request: BulkGapResolutionRequest) -> BulkGapResolutionResponse:
        """Resolve a batch; each item succeeds or fails on its own."""
        limit = self.settings.bulk_resolution_limit
        if not request.resolutions:
            raise ValidationError("At least one resolution is required")
        if len(request.resolutions) > limit:
            raise ValidationError(f"Too many resolutions: {len(request.resolutions)} (maximum: {limit})",
                                  {"count": len(request.resolutions), "limit": limit})
        assessment = self.repo.get_assessment(request.assessment_id)

        result = BulkGapResolutionResponse(assessment_id=assessment.id)
        resolved_ids: set[str] = set()
        for item in request.resolutions:
            result.processed_count += 1
            try:
                outcome = await self.resolve(item, assessment_id=assessment.id, check_resume=False)
            except GapwatchError as exc:
                log.info("Bulk item %s failed: %s", item.gap_id, exc.message)
                result.failed_resolutions.append(FailedResolution(gap_id=item.gap_id, error=exc.message))
                continue
            except Exception as exc:
                log.exception("Unexpected failure resolving gap %s", item.gap_id)
                result.failed_resolutions.append(FailedResolution(gap_id=item.gap_id, error=str(exc) or "Unknown error"))
                continue
            result.resolved_count += 1
            result.new_gaps_count += len(outcome.new_gaps or [])
            resolved_ids.add(outcome.gap_id)

        if resolved_ids:
            log.info("Bulk resolution for %s resolved %d gaps, checking timeline resume",
                     assessment.id, len(resolved_ids))
            result.side_effects.append(await self._resume_check(assessment.id, resolved_ids))

        refreshed = self.repo.get_assessment(assessment.id)
        if refreshed.gap_analysis is not None:
            result.overall_completeness_score = refreshed.gap_analysis.overall_completeness_score
        return result

    def list_gaps(
        self,
        assessment_id: str,
        category: str | None = None,
        status: str = "pending",
        limit: int = 50,
    ) -> list[AssessmentGap]:
        if category is not None:
            try:
                parsed = GapCategory(category)
            except ValueError:
                raise ValidationError(f"Invalid category: {category}", {"category": category}) from None
        else:
            parsed = None
        if status not in GAP_STATUSES:
            raise ValidationError(f"Invalid status: {status}", {"status": status})
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise ValidationError(f"Limit must be between 1 and {MAX_LIST_LIMIT}", {"limit": limit})
        self.repo.get_assessment(assessment_id)
        return self.repo.list_gaps(assessment_id, parsed, status, limit)

    # -- internals ----------------------------------------------------------

    async def _resume_check(self, assessment_id: str, just_resolved: set[str]) -> SideEffectOutcome:
        """Ask the timeline to resume, covering every gap resolved so far."""
        if self.timeline is None:
            return SideEffectOutcome(name="resume_timeline", ok=True)
        covered = just_resolved | self.repo.resolved_gap_ids(assessment_id)
        return await best_effort("resume_timeline", self.timeline.resume_after_gap_resolution,
                                 assessment_id, covered, Actor.SYSTEM)

    async def _new_gaps_from_response(self, gap: AssessmentGap, response: str) -> list[AssessmentGap]:
        """Record the answer on the assessment and report any conflicts it introduces."""
        if not gap.question_id:
            return []
        assessment = self._record_answer(gap, gap.question_id, response)
        ref = f"{gap.domain}.{gap.question_id}"
        conflicts = [c for c in self.detector.detect_conflicts(assessment) if ref in c.question_ids]
        if not conflicts:
            return []
        new_gaps = await self.detector.conflict_gaps(assessment.id, conflicts)
        self.repo.put_gaps(new_gaps)
        log.info("Response to gap %s introduced %d conflicting answers", gap.gap_id, len(new_gaps))
        return new_gaps

    def _record_answer(self, gap: AssessmentGap, question_id: str, response: str):
        for attempt in range(1, 4):
            assessment, version = self.repo.get_assessment_versioned(gap.assessment_id)
            dr = assessment.domain_responses.setdefault(gap.domain, DomainResponse())
            dr.questions[question_id] = QuestionResponse(
                question_id=question_id, value=response, timestamp=self.clock(),
            )
            try:
                self.repo.save_assessment(assessment, expected_version=version)
            except VersionConflict:
                log.warning("Recording answer for gap %s conflicted (attempt %d)", gap.gap_id, attempt)
                continue
            return assessment
        raise VersionConflict(f"Could not record answer for gap {gap.gap_id}")
