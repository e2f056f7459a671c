"""Delivery timeline state machine: pause for gaps, resume, bounded extensions.

Timeline status is derived on read, never stored:

    paused    an active pause event exists
    extended  at least one extension was requested
    overdue   any deadline has passed
    at-risk   the 24h deadline is less than ``at_risk_threshold_hours`` away
    on-track  otherwise

The active pause lives under a single fixed key, so creating it is a
create-if-absent write and two concurrent pauses cannot both succeed.
Delivery-schedule changes are versioned writes retried on conflict, so all
three deadlines move together or not at all.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from gapwatch.errors import BusinessRuleViolation, ExtensionNotFound, ValidationError, VersionConflict
from gapwatch.notifier import NotificationService, deliver
from gapwatch.schemas import (
    Actor,
    Assessment,
    AssessmentGap,
    AssessmentStatus,
    ExtensionType,
    GapCategory,
    NextSteps,
    PauseReason,
    RemainingTime,
    TimelineExtension,
    TimelinePauseEvent,
    TimelineStatus,
    TimelineStatusReport,
)
from gapwatch.settings import DEFAULT_SETTINGS, HOUR_MS, EngineSettings
from gapwatch.store import Repository
from gapwatch.utils import best_effort, ms_between, new_id, utcnow

log = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3
DEFAULT_GAP_MINUTES = 20


def estimated_resolution_minutes(gaps: list[AssessmentGap]) -> float:
    """Sum of per-gap estimates, critical gaps weighted 1.5x."""
    total = 0.0
    for gap in gaps:
        base = gap.estimated_resolution_time or DEFAULT_GAP_MINUTES
        total += base * (1.5 if gap.category == GapCategory.CRITICAL else 1.0)
    return total


def next_steps_description(gaps: list[AssessmentGap]) -> str:
    if not gaps:
        return "No specific actions required."
    steps = [
        f"Review {len(gaps)} critical gap(s) identified in your assessment",
        "Provide additional information through the gap resolution interface",
        "Address the most critical items first (marked with high priority)",
        "Contact support if you need clarification on any requirements",
    ]
    return ". ".join(steps) + "."


def resume_status(assessment: Assessment) -> AssessmentStatus:
    """Pick the pipeline stage to return to from the completed milestones."""
    if assessment.triage_completed_at and not assessment.analysis_completed_at:
        return AssessmentStatus.ANALYZING
    if assessment.analysis_completed_at and not assessment.synthesis_completed_at:
        return AssessmentStatus.SYNTHESIZING
    if assessment.synthesis_completed_at:
        return AssessmentStatus.VALIDATING
    return AssessmentStatus.TRIAGING


def _hours(ms: int) -> int:
    return int(ms / HOUR_MS + 0.5)


class TimelineStateMachine:
    def __init__(
        self,
        repo: Repository,
        notifier: NotificationService | None = None,
        settings: EngineSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    # -----------------------------------------------------------------------
    # Pause / resume
    # -----------------------------------------------------------------------

    async def pause_for_critical_gaps(
        self,
        assessment_id: str,
        critical_gaps: list[AssessmentGap],
        paused_by: Actor = Actor.SYSTEM,
    ) -> TimelinePauseEvent:
        assessment = self.repo.get_assessment(assessment_id)
        self._validate_pause(assessment)

        now = self.clock()
        minutes = estimated_resolution_minutes(critical_gaps)
        event = TimelinePauseEvent(
            pause_id=new_id("pause"),
            assessment_id=assessment_id,
            pause_reason=PauseReason.CRITICAL_GAPS,
            paused_at=now,
            paused_by=paused_by,
            affected_gaps=[g.gap_id for g in critical_gaps],
            estimated_resolution_time=minutes,
            next_steps_description=next_steps_description(critical_gaps),
            resume_by=now + timedelta(minutes=minutes),
        )
        if not self.repo.create_active_pause(event):
            raise BusinessRuleViolation(f"Assessment {assessment_id} is already paused", {"assessment_id": assessment_id})

        assessment = self._mutate_assessment(assessment_id, lambda a: setattr(a, "status", AssessmentStatus.PAUSED_FOR_GAPS))
        log.info("Timeline paused for %s: %d gaps, estimated resolution %.0f minutes",
                 assessment_id, len(critical_gaps), minutes)

        await best_effort("pause_notification", self._notify, assessment,
                          "Assessment Timeline Paused - Action Required",
                          f'Your assessment "{assessment.title}" has been paused due to critical information gaps.\n\n'
                          f"Gaps Identified: {len(critical_gaps)}\n"
                          f"Estimated Resolution Time: {minutes:.0f} minutes\n\n"
                          f"Next Steps: {event.next_steps_description}\n\n"
                          "Please log into your assessment portal to address these gaps.")
        return event

    def _validate_pause(self, assessment: Assessment) -> None:
        if self.repo.get_active_pause(assessment.id) is not None:
            raise BusinessRuleViolation(f"Assessment {assessment.id} is already paused", {"assessment_id": assessment.id})
        milestone = assessment.clarification_policy.allow_clarification_until
        if self.clock() > assessment.delivery_schedule.deadline(milestone):
            raise BusinessRuleViolation("Clarification period has expired", {"milestone": milestone})
        if self._extension_count(assessment) >= self.settings.max_total_extensions:
            raise BusinessRuleViolation("Maximum timeline extensions reached")

    def retarget_pause(self, assessment_id: str, critical_gaps: list[AssessmentGap]) -> TimelinePauseEvent | None:
        """Point the active pause at a newer set of critical gaps; ``paused_at`` is kept."""
        pause = self.repo.get_active_pause(assessment_id)
        if pause is None:
            return None
        minutes = estimated_resolution_minutes(critical_gaps)
        updated = pause.model_copy(update={
            "affected_gaps": [g.gap_id for g in critical_gaps],
            "estimated_resolution_time": minutes,
            "next_steps_description": next_steps_description(critical_gaps),
            "resume_by": self.clock() + timedelta(minutes=minutes),
        })
        self.repo.replace_active_pause(updated)
        log.info("Active pause %s for %s now covers %d critical gaps",
                 pause.pause_id, assessment_id, len(critical_gaps))
        return updated

    async def resume_after_gap_resolution(
        self,
        assessment_id: str,
        resolved_gap_ids: list[str] | set[str],
        resumed_by: Actor = Actor.SYSTEM,
    ) -> bool:
        """Resume only if every gap listed in the active pause is in *resolved_gap_ids*."""
        pause = self.repo.get_active_pause(assessment_id)
        if pause is None:
            log.info("No active pause for %s, nothing to resume", assessment_id)
            return False

        resolved = set(resolved_gap_ids)
        unresolved = [g for g in pause.affected_gaps if g not in resolved]
        if unresolved:
            log.info("Cannot resume %s: %d critical gaps still unresolved", assessment_id, len(unresolved))
            return False

        now = self.clock()
        duration_ms = ms_between(pause.paused_at, now)
        extension = None
        if duration_ms >= self.settings.auto_extension_min_pause_ms:
            capped = min(duration_ms, self.settings.max_gap_resolution_extension_ms)
            try:
                extension = await self.request_timeline_extension(
                    assessment_id, ExtensionType.GAP_RESOLUTION, capped,
                    f"Automatic extension due to gap resolution delay ({_hours(duration_ms)} hours)",
                    Actor.SYSTEM,
                )
            except BusinessRuleViolation as exc:
                log.warning("Automatic extension for %s rejected: %s", assessment_id, exc.message)

        closed = pause.model_copy(update={"active": False, "resumed_at": now, "resumed_by": resumed_by})
        self.repo.close_pause(closed)
        assessment = self._mutate_assessment(assessment_id, lambda a: setattr(a, "status", resume_status(a)))
        log.info("Timeline resumed for %s with status %s", assessment_id, assessment.status.value)

        extended = (
            f"Your delivery schedule has been extended by {_hours(extension.extension_duration)} hours.\n"
            if extension is not None and extension.applied else ""
        )
        await best_effort("resume_notification", self._notify, assessment,
                          "Assessment Timeline Resumed",
                          f'Your assessment "{assessment.title}" timeline has been resumed.\n\n'
                          f"All critical gaps have been resolved.\n{extended}\n"
                          "Your assessment will continue processing according to the updated schedule.")
        return True

    # -----------------------------------------------------------------------
    # Extensions
    # -----------------------------------------------------------------------

    def _max_extension_ms(self, extension_type: ExtensionType) -> int:
        if extension_type == ExtensionType.GAP_RESOLUTION:
            return self.settings.max_gap_resolution_extension_ms
        return self.settings.max_clarification_extension_ms

    def _extension_count(self, assessment: Assessment) -> int:
        return max(assessment.extension_count, len(self.repo.list_extensions(assessment.id)))

    async def request_timeline_extension(
        self,
        assessment_id: str,
        extension_type: ExtensionType,
        duration_ms: int,
        justification: str,
        requested_by: Actor = Actor.FOUNDER,
    ) -> TimelineExtension:
        if duration_ms <= 0:
            raise ValidationError("Extension duration must be positive", {"duration_ms": duration_ms})
        if duration_ms > self._max_extension_ms(extension_type):
            raise BusinessRuleViolation(
                f"Extension duration exceeds maximum allowed for {extension_type.value}",
                {"duration_ms": duration_ms, "max_ms": self._max_extension_ms(extension_type)},
            )

        auto_approve = duration_ms <= self.settings.auto_approval_threshold_ms
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            assessment, version = self.repo.get_assessment_versioned(assessment_id)
            if self._extension_count(assessment) >= self.settings.max_total_extensions:
                raise BusinessRuleViolation("Maximum timeline extensions reached")

            now = self.clock()
            extension = TimelineExtension(
                extension_id=new_id("ext"),
                assessment_id=assessment_id,
                extension_type=extension_type,
                original_deadlines=assessment.delivery_schedule,
                new_deadlines=assessment.delivery_schedule.shifted(duration_ms),
                extension_duration=duration_ms,
                requested_by=requested_by,
                requested_at=now,
                justification=justification,
                affected_stakeholders=[assessment.contact_email] if assessment.contact_email else [],
            )
            if auto_approve:
                extension.approved_by = "system"
                extension.approved_at = now
                extension.applied = True

            assessment.extension_count = self._extension_count(assessment) + 1
            if extension.applied:
                assessment.delivery_schedule = extension.new_deadlines
            try:
                with self.repo.store.transaction():
                    self.repo.save_assessment(assessment, expected_version=version)
                    self.repo.put_extension(extension)
            except VersionConflict:
                log.warning("Extension write for %s conflicted (attempt %d)", assessment_id, attempt)
                continue
            break
        else:
            raise VersionConflict(f"Could not record extension for {assessment_id} after {MAX_WRITE_ATTEMPTS} attempts")

        log.info("Extension %s requested for %s: %s, %d ms (%s)", extension.extension_id, assessment_id,
                 extension_type.value, duration_ms, "auto-approved" if auto_approve else "pending approval")
        await best_effort("extension_notification", self._notify_extension, assessment, extension)
        return extension

    async def approve_extension(self, assessment_id: str, extension_id: str, approved_by: str) -> TimelineExtension:
        """Approve a pending extension and shift the current schedule by its duration."""
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            extension = self.repo.get_extension(assessment_id, extension_id)
            if extension is None:
                raise ExtensionNotFound(extension_id)
            if extension.approved_by:
                raise BusinessRuleViolation(f"Extension {extension_id} is already approved",
                                            {"approved_by": extension.approved_by})

            assessment, version = self.repo.get_assessment_versioned(assessment_id)
            now = self.clock()
            extension.original_deadlines = assessment.delivery_schedule
            extension.new_deadlines = assessment.delivery_schedule.shifted(extension.extension_duration)
            extension.approved_by = approved_by
            extension.approved_at = now
            extension.applied = True
            assessment.delivery_schedule = extension.new_deadlines
            try:
                with self.repo.store.transaction():
                    self.repo.save_assessment(assessment, expected_version=version)
                    self.repo.put_extension(extension)
            except VersionConflict:
                log.warning("Extension approval for %s conflicted (attempt %d)", assessment_id, attempt)
                continue
            break
        else:
            raise VersionConflict(f"Could not approve extension {extension_id} after {MAX_WRITE_ATTEMPTS} attempts")

        log.info("Extension %s approved by %s", extension_id, approved_by)
        await best_effort("extension_notification", self._notify_extension, assessment, extension)
        return extension

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    def get_timeline_status(self, assessment_id: str) -> TimelineStatusReport:
        assessment = self.repo.get_assessment(assessment_id)
        pause = self.repo.get_active_pause(assessment_id)
        extensions = self.repo.list_extensions(assessment_id)
        now = self.clock()
        schedule = assessment.delivery_schedule
        remaining = RemainingTime(
            executive_24h=ms_between(now, schedule.executive_24h),
            detailed_48h=ms_between(now, schedule.detailed_48h),
            implementation_72h=ms_between(now, schedule.implementation_72h),
        )

        risks: list[str] = []
        overdue = min(remaining.executive_24h, remaining.detailed_48h, remaining.implementation_72h) < 0
        if pause is not None:
            status = TimelineStatus.PAUSED
        elif extensions:
            status = TimelineStatus.EXTENDED
        elif overdue:
            status = TimelineStatus.OVERDUE
            risks.append("Timeline deadline exceeded")
        elif remaining.executive_24h < self.settings.at_risk_threshold_ms:
            status = TimelineStatus.AT_RISK
            risks.append("Approaching 24h deadline")
        else:
            status = TimelineStatus.ON_TRACK

        if assessment.gap_analysis is not None and len(assessment.gap_analysis.detected_gaps) > 5:
            risks.append("High number of detected gaps")
        if len(extensions) >= self.settings.max_total_extensions - 1:
            risks.append("Approaching maximum extension limit")

        return TimelineStatusReport(
            assessment_id=assessment_id,
            status=status,
            pause_event=pause,
            extensions=extensions,
            remaining_time=remaining,
            risk_factors=risks,
            next_steps=self.next_steps(status, pause, risks),
        )

    @staticmethod
    def next_steps(status: TimelineStatus, pause: TimelinePauseEvent | None, risks: list[str]) -> NextSteps:
        immediate: list[str] = []
        upcoming: list[str] = []
        if status == TimelineStatus.PAUSED and pause is not None:
            immediate.append("Review and resolve critical gaps to resume your assessment timeline")
            immediate.append("Access the gap resolution interface in your assessment portal")
            if pause.affected_gaps:
                immediate.append(f"Address {len(pause.affected_gaps)} critical gap(s) requiring your attention")
            upcoming.append("Your assessment will automatically resume once all critical gaps are resolved")
            upcoming.append("You will receive an email confirmation when timeline resumes")
        elif status == TimelineStatus.AT_RISK:
            immediate.append("Your assessment deadline is approaching - review any pending items")
            immediate.append("Contact support if you need assistance with any requirements")
            upcoming.append("Your assessment will continue processing according to schedule")
            upcoming.append("You will receive delivery confirmation emails as each phase completes")
        elif status == TimelineStatus.EXTENDED:
            immediate.append("Your assessment timeline has been extended - no immediate action required")
            upcoming.append("Your assessment will continue processing according to the updated schedule")
            upcoming.append("You will receive delivery confirmation emails as each phase completes")
        elif status == TimelineStatus.OVERDUE:
            immediate.append("Your assessment deadline has passed - please contact support immediately")
            immediate.append("Review any outstanding requirements that may be blocking completion")
            upcoming.append("Our team will work with you to determine the best path forward")
        else:
            immediate.append("Your assessment is processing normally - no action required")
            upcoming.append("You will receive your executive summary within 24 hours")
            upcoming.append("Detailed report and implementation kit will follow according to schedule")

        for risk in risks:
            if "gap" in risk:
                immediate.append("Monitor gap resolution progress to prevent timeline delays")
            elif "deadline" in risk:
                immediate.append("Prepare for accelerated delivery if needed")
            elif "extension" in risk:
                immediate.append("Be aware that extension options may be limited")

        if status == TimelineStatus.PAUSED and pause is not None:
            reason = pause.pause_reason.value.replace("-", " ")
            summary = (f"Your assessment is currently paused due to {reason}. "
                       "Please complete the required actions to resume processing.")
        elif status == TimelineStatus.AT_RISK:
            summary = "Your assessment timeline is at risk. Please review the immediate action items below."
        elif status == TimelineStatus.OVERDUE:
            summary = "Your assessment deadline has passed. Please contact support for assistance."
        else:
            summary = "Your assessment is progressing normally according to schedule."
        return NextSteps(immediate=immediate, upcoming=upcoming, summary=summary)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _mutate_assessment(self, assessment_id: str, mutate: Callable[[Assessment], None]) -> Assessment:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            assessment, version = self.repo.get_assessment_versioned(assessment_id)
            mutate(assessment)
            try:
                self.repo.save_assessment(assessment, expected_version=version)
            except VersionConflict:
                log.warning("Assessment %s update conflicted (attempt %d)", assessment_id, attempt)
                continue
            return assessment
        raise VersionConflict(f"Could not update assessment {assessment_id} after {MAX_WRITE_ATTEMPTS} attempts")

    async def _notify(self, assessment: Assessment, subject: str, body: str) -> None:
        if self.notifier is None:
            return
        await deliver(self.notifier, assessment.contact_email, subject, body)

    async def _notify_extension(self, assessment: Assessment, extension: TimelineExtension) -> None:
        d = extension.new_deadlines
        status = "extended" if extension.applied else "extension requested (pending approval)"
        await self._notify(
            assessment, "Assessment Timeline Extended",
            f'Your assessment "{assessment.title}" timeline has been {status}.\n\n'
            f"Extension Type: {extension.extension_type.value}\n"
            f"Duration: {_hours(extension.extension_duration)} hours\n"
            f"Reason: {extension.justification}\n\n"
            "New Delivery Schedule:\n"
            f"- Executive Summary: {d.executive_24h:%Y-%m-%d %H:%M %Z}\n"
            f"- Detailed Report: {d.detailed_48h:%Y-%m-%d %H:%M %Z}\n"
            f"- Implementation Kit: {d.implementation_72h:%Y-%m-%d %H:%M %Z}",
        )
