"""Pydantic models for assessments, gaps, triage results and the delivery timeline."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

from gapwatch.domains import Domain, RegulatoryTier, Sector

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GapCategory(str, Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    NICE_TO_HAVE = "nice-to-have"

    @property
    def rank(self) -> int:
        return _CATEGORY_RANK[self]


_CATEGORY_RANK = {GapCategory.CRITICAL: 3, GapCategory.IMPORTANT: 2, GapCategory.NICE_TO_HAVE: 1}


class ResolutionMethod(str, Enum):
    CLIENT_INPUT = "client-input"
    AUTO_RESOLVED = "auto-resolved"
    FOUNDER_OVERRIDE = "founder-override"


class AnalysisDepth(str, Enum):
    QUICK = "quick"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class ConflictSeverity(str, Enum):
    MAJOR = "major"
    MODERATE = "moderate"
    MINOR = "minor"


class ComplianceLevel(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    MISSING = "missing"


class AssessmentStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    TRIAGING = "triaging"
    ANALYZING = "analyzing"
    SYNTHESIZING = "synthesizing"
    VALIDATING = "validating"
    PAUSED_FOR_GAPS = "paused-for-gaps"
    COMPLETED = "completed"


class Actor(str, Enum):
    SYSTEM = "system"
    FOUNDER = "founder"
    AGENT = "agent"


class PauseReason(str, Enum):
    CRITICAL_GAPS = "critical-gaps"
    CLARIFICATION_REQUIRED = "clarification-required"
    MANUAL_PAUSE = "manual-pause"


class ExtensionType(str, Enum):
    GAP_RESOLUTION = "gap-resolution"
    CLARIFICATION = "clarification"
    MANUAL = "manual"


class TimelineStatus(str, Enum):
    ON_TRACK = "on-track"
    PAUSED = "paused"
    EXTENDED = "extended"
    AT_RISK = "at-risk"
    OVERDUE = "overdue"


# ---------------------------------------------------------------------------
# Assessment aggregate
# ---------------------------------------------------------------------------

AnswerValue = Union[str, int, float, bool, list[Any], None]


class QuestionResponse(BaseModel):
    question_id: str
    value: AnswerValue = None
    timestamp: datetime | None = None


class DomainResponse(BaseModel):
    questions: dict[str, QuestionResponse] = {}
    completeness: float = 0.0


class IndustryClassification(BaseModel):
    sector: Sector = Sector.UNKNOWN
    regulatory_classification: RegulatoryTier = RegulatoryTier.NON_REGULATED

    @field_validator("sector", mode="before")
    @classmethod
    def unknown_sector(cls, v: Any) -> Sector:
        return v if isinstance(v, Sector) else Sector.parse(v)


Milestone = Literal["executive_24h", "detailed_48h", "implementation_72h"]


def as_utc(v: datetime | None) -> datetime | None:
    """Naive timestamps are taken to be UTC so they compare with the engine clock."""
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=UTC)
    return v


class DeliverySchedule(BaseModel):
    executive_24h: datetime
    detailed_48h: datetime
    implementation_72h: datetime

    @field_validator("executive_24h", "detailed_48h", "implementation_72h", mode="after")
    @classmethod
    def aware_deadline(cls, v: datetime) -> datetime:
        return as_utc(v)

    @classmethod
    def starting_at(cls, start: datetime) -> DeliverySchedule:
        return cls(
            executive_24h=start + timedelta(hours=24),
            detailed_48h=start + timedelta(hours=48),
            implementation_72h=start + timedelta(hours=72),
        )

    def shifted(self, duration_ms: int) -> DeliverySchedule:
        """All three deadlines move together by the same duration."""
        delta = timedelta(milliseconds=duration_ms)
        return DeliverySchedule(
            executive_24h=self.executive_24h + delta,
            detailed_48h=self.detailed_48h + delta,
            implementation_72h=self.implementation_72h + delta,
        )

    def deadline(self, milestone: Milestone) -> datetime:
        return getattr(self, milestone)


class ClarificationPolicy(BaseModel):
    allow_clarification_until: Milestone = "executive_24h"
    max_clarification_requests: int = 3
    max_timeline_extension_hours: float = 24.0


class Assessment(BaseModel):
    id: str
    company_id: str = "unassigned"
    title: str = ""
    contact_email: str = ""
    industry_classification: IndustryClassification | None = None
    domain_responses: dict[str, DomainResponse] = {}
    delivery_schedule: DeliverySchedule
    clarification_policy: ClarificationPolicy = ClarificationPolicy()
    status: AssessmentStatus = AssessmentStatus.SUBMITTED
    gap_analysis: GapAnalysis | None = None
    extension_count: int = 0
    created_at: datetime | None = None
    triage_completed_at: datetime | None = None
    analysis_completed_at: datetime | None = None
    synthesis_completed_at: datetime | None = None

    @field_validator("created_at", "triage_completed_at", "analysis_completed_at",
                     "synthesis_completed_at", mode="after")
    @classmethod
    def aware_timestamp(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class AssessmentCreate(BaseModel):
    id: str | None = None
    company_id: str = "unassigned"
    title: str = ""
    contact_email: str = ""
    industry_classification: IndustryClassification | None = None
    domain_responses: dict[str, DomainResponse] = {}
    delivery_schedule: DeliverySchedule | None = None
    clarification_policy: ClarificationPolicy = ClarificationPolicy()


# ---------------------------------------------------------------------------
# Gaps and analysis snapshot
# ---------------------------------------------------------------------------


class AssessmentGap(BaseModel):
    gap_id: str
    assessment_id: str
    domain: str
    category: GapCategory
    description: str
    detected_at: datetime
    question_id: str | None = None
    suggested_questions: list[str] = []
    follow_up_prompts: list[str] = []
    resolved: bool = False
    resolution_method: ResolutionMethod | None = None
    resolved_at: datetime | None = None
    client_response: str | None = None
    impact_on_timeline: bool = False
    priority: int = Field(0, ge=0, le=10)
    estimated_resolution_time: int = 15  # minutes


class ConflictingResponse(BaseModel):
    question_ids: list[str]
    conflict_description: str
    severity: ConflictSeverity
    suggested_resolution: str


class DomainCompletenessAnalysis(BaseModel):
    score: float
    identified_gaps: list[AssessmentGap] = []
    data_quality_score: float = 0.0
    response_depth_score: float = 0.0
    consistency_score: float = 100.0
    missing_critical_questions: list[str] = []
    conflicting_responses: list[ConflictingResponse] = []


class IndustrySpecificGap(BaseModel):
    regulation: str
    requirements: list[str]
    compliance_level: ComplianceLevel
    mandatory_fields: list[str]
    recommended_fields: list[str] = []
    risk_level: Literal["low", "medium", "high"] = "high"


class GapAnalysis(BaseModel):
    overall_completeness_score: int
    domain_completeness: dict[str, DomainCompletenessAnalysis]
    industry_specific_gaps: list[IndustrySpecificGap] = []
    last_analyzed_at: datetime
    analysis_version: str
    detected_gaps: list[AssessmentGap] = []
    critical_gaps_count: int = 0
    total_gaps_count: int = 0

    @field_validator("last_analyzed_at", mode="after")
    @classmethod
    def aware_analyzed_at(cls, v: datetime) -> datetime:
        return as_utc(v)


class GapRecommendation(BaseModel):
    title: str
    description: str
    suggested_actions: list[str]
    estimated_impact: Literal["low", "medium", "high"]
    priority: int
    category: GapCategory


class SideEffectOutcome(BaseModel):
    """Outcome of a best-effort call (persistence, notification, timeline hook)."""
    name: str
    ok: bool
    error: str | None = None


class GapAnalysisRequest(BaseModel):
    assessment_id: str
    analysis_depth: AnalysisDepth = AnalysisDepth.STANDARD
    focus_domains: list[Domain] | None = None
    force_reanalysis: bool = False


class GapAnalysisResponse(BaseModel):
    assessment_id: str
    gap_analysis: GapAnalysis
    processing_time_ms: int
    model_used: str
    cost_estimate: float
    recommendations: list[GapRecommendation] = []
    side_effects: list[SideEffectOutcome] = []


class GapResolutionRequest(BaseModel):
    gap_id: str
    client_response: str | None = None
    skip_gap: bool = False
    skip_reason: str | None = None


class GapResolutionResponse(BaseModel):
    gap_id: str
    resolved: bool
    impact_on_completeness: float
    new_gaps: list[AssessmentGap] | None = None
    message: str
    side_effects: list[SideEffectOutcome] = []


class BulkGapResolutionRequest(BaseModel):
    assessment_id: str
    resolutions: list[GapResolutionRequest]


class FailedResolution(BaseModel):
    gap_id: str
    error: str


class BulkGapResolutionResponse(BaseModel):
    assessment_id: str
    processed_count: int = 0
    resolved_count: int = 0
    new_gaps_count: int = 0
    overall_completeness_score: int = 0
    failed_resolutions: list[FailedResolution] = []
    side_effects: list[SideEffectOutcome] = []


# ---------------------------------------------------------------------------
# Triage
# ---------------------------------------------------------------------------


class DomainScore(BaseModel):
    # severity and priority_level stay plain strings: the validator has to see
    # whatever the model produced in order to flag mismatches.
    score: float
    confidence: float
    reasoning: str = ""
    critical_factors: list[str] = []
    cross_domain_impacts: list[str] = []
    severity: str
    priority_level: str
    agent_activation: str = "CONDITIONAL"


class IndustryContext(BaseModel):
    sector: str = Sector.UNKNOWN.value
    regulatory_classification: str = RegulatoryTier.NON_REGULATED.value
    specific_rules: list[str] = []
    benchmarks: dict[str, float] = {}
    weighting_multipliers: dict[str, float] = {}


class TriageAnalysis(BaseModel):
    domain_scores: dict[str, DomainScore]
    critical_domains: list[str]
    confidence: float
    reasoning: str = ""
    industry_context: IndustryContext = IndustryContext()
    processing_metrics: dict[str, Any] = {}


class TriageIssueKind(str, Enum):
    INSUFFICIENT_DOMAINS = "insufficient-domains"
    TOO_MANY_DOMAINS = "too-many-domains"
    UNBALANCED_SELECTION = "unbalanced-selection"
    INVALID_SCORE = "invalid-score"
    INVALID_CONFIDENCE = "invalid-confidence"
    SEVERITY_MISMATCH = "severity-mismatch"
    PRIORITY_MISMATCH = "priority-mismatch"
    MISSING_INDUSTRY_DOMAIN = "missing-industry-domain"
    MISSING_RISK_COMPLIANCE = "missing-risk-compliance"
    LOW_DATA_COMPLETENESS = "low-data-completeness"
    INVALID_OVERALL_CONFIDENCE = "invalid-overall-confidence"
    CONFIDENCE_TOO_HIGH = "confidence-too-high"


class TriageIssue(BaseModel):
    kind: TriageIssueKind
    message: str


class TriageValidationReport(BaseModel):
    is_valid: bool
    confidence: float
    validation_errors: list[TriageIssue] = []
    fallback_activated: bool = False
    data_completeness: float = 0.0
    quality_score: float = 0.0


class FallbackStrategy(str, Enum):
    STRUCTURAL_REPAIR = "structural-repair"
    DEFAULT_DOMAINS = "default-domains"
    INDUSTRY = "industry"
    RULE_BASED = "rule-based"
    CONFIDENCE_ADJUSTED = "confidence-adjusted"


class TriageValidationOutcome(BaseModel):
    is_valid: bool
    result: TriageAnalysis
    fallback_applied: bool
    strategy: FallbackStrategy | None = None
    report: TriageValidationReport


class TriageValidationRequest(BaseModel):
    triage: TriageAnalysis


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


class TimelinePauseEvent(BaseModel):
    pause_id: str
    assessment_id: str
    pause_reason: PauseReason
    paused_at: datetime
    paused_by: Actor
    affected_gaps: list[str]
    estimated_resolution_time: float  # minutes
    next_steps_description: str
    resume_by: datetime | None = None
    active: bool = True
    resumed_at: datetime | None = None
    resumed_by: Actor | None = None


class TimelineExtension(BaseModel):
    extension_id: str
    assessment_id: str
    extension_type: ExtensionType
    original_deadlines: DeliverySchedule
    new_deadlines: DeliverySchedule
    extension_duration: int  # milliseconds
    requested_by: Actor
    requested_at: datetime
    justification: str
    approved_by: str | None = None
    approved_at: datetime | None = None
    applied: bool = False
    affected_stakeholders: list[str] = []


class ExtensionRequest(BaseModel):
    extension_type: ExtensionType
    duration_ms: int = Field(gt=0)
    justification: str
    requested_by: Actor = Actor.FOUNDER


class ExtensionApproval(BaseModel):
    approved_by: str


class RemainingTime(BaseModel):
    executive_24h: int
    detailed_48h: int
    implementation_72h: int


class NextSteps(BaseModel):
    immediate: list[str]
    upcoming: list[str]
    summary: str


class TimelineStatusReport(BaseModel):
    assessment_id: str
    status: TimelineStatus
    pause_event: TimelinePauseEvent | None = None
    extensions: list[TimelineExtension] = []
    remaining_time: RemainingTime
    risk_factors: list[str] = []
    next_steps: NextSteps


Assessment.model_rebuild()
