"""Gap detection: completeness scoring plus missing, shallow, conflicting and compliance gaps.

Architecture
------------
``GapDetector.analyze`` loads an assessment and either serves a fresh cached
``GapAnalysis`` (younger than ``cache_freshness_hours``) or recomputes one:

- **Missing** gaps for domains without any answer and for unanswered
  critical questions (rule based, always on).
- **Quality** gaps for brief answers and answers without depth indicators
  (``standard`` and ``comprehensive`` depth). Follow-up questions come from
  the completion service with static fallbacks.
- **AI** gaps from a per-answer completion pass (``comprehensive`` only).
  Unusable output yields no extra gaps.
- **Conflict** gaps from the rule table in ``CONFLICT_RULES``, intra-domain
  and cross-domain.
- **Industry** compliance gaps (FCA for heavily regulated financial
  services, HIPAA/GDPR for healthcare).

Persisting the snapshot and gap records, pausing the timeline and notifying
the founder are best-effort side effects reported in ``side_effects``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Iterable

from gapwatch.domains import ALL_DOMAINS, Domain, RegulatoryTier, Sector, critical_questions, domain_context, domain_weight
from gapwatch.llm import CompletionService, complete_json
from gapwatch.notifier import FounderNotifier
from gapwatch.schemas import (
    Actor,
    AnalysisDepth,
    Assessment,
    AssessmentGap,
    ComplianceLevel,
    ConflictingResponse,
    ConflictSeverity,
    DomainCompletenessAnalysis,
    DomainResponse,
    GapAnalysis,
    GapAnalysisRequest,
    GapAnalysisResponse,
    GapCategory,
    GapRecommendation,
    IndustrySpecificGap,
    SideEffectOutcome,
)
from gapwatch.scoring import (
    answered,
    consistency_score,
    data_quality_score,
    domain_completeness_score,
    estimate_cost,
    has_any_answer,
    is_brief,
    is_response_empty,
    is_text_answer,
    lacks_depth,
    overall_completeness_score,
    response_depth_score,
)
from gapwatch.settings import DEFAULT_SETTINGS, EngineSettings
from gapwatch.store import Repository
from gapwatch.utils import best_effort, new_id, utcnow

if TYPE_CHECKING:
    from gapwatch.timeline import TimelineStateMachine

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Conflict rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConflictRule:
    """Two answers that contradict each other when both take the listed values."""
    first: tuple[Domain, str]
    first_values: frozenset[str]
    second: tuple[Domain, str]
    second_values: frozenset[str]
    severity: ConflictSeverity
    description: str
    resolution: str

    @property
    def cross_domain(self) -> bool:
        return self.first[0] != self.second[0]

    @property
    def domains(self) -> tuple[Domain, Domain]:
        return self.first[0], self.second[0]

    def question_ids(self) -> list[str]:
        return [f"{self.first[0].value}.{self.first[1]}", f"{self.second[0].value}.{self.second[1]}"]

    def check(self, responses: dict[str, DomainResponse]) -> ConflictingResponse | None:
        if _answer_in(responses, self.first, self.first_values) and _answer_in(responses, self.second, self.second_values):
            return ConflictingResponse(
                question_ids=self.question_ids(),
                conflict_description=self.description,
                severity=self.severity,
                suggested_resolution=self.resolution,
            )
        return None


def _answer_in(responses: dict[str, DomainResponse], ref: tuple[Domain, str], values: frozenset[str]) -> bool:
    domain, question_id = ref
    dr = responses.get(domain.value)
    if dr is None:
        return False
    q = dr.questions.get(question_id)
    if q is None or not isinstance(q.value, str):
        return False
    return q.value.strip().lower() in values


CONFLICT_RULES: tuple[ConflictRule, ...] = (
    ConflictRule(
        first=(Domain.FINANCIAL_MANAGEMENT, "2.3"), first_values=frozenset({"severely-limited"}),
        second=(Domain.REVENUE_ENGINE, "3.1"), second_values=frozenset({"aggressive"}),
        severity=ConflictSeverity.MAJOR,
        description="Aggressive revenue growth plans conflict with severe budget limitations",
        resolution="Please clarify how aggressive growth will be funded with limited budget",
    ),
    ConflictRule(
        first=(Domain.PEOPLE_ORGANIZATION, "5.1"), first_values=frozenset({"rapid-hiring"}),
        second=(Domain.PEOPLE_ORGANIZATION, "5.3"), second_values=frozenset({"hiring-freeze"}),
        severity=ConflictSeverity.MODERATE,
        description="Rapid hiring plans conflict with a stated hiring freeze",
        resolution="Please clarify whether headcount is growing or frozen over the next 12 months",
    ),
    ConflictRule(
        first=(Domain.OPERATIONAL_EXCELLENCE, "4.1"), first_values=frozenset({"fully-documented"}),
        second=(Domain.OPERATIONAL_EXCELLENCE, "4.2"), second_values=frozenset({"ad-hoc"}),
        severity=ConflictSeverity.MINOR,
        description="Fully documented processes conflict with ad-hoc process execution",
        resolution="Please clarify how documented processes are followed in day-to-day work",
    ),
)

_CONFLICT_CATEGORY = {
    ConflictSeverity.MAJOR: GapCategory.CRITICAL,
    ConflictSeverity.MODERATE: GapCategory.IMPORTANT,
    ConflictSeverity.MINOR: GapCategory.NICE_TO_HAVE,
}
_CONFLICT_PRIORITY = {GapCategory.CRITICAL: 8, GapCategory.IMPORTANT: 6, GapCategory.NICE_TO_HAVE: 4}
_AI_GAP_PRIORITY = {GapCategory.CRITICAL: 8, GapCategory.IMPORTANT: 5, GapCategory.NICE_TO_HAVE: 3}

# ---------------------------------------------------------------------------
# Prompts and static follow-ups
# ---------------------------------------------------------------------------

GAP_TYPE_CONTEXT = {
    "brief_response": "The response is too brief and lacks sufficient detail for analysis",
    "lacks_depth": "The response lacks specific examples and depth indicators",
    "conflicting": "The response conflicts with other provided information",
    "general": "General information gap requiring clarification",
}

FALLBACK_FOLLOW_UPS: dict[str, tuple[list[str], list[str]]] = {
    "brief_response": (
        [
            "Could you provide more specific details about your current approach?",
            "What specific challenges have you encountered in this area?",
            "Can you share any examples or metrics that illustrate this?",
        ],
        [
            "Please elaborate with specific examples and details",
            "Additional context will help us provide better recommendations",
        ],
    ),
    "lacks_depth": (
        [
            "What specific processes or systems do you have in place?",
            "How do you measure success in this area?",
            "What are the main challenges you face?",
        ],
        [
            "Specific examples would be very helpful",
            "Please share how this works in practice at your organization",
        ],
    ),
    "general": (
        [
            "Could you provide more detail about this area?",
            "What additional context would be helpful to share?",
        ],
        [
            "Any additional information would be valuable",
            "Please share whatever details you think would be relevant",
        ],
    ),
}

FOLLOW_UP_PROMPT = """\
You are an expert business consultant analyzing a client's response to an assessment question.

DOMAIN: {domain} - {context}
QUESTION ID: {question_id}
ORIGINAL RESPONSE: "{response}"
GAP TYPE: {gap_context}

Generate 2-3 intelligent follow-up questions that will help gather the missing \
information needed for thorough analysis. Questions should be specific, \
actionable and tied to the domain. Include supportive prompts that encourage \
detailed responses.

Respond with ONLY valid JSON:
{{
  "questions": ["Question 1", "Question 2", "Question 3"],
  "prompts": ["Encouraging prompt 1", "Encouraging prompt 2"]
}}
"""

GAP_ANALYSIS_PROMPT = """\
You are an expert business consultant analyzing client responses for information gaps.

DOMAIN: {domain} - {context}
QUESTION ID: {question_id}
CLIENT RESPONSE: "{response}"

Analyze this response for information gaps that could impact business analysis \
quality: missing business context, lack of metrics or examples, contradictions, \
or insufficient detail for actionable recommendations. Be conservative and only \
report genuine gaps.

Respond with ONLY valid JSON:
{{
  "hasGaps": true,
  "identifiedGaps": [
    {{
      "description": "Brief description of the gap",
      "severity": "critical|important|nice-to-have",
      "suggestedQuestions": ["Question 1", "Question 2"],
      "followUpPrompts": ["Prompt 1", "Prompt 2"],
      "estimatedTime": 15
    }}
  ]
}}
"""

CONFLICT_PROMPT = """\
You are an expert business consultant helping resolve conflicting information in an assessment.

DOMAIN: {domain} - {context}
CONFLICTING QUESTIONS: {question_ids}
CONFLICT DESCRIPTION: {description}
SEVERITY: {severity}

Generate 2-3 non-confrontational questions that help the client explain how both \
aspects might coexist, or which one is more accurate.

Respond with ONLY valid JSON:
{{
  "questions": ["Question 1", "Question 2", "Question 3"],
  "prompts": ["Supportive prompt 1", "Supportive prompt 2"]
}}
"""

# ---------------------------------------------------------------------------
# Industry compliance
# ---------------------------------------------------------------------------


def _compliance(responses: dict[str, DomainResponse], fields: list[str], required_domains: Iterable[Domain]) -> ComplianceLevel:
    if any(d.value not in responses for d in required_domains):
        return ComplianceLevel.MISSING
    count = 0
    for field in fields:
        domain, _, question_id = field.partition(".")
        if answered(responses.get(domain), question_id):
            count += 1
    if count == len(fields):
        return ComplianceLevel.FULL
    return ComplianceLevel.PARTIAL if count else ComplianceLevel.MISSING


def industry_specific_gaps(assessment: Assessment) -> list[IndustrySpecificGap]:
    """Regulatory compliance gaps; each regulation applies only to its own sector."""
    ic = assessment.industry_classification
    if ic is None:
        return []
    responses = assessment.domain_responses
    gaps: list[IndustrySpecificGap] = []

    if ic.sector == Sector.FINANCIAL_SERVICES and ic.regulatory_classification == RegulatoryTier.HEAVILY_REGULATED:
        mandatory = ["risk-compliance.9.1", "risk-compliance.9.2", "risk-compliance.9.3"]
        gaps.append(IndustrySpecificGap(
            regulation="FCA Compliance",
            requirements=[
                "Risk management framework documentation",
                "Customer due diligence procedures",
                "Anti-money laundering controls",
                "Data protection and GDPR compliance",
            ],
            compliance_level=_compliance(responses, mandatory, [Domain.RISK_COMPLIANCE]),
            mandatory_fields=mandatory,
            recommended_fields=["risk-compliance.9.4", "risk-compliance.9.5"],
            risk_level="high",
        ))

    if ic.sector == Sector.HEALTHCARE:
        mandatory = ["technology-data.6.4", "risk-compliance.9.2"]
        gaps.append(IndustrySpecificGap(
            regulation="HIPAA/GDPR Healthcare",
            requirements=[
                "Patient data protection measures",
                "Healthcare data encryption",
                "Access control systems",
                "Audit trail capabilities",
            ],
            compliance_level=_compliance(responses, mandatory, [Domain.TECHNOLOGY_DATA, Domain.RISK_COMPLIANCE]),
            mandatory_fields=mandatory,
            recommended_fields=["technology-data.6.5", "risk-compliance.9.6"],
            risk_level="high",
        ))

    return gaps


# ---------------------------------------------------------------------------
# Ordering and recommendations
# ---------------------------------------------------------------------------


def prioritize_gaps(gaps: list[AssessmentGap]) -> list[AssessmentGap]:
    """Priority desc, then category severity desc, then domain weight desc."""
    return sorted(gaps, key=lambda g: (-g.priority, -g.category.rank, -domain_weight(g.domain)))


def build_recommendations(analysis: GapAnalysis) -> list[GapRecommendation]:
    recs: list[GapRecommendation] = []
    if analysis.critical_gaps_count > 0:
        recs.append(GapRecommendation(
            title="Address Critical Information Gaps",
            description=(
                f"You have {analysis.critical_gaps_count} critical gaps that require immediate "
                "attention to ensure accurate analysis."
            ),
            suggested_actions=[
                "Review and complete all critical questions marked as missing",
                "Provide detailed responses to improve analysis quality",
                "Resolve any conflicting information identified",
            ],
            estimated_impact="high",
            priority=10,
            category=GapCategory.CRITICAL,
        ))
    if analysis.overall_completeness_score < 70:
        recs.append(GapRecommendation(
            title="Improve Overall Assessment Completeness",
            description=(
                f"Your assessment is {analysis.overall_completeness_score}% complete. "
                "Consider providing more detailed responses."
            ),
            suggested_actions=[
                "Complete remaining questions in partially filled domains",
                "Provide more detailed explanations where possible",
                "Add specific examples to illustrate your points",
            ],
            estimated_impact="medium",
            priority=7,
            category=GapCategory.IMPORTANT,
        ))
    return recs


def _str_list(value: Any, limit: int) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float)) and str(v).strip()][:limit]


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class GapDetector:
    def __init__(
        self,
        repo: Repository,
        llm: CompletionService | None = None,
        timeline: TimelineStateMachine | None = None,
        founder_notifier: FounderNotifier | None = None,
        settings: EngineSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.llm = llm
        self.timeline = timeline
        self.founder_notifier = founder_notifier
        self.settings = settings
        self.clock = clock

    # -- public -------------------------------------------------------------

    async def analyze(self, request: GapAnalysisRequest) -> GapAnalysisResponse:
        started = time.monotonic()
        assessment = self.repo.get_assessment(request.assessment_id)

        cached = assessment.gap_analysis
        if not request.force_reanalysis and cached is not None:
            age = self.clock() - cached.last_analyzed_at
            if age < timedelta(hours=self.settings.cache_freshness_hours):
                log.info("Serving cached gap analysis for %s (age %s)", assessment.id, age)
                return GapAnalysisResponse(
                    assessment_id=assessment.id,
                    gap_analysis=cached,
                    processing_time_ms=int((time.monotonic() - started) * 1000),
                    model_used="cached",
                    cost_estimate=0.0,
                    recommendations=build_recommendations(cached),
                )

        analysis = await self.perform_analysis(assessment, request.analysis_depth, request.focus_domains)
        current_ids = {g.gap_id for g in analysis.detected_gaps}
        side_effects = [
            await best_effort("persist_gap_analysis", self.repo.save_gap_analysis, assessment.id, analysis),
            await best_effort("supersede_gaps", self.repo.supersede_pending_gaps,
                              assessment.id, current_ids, analysis.last_analyzed_at),
            await best_effort("persist_gaps", self.repo.put_gaps, analysis.detected_gaps),
        ]

        log.info("Gap analysis completed for %s: %d gaps detected (%d critical)",
                 assessment.id, analysis.total_gaps_count, analysis.critical_gaps_count)

        critical = [g for g in analysis.detected_gaps if g.category == GapCategory.CRITICAL]
        if critical:
            side_effects.extend(await self._on_critical_gaps(assessment, critical))
        elif self.timeline is not None and self.repo.get_active_pause(assessment.id) is not None:
            side_effects.append(await best_effort(
                "resume_timeline", self.timeline.resume_after_gap_resolution,
                assessment.id, self.repo.resolved_gap_ids(assessment.id), Actor.SYSTEM,
            ))

        return GapAnalysisResponse(
            assessment_id=assessment.id,
            gap_analysis=analysis,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            model_used=self.settings.completion_model,
            cost_estimate=estimate_cost(analysis.total_gaps_count),
            recommendations=build_recommendations(analysis),
            side_effects=side_effects,
        )

    async def perform_analysis(
        self,
        assessment: Assessment,
        depth: AnalysisDepth = AnalysisDepth.STANDARD,
        focus_domains: list[Domain] | None = None,
    ) -> GapAnalysis:
        now = self.clock()
        in_scope = [d.value for d in (focus_domains or ALL_DOMAINS)]

        domain_results: dict[str, DomainCompletenessAnalysis] = {}
        all_gaps: list[AssessmentGap] = []
        for domain in in_scope:
            result = await self.analyze_domain(assessment, domain, depth)
            domain_results[domain] = result
            all_gaps.extend(result.identified_gaps)

        cross = [c for c in self.detect_conflicts(assessment, cross_domain=True)
                 if any(qid.split(".")[0] in in_scope for qid in c.question_ids)]
        all_gaps.extend(await self.conflict_gaps(assessment.id, cross))

        ordered = prioritize_gaps(all_gaps)
        return GapAnalysis(
            overall_completeness_score=overall_completeness_score({d: r.score for d, r in domain_results.items()}),
            domain_completeness=domain_results,
            industry_specific_gaps=industry_specific_gaps(assessment),
            last_analyzed_at=now,
            analysis_version=f"v{int(now.timestamp() * 1000)}",
            detected_gaps=ordered,
            critical_gaps_count=sum(1 for g in ordered if g.category == GapCategory.CRITICAL),
            total_gaps_count=len(ordered),
        )

    async def analyze_domain(self, assessment: Assessment, domain: str, depth: AnalysisDepth) -> DomainCompletenessAnalysis:
        dr = assessment.domain_responses.get(domain)
        label = domain.replace("-", " ")

        if dr is None or not has_any_answer(dr):
            gap = self._gap(
                assessment.id, domain, GapCategory.CRITICAL,
                f"Complete {domain} domain assessment is missing",
                priority=10, minutes=30, impact=True,
                questions=[f"Please complete all questions in the {label} domain"],
                prompts=[
                    f"Why haven't you completed the {label} assessment?",
                    "Are there specific challenges preventing you from answering these questions?",
                ],
            )
            return DomainCompletenessAnalysis(
                score=0, identified_gaps=[gap], data_quality_score=0, response_depth_score=0,
                consistency_score=0, missing_critical_questions=list(critical_questions(domain)),
            )

        gaps: list[AssessmentGap] = []
        missing: list[str] = []
        for question_id in critical_questions(domain):
            if answered(dr, question_id):
                continue
            missing.append(question_id)
            gaps.append(self._gap(
                assessment.id, domain, GapCategory.CRITICAL,
                f"Missing response to critical question {question_id}",
                priority=9, minutes=10, impact=True, question_id=question_id,
                questions=[f"Could you provide more detail about question {question_id}?"],
                prompts=[
                    f"Please provide more details about your {label} practices",
                    "This information is critical for accurate analysis",
                ],
            ))

        if depth != AnalysisDepth.QUICK:
            gaps.extend(await self._quality_gaps(assessment.id, domain, dr, depth))

        conflicts = [c for c in self.detect_conflicts(assessment, cross_domain=False)
                     if c.question_ids[0].startswith(f"{domain}.")]
        gaps.extend(await self.conflict_gaps(assessment.id, conflicts))

        indicators = self.settings.depth_indicators
        return DomainCompletenessAnalysis(
            score=domain_completeness_score(domain, dr, len(gaps)),
            identified_gaps=gaps,
            data_quality_score=data_quality_score(dr, indicators),
            response_depth_score=response_depth_score(dr, indicators),
            consistency_score=consistency_score(conflicts),
            missing_critical_questions=missing,
            conflicting_responses=conflicts,
        )

    def detect_conflicts(self, assessment: Assessment, cross_domain: bool | None = None) -> list[ConflictingResponse]:
        """Evaluate the conflict rule table; ``cross_domain`` narrows to one rule kind."""
        found = []
        for rule in CONFLICT_RULES:
            if cross_domain is not None and rule.cross_domain != cross_domain:
                continue
            conflict = rule.check(assessment.domain_responses)
            if conflict is not None:
                found.append(conflict)
        return found

    async def conflict_gaps(self, assessment_id: str, conflicts: list[ConflictingResponse]) -> list[AssessmentGap]:
        gaps = []
        for conflict in conflicts:
            if not conflict.question_ids:
                continue
            domain = conflict.question_ids[0].split(".")[0]
            category = _CONFLICT_CATEGORY[conflict.severity]
            questions, prompts = await self._conflict_follow_ups(domain, conflict)
            gaps.append(self._gap(
                assessment_id, domain, category,
                f"Conflicting responses detected: {conflict.conflict_description}",
                priority=_CONFLICT_PRIORITY[category], minutes=20,
                impact=category == GapCategory.CRITICAL,
                questions=questions, prompts=prompts,
            ))
        return gaps

    # -- internals ----------------------------------------------------------

    def _gap(
        self, assessment_id: str, domain: str, category: GapCategory, description: str, *,
        priority: int, minutes: int, impact: bool, questions: list[str], prompts: list[str],
        question_id: str | None = None,
    ) -> AssessmentGap:
        return AssessmentGap(
            gap_id=new_id("gap"),
            assessment_id=assessment_id,
            domain=domain,
            category=category,
            description=description,
            detected_at=self.clock(),
            question_id=question_id,
            suggested_questions=questions,
            follow_up_prompts=prompts,
            impact_on_timeline=impact,
            priority=priority,
            estimated_resolution_time=minutes,
        )

    async def _quality_gaps(
        self, assessment_id: str, domain: str, dr: DomainResponse, depth: AnalysisDepth,
    ) -> list[AssessmentGap]:
        jobs = [
            self._answer_quality_gaps(assessment_id, domain, question_id, q.value, depth)
            for question_id, q in dr.questions.items()
            if is_text_answer(q.value) and not is_response_empty(q.value)
        ]
        results = await asyncio.gather(*jobs)
        return [gap for gaps in results for gap in gaps]

    async def _answer_quality_gaps(
        self, assessment_id: str, domain: str, question_id: str, text: str, depth: AnalysisDepth,
    ) -> list[AssessmentGap]:
        s = self.settings
        gaps: list[AssessmentGap] = []
        if is_brief(text, s.min_response_length):
            questions, prompts = await self._follow_ups(domain, question_id, text, "brief_response")
            gaps.append(self._gap(
                assessment_id, domain, GapCategory.IMPORTANT,
                f"Response to question {question_id} appears too brief for thorough analysis",
                priority=6, minutes=15, impact=False, question_id=question_id,
                questions=questions, prompts=prompts,
            ))
        if lacks_depth(text, s.depth_indicators, s.depth_check_min_length):
            questions, prompts = await self._follow_ups(domain, question_id, text, "lacks_depth")
            gaps.append(self._gap(
                assessment_id, domain, GapCategory.NICE_TO_HAVE,
                f"Response to question {question_id} could benefit from more specific examples",
                priority=4, minutes=10, impact=False, question_id=question_id,
                questions=questions, prompts=prompts,
            ))
        if depth == AnalysisDepth.COMPREHENSIVE:
            gaps.extend(await self._ai_gaps(assessment_id, domain, question_id, text))
        return gaps

    async def _ask(self, prompt: str, max_tokens: int, temperature: float) -> Any:
        """Completion call parsed as JSON; ``None`` when the service is unavailable or unusable."""
        if self.llm is None:
            return None
        try:
            return await complete_json(
                self.llm, prompt, model=self.settings.completion_model,
                max_tokens=max_tokens, temperature=temperature,
            )
        except Exception as exc:
            log.warning("Completion call failed, using fallback: %s", exc)
            return None

    async def _follow_ups(self, domain: str, question_id: str, text: str, gap_type: str) -> tuple[list[str], list[str]]:
        prompt = FOLLOW_UP_PROMPT.format(
            domain=domain.replace("-", " "), context=domain_context(domain), question_id=question_id,
            response=text, gap_context=GAP_TYPE_CONTEXT.get(gap_type, GAP_TYPE_CONTEXT["general"]),
        )
        parsed = await self._ask(prompt, max_tokens=300, temperature=0.8)
        fallback = FALLBACK_FOLLOW_UPS.get(gap_type, FALLBACK_FOLLOW_UPS["general"])
        if not isinstance(parsed, dict):
            return list(fallback[0]), list(fallback[1])
        questions = _str_list(parsed.get("questions"), 3)
        prompts = _str_list(parsed.get("prompts"), 2)
        if not questions:
            log.warning("Follow-up response for %s/%s had no questions, using fallback", domain, question_id)
            return list(fallback[0]), list(fallback[1])
        return questions, prompts

    async def _conflict_follow_ups(self, domain: str, conflict: ConflictingResponse) -> tuple[list[str], list[str]]:
        prompt = CONFLICT_PROMPT.format(
            domain=domain.replace("-", " "), context=domain_context(domain),
            question_ids=", ".join(conflict.question_ids), description=conflict.conflict_description,
            severity=conflict.severity.value,
        )
        parsed = await self._ask(prompt, max_tokens=300, temperature=0.7)
        questions = _str_list(parsed.get("questions"), 3) if isinstance(parsed, dict) else []
        if questions:
            return questions, _str_list(parsed.get("prompts"), 2)
        return (
            [
                conflict.suggested_resolution,
                "Please clarify this apparent contradiction",
                "How do you reconcile these different aspects of your organization?",
            ],
            [
                "Understanding this will help us provide more accurate recommendations",
                "Please provide additional context to resolve this inconsistency",
            ],
        )

    async def _ai_gaps(self, assessment_id: str, domain: str, question_id: str, text: str) -> list[AssessmentGap]:
        prompt = GAP_ANALYSIS_PROMPT.format(
            domain=domain.replace("-", " "), context=domain_context(domain),
            question_id=question_id, response=text,
        )
        parsed = await self._ask(prompt, max_tokens=500, temperature=0.7)
        if not isinstance(parsed, dict) or not parsed.get("hasGaps"):
            return []
        raw_gaps = parsed.get("identifiedGaps")
        if not isinstance(raw_gaps, list):
            return []

        gaps = []
        for raw in raw_gaps:
            if not isinstance(raw, dict):
                continue
            try:
                category = GapCategory(raw.get("severity"))
            except ValueError:
                log.warning("Ignoring AI gap with unknown severity %r", raw.get("severity"))
                continue
            description = str(raw.get("description") or "").strip()
            if not description:
                continue
            minutes = raw.get("estimatedTime")
            gaps.append(self._gap(
                assessment_id, domain, category, description,
                priority=_AI_GAP_PRIORITY[category],
                minutes=int(minutes) if isinstance(minutes, (int, float)) and minutes > 0 else 15,
                impact=category == GapCategory.CRITICAL, question_id=question_id,
                questions=_str_list(raw.get("suggestedQuestions"), 5),
                prompts=_str_list(raw.get("followUpPrompts"), 5),
            ))
        return gaps

    async def _on_critical_gaps(self, assessment: Assessment, critical: list[AssessmentGap]) -> list[SideEffectOutcome]:
        outcomes = []
        if self.timeline is not None:
            if self.repo.get_active_pause(assessment.id) is not None:
                outcomes.append(await best_effort(
                    "retarget_pause", self.timeline.retarget_pause, assessment.id, critical,
                ))
            else:
                log.info("Pausing timeline for %s due to %d critical gaps", assessment.id, len(critical))
                outcomes.append(await best_effort(
                    "pause_timeline", self.timeline.pause_for_critical_gaps, assessment.id, critical, Actor.SYSTEM,
                ))
        if self.founder_notifier is not None:
            outcomes.append(await best_effort(
                "founder_notification", self.founder_notifier.evaluate_critical_gaps, assessment, critical,
            ))
        return outcomes
