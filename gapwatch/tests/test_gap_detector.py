"""Tests for gap detection, caching and the critical-gap side effects."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gapwatch.domains import Domain, RegulatoryTier, Sector
from gapwatch.errors import AssessmentNotFound, LLMCallError
from gapwatch.gap_detector import FALLBACK_FOLLOW_UPS, GapDetector, build_recommendations, industry_specific_gaps
from gapwatch.models import Base
from gapwatch.notifier import FounderNotifier, NotificationResult
from gapwatch.schemas import (
    AnalysisDepth,
    Assessment,
    AssessmentStatus,
    ComplianceLevel,
    DeliverySchedule,
    DomainResponse,
    GapAnalysisRequest,
    GapCategory,
    IndustryClassification,
    QuestionResponse,
    ResolutionMethod,
)
from gapwatch.store import DocumentStore, Repository
from gapwatch.timeline import TimelineStateMachine

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)

SA, FM, RE = Domain.STRATEGIC_ALIGNMENT, Domain.FINANCIAL_MANAGEMENT, Domain.REVENUE_ENGINE

# Answers long enough and with depth indicators, so they raise no quality gaps
FINANCE_ANSWERS = {
    "2.1": "Quarterly budgeting process including rolling forecasts",
    "2.2": 250000,
    "2.3": "Adequate funding because of a recent seed round",
    "2.4": 12,
}
REVENUE_ANSWERS = {
    "3.1": "Steady growth, specifically 20% a year",
    "3.2": 45,
    "3.3": "Inbound marketing such as webinars and referrals",
}


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _dr(answers: dict, completeness: float = 100) -> DomainResponse:
    return DomainResponse(
        questions={qid: QuestionResponse(question_id=qid, value=v) for qid, v in answers.items()},
        completeness=completeness,
    )


def _assessment(responses: dict[str, DomainResponse], industry: IndustryClassification | None = None) -> Assessment:
    return Assessment(
        id="a1", company_id="acme", title="Acme", contact_email="founder@acme.test",
        industry_classification=industry, domain_responses=responses,
        delivery_schedule=DeliverySchedule.starting_at(NOW), created_at=NOW,
    )


@pytest.fixture()
def repo():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield Repository(DocumentStore(session))
    session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def notifier():
    mock = AsyncMock()
    mock.send_notification.return_value = NotificationResult(success=True, message_id="m1")
    return mock


@pytest.fixture()
def detector(repo, clock, notifier) -> GapDetector:
    timeline = TimelineStateMachine(repo, notifier, clock=clock)
    return GapDetector(repo, llm=None, timeline=timeline, founder_notifier=FounderNotifier(notifier), clock=clock)


def _request(*domains: Domain, depth: AnalysisDepth = AnalysisDepth.STANDARD, force: bool = False) -> GapAnalysisRequest:
    return GapAnalysisRequest(assessment_id="a1", analysis_depth=depth,
                              focus_domains=list(domains) or None, force_reanalysis=force)


class TestScenarioA:
    @pytest.mark.asyncio
    async def test_one_empty_domain_yields_single_critical_gap_and_pause(self, repo, detector):
        repo.put_assessment(_assessment({
            SA.value: DomainResponse(),
            FM.value: _dr(FINANCE_ANSWERS),
            RE.value: _dr(REVENUE_ANSWERS),
        }))

        result = await detector.analyze(_request(SA, FM, RE))
        analysis = result.gap_analysis

        assert len(analysis.detected_gaps) == 1
        gap = analysis.detected_gaps[0]
        assert gap.category == GapCategory.CRITICAL
        assert gap.domain == SA.value
        assert gap.description == "Complete strategic-alignment domain assessment is missing"
        assert analysis.domain_completeness[FM.value].identified_gaps == []
        assert analysis.domain_completeness[RE.value].identified_gaps == []
        # (0 * 1.2 + 100 * 1.3 + 100 * 1.3) / 3.8
        assert analysis.overall_completeness_score == 68
        assert analysis.critical_gaps_count == 1

        pause = repo.get_active_pause("a1")
        assert pause is not None
        assert pause.affected_gaps == [gap.gap_id]
        assert repo.get_assessment("a1").status == AssessmentStatus.PAUSED_FOR_GAPS
        assert all(s.ok for s in result.side_effects)

    @pytest.mark.asyncio
    async def test_absent_domain_counts_as_empty(self, repo, detector):
        repo.put_assessment(_assessment({FM.value: _dr(FINANCE_ANSWERS)}))
        result = await detector.analyze(_request(SA, FM))
        assert [g.domain for g in result.gap_analysis.detected_gaps] == [SA.value]


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_call_within_window_is_identical(self, repo, detector, clock):
        repo.put_assessment(_assessment({FM.value: _dr({"2.1": "ok"})}))
        first = await detector.analyze(_request(FM))
        clock.now = NOW + timedelta(minutes=90)
        second = await detector.analyze(_request(FM))
        third = await detector.analyze(_request(FM))

        assert second.model_used == "cached"
        assert second.cost_estimate == 0
        assert second.gap_analysis.model_dump(mode="json") == first.gap_analysis.model_dump(mode="json")
        assert json.dumps(third.gap_analysis.model_dump(mode="json"), sort_keys=True) == \
            json.dumps(second.gap_analysis.model_dump(mode="json"), sort_keys=True)

    @pytest.mark.asyncio
    async def test_stale_cache_recomputes(self, repo, detector, clock):
        repo.put_assessment(_assessment({FM.value: _dr(FINANCE_ANSWERS)}))
        first = await detector.analyze(_request(FM))
        clock.now = NOW + timedelta(hours=3)
        second = await detector.analyze(_request(FM))
        assert second.model_used != "cached"
        assert second.gap_analysis.last_analyzed_at > first.gap_analysis.last_analyzed_at

    @pytest.mark.asyncio
    async def test_cache_window_is_exclusive(self, repo, detector, clock):
        repo.put_assessment(_assessment({FM.value: _dr(FINANCE_ANSWERS)}))
        await detector.analyze(_request(FM))

        clock.now = NOW + timedelta(hours=2) - timedelta(microseconds=1)
        assert (await detector.analyze(_request(FM))).model_used == "cached"

        clock.now = NOW + timedelta(hours=2)
        fresh = await detector.analyze(_request(FM))
        assert fresh.model_used != "cached"
        assert fresh.gap_analysis.last_analyzed_at == NOW + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_force_reanalysis_skips_cache(self, repo, detector):
        repo.put_assessment(_assessment({FM.value: _dr(FINANCE_ANSWERS)}))
        await detector.analyze(_request(FM))
        again = await detector.analyze(_request(FM, force=True))
        assert again.model_used != "cached"

    @pytest.mark.asyncio
    async def test_unknown_assessment(self, detector):
        with pytest.raises(AssessmentNotFound):
            await detector.analyze(_request(FM))


class TestReanalysis:
    @pytest.mark.asyncio
    async def test_earlier_pending_gaps_are_superseded(self, repo, detector, clock):
        repo.put_assessment(_assessment({}))
        first = await detector.analyze(_request(SA))
        old_id = first.gap_analysis.detected_gaps[0].gap_id
        pause = repo.get_active_pause("a1")

        clock.now = NOW + timedelta(minutes=30)
        second = await detector.analyze(_request(SA, force=True))
        new_id = second.gap_analysis.detected_gaps[0].gap_id
        outcomes = {s.name: s for s in second.side_effects}
        assert outcomes["supersede_gaps"].ok is True
        assert outcomes["retarget_pause"].ok is True
        assert "pause_timeline" not in outcomes

        assert [g.gap_id for g in repo.list_gaps("a1")] == [new_id]
        old = repo.list_gaps("a1", status="resolved")[0]
        assert old.gap_id == old_id
        assert old.resolution_method == ResolutionMethod.AUTO_RESOLVED
        assert old.resolved_at == NOW + timedelta(minutes=30)

        retargeted = repo.get_active_pause("a1")
        assert retargeted.pause_id == pause.pause_id
        assert retargeted.paused_at == NOW
        assert retargeted.affected_gaps == [new_id]
        assert await detector.timeline.resume_after_gap_resolution("a1", {new_id}) is True

    @pytest.mark.asyncio
    async def test_clean_reanalysis_resumes_timeline(self, repo, detector):
        repo.put_assessment(_assessment({}))
        await detector.analyze(_request(FM))
        assert repo.get_assessment("a1").status == AssessmentStatus.PAUSED_FOR_GAPS

        a = repo.get_assessment("a1")
        a.domain_responses = {FM.value: _dr(FINANCE_ANSWERS)}
        repo.save_assessment(a)
        result = await detector.analyze(_request(FM, force=True))

        assert result.gap_analysis.total_gaps_count == 0
        assert {s.name: s.ok for s in result.side_effects}["resume_timeline"] is True
        assert repo.get_active_pause("a1") is None
        assert repo.list_gaps("a1") == []
        assert repo.get_assessment("a1").status == AssessmentStatus.TRIAGING


class TestDomainGaps:
    @pytest.mark.asyncio
    async def test_missing_critical_questions(self, repo, detector):
        repo.put_assessment(_assessment({SA.value: _dr({"1.1": 5})}))
        result = await detector.analyze(_request(SA))
        domain = result.gap_analysis.domain_completeness[SA.value]
        assert domain.missing_critical_questions == ["1.2", "1.3"]
        assert {g.question_id for g in domain.identified_gaps} == {"1.2", "1.3"}
        assert all(g.category == GapCategory.CRITICAL and g.priority == 9 for g in domain.identified_gaps)

    @pytest.mark.asyncio
    async def test_brief_and_shallow_answers_use_static_follow_ups_without_llm(self, repo, detector):
        answers = {"1.1": "ok", "1.2": "We review the plan every single month", "1.3": 3}
        repo.put_assessment(_assessment({SA.value: _dr(answers)}))
        result = await detector.analyze(_request(SA))
        gaps = {g.category: g for g in result.gap_analysis.detected_gaps}
        assert gaps[GapCategory.IMPORTANT].question_id == "1.1"
        assert gaps[GapCategory.IMPORTANT].suggested_questions == FALLBACK_FOLLOW_UPS["brief_response"][0]
        assert gaps[GapCategory.NICE_TO_HAVE].question_id == "1.2"
        assert gaps[GapCategory.NICE_TO_HAVE].suggested_questions == FALLBACK_FOLLOW_UPS["lacks_depth"][0]

    @pytest.mark.asyncio
    async def test_quick_depth_skips_quality_checks(self, repo, detector):
        repo.put_assessment(_assessment({SA.value: _dr({"1.1": "ok", "1.2": 1, "1.3": 2})}))
        result = await detector.analyze(_request(SA, depth=AnalysisDepth.QUICK))
        assert result.gap_analysis.detected_gaps == []

    @pytest.mark.asyncio
    async def test_ai_follow_ups_replace_static_ones(self, repo, clock):
        llm = AsyncMock()
        llm.complete.return_value = '```json\n{"questions": ["How often?", "Who owns it?"], "prompts": ["Be specific"]}\n```'
        detector = GapDetector(repo, llm=llm, clock=clock)
        repo.put_assessment(_assessment({SA.value: _dr({"1.1": "ok", "1.2": 1, "1.3": 2})}))
        result = await detector.analyze(_request(SA))
        gap = result.gap_analysis.detected_gaps[0]
        assert gap.suggested_questions == ["How often?", "Who owns it?"]
        assert gap.follow_up_prompts == ["Be specific"]

    @pytest.mark.asyncio
    async def test_llm_failure_degrades_to_fallback(self, repo, clock):
        llm = AsyncMock()
        llm.complete.side_effect = LLMCallError("timeout", retryable=True)
        detector = GapDetector(repo, llm=llm, clock=clock)
        repo.put_assessment(_assessment({SA.value: _dr({"1.1": "ok", "1.2": 1, "1.3": 2})}))
        result = await detector.analyze(_request(SA))
        assert result.gap_analysis.detected_gaps[0].suggested_questions == FALLBACK_FOLLOW_UPS["brief_response"][0]

    @pytest.mark.asyncio
    async def test_comprehensive_depth_adds_ai_gaps(self, repo, clock):
        ai_payload = {
            "hasGaps": True,
            "identifiedGaps": [
                {"description": "No churn metrics", "severity": "important", "estimatedTime": 25,
                 "suggestedQuestions": ["What is your churn?"], "followUpPrompts": []},
                {"description": "Ignored", "severity": "bogus"},
            ],
        }

        async def complete(prompt, **kwargs):
            if "hasGaps" in prompt:
                return json.dumps(ai_payload)
            return "not json at all"

        llm = AsyncMock()
        llm.complete.side_effect = complete
        detector = GapDetector(repo, llm=llm, clock=clock)
        text = "Steady growth, specifically 20% a year"
        repo.put_assessment(_assessment({RE.value: _dr({"3.1": text, "3.2": 1, "3.3": 2})}))
        result = await detector.analyze(_request(RE, depth=AnalysisDepth.COMPREHENSIVE))
        gaps = result.gap_analysis.detected_gaps
        assert len(gaps) == 1
        assert gaps[0].description == "No churn metrics"
        assert gaps[0].estimated_resolution_time == 25
        assert gaps[0].priority == 5


class TestConflicts:
    @pytest.mark.asyncio
    async def test_cross_domain_conflict_is_critical(self, repo, detector):
        finance = {**FINANCE_ANSWERS, "2.3": "severely-limited"}
        revenue = {**REVENUE_ANSWERS, "3.1": "aggressive"}
        repo.put_assessment(_assessment({FM.value: _dr(finance), RE.value: _dr(revenue)}))
        result = await detector.analyze(_request(FM, RE, depth=AnalysisDepth.QUICK))
        gaps = result.gap_analysis.detected_gaps
        assert len(gaps) == 1
        assert gaps[0].category == GapCategory.CRITICAL
        assert gaps[0].description.startswith("Conflicting responses detected: Aggressive revenue growth")
        assert gaps[0].suggested_questions[0] == "Please clarify how aggressive growth will be funded with limited budget"

    @pytest.mark.asyncio
    async def test_cross_domain_conflict_checked_when_one_domain_in_scope(self, repo, detector):
        finance = {**FINANCE_ANSWERS, "2.3": "severely-limited"}
        revenue = {**REVENUE_ANSWERS, "3.1": "aggressive"}
        repo.put_assessment(_assessment({FM.value: _dr(finance), RE.value: _dr(revenue)}))
        result = await detector.analyze(_request(RE, depth=AnalysisDepth.QUICK))
        assert result.gap_analysis.critical_gaps_count == 1

    @pytest.mark.asyncio
    async def test_intra_domain_conflict_lowers_consistency(self, repo, detector):
        people = {"5.1": "rapid-hiring", "5.2": 10, "5.3": "hiring-freeze"}
        repo.put_assessment(_assessment({Domain.PEOPLE_ORGANIZATION.value: _dr(people)}))
        result = await detector.analyze(_request(Domain.PEOPLE_ORGANIZATION, depth=AnalysisDepth.QUICK))
        domain = result.gap_analysis.domain_completeness[Domain.PEOPLE_ORGANIZATION.value]
        assert domain.consistency_score == 85
        assert [g.category for g in domain.identified_gaps] == [GapCategory.IMPORTANT]


class TestIndustryGaps:
    def test_fca_missing_without_risk_domain(self):
        a = _assessment({}, IndustryClassification(sector=Sector.FINANCIAL_SERVICES,
                                                   regulatory_classification=RegulatoryTier.HEAVILY_REGULATED))
        gaps = industry_specific_gaps(a)
        assert [g.regulation for g in gaps] == ["FCA Compliance"]
        assert gaps[0].compliance_level == ComplianceLevel.MISSING

    def test_healthcare_partial(self):
        a = _assessment(
            {Domain.TECHNOLOGY_DATA.value: _dr({"6.4": "Encrypted at rest"}),
             Domain.RISK_COMPLIANCE.value: _dr({})},
            IndustryClassification(sector="healthcare"),
        )
        gaps = industry_specific_gaps(a)
        assert gaps[0].regulation == "HIPAA/GDPR Healthcare"
        assert gaps[0].compliance_level == ComplianceLevel.PARTIAL

    def test_unknown_sector_has_no_gaps(self):
        a = _assessment({}, IndustryClassification(sector="aerospace"))
        assert a.industry_classification.sector == Sector.UNKNOWN
        assert industry_specific_gaps(a) == []


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_founder_notified_at_threshold(self, repo, detector, notifier):
        repo.put_assessment(_assessment({}))
        result = await detector.analyze(_request(SA, FM, RE))
        assert result.gap_analysis.critical_gaps_count == 3
        subjects = [c.args[1] for c in notifier.send_notification.call_args_list]
        assert "[HIGH PRIORITY] Critical Information Gaps in Your Acme Assessment" in subjects

    @pytest.mark.asyncio
    async def test_no_founder_notification_below_threshold(self, repo, detector, notifier):
        repo.put_assessment(_assessment({FM.value: _dr(FINANCE_ANSWERS)}))
        await detector.analyze(_request(SA, FM))
        subjects = [c.args[1] for c in notifier.send_notification.call_args_list]
        assert not any("Critical Information Gaps" in s for s in subjects)

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_fail_analysis(self, repo, detector):
        repo.put_assessment(_assessment({FM.value: _dr(FINANCE_ANSWERS)}))
        with patch.object(repo, "put_gaps", side_effect=RuntimeError("disk full")):
            result = await detector.analyze(_request(SA, FM))
        outcomes = {s.name: s for s in result.side_effects}
        assert outcomes["persist_gaps"].ok is False
        assert outcomes["persist_gaps"].error == "disk full"
        assert result.gap_analysis.total_gaps_count == 1

    @pytest.mark.asyncio
    async def test_notification_failure_is_reported_not_raised(self, repo, detector, notifier):
        notifier.send_notification.return_value = NotificationResult(success=False, error="smtp down")
        repo.put_assessment(_assessment({}))
        result = await detector.analyze(_request(SA, FM, RE))
        outcomes = {s.name: s for s in result.side_effects}
        assert outcomes["founder_notification"].ok is False
        assert outcomes["pause_timeline"].ok is True


class TestRecommendations:
    @pytest.mark.asyncio
    async def test_critical_and_completeness_recommendations(self, repo, detector):
        repo.put_assessment(_assessment({}))
        result = await detector.analyze(_request(SA))
        titles = [r.title for r in build_recommendations(result.gap_analysis)]
        assert titles == ["Address Critical Information Gaps", "Improve Overall Assessment Completeness"]
        assert [r.title for r in result.recommendations] == titles
