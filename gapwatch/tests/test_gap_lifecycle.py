"""Tests for single and bulk gap resolution."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gapwatch.domains import Domain
from gapwatch.errors import AssessmentNotFound, GapNotFound, ValidationError, VersionConflict
from gapwatch.gap_detector import GapDetector
from gapwatch.gap_lifecycle import GapLifecycleManager
from gapwatch.models import Base
from gapwatch.schemas import (
    Assessment,
    AssessmentGap,
    BulkGapResolutionRequest,
    DeliverySchedule,
    DomainResponse,
    GapAnalysis,
    GapCategory,
    GapResolutionRequest,
    QuestionResponse,
    ResolutionMethod,
)
from gapwatch.store import DocumentStore, Repository
from gapwatch.timeline import TimelineStateMachine

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture()
def repo():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield Repository(DocumentStore(session))
    session.close()


@pytest.fixture()
def timeline(repo) -> TimelineStateMachine:
    return TimelineStateMachine(repo, clock=lambda: NOW)


@pytest.fixture()
def manager(repo, timeline) -> GapLifecycleManager:
    detector = GapDetector(repo, clock=lambda: NOW)
    return GapLifecycleManager(repo, detector, timeline, clock=lambda: NOW)


def _assessment(assessment_id: str = "a1", responses: dict[str, DomainResponse] | None = None) -> Assessment:
    return Assessment(
        id=assessment_id, company_id="acme", title="Acme", contact_email="founder@acme.test",
        domain_responses=responses or {},
        delivery_schedule=DeliverySchedule.starting_at(NOW), created_at=NOW,
    )


def _gap(gap_id: str, category: GapCategory = GapCategory.CRITICAL, *, assessment_id: str = "a1",
         domain: str = "strategic-alignment", question_id: str | None = None) -> AssessmentGap:
    return AssessmentGap(
        gap_id=gap_id, assessment_id=assessment_id, domain=domain, category=category,
        description=f"gap {gap_id}", detected_at=NOW, question_id=question_id, priority=9,
    )


@pytest.fixture()
def seeded(repo):
    repo.put_assessment(_assessment())
    repo.put_gaps([_gap("g1"), _gap("g3"), _gap("i1", GapCategory.IMPORTANT)])
    return repo


class TestResolve:
    @pytest.mark.asyncio
    async def test_client_response(self, seeded, manager):
        result = await manager.resolve(GapResolutionRequest(gap_id="g1", client_response="x" * 60))
        assert result.resolved is True
        assert result.message == "Gap resolved successfully"
        assert result.impact_on_completeness == 6
        assert result.new_gaps == []
        assert seeded.get_pending_gap("g1") is None
        stored = seeded.list_gaps("a1", status="resolved")[0]
        assert stored.resolution_method == ResolutionMethod.CLIENT_INPUT
        assert stored.client_response == "x" * 60
        assert stored.resolved_at == NOW

    @pytest.mark.asyncio
    async def test_skip(self, seeded, manager):
        result = await manager.resolve(GapResolutionRequest(gap_id="i1", skip_gap=True, skip_reason="n/a"))
        assert result.impact_on_completeness == 0
        assert result.new_gaps is None
        assert result.message == "Gap marked as resolved by user"
        stored = seeded.list_gaps("a1", status="resolved")[0]
        assert stored.resolution_method == ResolutionMethod.FOUNDER_OVERRIDE

    @pytest.mark.asyncio
    async def test_second_resolve_is_not_found(self, seeded, manager):
        await manager.resolve(GapResolutionRequest(gap_id="g1", client_response="Answer"))
        with pytest.raises(GapNotFound) as exc:
            await manager.resolve(GapResolutionRequest(gap_id="g1", client_response="Answer again"))
        assert exc.value.message == "Gap not found"

    @pytest.mark.asyncio
    async def test_lost_race_is_not_found(self, seeded, manager):
        with patch.object(seeded, "mark_gap_resolved", side_effect=VersionConflict("changed")):
            with pytest.raises(GapNotFound):
                await manager.resolve(GapResolutionRequest(gap_id="g1", client_response="Answer"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_kwargs", [
        {"gap_id": "g1"},
        {"gap_id": "g1", "client_response": "   "},
        {"gap_id": "g1", "client_response": "Answer", "skip_gap": True},
        {"gap_id": "  ", "client_response": "Answer"},
    ])
    async def test_invalid_requests(self, seeded, manager, request_kwargs):
        with pytest.raises(ValidationError):
            await manager.resolve(GapResolutionRequest(**request_kwargs))
        assert seeded.get_pending_gap("g1") is not None

    @pytest.mark.asyncio
    async def test_answer_is_recorded_on_assessment(self, seeded, manager):
        seeded.put_gap(_gap("q1", question_id="1.2"))
        await manager.resolve(GapResolutionRequest(gap_id="q1", client_response="Expand into two new regions"))
        dr = seeded.get_assessment("a1").domain_responses["strategic-alignment"]
        assert dr.questions["1.2"].value == "Expand into two new regions"
        assert dr.questions["1.2"].question_id == "1.2"
        assert dr.questions["1.2"].timestamp == NOW

    @pytest.mark.asyncio
    async def test_gap_without_question_leaves_answers_alone(self, seeded, manager):
        result = await manager.resolve(GapResolutionRequest(gap_id="g1", client_response="Covered elsewhere"))
        assert result.new_gaps == []
        assert seeded.get_assessment("a1").domain_responses == {}

    @pytest.mark.asyncio
    async def test_response_that_conflicts_creates_new_gap(self, repo, manager):
        revenue = DomainResponse(questions={"3.1": QuestionResponse(question_id="3.1", value="aggressive")})
        repo.put_assessment(_assessment(responses={Domain.REVENUE_ENGINE.value: revenue}))
        repo.put_gap(_gap("q23", domain=Domain.FINANCIAL_MANAGEMENT.value, question_id="2.3"))

        result = await manager.resolve(GapResolutionRequest(gap_id="q23", client_response="severely-limited"))

        assert len(result.new_gaps) == 1
        new_gap = result.new_gaps[0]
        assert new_gap.category == GapCategory.CRITICAL
        assert "Aggressive revenue growth" in new_gap.description
        assert repo.get_pending_gap(new_gap.gap_id) is not None


class TestResume:
    @pytest.mark.asyncio
    async def test_timeline_resumes_only_after_every_paused_gap(self, seeded, manager, timeline):
        await timeline.pause_for_critical_gaps("a1", [_gap("g1"), _gap("g3")])

        first = await manager.resolve(GapResolutionRequest(gap_id="g1", client_response="Answer"))
        assert first.side_effects[0].ok
        assert seeded.get_active_pause("a1") is not None

        await manager.resolve(GapResolutionRequest(gap_id="g3", client_response="Answer"))
        assert seeded.get_active_pause("a1") is None

    @pytest.mark.asyncio
    async def test_non_critical_gap_does_not_check_resume(self, seeded, manager, timeline):
        with patch.object(timeline, "resume_after_gap_resolution") as resume:
            result = await manager.resolve(GapResolutionRequest(gap_id="i1", client_response="Answer"))
        resume.assert_not_called()
        assert result.side_effects == []


class TestBulk:
    @pytest.mark.asyncio
    async def test_missing_gap_fails_alone(self, seeded, manager):
        request = BulkGapResolutionRequest(assessment_id="a1", resolutions=[
            GapResolutionRequest(gap_id="g1", client_response="Answer one"),
            GapResolutionRequest(gap_id="gap2", client_response="Answer two"),
            GapResolutionRequest(gap_id="g3", skip_gap=True),
        ])
        result = await manager.resolve_bulk(request)
        assert result.processed_count == 3
        assert result.resolved_count == 2
        assert [(f.gap_id, f.error) for f in result.failed_resolutions] == [("gap2", "Gap not found")]

    @pytest.mark.asyncio
    async def test_resume_checked_once_for_the_batch(self, seeded, manager, timeline):
        await timeline.pause_for_critical_gaps("a1", [_gap("g1"), _gap("g3")])
        request = BulkGapResolutionRequest(assessment_id="a1", resolutions=[
            GapResolutionRequest(gap_id="g1", client_response="Answer"),
            GapResolutionRequest(gap_id="g3", client_response="Answer"),
        ])
        with patch.object(timeline, "resume_after_gap_resolution",
                          wraps=timeline.resume_after_gap_resolution) as resume:
            result = await manager.resolve_bulk(request)
        assert resume.await_count == 1
        assert set(resume.await_args.args[1]) == {"g1", "g3"}
        assert seeded.get_active_pause("a1") is None
        assert [s.name for s in result.side_effects] == ["resume_timeline"]

    @pytest.mark.asyncio
    async def test_gap_from_other_assessment_fails(self, seeded, manager):
        seeded.put_gap(_gap("other", assessment_id="a2"))
        result = await manager.resolve_bulk(BulkGapResolutionRequest(assessment_id="a1", resolutions=[
            GapResolutionRequest(gap_id="other", client_response="Answer"),
        ]))
        assert result.resolved_count == 0
        assert result.failed_resolutions[0].error == "Gap does not belong to this assessment"
        assert seeded.get_pending_gap("other") is not None

    @pytest.mark.asyncio
    async def test_overall_score_from_stored_analysis(self, seeded, manager):
        seeded.save_gap_analysis("a1", GapAnalysis(
            overall_completeness_score=42, domain_completeness={}, last_analyzed_at=NOW, analysis_version="v1",
        ))
        result = await manager.resolve_bulk(BulkGapResolutionRequest(assessment_id="a1", resolutions=[
            GapResolutionRequest(gap_id="i1", client_response="Answer"),
        ]))
        assert result.overall_completeness_score == 42

    @pytest.mark.asyncio
    async def test_batch_size_limits(self, seeded, manager):
        with pytest.raises(ValidationError):
            await manager.resolve_bulk(BulkGapResolutionRequest(assessment_id="a1", resolutions=[]))
        too_many = [GapResolutionRequest(gap_id=f"g{i}", skip_gap=True) for i in range(51)]
        with pytest.raises(ValidationError):
            await manager.resolve_bulk(BulkGapResolutionRequest(assessment_id="a1", resolutions=too_many))

    @pytest.mark.asyncio
    async def test_unknown_assessment(self, manager):
        with pytest.raises(AssessmentNotFound):
            await manager.resolve_bulk(BulkGapResolutionRequest(assessment_id="nope", resolutions=[
                GapResolutionRequest(gap_id="g1", skip_gap=True),
            ]))


class TestListGaps:
    def test_filters(self, seeded, manager):
        assert {g.gap_id for g in manager.list_gaps("a1")} == {"g1", "g3", "i1"}
        assert {g.gap_id for g in manager.list_gaps("a1", category="important")} == {"i1"}
        assert manager.list_gaps("a1", status="resolved") == []

    @pytest.mark.parametrize("kwargs", [
        {"category": "urgent"},
        {"status": "open"},
        {"limit": 0},
        {"limit": 101},
    ])
    def test_invalid_filters(self, seeded, manager, kwargs):
        with pytest.raises(ValidationError):
            manager.list_gaps("a1", **kwargs)

    def test_unknown_assessment(self, manager):
        with pytest.raises(AssessmentNotFound):
            manager.list_gaps("nope")
