"""Sanity checks for AI triage output and the fallback selection when they fail.

``TriageValidator.validate`` collects typed issues from every check, then
either passes the analysis through untouched or applies exactly one fallback:

1. structural repair     domain count, industry requirements, score ranges
2. default domains       overall confidence below threshold
3. industry domains      assessment data completeness below threshold
4. rule based            quality score below threshold
5. confidence adjusted   none of the above applied

Fallbacks always append their justification to the original reasoning.
"""
from __future__ import annotations

import logging
from statistics import fmean, pvariance

from gapwatch.domains import (
    INDUSTRY_FALLBACK_DOMAINS,
    INDUSTRY_REQUIRED_DOMAINS,
    OPERATIONS_GROUP,
    PEOPLE_GROUP,
    STRATEGY_GROUP,
    Domain,
    RegulatoryTier,
    Sector,
)
from gapwatch.schemas import (
    Assessment,
    DomainScore,
    FallbackStrategy,
    TriageAnalysis,
    TriageIssue,
    TriageIssueKind,
    TriageValidationOutcome,
    TriageValidationReport,
)
from gapwatch.settings import DEFAULT_SETTINGS, EngineSettings

log = logging.getLogger(__name__)

K = TriageIssueKind

# Issues that force a fallback even when overall confidence is high
CRITICAL_KINDS = frozenset(K) - {K.UNBALANCED_SELECTION}

# Issues the structural repair knows how to fix in place
STRUCTURAL_KINDS = frozenset({
    K.INSUFFICIENT_DOMAINS,
    K.TOO_MANY_DOMAINS,
    K.MISSING_INDUSTRY_DOMAIN,
    K.MISSING_RISK_COMPLIANCE,
    K.INVALID_SCORE,
    K.INVALID_CONFIDENCE,
})

_GROUPS = tuple(frozenset(d.value for d in group) for group in (STRATEGY_GROUP, OPERATIONS_GROUP, PEOPLE_GROUP))


def expected_severity(score: float) -> str:
    if score >= 4.5:
        return "critical"
    if score >= 4.0:
        return "high"
    if score >= 3.5:
        return "medium"
    return "low"


def expected_priority(score: float) -> str:
    if score >= 4.5:
        return "CRITICAL"
    if score >= 4.0:
        return "HIGH"
    if score >= 3.5:
        return "MODERATE"
    return "HEALTHY"


def data_completeness(assessment: Assessment) -> float:
    """Average stored completeness across answered domains, as a 0-1 fraction."""
    values = [dr.completeness / 100 for dr in assessment.domain_responses.values()]
    return fmean(values) if values else 0.0


def quality_score(assessment: Assessment, triage: TriageAnalysis) -> float:
    scores = [s.score for s in triage.domain_scores.values()]
    confidences = [s.confidence for s in triage.domain_scores.values()]
    variance = pvariance(scores) if scores else 0.0
    variance_score = max(0.0, 1 - variance / 4)
    avg_confidence = fmean(confidences) if confidences else 0.0
    completeness = [dr.completeness for dr in assessment.domain_responses.values()]
    avg_completeness = fmean(completeness) / 100 if completeness else 0.0
    score = variance_score * 0.3 + min(1.0, avg_confidence) * 0.4 + avg_completeness * 0.3
    return max(0.0, min(1.0, score))


def _heavily_regulated(assessment: Assessment, triage: TriageAnalysis) -> bool:
    if triage.industry_context.regulatory_classification == RegulatoryTier.HEAVILY_REGULATED.value:
        return True
    ic = assessment.industry_classification
    return ic is not None and ic.regulatory_classification == RegulatoryTier.HEAVILY_REGULATED


def _sector(assessment: Assessment, triage: TriageAnalysis) -> Sector:
    sector = Sector.parse(triage.industry_context.sector)
    if sector == Sector.UNKNOWN and assessment.industry_classification is not None:
        return assessment.industry_classification.sector
    return sector


class TriageValidator:
    def __init__(self, settings: EngineSettings = DEFAULT_SETTINGS):
        self.settings = settings

    # -- checks -------------------------------------------------------------

    def check_domain_coverage(self, triage: TriageAnalysis) -> list[TriageIssue]:
        s = self.settings
        issues = []
        count = len(triage.critical_domains)
        if count < s.min_critical_domains:
            issues.append(TriageIssue(kind=K.INSUFFICIENT_DOMAINS,
                                      message=f"Insufficient domains selected: {count} (minimum: {s.min_critical_domains})"))
        if count > s.max_critical_domains:
            issues.append(TriageIssue(kind=K.TOO_MANY_DOMAINS,
                                      message=f"Too many domains selected: {count} (maximum: {s.max_critical_domains})"))
        selected = set(triage.critical_domains)
        if not any(selected & group for group in _GROUPS):
            issues.append(TriageIssue(kind=K.UNBALANCED_SELECTION,
                                      message="Domain selection lacks balance across strategy, operations, and people dimensions"))
        return issues

    @staticmethod
    def check_score_consistency(domain_scores: dict[str, DomainScore]) -> list[TriageIssue]:
        issues = []
        for domain, ds in domain_scores.items():
            if not 1 <= ds.score <= 5:
                issues.append(TriageIssue(kind=K.INVALID_SCORE,
                                          message=f"Invalid score for {domain}: {ds.score} (must be 1-5)"))
            if not 0 <= ds.confidence <= 1:
                issues.append(TriageIssue(kind=K.INVALID_CONFIDENCE,
                                          message=f"Invalid confidence for {domain}: {ds.confidence} (must be 0-1)"))
            severity = expected_severity(ds.score)
            if ds.severity != severity:
                issues.append(TriageIssue(kind=K.SEVERITY_MISMATCH,
                                          message=f"Severity mismatch for {domain}: expected {severity}, got {ds.severity}"))
            priority = expected_priority(ds.score)
            if ds.priority_level != priority:
                issues.append(TriageIssue(kind=K.PRIORITY_MISMATCH,
                                          message=f"Priority level mismatch for {domain}: expected {priority}, got {ds.priority_level}"))
        return issues

    @staticmethod
    def check_industry_alignment(assessment: Assessment, triage: TriageAnalysis) -> list[TriageIssue]:
        issues = []
        sector = _sector(assessment, triage)
        selected = set(triage.critical_domains)
        for required in INDUSTRY_REQUIRED_DOMAINS[sector]:
            if required.value not in selected:
                issues.append(TriageIssue(kind=K.MISSING_INDUSTRY_DOMAIN,
                                          message=f"Required domain for {sector.value} industry missing: {required.value}"))
        if _heavily_regulated(assessment, triage) and Domain.RISK_COMPLIANCE.value not in selected:
            issues.append(TriageIssue(kind=K.MISSING_RISK_COMPLIANCE,
                                      message="Risk-compliance domain required for heavily regulated industries"))
        return issues

    def check_confidence(self, triage: TriageAnalysis) -> list[TriageIssue]:
        issues = []
        if not 0 <= triage.confidence <= 1:
            issues.append(TriageIssue(kind=K.INVALID_OVERALL_CONFIDENCE,
                                      message=f"Invalid overall confidence: {triage.confidence} (must be 0-1)"))
        confidences = [ds.confidence for ds in triage.domain_scores.values()]
        if confidences and triage.confidence > fmean(confidences) + self.settings.max_confidence_excess:
            issues.append(TriageIssue(kind=K.CONFIDENCE_TOO_HIGH,
                                      message="Overall confidence unreasonably high compared to domain confidences"))
        return issues

    def report(self, assessment: Assessment, triage: TriageAnalysis) -> TriageValidationReport:
        issues = [
            *self.check_domain_coverage(triage),
            *self.check_score_consistency(triage.domain_scores),
            *self.check_industry_alignment(assessment, triage),
            *self.check_confidence(triage),
        ]
        completeness = data_completeness(assessment)
        if completeness < self.settings.min_data_completeness:
            issues.append(TriageIssue(
                kind=K.LOW_DATA_COMPLETENESS,
                message=(f"Data completeness ({round(completeness * 100)}%) below required threshold "
                         f"({round(self.settings.min_data_completeness * 100)}%)"),
            ))
        return TriageValidationReport(
            is_valid=not issues,
            confidence=triage.confidence,
            validation_errors=issues,
            data_completeness=completeness,
            quality_score=quality_score(assessment, triage),
        )

    # -- entry point --------------------------------------------------------

    def validate(self, assessment: Assessment, triage: TriageAnalysis) -> TriageValidationOutcome:
        """Pass *triage* through when it is sound, otherwise return a repaired copy.

        ``is_valid`` on the outcome means the returned ``result`` is usable;
        the raw check results stay on ``report``.
        """
        report = self.report(assessment, triage)
        critical = [i for i in report.validation_errors if i.kind in CRITICAL_KINDS]
        if not critical and triage.confidence >= self.settings.confidence_threshold:
            return TriageValidationOutcome(is_valid=True, result=triage, fallback_applied=False, report=report)

        log.warning("Triage validation failed for %s (confidence %.2f, completeness %.2f, quality %.2f): %s",
                    assessment.id, triage.confidence, report.data_completeness, report.quality_score,
                    "; ".join(i.message for i in report.validation_errors) or "low confidence")

        strategy, result = self.apply_fallback(assessment, triage, report)
        report.fallback_activated = True
        log.info("Triage fallback %s applied for %s: %s", strategy.value, assessment.id, ", ".join(result.critical_domains))
        return TriageValidationOutcome(is_valid=True, result=result, fallback_applied=True, strategy=strategy, report=report)

    def apply_fallback(
        self, assessment: Assessment, triage: TriageAnalysis, report: TriageValidationReport,
    ) -> tuple[FallbackStrategy, TriageAnalysis]:
        s = self.settings
        structural = [i for i in report.validation_errors if i.kind in STRUCTURAL_KINDS]
        if structural:
            return FallbackStrategy.STRUCTURAL_REPAIR, self.structural_repair(assessment, triage, structural)

        if triage.confidence < s.confidence_threshold:
            domains = [d.value for d in s.default_domains]
            return FallbackStrategy.DEFAULT_DOMAINS, triage.model_copy(update={
                "critical_domains": domains,
                "confidence": 0.6,
                "reasoning": _append(triage.reasoning,
                                     f"Default domain selection applied due to low confidence ({triage.confidence:.2f}). "
                                     f"Selected core operational domains: {', '.join(domains)}."),
            })

        if report.data_completeness < s.data_completeness_threshold:
            sector = _sector(assessment, triage)
            domains = [d.value for d in INDUSTRY_FALLBACK_DOMAINS[sector][:s.max_critical_domains]]
            label = sector.value if sector != Sector.UNKNOWN else "general"
            return FallbackStrategy.INDUSTRY, triage.model_copy(update={
                "critical_domains": domains,
                "confidence": max(0.65, triage.confidence),
                "reasoning": _append(triage.reasoning,
                                     f"Industry-specific domain selection applied for {label} sector "
                                     "due to insufficient data completeness."),
            })

        if report.quality_score < s.quality_score_threshold:
            ranked = sorted(triage.domain_scores, key=lambda d: triage.domain_scores[d].score, reverse=True)
            return FallbackStrategy.RULE_BASED, triage.model_copy(update={
                "critical_domains": ranked[:s.max_critical_domains],
                "confidence": max(0.55, triage.confidence * 0.9),
                "reasoning": _append(triage.reasoning,
                                     "Rule-based domain selection applied using highest scoring domains "
                                     "due to low data quality."),
            })

        return FallbackStrategy.CONFIDENCE_ADJUSTED, triage.model_copy(update={
            "confidence": max(0.5, triage.confidence),
            "reasoning": f"{triage.reasoning} [Fallback applied: confidence adjusted]".strip(),
        })

    def structural_repair(
        self, assessment: Assessment, triage: TriageAnalysis, issues: list[TriageIssue],
    ) -> TriageAnalysis:
        """Fix the selected domains in place rather than replacing the selection."""
        s = self.settings
        kinds = {i.kind for i in issues}
        domains = list(dict.fromkeys(triage.critical_domains))
        notes: list[str] = []

        def score_of(domain: str) -> float:
            ds = triage.domain_scores.get(domain)
            return ds.score if ds is not None else 0.0

        def top_up(reason: str) -> None:
            needed = s.min_critical_domains - len(domains)
            if needed <= 0:
                return
            added = [d.value for d in s.default_domains if d.value not in domains][:needed]
            domains.extend(added)
            if added:
                notes.append(f"Added {', '.join(added)} to {reason}.")

        def force_add(domain: str, reason: str) -> None:
            if domain in domains:
                return
            if len(domains) >= s.max_critical_domains:
                lowest = min((d for d in domains if d not in required), key=score_of, default=None)
                if lowest is not None:
                    domains.remove(lowest)
            domains.append(domain)
            notes.append(f"Added {domain} {reason}.")

        if K.INSUFFICIENT_DOMAINS in kinds:
            top_up("meet minimum domain count")
        if K.TOO_MANY_DOMAINS in kinds:
            domains = sorted(domains, key=score_of, reverse=True)[:s.max_critical_domains]
            notes.append(f"Reduced to top {s.max_critical_domains} domains by score.")

        required: list[str] = []
        if K.MISSING_INDUSTRY_DOMAIN in kinds:
            sector = _sector(assessment, triage)
            required = [d.value for d in INDUSTRY_REQUIRED_DOMAINS[sector]]
            for domain in required:
                force_add(domain, f"required for {sector.value} industry")
        if _heavily_regulated(assessment, triage) and (K.MISSING_RISK_COMPLIANCE in kinds or K.MISSING_INDUSTRY_DOMAIN in kinds):
            required.append(Domain.RISK_COMPLIANCE.value)
            force_add(Domain.RISK_COMPLIANCE.value, "for heavily regulated industry")

        top_up("ensure minimum count")
        if kinds & {K.INVALID_SCORE, K.INVALID_CONFIDENCE}:
            notes.append("Confidence reduced due to out-of-range domain scores.")

        return triage.model_copy(update={
            "critical_domains": domains,
            "confidence": 0.65,
            "reasoning": _append(triage.reasoning, f"Validation fallback applied: {' '.join(notes)}".strip()),
        })


def _append(reasoning: str, note: str) -> str:
    return f"{reasoning} [{note}]".strip()
