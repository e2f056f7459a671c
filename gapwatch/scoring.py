"""Scoring primitives: pure functions over raw answers. No I/O.

Scores are on a 0-100 scale. Text predicates take the depth-indicator list as
an argument so callers can pass overridden settings.
"""
from __future__ import annotations

import math
from typing import Any, Iterable

from gapwatch.domains import critical_questions, domain_weight
from gapwatch.schemas import ConflictingResponse, ConflictSeverity, DomainResponse, GapCategory

# Average of GPT-4o-mini input/output pricing per 1K tokens
COST_PER_1K_TOKENS = 0.000375
BASE_ANALYSIS_TOKENS = 500
TOKENS_PER_GAP = 50

_CONFLICT_PENALTY = {
    ConflictSeverity.MAJOR: 30,
    ConflictSeverity.MODERATE: 15,
    ConflictSeverity.MINOR: 5,
}

_BASE_IMPACT = {
    GapCategory.CRITICAL: 5,
    GapCategory.IMPORTANT: 3,
    GapCategory.NICE_TO_HAVE: 1,
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Text predicates
# ---------------------------------------------------------------------------


def is_response_empty(value: Any) -> bool:
    """None, blank strings, NaN and empty lists count as unanswered."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, list):
        return len(value) == 0
    return False


def is_text_answer(value: Any) -> bool:
    return isinstance(value, str)


def depth_indicator_count(text: str, indicators: Iterable[str]) -> int:
    lowered = text.lower()
    return sum(1 for ind in indicators if ind in lowered)


def has_depth_indicator(text: str, indicators: Iterable[str]) -> bool:
    return depth_indicator_count(text, indicators) > 0


def is_brief(text: str, min_length: int) -> bool:
    return len(text) < min_length


def lacks_depth(text: str, indicators: Iterable[str], min_length: int) -> bool:
    """Long enough to expect elaboration, yet without any depth indicator."""
    return len(text) > min_length and not has_depth_indicator(text, indicators)


def answered(domain_response: DomainResponse | None, question_id: str) -> bool:
    if domain_response is None:
        return False
    q = domain_response.questions.get(question_id)
    return q is not None and not is_response_empty(q.value)


def has_any_answer(domain_response: DomainResponse | None) -> bool:
    if domain_response is None:
        return False
    return any(not is_response_empty(q.value) for q in domain_response.questions.values())


# ---------------------------------------------------------------------------
# Domain scores
# ---------------------------------------------------------------------------


def domain_completeness_score(domain: str, domain_response: DomainResponse, gap_count: int) -> float:
    """Critical-question coverage (up to 70) minus a gap penalty plus a completeness bonus."""
    questions = critical_questions(domain)
    if questions:
        answered_count = sum(1 for q in questions if answered(domain_response, q))
        critical_score = answered_count / len(questions) * 70
    else:
        critical_score = 0.0
    gap_penalty = min(gap_count * 5, 30)
    quality_bonus = (domain_response.completeness or 0) * 0.3
    return clamp(critical_score - gap_penalty + quality_bonus, 0, 100)


def data_quality_score(domain_response: DomainResponse, indicators: Iterable[str]) -> float:
    indicators = tuple(indicators)
    total = 0.0
    count = 0
    for response in domain_response.questions.values():
        count += 1
        if is_text_answer(response.value):
            text = response.value
            score = 50
            if len(text) > 50:
                score += 20
            if len(text) > 100:
                score += 15
            score += min(depth_indicator_count(text, indicators) * 5, 15)
            total += min(score, 100)
        else:
            total += 75
    return total / count if count else 0.0


def response_depth_score(domain_response: DomainResponse, indicators: Iterable[str]) -> float:
    indicators = tuple(indicators)
    texts = [r.value for r in domain_response.questions.values() if is_text_answer(r.value)]
    if not texts:
        return 75.0
    avg_length = sum(len(t) for t in texts) / len(texts)
    indicator_total = sum(depth_indicator_count(t, indicators) for t in texts)
    return min(avg_length / 100 * 50, 50) + min(indicator_total * 10, 50)


def consistency_score(conflicts: Iterable[ConflictingResponse]) -> float:
    penalty = sum(_CONFLICT_PENALTY[c.severity] for c in conflicts)
    return float(max(0, 100 - penalty))


def overall_completeness_score(domain_scores: dict[str, float]) -> int:
    """Domain-weighted average of per-domain scores, rounded half up."""
    weighted = 0.0
    total_weight = 0.0
    for domain, score in domain_scores.items():
        weight = domain_weight(domain)
        weighted += score * weight
        total_weight += weight
    return round_half_up(weighted / total_weight) if total_weight > 0 else 0


# ---------------------------------------------------------------------------
# Resolution impact and cost
# ---------------------------------------------------------------------------


def quality_multiplier(response: str) -> float:
    if len(response) > 50:
        return 1.2
    if len(response) > 20:
        return 1.0
    return 0.8


def completeness_impact(category: GapCategory, response: str) -> int:
    return round_half_up(_BASE_IMPACT[category] * quality_multiplier(response))


def estimate_cost(gap_count: int) -> float:
    tokens = BASE_ANALYSIS_TOKENS + gap_count * TOKENS_PER_GAP
    return tokens / 1000 * COST_PER_1K_TOKENS
