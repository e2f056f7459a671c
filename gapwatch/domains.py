"""Domain taxonomy and industry rule tables.

All lookup tables are keyed by the ``Domain`` / ``Sector`` enums and cover
every member, so an unknown sector resolves to ``Sector.UNKNOWN`` instead of
silently missing from a string-keyed dict.
"""
from __future__ import annotations

from enum import Enum


class Domain(str, Enum):
    STRATEGIC_ALIGNMENT = "strategic-alignment"
    FINANCIAL_MANAGEMENT = "financial-management"
    REVENUE_ENGINE = "revenue-engine"
    OPERATIONAL_EXCELLENCE = "operational-excellence"
    PEOPLE_ORGANIZATION = "people-organization"
    TECHNOLOGY_DATA = "technology-data"
    CUSTOMER_EXPERIENCE = "customer-experience"
    SUPPLY_CHAIN = "supply-chain"
    RISK_COMPLIANCE = "risk-compliance"
    PARTNERSHIPS = "partnerships"
    CUSTOMER_SUCCESS = "customer-success"
    CHANGE_MANAGEMENT = "change-management"


class Sector(str, Enum):
    FINANCIAL_SERVICES = "financial-services"
    HEALTHCARE = "healthcare"
    TECHNOLOGY = "technology"
    MANUFACTURING = "manufacturing"
    RETAIL = "retail"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> Sector:
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class RegulatoryTier(str, Enum):
    NON_REGULATED = "non-regulated"
    LIGHTLY_REGULATED = "lightly-regulated"
    MODERATELY_REGULATED = "moderately-regulated"
    HEAVILY_REGULATED = "heavily-regulated"


ALL_DOMAINS: tuple[Domain, ...] = tuple(Domain)

# ---------------------------------------------------------------------------
# Gap detection tables
# ---------------------------------------------------------------------------

DOMAIN_WEIGHTS: dict[Domain, float] = {
    Domain.STRATEGIC_ALIGNMENT: 1.2,
    Domain.FINANCIAL_MANAGEMENT: 1.3,
    Domain.REVENUE_ENGINE: 1.3,
    Domain.OPERATIONAL_EXCELLENCE: 1.1,
    Domain.PEOPLE_ORGANIZATION: 1.1,
    Domain.TECHNOLOGY_DATA: 1.0,
    Domain.CUSTOMER_EXPERIENCE: 1.2,
    Domain.SUPPLY_CHAIN: 0.9,
    Domain.RISK_COMPLIANCE: 1.4,
    Domain.PARTNERSHIPS: 0.8,
    Domain.CUSTOMER_SUCCESS: 1.1,
    Domain.CHANGE_MANAGEMENT: 1.0,
}

CRITICAL_QUESTIONS: dict[Domain, tuple[str, ...]] = {
    Domain.STRATEGIC_ALIGNMENT: ("1.1", "1.2", "1.3"),
    Domain.FINANCIAL_MANAGEMENT: ("2.1", "2.2", "2.3", "2.4"),
    Domain.REVENUE_ENGINE: ("3.1", "3.2", "3.3"),
    Domain.OPERATIONAL_EXCELLENCE: ("4.1", "4.2", "4.3"),
    Domain.PEOPLE_ORGANIZATION: ("5.1", "5.2", "5.3"),
    Domain.TECHNOLOGY_DATA: ("6.1", "6.2", "6.3"),
    Domain.CUSTOMER_EXPERIENCE: ("7.1", "7.2", "7.3"),
    Domain.SUPPLY_CHAIN: ("8.1", "8.2"),
    Domain.RISK_COMPLIANCE: ("9.1", "9.2", "9.3"),
    Domain.PARTNERSHIPS: ("10.1", "10.2"),
    Domain.CUSTOMER_SUCCESS: ("11.1", "11.2"),
    Domain.CHANGE_MANAGEMENT: ("12.1", "12.2"),
}

DOMAIN_CONTEXT: dict[Domain, str] = {
    Domain.STRATEGIC_ALIGNMENT: "Strategic vision, market positioning, and organizational alignment",
    Domain.FINANCIAL_MANAGEMENT: "Financial planning, cash flow, budgeting, and capital allocation",
    Domain.REVENUE_ENGINE: "Sales processes, customer acquisition, and revenue growth systems",
    Domain.OPERATIONAL_EXCELLENCE: "Process efficiency, quality management, and operational scalability",
    Domain.PEOPLE_ORGANIZATION: "Talent management, organizational culture, and team development",
    Domain.TECHNOLOGY_DATA: "Technology infrastructure, data management, and digital capabilities",
    Domain.CUSTOMER_EXPERIENCE: "Customer satisfaction, product development, and experience optimization",
    Domain.SUPPLY_CHAIN: "Supply chain efficiency, vendor relationships, and procurement",
    Domain.RISK_COMPLIANCE: "Risk management, regulatory compliance, and governance",
    Domain.PARTNERSHIPS: "Strategic partnerships, ecosystem development, and external relationships",
    Domain.CUSTOMER_SUCCESS: "Customer lifecycle management, retention, and expansion",
    Domain.CHANGE_MANAGEMENT: "Organizational change capabilities and implementation effectiveness",
}

# ---------------------------------------------------------------------------
# Triage tables
# ---------------------------------------------------------------------------

# A critical-domain selection must touch at least one of these groups.
STRATEGY_GROUP = frozenset({Domain.STRATEGIC_ALIGNMENT, Domain.CHANGE_MANAGEMENT})
OPERATIONS_GROUP = frozenset({Domain.OPERATIONAL_EXCELLENCE, Domain.TECHNOLOGY_DATA, Domain.SUPPLY_CHAIN})
PEOPLE_GROUP = frozenset({Domain.PEOPLE_ORGANIZATION, Domain.CUSTOMER_EXPERIENCE, Domain.CUSTOMER_SUCCESS})

INDUSTRY_REQUIRED_DOMAINS: dict[Sector, tuple[Domain, ...]] = {
    Sector.FINANCIAL_SERVICES: (Domain.RISK_COMPLIANCE, Domain.FINANCIAL_MANAGEMENT),
    Sector.HEALTHCARE: (Domain.RISK_COMPLIANCE, Domain.OPERATIONAL_EXCELLENCE),
    Sector.TECHNOLOGY: (Domain.TECHNOLOGY_DATA,),
    Sector.MANUFACTURING: (Domain.SUPPLY_CHAIN, Domain.OPERATIONAL_EXCELLENCE),
    Sector.RETAIL: (Domain.CUSTOMER_EXPERIENCE, Domain.SUPPLY_CHAIN),
    Sector.UNKNOWN: (),
}

INDUSTRY_FALLBACK_DOMAINS: dict[Sector, tuple[Domain, ...]] = {
    Sector.FINANCIAL_SERVICES: (
        Domain.RISK_COMPLIANCE, Domain.FINANCIAL_MANAGEMENT,
        Domain.OPERATIONAL_EXCELLENCE, Domain.STRATEGIC_ALIGNMENT,
    ),
    Sector.HEALTHCARE: (
        Domain.RISK_COMPLIANCE, Domain.OPERATIONAL_EXCELLENCE,
        Domain.PEOPLE_ORGANIZATION, Domain.TECHNOLOGY_DATA,
    ),
    Sector.TECHNOLOGY: (
        Domain.TECHNOLOGY_DATA, Domain.REVENUE_ENGINE,
        Domain.PEOPLE_ORGANIZATION, Domain.STRATEGIC_ALIGNMENT,
    ),
    Sector.MANUFACTURING: (
        Domain.OPERATIONAL_EXCELLENCE, Domain.SUPPLY_CHAIN,
        Domain.PEOPLE_ORGANIZATION, Domain.STRATEGIC_ALIGNMENT,
    ),
    Sector.RETAIL: (
        Domain.CUSTOMER_EXPERIENCE, Domain.REVENUE_ENGINE,
        Domain.SUPPLY_CHAIN, Domain.CUSTOMER_SUCCESS,
    ),
    Sector.UNKNOWN: (
        Domain.STRATEGIC_ALIGNMENT, Domain.OPERATIONAL_EXCELLENCE,
        Domain.PEOPLE_ORGANIZATION, Domain.REVENUE_ENGINE,
    ),
}


def domain_weight(domain: str) -> float:
    try:
        return DOMAIN_WEIGHTS[Domain(domain)]
    except ValueError:
        return 1.0


def critical_questions(domain: str) -> tuple[str, ...]:
    try:
        return CRITICAL_QUESTIONS[Domain(domain)]
    except ValueError:
        return ()


def domain_context(domain: str) -> str:
    try:
        return DOMAIN_CONTEXT[Domain(domain)]
    except ValueError:
        return "Business operations and management"
