"""Engine thresholds and tuning constants.

Every product-tuned number (cache freshness, extension caps, triage
thresholds) lives here so components can be built with overridden values.
"""
from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict

from gapwatch.domains import Domain

HOUR_MS = 60 * 60 * 1000


class EngineSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Gap detection
    cache_freshness_hours: float = 2.0
    min_response_length: int = 10
    depth_check_min_length: int = 20
    depth_indicators: tuple[str, ...] = ("because", "specifically", "for example", "such as", "including")
    completion_model: str = "gpt-4o-mini"
    founder_critical_gap_threshold: int = 3

    # Gap lifecycle
    bulk_resolution_limit: int = 50

    # Triage validation
    confidence_threshold: float = 0.7
    data_completeness_threshold: float = 0.6
    min_data_completeness: float = 0.5
    quality_score_threshold: float = 0.65
    max_confidence_excess: float = 0.2
    min_critical_domains: int = 3
    max_critical_domains: int = 5
    default_domains: tuple[Domain, ...] = (
        Domain.STRATEGIC_ALIGNMENT,
        Domain.OPERATIONAL_EXCELLENCE,
        Domain.PEOPLE_ORGANIZATION,
    )

    # Timeline
    max_gap_resolution_extension_hours: float = 24.0
    max_clarification_extension_hours: float = 12.0
    max_total_extensions: int = 3
    auto_approval_threshold_hours: float = 6.0
    at_risk_threshold_hours: float = 4.0
    auto_extension_min_pause_hours: float = 1.0

    @property
    def max_gap_resolution_extension_ms(self) -> int:
        return int(self.max_gap_resolution_extension_hours * HOUR_MS)

    @property
    def max_clarification_extension_ms(self) -> int:
        return int(self.max_clarification_extension_hours * HOUR_MS)

    @property
    def auto_approval_threshold_ms(self) -> int:
        return int(self.auto_approval_threshold_hours * HOUR_MS)

    @property
    def at_risk_threshold_ms(self) -> int:
        return int(self.at_risk_threshold_hours * HOUR_MS)

    @property
    def auto_extension_min_pause_ms(self) -> int:
        return int(self.auto_extension_min_pause_hours * HOUR_MS)

    @classmethod
    def from_env(cls, prefix: str = "GAPWATCH_") -> EngineSettings:
        """Build settings, overriding defaults with ``GAPWATCH_<FIELD>`` env vars.

        Tuple fields take comma-separated values.
        """
        overrides: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = os.environ.get(f"{prefix}{name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            if field.annotation is not None and "tuple" in str(field.annotation):
                overrides[name] = tuple(part.strip() for part in raw.split(",") if part.strip())
            else:
                overrides[name] = raw.strip()
        return cls.model_validate(overrides)


DEFAULT_SETTINGS = EngineSettings()
