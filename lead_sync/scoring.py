"""Pluggable fit-score and opportunity-value heuristics used during promotion."""
from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field
from datetime import date
from typing import FrozenSet, Mapping, Optional, Protocol, Tuple

from .models import Field


class FitScorer(Protocol):
    def score(self, fields: Mapping[str, str]) -> int:  # pragma: no cover - protocol
        """Return a 0-100 fit score for the entity fields."""


class ValueEstimator(Protocol):
    def estimate(self, fields: Mapping[str, str]) -> int:  # pragma: no cover - protocol
        """Return an estimated opportunity value in whole currency units."""


def _as_int(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    digits = re.sub(r"[^\d]", "", str(value))
    return int(digits) if digits else None


@dataclass(frozen=True)
class IcpFitScorer:
    """Weighted company-size, industry, seniority, and intent score capped at 100."""

    weights: Mapping[str, float] = field(
        default_factory=lambda: {"company_size": 1.0, "industry": 1.0, "seniority": 1.0, "intent": 1.0}
    )
    target_industries: FrozenSet[str] = frozenset()
    target_seniorities: FrozenSet[str] = frozenset({"senior", "director", "vp", "c-level"})

    def score(self, fields: Mapping[str, str]) -> int:
        total = 0.0

        size = _as_int(fields.get(Field.EMPLOYEE_COUNT.value))
        if size is not None:
            if 50 <= size <= 1000:
                total += self.weights.get("company_size", 0.0) * 30
            elif size > 1000:
                total += self.weights.get("company_size", 0.0) * 20
            else:
                total += self.weights.get("company_size", 0.0) * 10

        industry = (fields.get(Field.INDUSTRY.value) or "").strip().lower()
        if industry and industry in {name.lower() for name in self.target_industries}:
            total += self.weights.get("industry", 0.0) * 25

        seniority = (fields.get(Field.SENIORITY.value) or "").strip().lower()
        if seniority and seniority in self.target_seniorities:
            total += self.weights.get("seniority", 0.0) * 20

        intent = (fields.get(Field.INTENT_SIGNAL.value) or "").strip().lower()
        intent_points = {"high": 25, "medium": 15, "low": 5}
        for level, points in intent_points.items():
            if intent.startswith(level):
                total += self.weights.get("intent", 0.0) * points
                break

        return int(min(round(total), 100))


_SERVICE_MULTIPLIERS: Tuple[Tuple[Tuple[str, ...], float], ...] = (
    (("managed", "support"), 1.5),
    (("cloud", "migration"), 1.3),
    (("security", "compliance"), 1.4),
)


@dataclass(frozen=True)
class ServiceMixValueEstimator:
    """Base value by fit-score band, scaled by keywords in the qualified services."""

    bands: Tuple[Tuple[int, int], ...] = ((30, 10000), (70, 25000))
    top_value: int = 50000
    default_fit_score: int = 50

    def estimate(self, fields: Mapping[str, str]) -> int:
        fit = _as_int(fields.get(Field.FIT_SCORE.value))
        fit = self.default_fit_score if fit is None else fit
        base = self.top_value
        for upper, value in self.bands:
            if fit < upper:
                base = value
                break

        services = (fields.get(Field.QUALIFIED_SERVICES.value) or "").lower()
        multiplier = 1.0
        for keywords, factor in _SERVICE_MULTIPLIERS:
            if any(keyword in services for keyword in keywords):
                multiplier *= factor
        return int(round(base * multiplier))


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def expected_close_date(timeframe: Optional[str], today: date) -> date:
    """Estimate a close date from free-text timeframe wording."""

    months = 3
    text = timeframe or ""
    lowered = text.lower()
    if "immediate" in lowered or "urgent" in lowered:
        months = 1
    elif "quarter" in lowered or re.search(r"\bQ[1-4]?\b", text):
        months = 3
    elif "year" in lowered or "annual" in lowered:
        months = 12
    return _add_months(today, months)


__all__ = [
    "FitScorer",
    "ValueEstimator",
    "IcpFitScorer",
    "ServiceMixValueEstimator",
    "expected_close_date",
]
