"""Declarative field categories and source-priority tables used by the merge engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .models import Field, FieldKey, field_key


class FieldCategory(str, Enum):
    """How an automated merge treats a field."""

    PROTECTED = "protected"
    ENRICHMENT = "enrichment"
    CONDITIONAL = "conditional"
    IDENTITY = "identity"
    WORKFLOW = "workflow"


class PriorityGroup(str, Enum):
    """Field groups that share one ordered provider list."""

    CONTACT = "contact"
    COMPANY = "company"
    EMAIL_VERIFICATION = "email_verification"
    PHONE = "phone"
    TECHNOGRAPHICS = "technographics"


@dataclass(frozen=True)
class FieldRule:
    category: FieldCategory
    priority_group: Optional[PriorityGroup] = None


def _rule(category: FieldCategory, group: Optional[PriorityGroup] = None) -> FieldRule:
    return FieldRule(category=category, priority_group=group)


DEFAULT_FIELD_RULES: Mapping[str, FieldRule] = {
    Field.EMAIL.value: _rule(FieldCategory.IDENTITY, PriorityGroup.CONTACT),
    Field.FIRST_NAME.value: _rule(FieldCategory.IDENTITY, PriorityGroup.CONTACT),
    Field.LAST_NAME.value: _rule(FieldCategory.IDENTITY, PriorityGroup.CONTACT),
    Field.FULL_NAME.value: _rule(FieldCategory.IDENTITY, PriorityGroup.CONTACT),
    Field.JOB_TITLE.value: _rule(FieldCategory.IDENTITY, PriorityGroup.CONTACT),
    Field.PHONE.value: _rule(FieldCategory.IDENTITY, PriorityGroup.PHONE),
    Field.COMPANY_NAME.value: _rule(FieldCategory.IDENTITY, PriorityGroup.COMPANY),
    Field.WEBSITE.value: _rule(FieldCategory.IDENTITY, PriorityGroup.COMPANY),
    Field.TECHNOLOGY_STACK.value: _rule(FieldCategory.ENRICHMENT, PriorityGroup.TECHNOGRAPHICS),
    Field.REVENUE_RANGE.value: _rule(FieldCategory.ENRICHMENT, PriorityGroup.COMPANY),
    Field.SENIORITY.value: _rule(FieldCategory.ENRICHMENT, PriorityGroup.CONTACT),
    Field.INTENT_SIGNAL.value: _rule(FieldCategory.ENRICHMENT),
    Field.FOUNDED_YEAR.value: _rule(FieldCategory.ENRICHMENT, PriorityGroup.COMPANY),
    Field.HEADQUARTERS.value: _rule(FieldCategory.ENRICHMENT, PriorityGroup.COMPANY),
    Field.INDUSTRY.value: _rule(FieldCategory.ENRICHMENT, PriorityGroup.COMPANY),
    Field.EMPLOYEE_COUNT.value: _rule(FieldCategory.ENRICHMENT, PriorityGroup.COMPANY),
    Field.EMAIL_VERIFICATION.value: _rule(FieldCategory.ENRICHMENT, PriorityGroup.EMAIL_VERIFICATION),
    Field.SERVICES_OFFERED.value: _rule(FieldCategory.CONDITIONAL, PriorityGroup.COMPANY),
    Field.GROWTH_SIGNALS.value: _rule(FieldCategory.CONDITIONAL, PriorityGroup.COMPANY),
    Field.PROJECT_PIPELINES.value: _rule(FieldCategory.CONDITIONAL),
    Field.STATUS.value: _rule(FieldCategory.PROTECTED),
    Field.ASSIGNED_OWNER.value: _rule(FieldCategory.PROTECTED),
    Field.PRIORITY.value: _rule(FieldCategory.PROTECTED),
    Field.MANUAL_NOTES.value: _rule(FieldCategory.PROTECTED),
    Field.PAIN_POINTS.value: _rule(FieldCategory.WORKFLOW),
    Field.QUALIFIED_SERVICES.value: _rule(FieldCategory.WORKFLOW),
    Field.DECISION_MAKER.value: _rule(FieldCategory.WORKFLOW),
    Field.BUDGET_RANGE.value: _rule(FieldCategory.WORKFLOW),
    Field.TIMEFRAME.value: _rule(FieldCategory.WORKFLOW),
    Field.FIT_SCORE.value: _rule(FieldCategory.WORKFLOW),
    Field.OPPORTUNITY_VALUE.value: _rule(FieldCategory.WORKFLOW),
    Field.PROBABILITY_PERCENT.value: _rule(FieldCategory.WORKFLOW),
    Field.EXPECTED_CLOSE_DATE.value: _rule(FieldCategory.WORKFLOW),
    Field.PRODUCTS_SERVICES.value: _rule(FieldCategory.WORKFLOW),
    Field.QUOTES_PROPOSALS.value: _rule(FieldCategory.WORKFLOW),
    Field.COMPETITORS.value: _rule(FieldCategory.WORKFLOW),
    Field.WIN_LOSS_REASON.value: _rule(FieldCategory.WORKFLOW),
}

DEFAULT_SOURCE_PRIORITIES: Mapping[PriorityGroup, Tuple[str, ...]] = {
    PriorityGroup.CONTACT: ("ZoomInfo", "Apollo.io", "Hunter.io"),
    PriorityGroup.COMPANY: ("ZoomInfo", "Apollo.io", "Hunter.io"),
    PriorityGroup.EMAIL_VERIFICATION: ("Hunter.io", "ZoomInfo", "Apollo.io"),
    PriorityGroup.PHONE: ("ZoomInfo", "Apollo.io", "Hunter.io"),
    PriorityGroup.TECHNOGRAPHICS: ("Apollo.io", "ZoomInfo"),
}


@dataclass(frozen=True)
class FieldPolicy:
    """Strategy object injected into the merge engine.

    ``rules`` maps field identifiers to categories; ``priorities`` maps each
    priority group to its ordered provider list (highest priority first).
    Fields without a rule are never merged.
    """

    rules: Mapping[str, FieldRule] = field(default_factory=lambda: dict(DEFAULT_FIELD_RULES))
    priorities: Mapping[PriorityGroup, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_SOURCE_PRIORITIES)
    )
    growth_factor: float = 1.5

    def rule_for(self, key: FieldKey) -> Optional[FieldRule]:
        return self.rules.get(field_key(key))

    def category_of(self, key: FieldKey) -> Optional[FieldCategory]:
        rule = self.rule_for(key)
        return rule.category if rule else None

    def fields_in(self, category: FieldCategory) -> Tuple[str, ...]:
        return tuple(name for name, rule in self.rules.items() if rule.category is category)

    @property
    def protected_fields(self) -> Tuple[str, ...]:
        return self.fields_in(FieldCategory.PROTECTED)

    def priority_rank(self, key: FieldKey, provider: Optional[str]) -> int:
        """Position of ``provider`` in the field's priority list; unknown providers rank last."""

        rule = self.rule_for(key)
        order: Sequence[str] = ()
        if rule and rule.priority_group is not None:
            order = self.priorities.get(rule.priority_group, ())
        if provider in order:
            return list(order).index(provider)
        return len(order)

    def with_rules(self, overrides: Mapping[str, FieldRule]) -> "FieldPolicy":
        rules: Dict[str, FieldRule] = dict(self.rules)
        rules.update(overrides)
        return FieldPolicy(rules=rules, priorities=self.priorities, growth_factor=self.growth_factor)

    def with_priorities(self, overrides: Mapping[PriorityGroup, Iterable[str]]) -> "FieldPolicy":
        priorities: Dict[PriorityGroup, Tuple[str, ...]] = dict(self.priorities)
        priorities.update({group: tuple(order) for group, order in overrides.items()})
        return FieldPolicy(rules=self.rules, priorities=priorities, growth_factor=self.growth_factor)


__all__ = [
    "FieldCategory",
    "PriorityGroup",
    "FieldRule",
    "FieldPolicy",
    "DEFAULT_FIELD_RULES",
    "DEFAULT_SOURCE_PRIORITIES",
]
