"""Source-priority merge planning and all-or-nothing plan application."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import WorkflowConfig
from .errors import ConflictError
from .models import (
    AuditRecord,
    EntityRecord,
    Field,
    IncomingRecord,
    MatchCandidate,
    MatchClassification,
    MergeAction,
    MergePlan,
    Overwrite,
    Skip,
    utcnow,
)
from .policy import FieldCategory, FieldPolicy

LOGGER = logging.getLogger(__name__)

REASON_HUMAN_EDITED = "protected:human-edited"
REASON_STATUS_ADVANCED = "protected:status-advanced"
REASON_INSUFFICIENT_IMPROVEMENT = "insufficient-improvement"
REASON_LOWER_PRIORITY = "lower-priority-source"
REASON_UNCHANGED = "unchanged"
REASON_WORKFLOW_MANAGED = "workflow-managed"
REASON_UNMAPPED = "unmapped-field"


class MergeEngine:
    """Turns matched provider records into a :class:`MergePlan`.

    All decisions come from the injected :class:`FieldPolicy`; adding a field
    or changing its category is a configuration change only.
    """

    def __init__(self, policy: Optional[FieldPolicy] = None, workflow: Optional[WorkflowConfig] = None) -> None:
        self.policy = policy or FieldPolicy()
        self.workflow = workflow or WorkflowConfig()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def plan(self, existing: EntityRecord, incoming: IncomingRecord, match: Optional[MatchCandidate] = None) -> MergePlan:
        return self.plan_group(existing, [incoming], match)

    def plan_group(
        self,
        existing: EntityRecord,
        records: Iterable[IncomingRecord],
        match: Optional[MatchCandidate] = None,
    ) -> MergePlan:
        """Plan a merge of one or more provider records into ``existing``.

        When several records supply the same field, the highest-priority
        provider for that field wins, then the higher confidence, then the
        most recent retrieval.
        """

        records = list(records)
        if not records:
            raise ValueError("A merge plan needs at least one incoming record")
        if match is not None:
            if match.entity_id != existing.id:
                raise ValueError(f"Match refers to entity {match.entity_id}, not {existing.id}")
            if match.classification is not MatchClassification.SAME:
                raise ValueError(
                    f"Refusing to merge into {existing.id}: match classified as {match.classification.value}"
                )

        guard = self.protection_reason(existing)
        actions: List[MergeAction] = []
        for name in self._field_order(records):
            offers = [(record, record.get(name)) for record in records]
            offers = [(record, value) for record, value in offers if value is not None]
            if not offers:
                continue
            record, value = self._select(name, offers)
            actions.append(self._decide(existing, name, value, record.provider, guard))

        providers = tuple(dict.fromkeys(record.provider for record in records))
        return MergePlan(
            entity_id=existing.id,
            base_version=existing.version,
            actions=tuple(actions),
            providers=providers,
        )

    def protection_reason(self, existing: EntityRecord) -> Optional[str]:
        """Return why protected fields are frozen on ``existing``, or ``None``."""

        if self.workflow.is_human(existing.last_modified_actor):
            return REASON_HUMAN_EDITED
        if existing.status is not existing.stage.initial_status:
            return REASON_STATUS_ADVANCED
        return None

    def _field_order(self, records: Sequence[IncomingRecord]) -> List[str]:
        offered = {name for record in records for name in record.fields}
        known = [name for name in self.policy.rules if name in offered]
        unknown = sorted(offered.difference(self.policy.rules))
        return known + unknown

    def _select(self, name: str, offers: Sequence[Tuple[IncomingRecord, str]]) -> Tuple[IncomingRecord, str]:
        return min(
            offers,
            key=lambda offer: (
                self.policy.priority_rank(name, offer[0].provider),
                -offer[0].confidence,
                -offer[0].retrieved_at.timestamp(),
                offer[0].provider,
                offer[1],
            ),
        )

    def _decide(
        self,
        existing: EntityRecord,
        name: str,
        value: str,
        provider: str,
        guard: Optional[str],
    ) -> MergeAction:
        rule = self.policy.rule_for(name)
        if rule is None:
            return Skip(name, REASON_UNMAPPED, provider)

        current = existing.get(name)
        category = rule.category

        if category is FieldCategory.WORKFLOW or name == Field.STATUS.value:
            # status only moves through the workflow state machine
            return Skip(name, REASON_WORKFLOW_MANAGED, provider)

        if category is FieldCategory.PROTECTED:
            if guard:
                return Skip(name, guard, provider)
            if current == value:
                return Skip(name, REASON_UNCHANGED, provider)
            return Overwrite(name, value, provider)

        if category is FieldCategory.ENRICHMENT:
            return Overwrite(name, value, provider)

        if category is FieldCategory.CONDITIONAL:
            if current is None:
                return Overwrite(name, value, provider)
            if value.casefold() not in current.casefold() and len(value) >= self.policy.growth_factor * len(current):
                return Overwrite(name, value, provider)
            return Skip(name, REASON_INSUFFICIENT_IMPROVEMENT, provider)

        # identity fields
        if current is None:
            return Overwrite(name, value, provider)
        if current == value:
            return Skip(name, REASON_UNCHANGED, provider)
        incoming_rank = self.policy.priority_rank(name, provider)
        existing_rank = self.policy.priority_rank(name, existing.field_sources.get(name))
        if incoming_rank <= existing_rank:
            return Overwrite(name, value, provider)
        return Skip(name, REASON_LOWER_PRIORITY, provider)

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    def apply(
        self,
        entity: EntityRecord,
        plan: MergePlan,
        *,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> EntityRecord:
        """Return a new entity with ``plan`` applied; ``entity`` is left untouched.

        A plan computed against another version raises :class:`ConflictError`
        before anything is written.
        """

        if plan.entity_id != entity.id:
            raise ValueError(f"Plan targets entity {plan.entity_id}, not {entity.id}")
        if plan.base_version != entity.version:
            raise ConflictError(entity.id, plan.base_version, entity.version)

        updated = entity.copy()
        for action in plan.overwrites:
            updated.fields[action.field] = action.value
            updated.field_sources[action.field] = action.provider
        for provider in plan.providers:
            if provider not in updated.provenance:
                updated.provenance.append(provider)

        if plan.overwrites:
            updated.last_modified_at = at or utcnow()
            # human attribution sticks so protected fields stay frozen
            if not self.workflow.is_human(updated.last_modified_actor):
                updated.last_modified_actor = actor or self.workflow.system_actor
        updated.version = entity.version + 1
        return updated

    @staticmethod
    def audit(plan: MergePlan, timestamp: Optional[datetime] = None) -> AuditRecord:
        reasons: Dict[str, str] = {skip.field: skip.reason for skip in plan.skips}
        return AuditRecord(
            entity_id=plan.entity_id,
            timestamp=timestamp or utcnow(),
            fields_overwritten=tuple(action.field for action in plan.overwrites),
            fields_preserved=tuple(skip.field for skip in plan.skips),
            preservation_reasons=reasons,
            providers=plan.providers,
        )


__all__ = [
    "MergeEngine",
    "REASON_HUMAN_EDITED",
    "REASON_STATUS_ADVANCED",
    "REASON_INSUFFICIENT_IMPROVEMENT",
    "REASON_LOWER_PRIORITY",
    "REASON_UNCHANGED",
    "REASON_WORKFLOW_MANAGED",
    "REASON_UNMAPPED",
]
