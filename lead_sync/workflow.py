"""Lead → Prospect → Opportunity lifecycle: transition guards and promotion."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Union

from .config import WorkflowConfig
from .errors import IllegalTransitionError, PreconditionError, TerminalStateError
from .locks import KeyedLock
from .models import EntityRecord, Field, Stage, Status, SuppressionEvent, utcnow
from .policy import FieldPolicy
from .scoring import FitScorer, IcpFitScorer, ServiceMixValueEstimator, ValueEstimator, expected_close_date
from .sinks import SuppressionSink
from .store import EntityStore

LOGGER = logging.getLogger(__name__)

DEFAULT_PROBABILITY_PERCENT = "25"


@dataclass(frozen=True)
class StageDefinition:
    """Legal status graph for one stage."""

    stage: Stage
    transitions: Mapping[Status, FrozenSet[Status]]
    promotable: Optional[Status] = None
    converted: Optional[Status] = None
    statuses: FrozenSet[Status] = field(default_factory=frozenset)

    @property
    def initial(self) -> Status:
        return self.stage.initial_status

    def is_terminal(self, status: Status) -> bool:
        return not self.transitions.get(status) and status is not self.promotable

    def path(self, start: Status, target: Status) -> Optional[List[Status]]:
        """Shortest chain of legal transitions from ``start`` to ``target``, inclusive."""

        queue = deque([[start]])
        seen = {start}
        while queue:
            chain = queue.popleft()
            if chain[-1] is target:
                return chain
            for nxt in sorted(self.transitions.get(chain[-1], ()), key=lambda status: status.value):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(chain + [nxt])
        return None


def _definition(stage: Stage, edges: Mapping[Status, tuple], promotable=None, converted=None, extra=()) -> StageDefinition:
    transitions = {source: frozenset(targets) for source, targets in edges.items()}
    statuses = set(transitions) | {status for targets in transitions.values() for status in targets} | set(extra)
    if converted:
        statuses.add(converted)
    return StageDefinition(stage, transitions, promotable, converted, frozenset(statuses))


LIFECYCLE: Mapping[Stage, StageDefinition] = {
    Stage.LEAD: _definition(
        Stage.LEAD,
        {
            Status.NEW_LEAD: (Status.RESEARCHING,),
            Status.RESEARCHING: (Status.CONTACTED, Status.INVALID_DATA),
            Status.CONTACTED: (Status.ENGAGED, Status.NO_INTEREST, Status.DO_NOT_CONTACT),
        },
        promotable=Status.ENGAGED,
        converted=Status.CONVERTED_TO_PROSPECT,
    ),
    Stage.PROSPECT: _definition(
        Stage.PROSPECT,
        {
            Status.NEW_PROSPECT: (Status.PROSPECTING,),
            Status.PROSPECTING: (Status.QUALIFIED, Status.DISQUALIFIED),
        },
        promotable=Status.QUALIFIED,
        converted=Status.PROMOTED_TO_OPPORTUNITY,
    ),
    Stage.OPPORTUNITY: _definition(
        Stage.OPPORTUNITY,
        {
            Status.NEW_OPPORTUNITY: (Status.PROGRESSING,),
            Status.PROGRESSING: (Status.NEGOTIATION,),
            Status.NEGOTIATION: (Status.WON, Status.LOST),
        },
    ),
}


def stage_of(status: Status) -> Stage:
    for stage, definition in LIFECYCLE.items():
        if status in definition.statuses:
            return stage
    raise ValueError(f"Status '{status}' does not belong to any stage")


EntityRef = Union[EntityRecord, str]


class WorkflowStateMachine:
    """Validates and persists status changes and promotions.

    Writes for one entity are serialized through ``locks``; share the same
    :class:`KeyedLock` with the orchestrator so merges and promotions of an
    entity never overlap.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        config: Optional[WorkflowConfig] = None,
        policy: Optional[FieldPolicy] = None,
        fit_scorer: Optional[FitScorer] = None,
        value_estimator: Optional[ValueEstimator] = None,
        suppression_sink: Optional[SuppressionSink] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config or WorkflowConfig()
        self.policy = policy or FieldPolicy()
        self.fit_scorer = fit_scorer or IcpFitScorer()
        self.value_estimator = value_estimator or ServiceMixValueEstimator()
        self.suppression_sink = suppression_sink
        self.locks = locks or KeyedLock()
        self.clock = clock

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def check_transition(self, entity: EntityRecord, target: Status) -> None:
        """Raise if ``entity`` cannot move to ``target`` right now."""

        definition = LIFECYCLE[entity.stage]
        if definition.is_terminal(entity.status):
            raise TerminalStateError(entity.id, entity.status.value)

        target_stage = stage_of(target)
        if target_stage is entity.stage:
            if target not in definition.transitions.get(entity.status, frozenset()):
                raise IllegalTransitionError(entity.id, entity.status.value, target.value)
            self._require(entity, entity.stage, [target])
            return

        if target_stage is not entity.stage.next() or entity.status is not definition.promotable:
            raise IllegalTransitionError(entity.id, entity.status.value, target.value)
        chain = LIFECYCLE[target_stage].path(target_stage.initial_status, target)
        if chain is None:
            raise IllegalTransitionError(entity.id, entity.status.value, target.value)
        preview = self._build_child(entity, child_id=f"{entity.id}:preview", actor=self.config.system_actor)
        self._require(preview, target_stage, chain, entity_id=entity.id)

    def _require(
        self,
        entity: EntityRecord,
        stage: Stage,
        statuses: List[Status],
        *,
        entity_id: Optional[str] = None,
    ) -> None:
        required: List[str] = []
        for status in statuses:
            for name in self.config.required_for(stage, status):
                if name not in required:
                    required.append(name)
        missing = entity.missing(required)
        if missing:
            raise PreconditionError(entity_id or entity.id, f"{stage.value}/{statuses[-1].value}", missing)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def transition(
        self,
        entity: EntityRef,
        target: Status,
        *,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> EntityRecord:
        """Move an entity to ``target`` and return the persisted entity.

        A target in the next stage is accepted from the promotion-eligible
        status: the entity is promoted and the new child is walked to the
        target. The child is returned in that case.
        """

        entity_id = entity if isinstance(entity, str) else entity.id
        actor = actor or self.config.system_actor
        with self.locks.hold(entity_id):
            current = self.store.get(entity_id)
            self.check_transition(current, target)
            if stage_of(target) is current.stage:
                return self._set_status(current, target, actor=actor, reason=reason)
            child = self._promote_locked(current, actor=actor)

        chain = LIFECYCLE[child.stage].path(child.status, target) or [child.status]
        for status in chain[1:]:
            child = self.transition(child.id, status, actor=actor, reason=reason)
        return child

    def _set_status(self, entity: EntityRecord, target: Status, *, actor: str, reason: Optional[str]) -> EntityRecord:
        updated = entity.copy()
        updated.status = target
        updated.last_modified_actor = actor
        updated.last_modified_at = self.clock()
        saved = self.store.save(updated, expected_version=entity.version)
        LOGGER.info("Entity %s moved %s -> %s by %s", entity.id, entity.status.value, target.value, actor)
        self._maybe_suppress(saved, target, reason)
        return saved

    def _maybe_suppress(self, entity: EntityRecord, target: Status, reason: Optional[str]) -> None:
        if self.suppression_sink is None:
            return
        if target is Status.DO_NOT_CONTACT:
            event_reason = reason or Status.DO_NOT_CONTACT.value
        elif target is Status.DISQUALIFIED and reason in self.config.compliance_reasons:
            event_reason = reason
        else:
            return
        self.suppression_sink.emit(
            SuppressionEvent(
                email=entity.get(Field.EMAIL),
                reason=event_reason,
                origin_entity_id=entity.id,
                timestamp=self.clock(),
            )
        )

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------
    def promote(self, entity: EntityRef, *, actor: Optional[str] = None) -> EntityRecord:
        """Create the next-stage entity linked to ``entity`` and return it.

        Calling this again for an already promoted entity returns the
        existing child.
        """

        entity_id = entity if isinstance(entity, str) else entity.id
        with self.locks.hold(entity_id):
            return self._promote_locked(self.store.get(entity_id), actor=actor or self.config.system_actor)

    def _promote_locked(self, entity: EntityRecord, *, actor: str) -> EntityRecord:
        existing = self.store.find_child(entity.id)
        if existing is not None:
            LOGGER.debug("Entity %s already promoted to %s", entity.id, existing.id)
            return existing

        definition = LIFECYCLE[entity.stage]
        next_stage = entity.stage.next()
        if definition.promotable is None or next_stage is None:
            raise IllegalTransitionError(entity.id, entity.status.value, "promotion")
        if entity.status is not definition.promotable:
            if definition.is_terminal(entity.status):
                raise TerminalStateError(entity.id, entity.status.value)
            raise IllegalTransitionError(entity.id, entity.status.value, next_stage.initial_status.value)

        child = self._build_child(entity, child_id=self.store.next_id(next_stage), actor=actor)
        self._require(child, child.stage, [child.status], entity_id=entity.id)
        self.store.create_entity(child)

        source = entity.copy()
        source.status = definition.converted
        source.last_modified_actor = actor
        source.last_modified_at = self.clock()
        self.store.save(source, expected_version=entity.version)
        LOGGER.info("Promoted %s %s to %s %s", entity.stage.value, entity.id, child.stage.value, child.id)
        return self.store.get(child.id)

    def _build_child(self, entity: EntityRecord, *, child_id: str, actor: str) -> EntityRecord:
        next_stage = entity.stage.next()
        if next_stage is None:
            raise IllegalTransitionError(entity.id, entity.status.value, "promotion")
        protected = set(self.policy.protected_fields)
        fields: Dict[str, str] = {
            name: value for name, value in entity.fields.items() if name not in protected and value not in (None, "")
        }
        now = self.clock()

        if next_stage is Stage.PROSPECT:
            name = entity.display_name()
            if name and not fields.get(Field.DECISION_MAKER.value) and name != entity.get(Field.EMAIL):
                fields[Field.DECISION_MAKER.value] = name
            if not fields.get(Field.FIT_SCORE.value):
                fields[Field.FIT_SCORE.value] = str(self.fit_scorer.score(fields))
        elif next_stage is Stage.OPPORTUNITY:
            services = fields.get(Field.QUALIFIED_SERVICES.value)
            if services and not fields.get(Field.PRODUCTS_SERVICES.value):
                fields[Field.PRODUCTS_SERVICES.value] = services
            if not fields.get(Field.OPPORTUNITY_VALUE.value):
                fields[Field.OPPORTUNITY_VALUE.value] = str(self.value_estimator.estimate(fields))
            fields.setdefault(Field.PROBABILITY_PERCENT.value, DEFAULT_PROBABILITY_PERCENT)
            fields.setdefault(
                Field.EXPECTED_CLOSE_DATE.value,
                expected_close_date(fields.get(Field.TIMEFRAME.value), now.date()).isoformat(),
            )

        return EntityRecord(
            id=child_id,
            stage=next_stage,
            status=next_stage.initial_status,
            fields=fields,
            last_modified_actor=actor,
            last_modified_at=now,
            provenance=list(entity.provenance),
            parent_id=entity.id,
            field_sources={name: source for name, source in entity.field_sources.items() if name in fields},
        )


__all__ = ["WorkflowStateMachine", "StageDefinition", "LIFECYCLE", "stage_of"]
