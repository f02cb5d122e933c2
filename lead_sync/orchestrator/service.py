"""Sync orchestrator that resolves, merges, and promotes provider records in batches."""
from __future__ import annotations

import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..canonical import Canonicalizer
from ..config import EngineConfig
from ..errors import CanonicalizationError, ConflictError, SyncError
from ..locks import KeyedLock
from ..merge import MergeEngine
from ..models import (
    AuditRecord,
    CanonicalFields,
    EntityRecord,
    Field,
    IncomingRecord,
    MatchCandidate,
    MatchClassification,
    MergePlan,
    Stage,
    Status,
    SyncCursor,
    utcnow,
)
from ..providers.base import Provider
from ..resolver import IdentityResolver
from ..sinks import AuditSink, ListAuditSink, SuppressionSink
from ..store import EntityStore
from ..workflow import WorkflowStateMachine

LOGGER = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_MERGED = "merged"
ACTION_FLAGGED = "flagged"


@dataclass
class SkippedRecord:
    record: IncomingRecord
    error: SyncError


@dataclass
class RecordOutcome:
    action: str
    entity_id: str
    records: Tuple[IncomingRecord, ...]
    plan: MergePlan
    match: Optional[MatchCandidate] = None
    possible_duplicates: Tuple[str, ...] = ()


@dataclass
class BatchReport:
    outcomes: List[RecordOutcome] = field(default_factory=list)
    skipped: List[SkippedRecord] = field(default_factory=list)
    audit: List[AuditRecord] = field(default_factory=list)
    cursor: SyncCursor = field(default_factory=SyncCursor)

    def _with_action(self, action: str) -> List[RecordOutcome]:
        return [outcome for outcome in self.outcomes if outcome.action == action]

    @property
    def created(self) -> List[RecordOutcome]:
        return self._with_action(ACTION_CREATED)

    @property
    def merged(self) -> List[RecordOutcome]:
        return self._with_action(ACTION_MERGED)

    @property
    def flagged(self) -> List[RecordOutcome]:
        return self._with_action(ACTION_FLAGGED)

    def summary(self) -> Dict[str, int]:
        return {
            "records": sum(len(outcome.records) for outcome in self.outcomes) + len(self.skipped),
            "created": len(self.created),
            "merged": len(self.merged),
            "flagged": len(self.flagged),
            "skipped": len(self.skipped),
        }


@dataclass
class PromotionReport:
    promoted: List[Tuple[str, str]] = field(default_factory=list)
    blocked: List[Tuple[str, SyncError]] = field(default_factory=list)
    held: List[Tuple[str, str]] = field(default_factory=list)


Group = Tuple[CanonicalFields, List[IncomingRecord]]


class SyncOrchestrator:
    """Runs canonicalization, resolution, merge, and creation for each batch.

    Resolution is read-only and may run on a thread pool; every write to an
    entity happens under that entity's lock from ``locks``.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        config: Optional[EngineConfig] = None,
        canonicalizer: Optional[Canonicalizer] = None,
        resolver: Optional[IdentityResolver] = None,
        merge_engine: Optional[MergeEngine] = None,
        workflow: Optional[WorkflowStateMachine] = None,
        audit_sink: Optional[AuditSink] = None,
        suppression_sink: Optional[SuppressionSink] = None,
        locks: Optional[KeyedLock] = None,
        concurrent: bool = False,
        max_workers: Optional[int] = None,
        max_conflict_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or EngineConfig.default()
        self.store = store
        self.canonicalizer = canonicalizer or Canonicalizer(self.config.canonicalization)
        self.resolver = resolver or IdentityResolver(self.config.matching, self.canonicalizer)
        self.merge_engine = merge_engine or MergeEngine(self.config.policy, self.config.workflow)
        self.locks = locks or KeyedLock()
        self.workflow = workflow or WorkflowStateMachine(
            store,
            config=self.config.workflow,
            policy=self.config.policy,
            suppression_sink=suppression_sink,
            locks=self.locks,
            clock=clock,
        )
        self.audit_sink = audit_sink if audit_sink is not None else ListAuditSink()
        self.actor = self.config.workflow.system_actor
        self._concurrent = concurrent
        self._max_workers = max_workers
        self._max_conflict_retries = max_conflict_retries
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def run(self, providers: Sequence[Provider], cursor: Optional[SyncCursor] = None) -> BatchReport:
        """Fetch everything newer than ``cursor`` from each provider and process it as one batch."""

        cursor = cursor or SyncCursor()
        records: List[IncomingRecord] = []
        for provider in providers:
            fetched = [record for record in provider.fetch(cursor) if cursor.admits(record)]
            LOGGER.info("Fetched %s records from %s", len(fetched), provider.name)
            records.extend(fetched)
        return self.process_batch(records, cursor=cursor)

    def process_batch(self, records: Iterable[IncomingRecord], *, cursor: Optional[SyncCursor] = None) -> BatchReport:
        records = list(records)
        report = BatchReport(cursor=(cursor or SyncCursor()).advance(records))
        groups = self._group(records, report)
        resolved = self._resolve_all(groups)

        written: Dict[str, EntityRecord] = {}
        for (canonical, group), matches in zip(groups, resolved):
            if written:
                matches = self._refresh(canonical, matches, written)
            outcome, audit = self._apply_group(canonical, group, matches)
            written[outcome.entity_id] = self.store.get(outcome.entity_id)
            report.outcomes.append(outcome)
            report.audit.append(audit)

        LOGGER.info("Batch complete: %s", report.summary())
        return report

    def advance_eligible(self) -> PromotionReport:
        """Promote every Engaged lead and every sufficiently fit Qualified prospect."""

        report = PromotionReport()
        for lead in self.store.entities(stage=Stage.LEAD, status=Status.ENGAGED):
            self._try_promote(lead, report)

        minimum = self.config.workflow.min_fit_score_for_opportunity
        for prospect in self.store.entities(stage=Stage.PROSPECT, status=Status.QUALIFIED):
            fit = _fit_score(prospect)
            if fit is None or fit < minimum:
                LOGGER.info("Holding prospect %s: fit score %s below %s", prospect.id, fit, minimum)
                report.held.append((prospect.id, "fit-score-below-minimum"))
                continue
            self._try_promote(prospect, report)
        return report

    def _try_promote(self, entity: EntityRecord, report: PromotionReport) -> None:
        try:
            child = self.workflow.promote(entity.id, actor=self.actor)
        except SyncError as exc:
            LOGGER.warning("Cannot promote %s: %s", entity.id, exc)
            report.blocked.append((entity.id, exc))
            return
        report.promoted.append((entity.id, child.id))

    # ------------------------------------------------------------------
    # Canonicalization and grouping
    # ------------------------------------------------------------------
    def _group(self, records: Sequence[IncomingRecord], report: BatchReport) -> List[Group]:
        groups: "OrderedDict[str, Group]" = OrderedDict()
        for record in records:
            try:
                canonical = self.canonicalizer.canonicalize(record)
            except CanonicalizationError as exc:
                LOGGER.warning("Skipping record %s: %s", record.describe(), exc)
                report.skipped.append(SkippedRecord(record=record, error=exc))
                continue
            key = canonical.dedup_key()
            if key in groups:
                groups[key][1].append(record)
            else:
                groups[key] = (canonical, [record])
        return list(groups.values())

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def _resolve(self, canonical: CanonicalFields) -> List[MatchCandidate]:
        return self.resolver.resolve(canonical, self.store.find_candidates(canonical))

    def _resolve_all(self, groups: Sequence[Group]) -> List[List[MatchCandidate]]:
        if not self._concurrent or len(groups) <= 1:
            return [self._resolve(canonical) for canonical, _ in groups]

        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            return list(executor.map(self._resolve, [canonical for canonical, _ in groups]))

    def _refresh(
        self,
        canonical: CanonicalFields,
        matches: List[MatchCandidate],
        written: Dict[str, EntityRecord],
    ) -> List[MatchCandidate]:
        """Re-score against entities written earlier in this batch."""

        untouched = [match.entity for match in matches if match.entity_id not in written]
        return self.resolver.resolve(canonical, untouched + list(written.values()))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _apply_group(
        self,
        canonical: CanonicalFields,
        group: List[IncomingRecord],
        matches: List[MatchCandidate],
    ) -> Tuple[RecordOutcome, AuditRecord]:
        best = matches[0] if matches else None
        if best is not None and best.classification is MatchClassification.SAME:
            merged = self._merge(canonical, best, group)
            if merged is not None:
                return merged
            matches = self._resolve(canonical)

        flagged = tuple(
            match.entity_id for match in matches if match.classification is MatchClassification.POSSIBLE_DUPLICATE
        )
        return self._create(group, flagged)

    def _merge(
        self,
        canonical: CanonicalFields,
        best: MatchCandidate,
        group: List[IncomingRecord],
    ) -> Optional[Tuple[RecordOutcome, AuditRecord]]:
        attempts = 0
        with self.locks.hold(best.entity_id):
            while True:
                current = self.store.get(best.entity_id)
                match = self.resolver.score(canonical, current)
                if match.classification is not MatchClassification.SAME:
                    LOGGER.info("Entity %s no longer matches %s; re-resolving", current.id, group[0].describe())
                    return None
                plan = self.merge_engine.plan_group(current, group, match)
                try:
                    self.store.apply_merge_plan(current.id, plan, actor=self.actor)
                except ConflictError:
                    attempts += 1
                    if attempts > self._max_conflict_retries:
                        raise
                    LOGGER.warning("Entity %s changed concurrently; re-planning (attempt %s)", current.id, attempts)
                    continue
                break

        audit = self._record_audit(plan)
        LOGGER.info(
            "Merged %s record(s) into %s: %s overwritten, %s preserved",
            len(group),
            current.id,
            len(plan.overwrites),
            len(plan.skips),
        )
        return RecordOutcome(ACTION_MERGED, current.id, tuple(group), plan, match=match), audit

    def _create(self, group: List[IncomingRecord], flagged: Tuple[str, ...]) -> Tuple[RecordOutcome, AuditRecord]:
        now = self._clock()
        blank = EntityRecord(
            id=self.store.next_id(Stage.LEAD),
            stage=Stage.LEAD,
            status=Stage.LEAD.initial_status,
            last_modified_actor=self.actor,
            last_modified_at=now,
            possible_duplicate_of=list(flagged),
        )
        plan = self.merge_engine.plan_group(blank, group)
        entity = self.merge_engine.apply(blank, plan, actor=self.actor, at=now)
        self.store.create_entity(entity)
        audit = self._record_audit(plan)

        action = ACTION_FLAGGED if flagged else ACTION_CREATED
        if flagged:
            LOGGER.info("Created lead %s flagged as possible duplicate of %s", entity.id, ", ".join(flagged))
        else:
            LOGGER.info("Created lead %s for %s", entity.id, entity.get(Field.EMAIL) or entity.display_name())
        return RecordOutcome(action, entity.id, tuple(group), plan, possible_duplicates=flagged), audit

    def _record_audit(self, plan: MergePlan) -> AuditRecord:
        audit = self.merge_engine.audit(plan, self._clock())
        self.audit_sink.record(audit)
        return audit


def _fit_score(entity: EntityRecord) -> Optional[int]:
    value = entity.get(Field.FIT_SCORE)
    try:
        return int(float(value)) if value is not None else None
    except ValueError:
        return None


__all__ = [
    "SyncOrchestrator",
    "BatchReport",
    "RecordOutcome",
    "SkippedRecord",
    "PromotionReport",
]
