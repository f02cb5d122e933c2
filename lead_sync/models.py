"""Unified data models for provider records, CRM entities, matches, and merge plans."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Enumerations ---

class Stage(str, Enum):
    """Lifecycle stage of a CRM entity. Stages only ever advance."""

    LEAD = "lead"
    PROSPECT = "prospect"
    OPPORTUNITY = "opportunity"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)

    def next(self) -> Optional["Stage"]:
        index = self.rank + 1
        return _STAGE_ORDER[index] if index < len(_STAGE_ORDER) else None

    @property
    def initial_status(self) -> "Status":
        return INITIAL_STATUS[self]


_STAGE_ORDER = (Stage.LEAD, Stage.PROSPECT, Stage.OPPORTUNITY)


class Status(str, Enum):
    """Stage-scoped entity statuses. The owning stage is part of the value."""

    # Lead
    NEW_LEAD = "new_lead"
    RESEARCHING = "researching"
    CONTACTED = "contacted"
    ENGAGED = "engaged"
    NO_INTEREST = "no_interest"
    DO_NOT_CONTACT = "do_not_contact"
    INVALID_DATA = "invalid_data"
    CONVERTED_TO_PROSPECT = "converted_to_prospect"
    # Prospect
    NEW_PROSPECT = "new_prospect"
    PROSPECTING = "prospecting"
    QUALIFIED = "qualified"
    DISQUALIFIED = "disqualified"
    PROMOTED_TO_OPPORTUNITY = "promoted_to_opportunity"
    # Opportunity
    NEW_OPPORTUNITY = "new_opportunity"
    PROGRESSING = "progressing"
    NEGOTIATION = "negotiation"
    WON = "won"
    LOST = "lost"


INITIAL_STATUS = {
    Stage.LEAD: Status.NEW_LEAD,
    Stage.PROSPECT: Status.NEW_PROSPECT,
    Stage.OPPORTUNITY: Status.NEW_OPPORTUNITY,
}


class Field(str, Enum):
    """Stable identifiers for every field the engine knows how to merge."""

    # identity
    EMAIL = "email"
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    FULL_NAME = "full_name"
    PHONE = "phone"
    COMPANY_NAME = "company_name"
    JOB_TITLE = "job_title"
    WEBSITE = "website"
    # enrichment
    TECHNOLOGY_STACK = "technology_stack"
    REVENUE_RANGE = "revenue_range"
    SENIORITY = "seniority"
    INTENT_SIGNAL = "intent_signal"
    FOUNDED_YEAR = "founded_year"
    HEADQUARTERS = "headquarters"
    INDUSTRY = "industry"
    EMPLOYEE_COUNT = "employee_count"
    EMAIL_VERIFICATION = "email_verification"
    # conditional free text
    SERVICES_OFFERED = "services_offered"
    GROWTH_SIGNALS = "growth_signals"
    PROJECT_PIPELINES = "project_pipelines"
    # protected
    STATUS = "status"
    ASSIGNED_OWNER = "assigned_owner"
    PRIORITY = "priority"
    MANUAL_NOTES = "manual_notes"
    # prospect qualification
    PAIN_POINTS = "pain_points"
    QUALIFIED_SERVICES = "qualified_services"
    DECISION_MAKER = "decision_maker"
    BUDGET_RANGE = "budget_range"
    TIMEFRAME = "timeframe"
    FIT_SCORE = "fit_score"
    # opportunity
    OPPORTUNITY_VALUE = "opportunity_value"
    PROBABILITY_PERCENT = "probability_percent"
    EXPECTED_CLOSE_DATE = "expected_close_date"
    PRODUCTS_SERVICES = "products_services"
    QUOTES_PROPOSALS = "quotes_proposals"
    COMPETITORS = "competitors"
    WIN_LOSS_REASON = "win_loss_reason"


class MatchClassification(str, Enum):
    SAME = "same"
    POSSIBLE_DUPLICATE = "possible-duplicate"
    DISTINCT = "distinct"


FieldKey = Union[Field, str]


def field_key(value: FieldKey) -> str:
    """Return the plain string identifier for a field."""

    return value.value if isinstance(value, Field) else str(value)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# --- Provider Input ---

@dataclass(frozen=True)
class IncomingRecord:
    """One provider's view of a contact or company at a point in time.

    The field map is frozen on construction; canonicalization never mutates it.
    """

    provider: str
    fields: Mapping[str, Any]
    confidence: int = 0
    retrieved_at: datetime = field(default_factory=utcnow)
    record_id: Optional[str] = None

    def __post_init__(self) -> None:
        cleaned = {field_key(key): value for key, value in dict(self.fields).items()}
        object.__setattr__(self, "fields", MappingProxyType(cleaned))
        if not 0 <= int(self.confidence) <= 100:
            raise ValueError(f"Source confidence must be between 0 and 100, got {self.confidence}")

    def get(self, key: FieldKey) -> Optional[str]:
        return _clean(self.fields.get(field_key(key)))

    def non_empty_fields(self) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for key in self.fields:
            value = self.get(key)
            if value is not None:
                values[key] = value
        return values

    def describe(self) -> str:
        return f"{self.provider}:{self.record_id or self.get(Field.EMAIL) or '?'}"


@dataclass(frozen=True)
class CanonicalFields:
    """Normalized, comparable projection of a record's identity fields."""

    email: Optional[str] = None
    phone: Optional[str] = None
    calling_code: Optional[str] = None
    company: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def email_domain(self) -> Optional[str]:
        if not self.email or "@" not in self.email:
            return None
        return self.email.rsplit("@", 1)[1]

    def is_empty(self) -> bool:
        return not any((self.email, self.phone, self.company, self.full_name))

    def dedup_key(self) -> Optional[str]:
        """Key used to collapse records about the same person within one batch."""

        if self.email:
            return f"email:{self.email}"
        if self.company and self.full_name:
            return f"company-person:{self.company}-{self.full_name.replace(' ', '')}"
        if self.phone:
            return f"phone:{self.phone}"
        return None


# --- CRM Entities ---

@dataclass
class EntityRecord:
    """CRM-side Lead, Prospect, or Opportunity."""

    id: str
    stage: Stage
    status: Status
    fields: Dict[str, str] = field(default_factory=dict)
    last_modified_actor: str = ""
    last_modified_at: datetime = field(default_factory=utcnow)
    provenance: List[str] = field(default_factory=list)
    parent_id: Optional[str] = None
    field_sources: Dict[str, str] = field(default_factory=dict)
    possible_duplicate_of: List[str] = field(default_factory=list)
    version: int = 0

    def get(self, key: FieldKey) -> Optional[str]:
        return _clean(self.fields.get(field_key(key)))

    def has(self, key: FieldKey) -> bool:
        return self.get(key) is not None

    def missing(self, keys: Iterable[FieldKey]) -> List[str]:
        return [field_key(key) for key in keys if not self.has(key)]

    def copy(self) -> "EntityRecord":
        return copy.deepcopy(self)

    def display_name(self) -> str:
        name = self.get(Field.FULL_NAME) or " ".join(
            filter(None, [self.get(Field.FIRST_NAME), self.get(Field.LAST_NAME)])
        )
        return name or self.get(Field.EMAIL) or f"(entity {self.id})"


@dataclass(frozen=True)
class MatchCandidate:
    """Result of comparing one canonical record against one entity."""

    entity: EntityRecord
    field_scores: Mapping[str, float]
    score: float
    classification: MatchClassification

    @property
    def entity_id(self) -> str:
        return self.entity.id


# --- Merge Plans ---

@dataclass(frozen=True)
class Overwrite:
    field: str
    value: str
    provider: str


@dataclass(frozen=True)
class Skip:
    field: str
    reason: str
    provider: Optional[str] = None


MergeAction = Union[Overwrite, Skip]


@dataclass(frozen=True)
class MergePlan:
    """Per-field decisions for one merge pass, computed before any write."""

    entity_id: str
    base_version: int
    actions: Tuple[MergeAction, ...] = ()
    providers: Tuple[str, ...] = ()

    @property
    def overwrites(self) -> List[Overwrite]:
        return [action for action in self.actions if isinstance(action, Overwrite)]

    @property
    def skips(self) -> List[Skip]:
        return [action for action in self.actions if isinstance(action, Skip)]

    def action_for(self, key: FieldKey) -> Optional[MergeAction]:
        wanted = field_key(key)
        for action in self.actions:
            if action.field == wanted:
                return action
        return None


@dataclass(frozen=True)
class AuditRecord:
    """Queryable trail entry written for every applied merge plan."""

    entity_id: str
    timestamp: datetime
    fields_overwritten: Tuple[str, ...]
    fields_preserved: Tuple[str, ...]
    preservation_reasons: Mapping[str, str]
    providers: Tuple[str, ...] = ()

    def summary(self) -> str:
        overwritten = ", ".join(self.fields_overwritten) or "none"
        preserved = (
            ", ".join(f"{name} ({self.preservation_reasons.get(name, '')})" for name in self.fields_preserved)
            or "none"
        )
        sources = ", ".join(self.providers) or "unknown"
        return f"Entity {self.entity_id} merged from [{sources}]: overwrote {overwritten}; preserved {preserved}"


@dataclass(frozen=True)
class SuppressionEvent:
    email: Optional[str]
    reason: str
    origin_entity_id: str
    timestamp: datetime


# --- Orchestration ---

@dataclass(frozen=True)
class SyncCursor:
    """Checkpoint owned by the caller and passed into every sync run."""

    last_retrieved_at: Optional[datetime] = None

    def advance(self, records: Iterable[IncomingRecord]) -> "SyncCursor":
        latest = self.last_retrieved_at
        for record in records:
            if latest is None or record.retrieved_at > latest:
                latest = record.retrieved_at
        return SyncCursor(last_retrieved_at=latest)

    def admits(self, record: IncomingRecord) -> bool:
        return self.last_retrieved_at is None or record.retrieved_at > self.last_retrieved_at


__all__ = [
    "utcnow",
    "Stage",
    "Status",
    "Field",
    "FieldKey",
    "field_key",
    "MatchClassification",
    "IncomingRecord",
    "CanonicalFields",
    "EntityRecord",
    "MatchCandidate",
    "Overwrite",
    "Skip",
    "MergeAction",
    "MergePlan",
    "AuditRecord",
    "SuppressionEvent",
    "SyncCursor",
]
