"""Entity persistence boundary and an in-memory reference store."""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from itertools import count
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Set

from .canonical import Canonicalizer
from .errors import ConflictError
from .merge import MergeEngine
from .models import CanonicalFields, EntityRecord, MergePlan, Stage, Status

LOGGER = logging.getLogger(__name__)

CONVERTED_STATUSES = frozenset({Status.CONVERTED_TO_PROSPECT, Status.PROMOTED_TO_OPPORTUNITY})

_ID_PREFIX = {Stage.LEAD: "L", Stage.PROSPECT: "P", Stage.OPPORTUNITY: "O"}
_COMPANY_PREFIX_LENGTH = 4
_PHONE_SUFFIX_LENGTH = 7


class EntityStore(Protocol):
    """Candidate lookup plus the write boundary into durable CRM storage."""

    def find_candidates(self, canonical: CanonicalFields) -> List[EntityRecord]:  # pragma: no cover - protocol
        ...

    def get(self, entity_id: str) -> EntityRecord:  # pragma: no cover - protocol
        ...

    def find_child(self, parent_id: str) -> Optional[EntityRecord]:  # pragma: no cover - protocol
        ...

    def next_id(self, stage: Stage) -> str:  # pragma: no cover - protocol
        ...

    def create_entity(self, entity: EntityRecord) -> str:  # pragma: no cover - protocol
        ...

    def apply_merge_plan(self, entity_id: str, plan: MergePlan, *, actor: Optional[str] = None) -> EntityRecord:  # pragma: no cover - protocol
        ...

    def save(self, entity: EntityRecord, *, expected_version: int) -> EntityRecord:  # pragma: no cover - protocol
        ...

    def entities(self, stage: Optional[Stage] = None, status: Optional[Status] = None) -> List[EntityRecord]:  # pragma: no cover - protocol
        ...


class InMemoryEntityStore:
    """Thread-safe store indexed by email domain, company prefix, and phone suffix.

    Every write checks the entity version so a stale writer gets a
    :class:`ConflictError` instead of silently overwriting newer data.
    Returned entities are copies; mutate them and write them back.
    """

    def __init__(
        self,
        *,
        canonicalizer: Optional[Canonicalizer] = None,
        merge_engine: Optional[MergeEngine] = None,
    ) -> None:
        self._canonicalizer = canonicalizer or Canonicalizer()
        self._merge_engine = merge_engine or MergeEngine()
        self._lock = threading.RLock()
        self._entities: Dict[str, EntityRecord] = {}
        self._children: Dict[str, str] = {}
        self._index: Dict[str, Set[str]] = {}
        self._keys: Dict[str, Set[str]] = {}
        self._counters = {stage: count(1) for stage in Stage}

    def __len__(self) -> int:
        return len(self._entities)

    def __iter__(self) -> Iterator[EntityRecord]:
        return iter(self.entities())

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def find_candidates(self, canonical: CanonicalFields) -> List[EntityRecord]:
        keys = self._index_keys(canonical)
        with self._lock:
            ids: Set[str] = set()
            for key in keys:
                ids.update(self._index.get(key, ()))
            candidates = [
                self._entities[entity_id].copy()
                for entity_id in sorted(ids)
                if self._entities[entity_id].status not in CONVERTED_STATUSES
            ]
        return candidates

    def get(self, entity_id: str) -> EntityRecord:
        with self._lock:
            try:
                return self._entities[entity_id].copy()
            except KeyError:
                raise KeyError(f"Unknown entity '{entity_id}'") from None

    def find_child(self, parent_id: str) -> Optional[EntityRecord]:
        with self._lock:
            child_id = self._children.get(parent_id)
            return self._entities[child_id].copy() if child_id else None

    def entities(self, stage: Optional[Stage] = None, status: Optional[Status] = None) -> List[EntityRecord]:
        with self._lock:
            return [
                entity.copy()
                for entity_id, entity in sorted(self._entities.items())
                if (stage is None or entity.stage is stage) and (status is None or entity.status is status)
            ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def next_id(self, stage: Stage) -> str:
        with self._lock:
            while True:
                candidate = f"{_ID_PREFIX[stage]}-{next(self._counters[stage]):06d}"
                if candidate not in self._entities:
                    return candidate

    def create_entity(self, entity: EntityRecord) -> str:
        with self._lock:
            if entity.id in self._entities:
                raise ValueError(f"Entity '{entity.id}' already exists")
            if entity.parent_id is not None:
                if entity.stage is Stage.LEAD:
                    raise ValueError("Leads cannot reference a parent entity")
                if entity.parent_id in self._children:
                    raise ValueError(f"Entity '{entity.parent_id}' was already promoted")
                self._children[entity.parent_id] = entity.id
            stored = entity.copy()
            self._entities[stored.id] = stored
            self._reindex(stored)
        LOGGER.debug("Created %s %s", entity.stage.value, entity.id)
        return entity.id

    def apply_merge_plan(self, entity_id: str, plan: MergePlan, *, actor: Optional[str] = None) -> EntityRecord:
        with self._lock:
            current = self._entities[entity_id]
            updated = self._merge_engine.apply(current, plan, actor=actor)
            return self._commit(updated, expected_version=plan.base_version)

    def save(self, entity: EntityRecord, *, expected_version: int) -> EntityRecord:
        with self._lock:
            return self._commit(entity.copy(), expected_version=expected_version)

    def _commit(self, updated: EntityRecord, *, expected_version: int) -> EntityRecord:
        current = self._entities.get(updated.id)
        if current is None:
            raise KeyError(f"Unknown entity '{updated.id}'")
        if current.version != expected_version:
            raise ConflictError(updated.id, expected_version, current.version)
        if updated.stage is not current.stage:
            raise ValueError(f"Entity {updated.id} cannot change stage in place")
        updated.version = expected_version + 1
        self._entities[updated.id] = updated
        self._reindex(updated)
        return updated.copy()

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------
    @staticmethod
    def _index_keys(canonical: CanonicalFields) -> Set[str]:
        keys: Set[str] = set()
        if canonical.email_domain:
            keys.add(f"domain:{canonical.email_domain}")
        if canonical.company:
            keys.add(f"company:{canonical.company[:_COMPANY_PREFIX_LENGTH]}")
        if canonical.phone:
            keys.add(f"phone:{canonical.phone[-_PHONE_SUFFIX_LENGTH:]}")
        return keys

    def _reindex(self, entity: EntityRecord) -> None:
        for key in self._keys.pop(entity.id, set()):
            bucket = self._index.get(key)
            if bucket is not None:
                bucket.discard(entity.id)
                if not bucket:
                    del self._index[key]
        keys = self._index_keys(self._canonicalizer.canonicalize_entity(entity))
        for key in keys:
            self._index.setdefault(key, set()).add(entity.id)
        self._keys[entity.id] = keys

    # ------------------------------------------------------------------
    # JSON persistence
    # ------------------------------------------------------------------
    def dump_json(self, path: str | Path) -> Path:
        destination = Path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        payload = {"entities": [entity_to_dict(entity) for entity in self.entities()]}
        destination.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        return destination

    @classmethod
    def load_json(
        cls,
        path: str | Path,
        *,
        canonicalizer: Optional[Canonicalizer] = None,
        merge_engine: Optional[MergeEngine] = None,
    ) -> "InMemoryEntityStore":
        store = cls(canonicalizer=canonicalizer, merge_engine=merge_engine)
        source = Path(path)
        if not source.exists():
            LOGGER.info("Entity store %s does not exist yet; starting empty", source)
            return store
        payload = json.loads(source.read_text(encoding="utf-8"))
        entities = [entity_from_dict(item) for item in payload.get("entities", [])]
        # parents first so child links validate
        for entity in sorted(entities, key=lambda item: item.stage.rank):
            store.create_entity(entity)
        return store


def entity_to_dict(entity: EntityRecord) -> Dict[str, Any]:
    return {
        "id": entity.id,
        "stage": entity.stage.value,
        "status": entity.status.value,
        "fields": dict(entity.fields),
        "last_modified_actor": entity.last_modified_actor,
        "last_modified_at": entity.last_modified_at.isoformat(),
        "provenance": list(entity.provenance),
        "parent_id": entity.parent_id,
        "field_sources": dict(entity.field_sources),
        "possible_duplicate_of": list(entity.possible_duplicate_of),
        "version": entity.version,
    }


def entity_from_dict(data: Dict[str, Any]) -> EntityRecord:
    return EntityRecord(
        id=str(data["id"]),
        stage=Stage(data["stage"]),
        status=Status(data["status"]),
        fields={str(key): str(value) for key, value in (data.get("fields") or {}).items()},
        last_modified_actor=data.get("last_modified_actor") or "",
        last_modified_at=datetime.fromisoformat(data["last_modified_at"]),
        provenance=list(data.get("provenance") or []),
        parent_id=data.get("parent_id"),
        field_sources=dict(data.get("field_sources") or {}),
        possible_duplicate_of=list(data.get("possible_duplicate_of") or []),
        version=int(data.get("version", 0)),
    )


__all__ = [
    "EntityStore",
    "InMemoryEntityStore",
    "CONVERTED_STATUSES",
    "entity_to_dict",
    "entity_from_dict",
]
