"""Audit and suppression sinks fed by the merge and workflow layers."""
from __future__ import annotations

import logging
import threading
from typing import List, Optional, Protocol

from .models import AuditRecord, SuppressionEvent

LOGGER = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(self, entry: AuditRecord) -> None:  # pragma: no cover - protocol
        """Persist one audit entry."""


class SuppressionSink(Protocol):
    def emit(self, event: SuppressionEvent) -> None:  # pragma: no cover - protocol
        """Hand a suppression request to the provider adapters (fire-and-forget)."""


class ListAuditSink:
    """In-memory audit trail that can be queried per entity."""

    def __init__(self) -> None:
        self._entries: List[AuditRecord] = []
        self._lock = threading.Lock()

    def record(self, entry: AuditRecord) -> None:
        with self._lock:
            self._entries.append(entry)
        LOGGER.debug("%s", entry.summary())

    @property
    def entries(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._entries)

    def query(self, entity_id: Optional[str] = None, field: Optional[str] = None) -> List[AuditRecord]:
        results = []
        for entry in self.entries:
            if entity_id is not None and entry.entity_id != entity_id:
                continue
            if field is not None and field not in entry.fields_overwritten and field not in entry.fields_preserved:
                continue
            results.append(entry)
        return results


class ListSuppressionSink:
    def __init__(self) -> None:
        self.events: List[SuppressionEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: SuppressionEvent) -> None:
        with self._lock:
            self.events.append(event)
        LOGGER.info("Suppression requested for entity %s (%s)", event.origin_entity_id, event.reason)


__all__ = ["AuditSink", "SuppressionSink", "ListAuditSink", "ListSuppressionSink"]
