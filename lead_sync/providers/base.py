"""Provider boundary: anything that can hand the engine a batch of records."""
from __future__ import annotations

from typing import Iterable, List, Protocol

from ..models import IncomingRecord, SyncCursor


class Provider(Protocol):
    """Data provider adapter (ZoomInfo, Apollo.io, Hunter.io, file exports, ...).

    ``fetch`` returns records retrieved after ``cursor``; the caller owns the
    cursor and advances it from the batch report.
    """

    name: str

    def fetch(self, cursor: SyncCursor) -> List[IncomingRecord]:  # pragma: no cover - protocol
        ...


class StaticProvider:
    """Provider serving a fixed list of records, filtered by the cursor."""

    def __init__(self, name: str, records: Iterable[IncomingRecord] = ()) -> None:
        self.name = name
        self._records = list(records)

    def add(self, record: IncomingRecord) -> None:
        self._records.append(record)

    def fetch(self, cursor: SyncCursor) -> List[IncomingRecord]:
        return [record for record in self._records if cursor.admits(record)]


__all__ = ["Provider", "StaticProvider"]
