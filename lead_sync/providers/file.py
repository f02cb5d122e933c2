"""Provider that replays a CSV/XLSX export from a data vendor."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Union

from ..ingestion.loaders import load_records
from ..models import IncomingRecord, SyncCursor

LOGGER = logging.getLogger(__name__)


class FileProvider:
    """Loads an export file on every fetch and yields the rows newer than the cursor."""

    def __init__(
        self,
        path: Union[str, Path],
        *,
        name: Optional[str] = None,
        confidence: int = 50,
        column_mapping: Optional[Mapping[str, Union[str, Sequence[str]]]] = None,
        sheet_name: Union[str, int, None] = 0,
    ) -> None:
        self.path = Path(path)
        self.name = name or self.path.stem
        self.confidence = confidence
        self.column_mapping = dict(column_mapping or {})
        self.sheet_name = sheet_name

    def fetch(self, cursor: SyncCursor) -> List[IncomingRecord]:
        records = load_records(
            self.path,
            provider=self.name,
            confidence=self.confidence,
            column_mapping=self.column_mapping,
            sheet_name=self.sheet_name,
        )
        admitted = [record for record in records if cursor.admits(record)]
        if len(admitted) != len(records):
            LOGGER.debug("%s: %s rows at or before the cursor", self.name, len(records) - len(admitted))
        return admitted


__all__ = ["FileProvider"]
