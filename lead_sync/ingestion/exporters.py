"""Export utilities for CRM entities and the merge audit trail."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, MutableMapping, Optional, Sequence, Union

import pandas as pd

from ..models import AuditRecord, EntityRecord, Field

PathLike = Union[str, Path]

_FIELD_ORDER = [member.value for member in Field]


def export_entities(
    entities: Sequence[EntityRecord],
    path: PathLike,
    *,
    include_sources: bool = False,
    sheet_name: str = "Entities",
    exporter_kwargs: Optional[MutableMapping[str, object]] = None,
) -> Path:
    """Write entities to a CSV or Excel file."""

    dataframe = entities_to_dataframe(entities, include_sources=include_sources)
    output_path = Path(path)
    _write_dataframe(dataframe, output_path, sheet_name=sheet_name, exporter_kwargs=exporter_kwargs)
    return output_path


def entities_to_dataframe(entities: Sequence[EntityRecord], *, include_sources: bool = False) -> pd.DataFrame:
    """Convert entities into a :class:`pandas.DataFrame`, one row per entity."""

    return pd.DataFrame([_entity_to_row(entity, include_sources=include_sources) for entity in entities])


def _entity_to_row(entity: EntityRecord, *, include_sources: bool) -> MutableMapping[str, object]:
    row: MutableMapping[str, object] = {
        "id": entity.id,
        "stage": entity.stage.value,
        "status": entity.status.value,
        "parent_id": entity.parent_id or "",
        "version": entity.version,
        "last_modified_actor": entity.last_modified_actor,
        "last_modified_at": entity.last_modified_at.isoformat(),
        "provenance": _join_list(entity.provenance),
        "possible_duplicate_of": _join_list(entity.possible_duplicate_of),
    }
    known = [name for name in _FIELD_ORDER if name in entity.fields]
    extra = sorted(set(entity.fields).difference(_FIELD_ORDER))
    for name in known + extra:
        row[f"field.{name}"] = entity.fields[name]
        if include_sources and name in entity.field_sources:
            row[f"source.{name}"] = entity.field_sources[name]
    return row


def export_audit(
    entries: Sequence[AuditRecord],
    path: PathLike,
    *,
    sheet_name: str = "Audit",
    exporter_kwargs: Optional[MutableMapping[str, object]] = None,
) -> Path:
    """Write audit entries to a CSV or Excel file."""

    output_path = Path(path)
    _write_dataframe(audit_to_dataframe(entries), output_path, sheet_name=sheet_name, exporter_kwargs=exporter_kwargs)
    return output_path


def audit_to_dataframe(entries: Sequence[AuditRecord]) -> pd.DataFrame:
    columns = [
        "entity_id",
        "timestamp",
        "providers",
        "fields_overwritten",
        "fields_preserved",
        "preservation_reasons",
        "summary",
    ]
    rows = [
        {
            "entity_id": entry.entity_id,
            "timestamp": entry.timestamp.isoformat(),
            "providers": _join_list(entry.providers),
            "fields_overwritten": _join_list(entry.fields_overwritten),
            "fields_preserved": _join_list(entry.fields_preserved),
            "preservation_reasons": _join_list(
                f"{name}={entry.preservation_reasons.get(name, '')}" for name in entry.fields_preserved
            ),
            "summary": entry.summary(),
        }
        for entry in entries
    ]
    return pd.DataFrame(rows, columns=columns)


def _join_list(values: Iterable[Optional[str]]) -> str:
    cleaned: List[str] = []
    for value in values:
        if not value:
            continue
        text = str(value).strip()
        if text:
            cleaned.append(text)
    return "; ".join(cleaned)


def _write_dataframe(
    dataframe: pd.DataFrame,
    path: Path,
    *,
    sheet_name: str,
    exporter_kwargs: Optional[MutableMapping[str, object]],
) -> None:
    exporter_kwargs = dict(exporter_kwargs or {})
    suffix = path.suffix.lower()
    path.parent.mkdir(parents=True, exist_ok=True)

    if suffix in {".csv", ".tsv"}:
        if suffix == ".tsv":
            exporter_kwargs.setdefault("sep", "\t")
        dataframe.to_csv(path, index=False, **exporter_kwargs)
        return

    if suffix in {".xls", ".xlsx", ".xlsm", ".xlsb"}:
        engine = exporter_kwargs.pop("engine", None) or "openpyxl"
        dataframe.to_excel(path, index=False, sheet_name=sheet_name, engine=engine, **exporter_kwargs)
        return

    raise ValueError(f"Unsupported export file extension: {suffix}")


__all__ = ["export_entities", "entities_to_dataframe", "export_audit", "audit_to_dataframe"]
