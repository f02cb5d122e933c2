"""Utilities for loading provider records from spreadsheets."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Union

import pandas as pd

from ..models import Field, IncomingRecord, utcnow

PathLike = Union[str, Path]

RECORD_ID = "record_id"
RETRIEVED_AT = "retrieved_at"
CONFIDENCE = "confidence"

_FIELD_SYNONYMS: Mapping[str, Sequence[str]] = {
    RECORD_ID: ("record_id", "id", "lead_id", "source_id"),
    RETRIEVED_AT: ("retrieved_at", "retrieved", "last_updated", "updated_at"),
    CONFIDENCE: ("confidence", "confidence_score", "score"),
    Field.EMAIL.value: ("email", "email_address", "primary_email", "work_email"),
    Field.FIRST_NAME.value: ("first_name", "firstname", "first"),
    Field.LAST_NAME.value: ("last_name", "lastname", "last"),
    Field.FULL_NAME.value: ("full_name", "name", "contact_name"),
    Field.PHONE.value: ("phone", "phone_number", "primary_phone", "direct_phone", "mobile"),
    Field.COMPANY_NAME.value: ("company_name", "company", "organisation", "organization", "employer", "account_name"),
    Field.JOB_TITLE.value: ("job_title", "title", "position"),
    Field.WEBSITE.value: ("website", "company_website", "domain", "url"),
}

_RESERVED = {RECORD_ID, RETRIEVED_AT, CONFIDENCE}


class UnsupportedFileTypeError(ValueError):
    """Raised when an unsupported file format is passed to the loader."""


def load_records(
    path: PathLike,
    *,
    provider: Optional[str] = None,
    confidence: int = 50,
    column_mapping: Optional[Mapping[str, Union[str, Sequence[str]]]] = None,
    sheet_name: Union[str, int, None] = 0,
    loader_kwargs: Optional[MutableMapping[str, Any]] = None,
    retrieved_at: Optional[datetime] = None,
) -> List[IncomingRecord]:
    """Load provider records from a spreadsheet.

    Parameters
    ----------
    path:
        Path to the CSV/XLSX file to be loaded.
    provider:
        Provider name stamped on every record. Defaults to the file stem.
    confidence:
        Source confidence used when the file has no ``confidence`` column.
    column_mapping:
        Optional mapping of field identifiers to column names (or sequences
        of column names, the first non-empty value wins).
    sheet_name:
        Sheet selector passed to :func:`pandas.read_excel` when loading an Excel
        file. Ignored for CSV files.
    loader_kwargs:
        Extra keyword arguments forwarded to :func:`pandas.read_csv` or
        :func:`pandas.read_excel`.
    retrieved_at:
        Retrieval timestamp for rows without a ``retrieved_at`` column.
        Defaults to the file's modification time.
    """

    path_obj = Path(path)
    dataframe = _read_dataframe(path_obj, sheet_name=sheet_name, loader_kwargs=loader_kwargs)
    mapping = dict(column_mapping or {})
    provider = provider or path_obj.stem
    fallback_time = retrieved_at or _file_timestamp(path_obj)
    resolved = {name: _resolve_columns(name, dataframe.columns, mapping) for name in set(_FIELD_SYNONYMS) | set(mapping)}
    consumed = {column for columns in resolved.values() for column in columns}

    records: List[IncomingRecord] = []
    for index, row in dataframe.iterrows():
        if _row_is_empty(row):
            continue
        records.append(
            _row_to_record(
                row,
                resolved,
                consumed,
                provider=provider,
                confidence=confidence,
                retrieved_at=fallback_time,
                row_number=int(index) + 1,
            )
        )
    return records


def _read_dataframe(
    path: PathLike,
    *,
    sheet_name: Union[str, int, None] = 0,
    loader_kwargs: Optional[MutableMapping[str, Any]] = None,
) -> pd.DataFrame:
    loader_kwargs = dict(loader_kwargs or {})
    loader_kwargs.setdefault("dtype", str)
    path_obj = Path(path)
    suffix = path_obj.suffix.lower()

    if suffix in {".csv", ".tsv"}:
        if suffix == ".tsv":
            loader_kwargs.setdefault("sep", "\t")
        return pd.read_csv(path_obj, **loader_kwargs)

    if suffix in {".xls", ".xlsx", ".xlsm", ".xlsb"}:
        return pd.read_excel(path_obj, sheet_name=sheet_name, engine=loader_kwargs.pop("engine", None) or "openpyxl", **loader_kwargs)

    raise UnsupportedFileTypeError(f"Unsupported file extension: {path_obj.suffix}")


def _file_timestamp(path: Path) -> datetime:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except OSError:
        return utcnow()


def _row_is_empty(row: pd.Series) -> bool:
    return all(pd.isna(value) or (isinstance(value, str) and not value.strip()) for value in row.values)


def _row_to_record(
    row: pd.Series,
    resolved: Mapping[str, List[str]],
    consumed: Iterable[str],
    *,
    provider: str,
    confidence: int,
    retrieved_at: datetime,
    row_number: int,
) -> IncomingRecord:
    fields: Dict[str, str] = {}
    for name, columns in resolved.items():
        if name in _RESERVED:
            continue
        value = _extract_scalar(row, columns)
        if value is not None:
            fields[name] = value

    # unrecognised columns travel under their normalised name
    consumed = set(consumed)
    for column, value in row.items():
        if column in consumed:
            continue
        key = _normalise_key(str(column))
        text = _clean_text(value)
        if key and text is not None and key not in fields and key not in _RESERVED:
            fields[key] = text

    record_id = _extract_scalar(row, resolved.get(RECORD_ID, [])) or f"row-{row_number}"
    row_confidence = _extract_scalar(row, resolved.get(CONFIDENCE, []))
    row_time = _extract_scalar(row, resolved.get(RETRIEVED_AT, []))

    return IncomingRecord(
        provider=provider,
        fields=fields,
        confidence=int(float(row_confidence)) if row_confidence else confidence,
        retrieved_at=_parse_timestamp(row_time) if row_time else retrieved_at,
        record_id=record_id,
    )


def _parse_timestamp(value: str) -> datetime:
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    return stamp.to_pydatetime()


def _normalise_key(value: str) -> str:
    return value.strip().lower().replace(" ", "_")


def _resolve_columns(
    field: str,
    available_columns: Iterable[str],
    mapping: Mapping[str, Union[str, Sequence[str]]],
) -> List[str]:
    if field in mapping:
        return _normalize_column_spec(mapping[field])

    synonyms = tuple(name.lower() for name in _FIELD_SYNONYMS.get(field, (field,)))
    by_key = {_normalise_key(str(column)): column for column in available_columns}
    return [by_key[synonym] for synonym in synonyms if synonym in by_key]


def _normalize_column_spec(value: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _extract_scalar(row: pd.Series, columns: Sequence[str]) -> Optional[str]:
    for column in columns:
        if column not in row:
            continue
        value = row[column]
        text = _clean_text(value)
        if text is not None:
            return text
    return None


def _clean_text(value: Any) -> Optional[str]:
    if pd.isna(value):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    text = str(value).strip()
    return text or None


__all__ = ["load_records", "UnsupportedFileTypeError"]
