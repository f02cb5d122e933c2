"""Typed errors raised by the identity, merge, and workflow core."""
from __future__ import annotations

from typing import Iterable, Optional, Tuple


class SyncError(Exception):
    """Base class for all errors raised by the sync core.

    Every error carries the entity, field, and provider it concerns (when
    known) so callers can log or surface it without re-deriving state.
    """

    def __init__(
        self,
        message: str,
        *,
        entity_id: Optional[str] = None,
        field: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.field = field
        self.provider = provider


class CanonicalizationError(SyncError):
    """Raised when an incoming record lacks every discriminating field."""

    def __init__(self, message: str, *, provider: Optional[str] = None, record_id: Optional[str] = None) -> None:
        super().__init__(message, provider=provider)
        self.record_id = record_id


class PreconditionError(SyncError):
    """Raised when a transition target requires fields the entity is missing."""

    def __init__(self, entity_id: Optional[str], target: str, missing_fields: Iterable[str]) -> None:
        missing: Tuple[str, ...] = tuple(missing_fields)
        super().__init__(
            f"Cannot move entity {entity_id} to '{target}': missing required fields {', '.join(missing)}",
            entity_id=entity_id,
            field=missing[0] if missing else None,
        )
        self.target = target
        self.missing_fields = missing


class TerminalStateError(SyncError):
    """Raised for any transition attempted on an entity in a closed status."""

    def __init__(self, entity_id: Optional[str], status: str) -> None:
        super().__init__(f"Entity {entity_id} is in terminal status '{status}'", entity_id=entity_id)
        self.status = status


class IllegalTransitionError(SyncError):
    """Raised when the requested status is not reachable from the current one."""

    def __init__(self, entity_id: Optional[str], current: str, target: str) -> None:
        super().__init__(
            f"Entity {entity_id} cannot move from '{current}' to '{target}'",
            entity_id=entity_id,
        )
        self.current = current
        self.target = target


class ConflictError(SyncError):
    """Raised when a merge plan was computed against a stale entity version."""

    def __init__(self, entity_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Entity {entity_id} changed while the plan was computed "
            f"(expected version {expected_version}, found {actual_version})",
            entity_id=entity_id,
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


__all__ = [
    "SyncError",
    "CanonicalizationError",
    "PreconditionError",
    "TerminalStateError",
    "IllegalTransitionError",
    "ConflictError",
]
