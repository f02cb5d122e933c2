"""Identity resolution, merge, and workflow engine for Lead/Prospect/Opportunity records."""

from . import ingestion, models, orchestrator, providers  # noqa: F401
from .canonical import Canonicalizer
from .config import ConfigurationError, EngineConfig, load_configuration
from .errors import (
    CanonicalizationError,
    ConflictError,
    IllegalTransitionError,
    PreconditionError,
    SyncError,
    TerminalStateError,
)
from .merge import MergeEngine
from .models import (
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
)
from .orchestrator import SyncOrchestrator
from .policy import FieldCategory, FieldPolicy
from .resolver import IdentityResolver
from .store import InMemoryEntityStore
from .workflow import WorkflowStateMachine

__all__ = [
    "Canonicalizer",
    "IdentityResolver",
    "MergeEngine",
    "WorkflowStateMachine",
    "SyncOrchestrator",
    "InMemoryEntityStore",
    "EngineConfig",
    "ConfigurationError",
    "load_configuration",
    "FieldCategory",
    "FieldPolicy",
    "SyncError",
    "CanonicalizationError",
    "PreconditionError",
    "TerminalStateError",
    "IllegalTransitionError",
    "ConflictError",
    "AuditRecord",
    "CanonicalFields",
    "EntityRecord",
    "Field",
    "IncomingRecord",
    "MatchCandidate",
    "MatchClassification",
    "MergePlan",
    "Stage",
    "Status",
    "SyncCursor",
    "ingestion",
    "orchestrator",
    "providers",
]
