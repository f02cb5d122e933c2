"""Configuration helpers for the lead sync engine."""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from .models import Stage, Status
from .policy import FieldCategory, FieldPolicy, FieldRule, PriorityGroup

LOGGER = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when configuration files are missing or malformed."""


_SUPPORTED_EXTENSIONS = {".json", ".yaml", ".yml"}


def load_configuration(path: str | Path) -> Dict[str, Any]:
    """Load configuration data from a JSON or YAML file."""

    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"Configuration file '{file_path}' was not found")

    if file_path.suffix.lower() not in _SUPPORTED_EXTENSIONS:
        raise ConfigurationError(
            f"Unsupported configuration format '{file_path.suffix}'. Supported extensions: {sorted(_SUPPORTED_EXTENSIONS)}"
        )

    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() == ".json":
        return json.loads(text)

    try:
        import yaml  # type: ignore
    except ImportError as exc:  # pragma: no cover - declared dependency
        raise ConfigurationError(
            "YAML configuration requires the 'pyyaml' package to be installed"
        ) from exc

    return yaml.safe_load(text) or {}  # type: ignore[no-any-return]


def iter_enabled_provider_configs(config: Mapping[str, Any]) -> Iterable[Dict[str, Any]]:
    providers = config.get("providers", [])
    for provider in providers:
        if provider.get("enabled", True):
            yield provider
        else:
            LOGGER.debug("Skipping disabled provider %s", provider.get("name"))


# --- Typed engine configuration ---

DEFAULT_WEIGHTS: Mapping[str, float] = {"email": 0.4, "name": 0.3, "phone": 0.2, "company": 0.1}


@dataclass(frozen=True)
class MatchingConfig:
    weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    same_threshold: float = 0.95
    possible_duplicate_threshold: float = 0.80

    def validate(self) -> None:
        unknown = set(self.weights) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise ConfigurationError(f"Unknown similarity weight(s): {sorted(unknown)}")
        if any(weight < 0 for weight in self.weights.values()):
            raise ConfigurationError("Similarity weights must be non-negative")
        if not math.isclose(sum(self.weights.values()), 1.0, abs_tol=1e-6):
            raise ConfigurationError(f"Similarity weights must sum to 1.0, got {sum(self.weights.values())}")
        if not 0.0 <= self.possible_duplicate_threshold <= self.same_threshold <= 1.0:
            raise ConfigurationError(
                "Thresholds must satisfy 0 <= possible_duplicate <= same <= 1 "
                f"(got {self.possible_duplicate_threshold} / {self.same_threshold})"
            )


DEFAULT_LEGAL_SUFFIXES: FrozenSet[str] = frozenset(
    {
        "inc", "incorporated", "llc", "ltd", "limited", "corp", "corporation", "co", "company",
        "plc", "gmbh", "ag", "sa", "sas", "bv", "nv", "pty", "llp", "lp", "srl", "oy", "ab",
    }
)


@dataclass(frozen=True)
class CanonicalizationConfig:
    dot_insensitive_domains: FrozenSet[str] = frozenset({"gmail.com", "googlemail.com"})
    plus_tag_domains: FrozenSet[str] = frozenset({"gmail.com", "googlemail.com"})
    domain_aliases: Mapping[str, str] = field(default_factory=lambda: {"googlemail.com": "gmail.com"})
    legal_suffixes: FrozenSet[str] = DEFAULT_LEGAL_SUFFIXES
    default_calling_code: Optional[str] = "1"


StatusKey = Tuple[Stage, Status]

DEFAULT_REQUIRED_FIELDS: Mapping[StatusKey, Tuple[str, ...]] = {
    (Stage.PROSPECT, Status.QUALIFIED): ("pain_points", "budget_range", "timeframe", "fit_score"),
    (Stage.OPPORTUNITY, Status.NEGOTIATION): ("products_services", "opportunity_value"),
    (Stage.OPPORTUNITY, Status.LOST): ("win_loss_reason",),
}


@dataclass(frozen=True)
class WorkflowConfig:
    required_fields: Mapping[StatusKey, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_REQUIRED_FIELDS)
    )
    automation_actors: FrozenSet[str] = frozenset({"system:lead-sync"})
    min_fit_score_for_opportunity: int = 70
    compliance_reasons: FrozenSet[str] = frozenset({"compliance"})

    def required_for(self, stage: Stage, status: Status) -> Tuple[str, ...]:
        return tuple(self.required_fields.get((stage, status), ()))

    def is_human(self, actor: Optional[str]) -> bool:
        return bool(actor) and actor not in self.automation_actors

    @property
    def system_actor(self) -> str:
        return sorted(self.automation_actors)[0]


@dataclass(frozen=True)
class EngineConfig:
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    canonicalization: CanonicalizationConfig = field(default_factory=CanonicalizationConfig)
    policy: FieldPolicy = field(default_factory=FieldPolicy)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)

    @classmethod
    def default(cls) -> "EngineConfig":
        return cls()

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "EngineConfig":
        """Build the engine configuration from a loaded JSON/YAML document.

        Every section is optional and falls back to the shipped defaults.
        """

        data = data or {}
        try:
            matching = _parse_matching(data.get("matching") or {})
            canonicalization = _parse_canonicalization(data.get("canonicalization") or {})
            policy = _parse_policy(data.get("fields") or {}, data.get("source_priorities") or {})
            workflow = _parse_workflow(data.get("workflow") or {})
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid engine configuration: {exc}") from exc

        matching.validate()
        return cls(matching=matching, canonicalization=canonicalization, policy=policy, workflow=workflow)


def _parse_matching(section: Mapping[str, Any]) -> MatchingConfig:
    defaults = MatchingConfig()
    weights = dict(defaults.weights)
    weights.update({str(key): float(value) for key, value in (section.get("weights") or {}).items()})
    thresholds = section.get("thresholds") or {}
    return MatchingConfig(
        weights=weights,
        same_threshold=float(thresholds.get("same", defaults.same_threshold)),
        possible_duplicate_threshold=float(
            thresholds.get("possible_duplicate", defaults.possible_duplicate_threshold)
        ),
    )


def _parse_canonicalization(section: Mapping[str, Any]) -> CanonicalizationConfig:
    defaults = CanonicalizationConfig()
    domains = section.get("dot_insensitive_domains")
    plus_domains = section.get("plus_tag_domains")
    aliases = section.get("domain_aliases")
    suffixes = section.get("legal_suffixes")
    return CanonicalizationConfig(
        dot_insensitive_domains=(
            frozenset(str(domain).lower() for domain in domains) if domains is not None else defaults.dot_insensitive_domains
        ),
        plus_tag_domains=(
            frozenset(str(domain).lower() for domain in plus_domains)
            if plus_domains is not None
            else defaults.plus_tag_domains
        ),
        domain_aliases=(
            {str(k).lower(): str(v).lower() for k, v in aliases.items()} if aliases is not None else defaults.domain_aliases
        ),
        legal_suffixes=(
            frozenset(str(suffix).lower() for suffix in suffixes) if suffixes is not None else defaults.legal_suffixes
        ),
        default_calling_code=section.get("default_calling_code", defaults.default_calling_code),
    )


def _parse_policy(fields: Mapping[str, Any], priorities: Mapping[str, Any]) -> FieldPolicy:
    policy = FieldPolicy()
    overrides: Dict[str, FieldRule] = {}
    for name, spec in fields.items():
        if isinstance(spec, str):
            spec = {"category": spec}
        group = spec.get("priority_group")
        overrides[str(name)] = FieldRule(
            category=FieldCategory(spec["category"]),
            priority_group=PriorityGroup(group) if group else None,
        )
    if overrides:
        policy = policy.with_rules(overrides)
    if priorities:
        policy = policy.with_priorities(
            {PriorityGroup(group): [str(provider) for provider in order] for group, order in priorities.items()}
        )
    return policy


def _parse_status_key(text: str) -> StatusKey:
    stage_name, _, status_name = str(text).partition("/")
    if not status_name:
        raise ValueError(f"Required-field keys must look like 'stage/status', got '{text}'")
    return Stage(stage_name.strip()), Status(status_name.strip())


def _parse_workflow(section: Mapping[str, Any]) -> WorkflowConfig:
    defaults = WorkflowConfig()
    required = dict(defaults.required_fields)
    for key, fields in (section.get("required_fields") or {}).items():
        required[_parse_status_key(key)] = tuple(str(name) for name in fields)
    actors = section.get("automation_actors")
    reasons = section.get("compliance_reasons")
    return WorkflowConfig(
        required_fields=required,
        automation_actors=frozenset(actors) if actors else defaults.automation_actors,
        min_fit_score_for_opportunity=int(
            section.get("min_fit_score_for_opportunity", defaults.min_fit_score_for_opportunity)
        ),
        compliance_reasons=frozenset(reasons) if reasons else defaults.compliance_reasons,
    )


__all__ = [
    "ConfigurationError",
    "load_configuration",
    "iter_enabled_provider_configs",
    "MatchingConfig",
    "CanonicalizationConfig",
    "WorkflowConfig",
    "EngineConfig",
]
