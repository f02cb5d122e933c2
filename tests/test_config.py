import json

import pytest

from lead_sync.config import (
    ConfigurationError,
    EngineConfig,
    iter_enabled_provider_configs,
    load_configuration,
)
from lead_sync.models import Stage, Status
from lead_sync.policy import FieldCategory, PriorityGroup


def test_load_configuration_reads_json_and_yaml(tmp_path):
    json_path = tmp_path / "config.json"
    json_path.write_text(json.dumps({"matching": {"thresholds": {"same": 0.9}}}), encoding="utf-8")
    yaml_path = tmp_path / "config.yaml"
    yaml_path.write_text("matching:\n  thresholds:\n    same: 0.9\n", encoding="utf-8")

    assert load_configuration(json_path) == load_configuration(yaml_path)


def test_load_configuration_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        load_configuration(tmp_path / "missing.json")

    toml_path = tmp_path / "config.toml"
    toml_path.write_text("", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_configuration(toml_path)


def test_empty_mapping_yields_the_defaults():
    config = EngineConfig.from_mapping({})

    assert config == EngineConfig.default()
    assert config.matching.weights == {"email": 0.4, "name": 0.3, "phone": 0.2, "company": 0.1}
    assert config.policy.priorities[PriorityGroup.EMAIL_VERIFICATION] == ("Hunter.io", "ZoomInfo", "Apollo.io")
    assert config.workflow.is_human("alice@example.com")
    assert not config.workflow.is_human("system:lead-sync")
    assert not config.workflow.is_human("")


def test_from_mapping_overrides_every_section():
    config = EngineConfig.from_mapping(
        {
            "matching": {
                "weights": {"email": 0.5, "name": 0.2, "phone": 0.2, "company": 0.1},
                "thresholds": {"same": 0.9, "possible_duplicate": 0.7},
            },
            "canonicalization": {
                "dot_insensitive_domains": ["Acme.com"],
                "plus_tag_domains": ["Acme.com"],
                "default_calling_code": "44",
            },
            "fields": {
                "job_title": "enrichment",
                "linkedin_url": {"category": "identity", "priority_group": "contact"},
            },
            "source_priorities": {"contact": ["Apollo.io", "ZoomInfo"]},
            "workflow": {
                "required_fields": {"opportunity/progressing": ["competitors"]},
                "automation_actors": ["bot:sync", "bot:import"],
                "min_fit_score_for_opportunity": 60,
            },
        }
    )

    assert config.matching.same_threshold == 0.9
    assert config.matching.possible_duplicate_threshold == 0.7
    assert config.canonicalization.dot_insensitive_domains == frozenset({"acme.com"})
    assert config.canonicalization.plus_tag_domains == frozenset({"acme.com"})
    assert config.canonicalization.default_calling_code == "44"
    assert config.policy.category_of("job_title") is FieldCategory.ENRICHMENT
    assert config.policy.category_of("linkedin_url") is FieldCategory.IDENTITY
    assert config.policy.priority_rank("linkedin_url", "Apollo.io") == 0
    assert config.workflow.required_for(Stage.OPPORTUNITY, Status.PROGRESSING) == ("competitors",)
    assert config.workflow.required_for(Stage.PROSPECT, Status.QUALIFIED)
    assert config.workflow.system_actor == "bot:import"
    assert config.workflow.min_fit_score_for_opportunity == 60


@pytest.mark.parametrize(
    "data",
    [
        {"matching": {"weights": {"email": 0.9}}},
        {"matching": {"weights": {"shoe_size": 0.0}}},
        {"matching": {"thresholds": {"same": 0.7, "possible_duplicate": 0.8}}},
        {"fields": {"email": "sometimes"}},
        {"workflow": {"required_fields": {"qualified": ["budget_range"]}}},
    ],
)
def test_invalid_configuration_is_rejected(data):
    with pytest.raises(ConfigurationError):
        EngineConfig.from_mapping(data)


def test_disabled_providers_are_skipped():
    config = {
        "providers": [
            {"name": "ZoomInfo", "class": "x.Y"},
            {"name": "Apollo.io", "class": "x.Y", "enabled": False},
        ]
    }

    assert [provider["name"] for provider in iter_enabled_provider_configs(config)] == ["ZoomInfo"]
