from datetime import datetime, timedelta, timezone

import pytest

from lead_sync.errors import ConflictError
from lead_sync.merge import (
    REASON_HUMAN_EDITED,
    REASON_INSUFFICIENT_IMPROVEMENT,
    REASON_LOWER_PRIORITY,
    REASON_STATUS_ADVANCED,
    REASON_UNCHANGED,
    REASON_UNMAPPED,
    REASON_WORKFLOW_MANAGED,
    MergeEngine,
)
from lead_sync.models import (
    EntityRecord,
    IncomingRecord,
    MatchCandidate,
    MatchClassification,
    Overwrite,
    Skip,
    Stage,
    Status,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
SYSTEM = "system:lead-sync"


def _lead(fields=None, *, status=Status.NEW_LEAD, actor=SYSTEM, sources=None, version=0) -> EntityRecord:
    return EntityRecord(
        id="L-000001",
        stage=Stage.LEAD,
        status=status,
        fields=dict(fields or {}),
        last_modified_actor=actor,
        last_modified_at=T0,
        provenance=["ZoomInfo"],
        field_sources=dict(sources or {}),
        version=version,
    )


def _record(provider, fields, *, confidence=50, retrieved_at=T0) -> IncomingRecord:
    return IncomingRecord(provider=provider, fields=fields, confidence=confidence, retrieved_at=retrieved_at)


@pytest.fixture()
def engine() -> MergeEngine:
    return MergeEngine()


def test_source_priority_beats_confidence(engine):
    plan = engine.plan_group(
        _lead({"email": "jane@acme.com"}),
        [
            _record("Apollo.io", {"job_title": "Chief Technology Officer"}, confidence=95),
            _record("ZoomInfo", {"job_title": "CTO"}, confidence=60),
        ],
    )

    assert plan.action_for("job_title") == Overwrite("job_title", "CTO", "ZoomInfo")


def test_confidence_then_recency_break_equal_priority(engine):
    later = T0 + timedelta(hours=1)
    by_confidence = engine.plan_group(
        _lead(),
        [
            _record("Apollo.io", {"industry": "Software"}, confidence=40),
            _record("Apollo.io", {"industry": "SaaS"}, confidence=80),
        ],
    )
    by_recency = engine.plan_group(
        _lead(),
        [
            _record("Apollo.io", {"industry": "Software"}, retrieved_at=later),
            _record("Apollo.io", {"industry": "SaaS"}),
        ],
    )

    assert by_confidence.action_for("industry").value == "SaaS"
    assert by_recency.action_for("industry").value == "Software"


def test_plan_is_independent_of_record_order(engine):
    records = [
        _record("Hunter.io", {"job_title": "VP Eng", "email_verification": "valid", "phone": "555 000 1111"}),
        _record("Apollo.io", {"job_title": "VP Engineering", "technology_stack": "AWS", "phone": "555 000 2222"}),
        _record("ZoomInfo", {"email_verification": "risky", "technology_stack": "GCP"}),
    ]

    forward = engine.plan_group(_lead(), records)
    backward = engine.plan_group(_lead(), list(reversed(records)))

    assert forward.actions == backward.actions
    assert forward.action_for("email_verification").value == "valid"
    assert forward.action_for("technology_stack").value == "AWS"
    assert forward.action_for("job_title").value == "VP Engineering"


def test_protected_fields_are_frozen_after_a_human_edit(engine):
    existing = _lead({"assigned_owner": "alice"}, actor="alice@example.com")
    incoming = _record("ZoomInfo", {"assigned_owner": "bot", "manual_notes": "imported"})

    plan = engine.plan(existing, incoming)
    merged = engine.apply(existing, plan, actor=SYSTEM)

    assert plan.action_for("assigned_owner") == Skip("assigned_owner", REASON_HUMAN_EDITED, "ZoomInfo")
    assert plan.action_for("manual_notes").reason == REASON_HUMAN_EDITED
    assert merged.fields["assigned_owner"] == "alice"
    assert "manual_notes" not in merged.fields
    assert merged.last_modified_actor == "alice@example.com"


def test_protected_fields_are_frozen_once_status_advanced(engine):
    existing = _lead({"priority": "high"}, status=Status.CONTACTED)

    plan = engine.plan(existing, _record("ZoomInfo", {"priority": "low"}))

    assert plan.action_for("priority").reason == REASON_STATUS_ADVANCED


def test_protected_fields_fill_while_unguarded(engine):
    existing = _lead({"priority": "high"})

    plan = engine.plan(existing, _record("ZoomInfo", {"priority": "low", "assigned_owner": "team-a"}))

    assert plan.action_for("priority") == Overwrite("priority", "low", "ZoomInfo")
    assert plan.action_for("assigned_owner") == Overwrite("assigned_owner", "team-a", "ZoomInfo")
    unchanged = engine.plan(existing, _record("ZoomInfo", {"priority": "high"}))
    assert unchanged.action_for("priority").reason == REASON_UNCHANGED


def test_status_and_workflow_fields_are_never_merged(engine):
    plan = engine.plan(_lead(), _record("ZoomInfo", {"status": "won", "fit_score": "99", "budget_range": "1M"}))

    assert plan.overwrites == []
    assert {skip.field: skip.reason for skip in plan.skips} == {
        "status": REASON_WORKFLOW_MANAGED,
        "fit_score": REASON_WORKFLOW_MANAGED,
        "budget_range": REASON_WORKFLOW_MANAGED,
    }


def test_enrichment_fields_are_always_overwritten(engine):
    existing = _lead({"technology_stack": "AWS"}, actor="alice@example.com", status=Status.CONTACTED)

    plan = engine.plan(existing, _record("Hunter.io", {"technology_stack": "Azure"}))

    assert plan.action_for("technology_stack") == Overwrite("technology_stack", "Azure", "Hunter.io")


def test_conditional_fields_need_a_substantially_longer_new_value(engine):
    existing = _lead({"services_offered": "Cloud hosting"})

    contained = engine.plan(existing, _record("ZoomInfo", {"services_offered": "cloud"}))
    short = engine.plan(existing, _record("ZoomInfo", {"services_offered": "Networking"}))
    richer = engine.plan(
        existing, _record("ZoomInfo", {"services_offered": "Managed networking and security operations"})
    )
    empty = engine.plan(_lead(), _record("ZoomInfo", {"growth_signals": "Hiring"}))

    assert contained.action_for("services_offered").reason == REASON_INSUFFICIENT_IMPROVEMENT
    assert short.action_for("services_offered").reason == REASON_INSUFFICIENT_IMPROVEMENT
    assert isinstance(richer.action_for("services_offered"), Overwrite)
    assert isinstance(empty.action_for("growth_signals"), Overwrite)


def test_identity_fields_respect_the_recorded_source(engine):
    existing = _lead({"job_title": "Engineer"}, sources={"job_title": "Apollo.io"})

    lower = engine.plan(existing, _record("Hunter.io", {"job_title": "Developer"}))
    higher = engine.plan(existing, _record("ZoomInfo", {"job_title": "Staff Engineer"}))
    same = engine.plan(existing, _record("Apollo.io", {"job_title": "Senior Engineer"}))

    assert lower.action_for("job_title").reason == REASON_LOWER_PRIORITY
    assert higher.action_for("job_title").value == "Staff Engineer"
    assert same.action_for("job_title").value == "Senior Engineer"


def test_unknown_fields_are_skipped(engine):
    plan = engine.plan(_lead(), _record("ZoomInfo", {"email": "jane@acme.com", "favourite_colour": "blue"}))

    assert plan.action_for("favourite_colour").reason == REASON_UNMAPPED


def test_plan_refuses_non_matching_candidates(engine):
    existing = _lead()
    candidate = MatchCandidate(
        entity=existing, field_scores={}, score=0.85, classification=MatchClassification.POSSIBLE_DUPLICATE
    )

    with pytest.raises(ValueError):
        engine.plan(existing, _record("ZoomInfo", {"email": "jane@acme.com"}), candidate)


def test_apply_is_all_or_nothing_and_versioned(engine):
    existing = _lead({"email": "jane@acme.com"}, version=3)
    plan = engine.plan_group(
        existing,
        [_record("ZoomInfo", {"job_title": "CTO"}), _record("Apollo.io", {"technology_stack": "AWS"})],
    )

    merged = engine.apply(existing, plan, actor=SYSTEM, at=T0 + timedelta(days=1))

    assert merged.version == 4
    assert merged.fields["job_title"] == "CTO"
    assert merged.field_sources == {"job_title": "ZoomInfo", "technology_stack": "Apollo.io"}
    assert merged.provenance == ["ZoomInfo", "Apollo.io"]
    assert merged.last_modified_at == T0 + timedelta(days=1)
    assert existing.fields == {"email": "jane@acme.com"}
    assert existing.version == 3

    with pytest.raises(ConflictError) as excinfo:
        engine.apply(merged, plan)
    assert excinfo.value.expected_version == 3
    assert excinfo.value.actual_version == 4


def test_audit_lists_overwritten_and_preserved_fields(engine):
    existing = _lead({"assigned_owner": "alice"}, actor="alice@example.com")
    plan = engine.plan(existing, _record("ZoomInfo", {"assigned_owner": "bot", "industry": "Retail"}))

    audit = engine.audit(plan, T0)

    assert audit.entity_id == "L-000001"
    assert audit.fields_overwritten == ("industry",)
    assert audit.fields_preserved == ("assigned_owner",)
    assert audit.preservation_reasons == {"assigned_owner": REASON_HUMAN_EDITED}
    assert "assigned_owner (protected:human-edited)" in audit.summary()


def test_technographics_priority_overrides_confidence(engine):
    plan = engine.plan_group(
        _lead(),
        [
            _record("ZoomInfo", {"technology_stack": "Oracle, SAP"}, confidence=99),
            _record("Apollo.io", {"technology_stack": "Salesforce, AWS"}, confidence=10),
        ],
    )

    assert plan.action_for("technology_stack") == Overwrite("technology_stack", "Salesforce, AWS", "Apollo.io")
