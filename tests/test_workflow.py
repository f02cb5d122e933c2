from datetime import date, datetime, timezone

import pytest

from lead_sync.errors import IllegalTransitionError, PreconditionError, TerminalStateError
from lead_sync.models import EntityRecord, Stage, Status
from lead_sync.sinks import ListSuppressionSink
from lead_sync.store import InMemoryEntityStore
from lead_sync.workflow import LIFECYCLE, WorkflowStateMachine, stage_of

NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)


def _clock() -> datetime:
    return NOW


@pytest.fixture()
def store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture()
def suppression() -> ListSuppressionSink:
    return ListSuppressionSink()


@pytest.fixture()
def workflow(store, suppression) -> WorkflowStateMachine:
    return WorkflowStateMachine(store, suppression_sink=suppression, clock=_clock)


def _add(store, entity_id, status, fields=None, *, stage=Stage.LEAD, parent_id=None) -> EntityRecord:
    entity = EntityRecord(
        id=entity_id,
        stage=stage,
        status=status,
        fields=dict(fields or {}),
        last_modified_actor="system:lead-sync",
        last_modified_at=NOW,
        parent_id=parent_id,
    )
    store.create_entity(entity)
    return store.get(entity_id)


ENGAGED_LEAD_FIELDS = {
    "email": "jane@acme.com",
    "first_name": "Jane",
    "last_name": "Doe",
    "assigned_owner": "alice",
    "employee_count": "250",
    "seniority": "director",
    "intent_signal": "high - pricing page visits",
}


def test_every_status_belongs_to_exactly_one_stage():
    for status in Status:
        owners = [stage for stage, definition in LIFECYCLE.items() if status in definition.statuses]
        assert len(owners) == 1, status
    assert stage_of(Status.CONVERTED_TO_PROSPECT) is Stage.LEAD
    assert stage_of(Status.WON) is Stage.OPPORTUNITY


def test_legal_same_stage_transition_is_persisted(store, workflow):
    _add(store, "L-000001", Status.NEW_LEAD, {"email": "jane@acme.com"})

    moved = workflow.transition("L-000001", Status.RESEARCHING, actor="alice@example.com")

    assert moved.status is Status.RESEARCHING
    assert moved.last_modified_actor == "alice@example.com"
    assert store.get("L-000001").status is Status.RESEARCHING


def test_skipping_a_status_is_illegal(store, workflow):
    _add(store, "L-000001", Status.NEW_LEAD)

    with pytest.raises(IllegalTransitionError):
        workflow.transition("L-000001", Status.CONTACTED)
    with pytest.raises(IllegalTransitionError):
        workflow.transition("L-000001", Status.NEW_PROSPECT)


@pytest.mark.parametrize(
    "status",
    [Status.NO_INTEREST, Status.DO_NOT_CONTACT, Status.INVALID_DATA, Status.CONVERTED_TO_PROSPECT],
)
def test_terminal_lead_statuses_refuse_transitions(store, workflow, status):
    _add(store, "L-000001", status)

    with pytest.raises(TerminalStateError) as excinfo:
        workflow.transition("L-000001", Status.RESEARCHING)

    assert excinfo.value.status == status.value


def test_cross_stage_transition_reports_missing_qualification_fields(store, workflow):
    _add(store, "L-000001", Status.ENGAGED, ENGAGED_LEAD_FIELDS)

    with pytest.raises(PreconditionError) as excinfo:
        workflow.transition("L-000001", Status.QUALIFIED)

    assert "budget_range" in excinfo.value.missing_fields
    assert excinfo.value.entity_id == "L-000001"
    assert store.find_child("L-000001") is None
    assert store.get("L-000001").status is Status.ENGAGED


def test_cross_stage_transition_promotes_and_walks_the_child(store, workflow):
    fields = dict(ENGAGED_LEAD_FIELDS, pain_points="Legacy CRM", budget_range="50-100k", timeframe="this quarter")
    _add(store, "L-000001", Status.ENGAGED, fields)

    prospect = workflow.transition("L-000001", Status.QUALIFIED, actor="alice@example.com")

    assert prospect.stage is Stage.PROSPECT
    assert prospect.status is Status.QUALIFIED
    assert prospect.parent_id == "L-000001"
    assert store.get("L-000001").status is Status.CONVERTED_TO_PROSPECT


def test_promotion_copies_non_protected_fields_and_fills_defaults(store, workflow):
    _add(store, "L-000001", Status.ENGAGED, ENGAGED_LEAD_FIELDS)

    prospect = workflow.promote("L-000001")

    assert prospect.id == "P-000001"
    assert prospect.status is Status.NEW_PROSPECT
    assert prospect.fields["email"] == "jane@acme.com"
    assert prospect.fields["decision_maker"] == "Jane Doe"
    # 250 employees, director seniority, high intent
    assert prospect.fields["fit_score"] == "75"
    assert "assigned_owner" not in prospect.fields


def test_promotion_is_idempotent(store, workflow):
    _add(store, "L-000001", Status.ENGAGED, ENGAGED_LEAD_FIELDS)

    first = workflow.promote("L-000001")
    second = workflow.promote("L-000001")

    assert first.id == second.id
    assert len(store.entities(stage=Stage.PROSPECT)) == 1
    assert store.get("L-000001").status is Status.CONVERTED_TO_PROSPECT


def test_promotion_requires_the_eligible_status(store, workflow):
    _add(store, "L-000001", Status.CONTACTED, ENGAGED_LEAD_FIELDS)
    _add(store, "L-000002", Status.NO_INTEREST, ENGAGED_LEAD_FIELDS)

    with pytest.raises(IllegalTransitionError):
        workflow.promote("L-000001")
    with pytest.raises(TerminalStateError):
        workflow.promote("L-000002")
    assert store.entities(stage=Stage.PROSPECT) == []


def _qualified_prospect(store) -> EntityRecord:
    _add(store, "L-000001", Status.CONVERTED_TO_PROSPECT, {"email": "jane@acme.com"})
    return _add(
        store,
        "P-000001",
        Status.QUALIFIED,
        {
            "email": "jane@acme.com",
            "fit_score": "80",
            "qualified_services": "Managed cloud migration",
            "timeframe": "this quarter",
            "pain_points": "Legacy CRM",
            "budget_range": "50-100k",
        },
        stage=Stage.PROSPECT,
        parent_id="L-000001",
    )


def test_opportunity_defaults_come_from_the_prospect(store, workflow):
    _qualified_prospect(store)

    opportunity = workflow.promote("P-000001")

    assert opportunity.stage is Stage.OPPORTUNITY
    assert opportunity.status is Status.NEW_OPPORTUNITY
    assert opportunity.fields["products_services"] == "Managed cloud migration"
    assert opportunity.fields["opportunity_value"] == "97500"
    assert opportunity.fields["probability_percent"] == "25"
    assert opportunity.fields["expected_close_date"] == date(2024, 4, 30).isoformat()
    assert store.get("P-000001").status is Status.PROMOTED_TO_OPPORTUNITY


def test_opportunity_closing_rules(store, workflow):
    _qualified_prospect(store)
    opportunity = workflow.transition("P-000001", Status.NEGOTIATION)

    with pytest.raises(PreconditionError) as excinfo:
        workflow.transition(opportunity.id, Status.LOST)
    assert excinfo.value.missing_fields == ("win_loss_reason",)

    won = workflow.transition(opportunity.id, Status.WON)
    assert won.status is Status.WON
    with pytest.raises(TerminalStateError):
        workflow.transition(opportunity.id, Status.LOST)


def test_do_not_contact_emits_one_suppression_event(store, workflow, suppression):
    _add(store, "L-000001", Status.CONTACTED, {"email": "jane@acme.com"})

    workflow.transition("L-000001", Status.DO_NOT_CONTACT, actor="alice@example.com")

    assert len(suppression.events) == 1
    event = suppression.events[0]
    assert event.email == "jane@acme.com"
    assert event.origin_entity_id == "L-000001"
    assert event.timestamp == NOW


def test_disqualification_suppresses_only_for_compliance(store, workflow, suppression):
    _add(store, "P-000001", Status.PROSPECTING, {"email": "a@acme.com"}, stage=Stage.PROSPECT)
    _add(store, "P-000002", Status.PROSPECTING, {"email": "b@acme.com"}, stage=Stage.PROSPECT)

    workflow.transition("P-000001", Status.DISQUALIFIED, reason="budget")
    workflow.transition("P-000002", Status.DISQUALIFIED, reason="compliance")

    assert [event.origin_entity_id for event in suppression.events] == ["P-000002"]
    assert suppression.events[0].reason == "compliance"
