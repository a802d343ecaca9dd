from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from leadflow.models import (
    AssignmentConfigRequest,
    AssignmentMethod,
    AutoReassignmentRuleCreateRequest,
)


def _setup(engine, make_agent, **rule_fields) -> None:
    make_agent("agt_a")
    make_agent("agt_b")
    engine.router.configure(
        "acme", AssignmentConfigRequest(fallback_agent_ids=["agt_a", "agt_b"])
    )
    rule_fields.setdefault("days_without_contact", 3)
    engine.store.create_reassignment_rule(
        AutoReassignmentRuleCreateRequest(company_id="acme", name="Stale leads", **rule_fields)
    )


def test_stale_lead_moves_to_another_agent(engine, make_agent, make_lead, clock) -> None:
    _setup(engine, make_agent)
    lead_id = make_lead()
    engine.ledger.assign(lead_id, "agt_a")

    reassigned = engine.reassignment.sweep("acme", now=clock() + timedelta(days=4))

    assert reassigned == [lead_id]
    lead = engine.store.get_lead(lead_id)
    assert lead.assigned_agent_id == "agt_b"
    assert lead.reassignment_due_utc is None
    assert engine.ledger.latest_entry(lead_id).method == AssignmentMethod.reassignment


def test_recent_contact_keeps_owner(engine, make_agent, make_lead, clock) -> None:
    _setup(engine, make_agent)
    lead_id = make_lead()
    engine.ledger.assign(lead_id, "agt_a")
    engine.router.record_contact(lead_id, at=clock() + timedelta(days=2))

    assert engine.reassignment.sweep("acme", now=clock() + timedelta(days=4)) == []
    assert engine.store.get_lead(lead_id).assigned_agent_id == "agt_a"


def test_stage_filter_applies(engine, make_agent, make_lead, clock) -> None:
    _setup(engine, make_agent)
    lead_id = make_lead(stage="Negotiation")
    engine.ledger.assign(lead_id, "agt_a")

    assert engine.reassignment.sweep("acme", now=clock() + timedelta(days=10)) == []


def test_unassigned_leads_are_ignored(engine, make_agent, make_lead, clock) -> None:
    _setup(engine, make_agent)
    make_lead()
    assert engine.reassignment.sweep("acme", now=clock() + timedelta(days=10)) == []


def test_explicit_target_agent(engine, make_agent, make_lead, clock) -> None:
    make_agent("agt_a")
    make_agent("agt_b")
    make_agent("agt_lead")
    engine.store.create_reassignment_rule(
        AutoReassignmentRuleCreateRequest(
            company_id="acme",
            name="Escalate",
            days_without_contact=1,
            use_round_robin=False,
            reassign_to_agent_id="agt_lead",
        )
    )
    lead_id = make_lead()
    engine.ledger.assign(lead_id, "agt_a")

    engine.reassignment.sweep("acme", now=clock() + timedelta(days=2))

    assert engine.store.get_lead(lead_id).assigned_agent_id == "agt_lead"


def test_claim_is_released_without_target(engine, make_agent, make_lead, clock) -> None:
    make_agent("agt_a")
    engine.store.create_reassignment_rule(
        AutoReassignmentRuleCreateRequest(company_id="acme", name="Stale", days_without_contact=1)
    )
    lead_id = make_lead()
    engine.ledger.assign(lead_id, "agt_a")

    assert engine.reassignment.sweep("acme", now=clock() + timedelta(days=2)) == []
    lead = engine.store.get_lead(lead_id)
    assert lead.assigned_agent_id == "agt_a"
    assert lead.reassignment_due_utc is None


def test_concurrent_sweeps_reassign_once(engine, make_agent, make_lead, clock) -> None:
    _setup(engine, make_agent)
    lead_ids = [make_lead() for _ in range(10)]
    for lead_id in lead_ids:
        engine.ledger.assign(lead_id, "agt_a")
    sweep_at = clock() + timedelta(days=5)

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(lambda _: engine.reassignment.sweep("acme", sweep_at), range(4)))

    reassigned = [lead_id for batch in results for lead_id in batch]
    assert sorted(reassigned) == sorted(lead_ids)
    for lead_id in lead_ids:
        methods = [entry.method for entry in engine.ledger.history(lead_id)]
        assert methods.count(AssignmentMethod.reassignment) == 1


def test_sweep_all_covers_companies(engine, make_agent, make_lead, clock) -> None:
    _setup(engine, make_agent)
    lead_id = make_lead()
    engine.ledger.assign(lead_id, "agt_a")

    assert engine.reassignment.sweep_all(now=clock() + timedelta(days=4)) == [lead_id]
