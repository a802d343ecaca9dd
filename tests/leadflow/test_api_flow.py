from __future__ import annotations

import json
from datetime import datetime, timedelta

from fastapi.testclient import TestClient

from leadflow.main import create_app
from leadflow.services.webhooks import sign_body


def build_agent(client, agent_id: str, **overrides) -> dict:
    payload = {"company_id": "acme", "name": f"Agent {agent_id}", "agent_id": agent_id}
    payload.update(overrides)
    response = client.post("/agents", json=payload)
    assert response.status_code == 200
    return response.json()


def build_campaign_payload(**overrides) -> dict:
    payload = {
        "company_id": "acme",
        "name": "Marina launch",
        "channel": "sms",
        "template": {"body": "Hi {{name}}, viewings open this weekend"},
        "audience": [
            {"name": "Aisha", "phone_number": "+971500001001"},
            {"name": "Bilal", "phone_number": "+971500001002"},
            {"name": "Chen", "phone_number": "+971500001003"},
        ],
        "rate_limit_per_second": 50,
    }
    payload.update(overrides)
    return payload


def test_rule_routing_and_undo(client) -> None:
    build_agent(client, "agt_a")
    build_agent(client, "agt_b")
    rule = client.post(
        "/assignment-rules",
        json={
            "company_id": "acme",
            "name": "Dubai villas",
            "conditions": [{"kind": "equals", "field": "location", "value": "dubai"}],
            "rule_type": "round_robin",
            "assigned_agents": ["agt_a", "agt_b"],
        },
    )
    assert rule.status_code == 200

    first = client.post(
        "/leads", json={"company_id": "acme", "name": "Lead One", "location": "Dubai"}
    ).json()
    second = client.post(
        "/leads", json={"company_id": "acme", "name": "Lead Two", "location": "Dubai"}
    ).json()
    assert {first["assigned_agent_id"], second["assigned_agent_id"]} == {"agt_a", "agt_b"}

    undo = client.post(f"/leads/{first['lead_id']}/undo", params={"undone_by": "manager"})
    assert undo.status_code == 200
    assert undo.json()["undone"] is True
    assert undo.json()["assigned_agent_id"] is None

    again = client.post(f"/leads/{first['lead_id']}/undo")
    assert again.json()["undone"] is False

    history = client.get(f"/leads/{first['lead_id']}/assignments").json()
    assert [entry["method"] for entry in history] == ["round_robin", "undo"]
    assert history[0]["undone_by"] == "manager"

    loads = {
        item["agent_id"]: item["current_count"]
        for item in client.get("/agents/loads", params={"company_id": "acme"}).json()
    }
    assert sum(loads.values()) == 1


def test_manual_assign_and_notifications(client) -> None:
    build_agent(client, "agt_m")
    lead = client.post(
        "/leads", json={"company_id": "acme", "name": "Walk In", "auto_assign": False}
    ).json()
    assert lead["assigned_agent_id"] is None

    assigned = client.post(
        f"/leads/{lead['lead_id']}/assign",
        json={"agent_id": "agt_m", "reason": "walk-in", "assigned_by": "desk"},
    )
    assert assigned.status_code == 200
    assert assigned.json()["assigned_agent_id"] == "agt_m"

    notifications = client.get("/agents/agt_m/notifications").json()
    assert len(notifications) == 1
    assert notifications[0]["lead_id"] == lead["lead_id"]


def test_routing_errors(client) -> None:
    unknown_target = client.post(
        "/assignment-rules",
        json={
            "company_id": "acme",
            "name": "Ghost rule",
            "rule_type": "direct",
            "assigned_agents": ["agt_missing"],
        },
    )
    assert unknown_target.status_code == 422

    assert client.get("/leads/lead_missing").status_code == 404
    assert client.post("/leads/lead_missing/route").status_code == 404

    no_agents = client.post("/leads", json={"company_id": "empty-co", "name": "Nobody Home"})
    assert no_agents.status_code == 200
    assert no_agents.json()["assigned_agent_id"] is None
    assert no_agents.json()["detail"]


def test_campaign_send_and_delivery_report(client) -> None:
    created = client.post("/campaigns", json=build_campaign_payload())
    assert created.status_code == 200
    campaign_id = created.json()["campaign_id"]
    assert created.json()["status"] == "draft"

    started = client.post(f"/campaigns/{campaign_id}/start")
    assert started.status_code == 200
    assert started.json()["status"] == "active"

    campaign = client.get(f"/campaigns/{campaign_id}").json()
    assert campaign["status"] == "completed"
    assert campaign["counters"]["sent"] == 3

    sent = client.get(
        f"/campaigns/{campaign_id}/recipients", params={"delivery_status": "sent"}
    ).json()
    assert len(sent) == 3

    report = client.post(
        "/webhooks/sms",
        json={
            "events": [
                {
                    "event_id": "sms_evt_1",
                    "event_type": "delivered",
                    "provider_message_id": sent[0]["provider_message_id"],
                },
                {
                    "event_id": "sms_evt_2",
                    "event_type": "delivered",
                    "provider_message_id": "unknown-message",
                },
            ]
        },
    )
    assert report.status_code == 200
    assert [item["status"] for item in report.json()] == ["ok", "unmatched"]

    analytics = client.get(f"/campaigns/{campaign_id}/analytics").json()
    assert analytics["counts"]["delivered"] == 1
    assert analytics["delivery_rate"] == 33.33

    assert client.post(f"/campaigns/{campaign_id}/start").status_code == 409
    actions = [item["action"] for item in client.get(f"/campaigns/{campaign_id}/logs").json()]
    assert actions[0] == "created"


def test_campaign_validation_errors(client) -> None:
    email_without_subject = client.post(
        "/campaigns",
        json=build_campaign_payload(
            channel="email",
            template={"body": "Missing subject"},
            audience=[{"email": "buyer@example.com"}],
        ),
    )
    campaign_id = email_without_subject.json()["campaign_id"]
    assert client.post(f"/campaigns/{campaign_id}/start").status_code == 422

    no_address = client.post(
        "/campaigns", json=build_campaign_payload(audience=[{"name": "Nobody"}])
    )
    assert no_address.status_code == 422

    assert client.get("/campaigns/cmp_missing").status_code == 404


def test_scheduled_campaign_cannot_start_early(client) -> None:
    send_at = (datetime.utcnow() + timedelta(days=1)).isoformat()
    created = client.post(
        "/campaigns", json=build_campaign_payload(scheduled_at_utc=send_at)
    ).json()
    assert created["status"] == "scheduled"

    response = client.post(f"/campaigns/{created['campaign_id']}/start")
    assert response.status_code == 409

    extra = client.post(
        f"/campaigns/{created['campaign_id']}/recipients",
        json=[{"name": "Dana", "phone_number": "+971500001004"}],
    )
    assert extra.status_code == 200


def test_webhook_rejects_unknown_channel_and_bad_json(client) -> None:
    assert client.post("/webhooks/fax", json={}).status_code == 404
    bad = client.post(
        "/webhooks/sms", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert bad.status_code == 400


def test_whatsapp_signature_required_when_secret_set(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "topsecret")
    client = TestClient(create_app())
    payload = {
        "event_id": "wa_evt_1",
        "event_type": "delivered",
        "provider_message_id": "wamid.unknown",
    }
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")

    unsigned = client.post(
        "/webhooks/whatsapp", content=body, headers={"content-type": "application/json"}
    )
    assert unsigned.status_code == 403

    signed = client.post(
        "/webhooks/whatsapp",
        content=body,
        headers={
            "content-type": "application/json",
            "x-hub-signature-256": f"sha256={sign_body(body, 'topsecret')}",
        },
    )
    assert signed.status_code == 200
    assert signed.json() == [{"status": "unmatched", "recipient_id": None, "attempts": 1}]
