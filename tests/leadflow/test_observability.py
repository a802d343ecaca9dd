from __future__ import annotations


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    client.post("/agents", json={"company_id": "acme", "name": "Metric Agent", "agent_id": "agt_x"})
    client.put("/companies/acme/assignment-config", json={"default_agent_id": "agt_x"})
    client.post("/leads", json={"company_id": "acme", "name": "Counted Lead"})

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "leadflow_requests_total" in body
    assert "leadflow_requests_5xx_total" in body
    assert 'leadflow_assignments_total{method="round_robin"} 1' in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"
