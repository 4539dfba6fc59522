"""Tests for agent registration, claiming and owner settings."""

from agentrelay.db.models import Agent, AgentStatus


def _register(client, name="scout"):
    response = client.post("/api/v1/agents/register", json={"name": name})
    assert response.status_code == 201
    return response.json()


def test_register_returns_key_once(client, db):
    body = _register(client)

    assert body["apiKey"].startswith("clankr_")
    assert body["claimToken"].startswith("clankr_claim_")
    assert body["apiKey"].startswith(body["apiKeyPrefix"])
    agent = db.get(Agent, body["agentId"])
    assert agent.status == AgentStatus.UNCLAIMED.value
    assert agent.api_key_hash != body["apiKey"]


def test_register_requires_name(client):
    assert client.post("/api/v1/agents/register", json={"name": ""}).status_code == 400


def test_claim_then_me(client, alice, bearer):
    registered = _register(client)

    claimed = client.post(
        "/api/v1/agents/claim",
        json={"claimToken": registered["claimToken"]},
        headers={"X-User-Id": alice.id},
    )
    assert claimed.status_code == 200
    assert claimed.json()["status"] == "ACTIVE"
    assert claimed.json()["userId"] == alice.id

    me = client.get("/api/v1/agent/me", headers=bearer(registered["apiKey"]))
    assert me.status_code == 200
    body = me.json()
    assert body["agent"]["id"] == registered["agentId"]
    assert body["owner"]["id"] == alice.id
    assert body["owner"]["username"] == "alice"
    assert body["owner"]["displayName"] == "Alice"


def test_me_requires_claimed_agent(client, bearer):
    registered = _register(client)
    assert client.get("/api/v1/agent/me", headers=bearer(registered["apiKey"])).status_code == 403


def test_claim_errors(client, alice, bob, make_agent, make_user):
    registered = _register(client)
    token = {"claimToken": registered["claimToken"]}

    assert client.post("/api/v1/agents/claim", json=token).status_code == 401
    assert (
        client.post(
            "/api/v1/agents/claim", json={"claimToken": "clankr_claim_nope"}, headers={"X-User-Id": alice.id}
        ).status_code
        == 404
    )

    make_agent(bob, name="bob-agent")
    assert client.post("/api/v1/agents/claim", json=token, headers={"X-User-Id": bob.id}).status_code == 409

    assert client.post("/api/v1/agents/claim", json=token, headers={"X-User-Id": alice.id}).status_code == 200
    # Token is consumed by the first claim
    carol = make_user("carol")
    assert client.post("/api/v1/agents/claim", json=token, headers={"X-User-Id": carol.id}).status_code == 404


def test_update_gateway(client, make_agent, alice):
    make_agent(alice)

    response = client.put(
        "/api/v1/agent/gateway",
        json={"gatewayUrl": "https://agent.example.com/", "gatewayToken": "tok", "webhookEnabled": True},
        headers={"X-User-Id": alice.id},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["gatewayUrl"] == "https://agent.example.com"
    assert body["webhookEnabled"] is True
    assert "gatewayToken" not in body


def test_update_gateway_rejects_bad_url(client, make_agent, alice):
    make_agent(alice)
    response = client.put(
        "/api/v1/agent/gateway",
        json={"gatewayUrl": "not a url", "webhookEnabled": True},
        headers={"X-User-Id": alice.id},
    )
    assert response.status_code == 400


def test_disconnect_suspends_agent(client, make_agent, alice, bearer):
    _, key = make_agent(alice)

    response = client.delete("/api/v1/agent", headers={"X-User-Id": alice.id})

    assert response.status_code == 200
    assert response.json()["status"] == "SUSPENDED"
    assert response.json()["userId"] is None
    assert client.get("/api/v1/agent/events", headers=bearer(key)).status_code == 403


def test_disconnect_without_agent(client, alice):
    assert client.delete("/api/v1/agent", headers={"X-User-Id": alice.id}).status_code == 404
