import pytest
from fastapi.testclient import TestClient

from conftest import FakeLLM
from loanwise import main
from loanwise.agent import AgentOrchestrator
from loanwise.llm import CompletionResult


async def _no_tables():
    return None


@pytest.fixture
def llm():
    return FakeLLM([CompletionResult(text="Thanks!", hint={"monthlyIncome": 8000})])


@pytest.fixture
def client(monkeypatch, llm, conversation_service, loan_service):
    agent = AgentOrchestrator(llm, loan_service, conversation_service)
    monkeypatch.setattr(main, "init_models", _no_tables)
    monkeypatch.setattr(main, "llm_client", llm)
    monkeypatch.setattr(main, "conversation_service", conversation_service)
    monkeypatch.setattr(main, "loan_service", loan_service)
    monkeypatch.setattr(main, "agent", agent)
    with TestClient(main.app) as test_client:
        yield test_client


def test_chat_then_submit(client, store):
    resp = client.post("/chat", json={"user_id": "alice", "message": "I need 45 thousand for a car"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["conversation_id"] == "alice-20260314"
    assert data["fields"]["amount"] == 45000
    assert data["fields"]["monthly_income"] == 8000
    assert data["decision"]["status"] == "approved"
    assert data["awaiting_confirmation"] is True

    resp = client.post("/chat/submit", json={"user_id": "alice"})
    assert resp.status_code == 200
    application = resp.json()
    assert application["id"] == 1
    assert application["status"] == "approved"

    resp = client.get("/applications/alice")
    assert [a["id"] for a in resp.json()] == [1]

    resp = client.patch("/applications/1/status", json={"status": "rejected"})
    assert resp.status_code == 200
    assert store.applications[0].status == "rejected"


def test_submit_incomplete_draft_conflicts(client):
    resp = client.post("/chat/submit", json={"user_id": "bob"})
    assert resp.status_code == 409
    assert resp.json()["missing"] == ["amount", "loan_type", "monthly_income"]


def test_submit_with_store_down_is_unavailable(client, store):
    client.post("/chat", json={"user_id": "alice", "message": "I need 45 thousand for a car"})
    store.fail = True
    resp = client.post("/chat/submit", json={"user_id": "alice"})
    assert resp.status_code == 503
    assert resp.json()["error"] == "CollaboratorUnavailable"


def test_field_edits(client):
    resp = client.patch("/chat/fields", json={"user_id": "alice", "field": "credit_score", "value": "720"})
    assert resp.status_code == 200
    assert resp.json()["fields"]["credit_score"] == 720
    assert resp.json()["changed_fields"] == ["credit_score"]

    resp = client.patch("/chat/fields", json={"user_id": "alice", "field": "credit_score", "value": 900})
    assert resp.status_code == 422
    resp = client.patch("/chat/fields", json={"user_id": "alice", "field": "email", "value": "x"})
    assert resp.status_code == 422


def test_conversation_listing_and_clearing(client):
    client.post("/chat", json={"user_id": "alice", "message": "I need 45 thousand for a car"})

    resp = client.get("/conversations/alice")
    assert resp.status_code == 200
    [summary] = resp.json()
    assert summary["conversation_id"] == "alice-20260314"
    assert summary["label"] == "I need 45 thousand for a car"
    assert summary["message_count"] == 2

    turns = client.get("/conversations/alice/alice-20260314").json()
    assert [t["sender"] for t in turns] == ["user", "assistant"]

    for _ in range(2):
        resp = client.delete("/conversations/alice/alice-20260314")
        assert resp.json() == {"cleared": True}
    assert client.get("/conversations/alice").json() == []


def test_new_conversation(client):
    resp = client.post("/conversations/alice/new")
    assert resp.status_code == 200
    conversation_id = resp.json()["conversation_id"]
    assert conversation_id.startswith("alice-")
    assert conversation_id != "alice-20260314"


def test_decide_endpoint(client):
    resp = client.post(
        "/decide",
        json={
            "amount": 250000,
            "monthly_income": 8500,
            "credit_score": 750,
            "employment_status": "full-time",
            "loan_type": "mortgage",
        },
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "approved"
    assert resp.json()["interest_rate"] == 6.5

    resp = client.post("/decide", json={"amount": 1000, "loan_type": "boat", "monthly_income": 500})
    assert resp.status_code == 422


def test_status_update_validation(client):
    assert client.patch("/applications/7/status", json={"status": "approved"}).status_code == 404
    assert client.patch("/applications/7/status", json={"status": "archived"}).status_code == 422


def test_voice_socket_round_trip(client):
    with client.websocket_connect("/voice/carol") as websocket:
        assert websocket.receive_json() == {
            "type": "state", "from": "idle", "to": "listening", "paused": False, "error": None,
        }
        websocket.send_json({"type": "final_transcript", "text": "I need 45 thousand for a car"})
        assert websocket.receive_json()["to"] == "thinking"
        assert websocket.receive_json()["to"] == "speaking"
        speak = websocket.receive_json()
        assert speak["type"] == "speak"
        assert "Interest rate" in speak["text"]

        websocket.send_json({"type": "playback_complete"})
        assert websocket.receive_json()["to"] == "listening"
