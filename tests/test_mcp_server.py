import pytest

from conftest import FakeLLM
from loanwise.agent import AgentOrchestrator
from mcp_server import server


@pytest.mark.asyncio
async def test_extract_fields_tool():
    result = await server.extract_fields("I need 45 thousand for a car", {"monthly_income": 8000})
    assert result["fields"]["amount"] == 45000
    assert result["fields"]["monthly_income"] == 8000
    assert sorted(result["changed"]) == ["amount", "loan_type"]


@pytest.mark.asyncio
async def test_decide_loan_tool():
    decision = await server.decide_loan(
        {
            "amount": 250000,
            "monthly_income": 8500,
            "credit_score": 750,
            "employment_status": "full-time",
            "loan_type": "mortgage",
        }
    )
    assert decision["status"] == "approved"
    assert decision["interest_rate"] == 6.5

    assert "error" in await server.decide_loan({"amount": 1000, "credit_score": 900})
    assert "error" in await server.decide_loan({"email": "jane@example.com"})


@pytest.mark.asyncio
async def test_chat_tool_persists_turns(monkeypatch, store, conversation_service, loan_service):
    agent = AgentOrchestrator(FakeLLM(), loan_service, conversation_service)
    monkeypatch.setattr(server, "_tables_ready", True)
    monkeypatch.setattr(server, "conversation_service", conversation_service)
    monkeypatch.setattr(server, "agent", agent)

    response = await server.chat("alice", "I need 45 thousand for a car")
    assert response["conversation_id"] == "alice-20260314"
    assert response["fields"]["amount"] == 45000
    assert [m.sender.value for m in store.messages] == ["user", "assistant"]
