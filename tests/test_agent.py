import pytest

from conftest import FakeLLM
from loanwise.agent import AgentOrchestrator
from loanwise.errors import CollaboratorUnavailable, DecisionIncomplete
from loanwise.fields import LoanStatus
from loanwise.llm import CompletionResult
from loanwise.schemas import Sender


def _agent(llm, conversation_service, loan_service):
    return AgentOrchestrator(llm, loan_service, conversation_service)


@pytest.mark.asyncio
async def test_turn_logs_user_and_assistant(conversation_service, loan_service):
    llm = FakeLLM([CompletionResult(text="Great, what's your name?")])
    agent = _agent(llm, conversation_service, loan_service)

    response = await agent.handle_turn("alice", "I need 45 thousand for a car")
    assert response.reply == "Great, what's your name?"
    assert response.changed_fields == ["loan_type", "amount"]
    assert response.pending_fields == ["monthly_income"]
    assert response.decision.status == LoanStatus.NEEDS_INFO

    session = await conversation_service.start_or_resume("alice")
    assert [t.sender for t in session.turns] == [Sender.USER, Sender.ASSISTANT]
    # the model saw the user turn before replying
    assert llm.calls == [["I need 45 thousand for a car"]]


@pytest.mark.asyncio
async def test_completion_failure_falls_back_to_next_question(conversation_service, loan_service):
    llm = FakeLLM([CollaboratorUnavailable("completion", "rate limited")])
    agent = _agent(llm, conversation_service, loan_service)

    response = await agent.handle_turn("alice", "I need 45 thousand for a car")
    assert response.reply == "Could I have your full name?"


@pytest.mark.asyncio
async def test_rejection_fallback_explains(conversation_service, loan_service):
    llm = FakeLLM([CollaboratorUnavailable("completion", "timeout")])
    agent = _agent(llm, conversation_service, loan_service)

    response = await agent.handle_turn(
        "alice", "I need 45 thousand for a car and I make 2000 a month"
    )
    assert response.decision.status == LoanStatus.REJECTED
    assert response.reply.startswith("Based on these details I can't approve this loan.")
    assert "smaller loan amount" in response.reply


@pytest.mark.asyncio
async def test_hint_completes_fields_and_presents_terms(conversation_service, loan_service):
    llm = FakeLLM([CompletionResult(text="Thanks!", hint={"monthlyIncome": 8000})])
    agent = _agent(llm, conversation_service, loan_service)

    response = await agent.handle_turn("alice", "I need 45 thousand for a car")
    assert response.fields.monthly_income == 8000
    assert "monthly_income" in response.changed_fields
    assert response.decision.status == LoanStatus.APPROVED
    assert response.awaiting_confirmation
    assert "Interest rate: 9.50% for 60 months (5 years)" in response.reply
    assert response.reply.endswith("(yes/no)")


@pytest.mark.asyncio
async def test_yes_submits_application(conversation_service, loan_service, store):
    llm = FakeLLM([CompletionResult(text="Thanks!", hint={"monthlyIncome": 8000})])
    agent = _agent(llm, conversation_service, loan_service)
    await agent.handle_turn("alice", "I need 45 thousand for a car")

    response = await agent.handle_turn("alice", "Yes please")
    assert response.application is not None
    assert response.application.id == 1
    assert not response.awaiting_confirmation
    assert len(store.applications) == 1
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_no_keeps_draft(conversation_service, loan_service, store):
    llm = FakeLLM([CompletionResult(text="Thanks!", hint={"monthlyIncome": 8000})])
    agent = _agent(llm, conversation_service, loan_service)
    await agent.handle_turn("alice", "I need 45 thousand for a car")

    response = await agent.handle_turn("alice", "no, not yet")
    assert response.application is None
    assert not response.awaiting_confirmation
    assert response.fields.amount == 45000
    assert store.applications == []


@pytest.mark.asyncio
async def test_yes_while_store_is_down_keeps_waiting(conversation_service, loan_service, store):
    llm = FakeLLM([CompletionResult(text="Thanks!", hint={"monthlyIncome": 8000})])
    agent = _agent(llm, conversation_service, loan_service)
    await agent.handle_turn("alice", "I need 45 thousand for a car")

    store.fail = True
    response = await agent.handle_turn("alice", "yes")
    assert response.application is None
    assert response.awaiting_confirmation
    assert "couldn't save" in response.reply


@pytest.mark.asyncio
async def test_explicit_submit_requires_complete_draft(conversation_service, loan_service):
    agent = _agent(FakeLLM(), conversation_service, loan_service)
    session = await conversation_service.start_or_resume("alice")
    with pytest.raises(DecisionIncomplete):
        await agent.submit(session)
