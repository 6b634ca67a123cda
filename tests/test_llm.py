from datetime import datetime, timezone

import httpx
import pytest

from loanwise import llm as llm_module
from loanwise.errors import CollaboratorUnavailable
from loanwise.llm import LLMClient, split_field_hint
from loanwise.schemas import ConversationTurn, LoanFieldSet, Sender


class FakeResp:
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json


class FakeClient:
    def __init__(self, responses):
        self.responses = iter(responses)
        self.requests = []

    async def post(self, url, json=None, headers=None, data=None, files=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "data": data})
        response = next(self.responses)
        if isinstance(response, Exception):
            raise response
        return response

    async def aclose(self):
        pass


def _reply(content, finish_reason="stop"):
    return FakeResp(
        json_data={"choices": [{"message": {"content": content}, "finish_reason": finish_reason}]}
    )


def _client(responses, **kwargs):
    client = LLMClient(base_url="http://llm.test/v1", **kwargs)
    client.client = FakeClient(responses)
    return client


def _turns(*pairs):
    now = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)
    return [
        ConversationTurn(
            id=str(i),
            conversation_id="alice-20260314",
            user_id="alice",
            sender=sender,
            content=content,
            created_at=now,
            sequence=i,
        )
        for i, (sender, content) in enumerate(pairs)
    ]


@pytest.mark.asyncio
async def test_complete_splits_field_hint():
    client = _client([_reply('What is your monthly income?\nFIELDS: {"amount": 45000, "loanType": "car"}')])
    result = await client.complete(
        _turns((Sender.USER, "I need 45k for a car")), "system prompt", LoanFieldSet()
    )
    assert result.text == "What is your monthly income?"
    assert result.hint == {"amount": 45000, "loanType": "car"}

    request = client.client.requests[0]
    assert request["url"] == "http://llm.test/v1/chat/completions"
    assert request["json"]["messages"][0] == {"role": "system", "content": "system prompt"}
    assert request["json"]["messages"][-1] == {"role": "user", "content": "I need 45k for a car"}


@pytest.mark.asyncio
async def test_complete_sends_recent_history_only(monkeypatch):
    monkeypatch.setattr(llm_module.settings, "history_window", 2)
    client = _client([_reply("ok")])
    await client.complete(
        _turns(
            (Sender.USER, "one"),
            (Sender.ASSISTANT, "two"),
            (Sender.SYSTEM, "notice"),
            (Sender.USER, "three"),
        ),
        "prompt",
        LoanFieldSet(),
    )
    messages = client.client.requests[0]["json"]["messages"]
    assert [m["content"] for m in messages[2:]] == ["three"]


@pytest.mark.asyncio
async def test_api_key_is_sent_as_bearer():
    client = _client([_reply("ok")], api_key="secret")
    await client.chat([{"role": "user", "content": "hi"}])
    assert client.client.requests[0]["headers"]["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, reason",
    [
        (FakeResp(status_code=429), "rate limited"),
        (FakeResp(status_code=500), "HTTP 500"),
        (FakeResp(status_code=200), "malformed response"),
        (_reply("", finish_reason="content_filter"), "content-safety refusal"),
        (httpx.ConnectError("connection refused"), "transport error: connection refused"),
    ],
)
async def test_chat_failures_are_collaborator_errors(response, reason):
    client = _client([response])
    with pytest.raises(CollaboratorUnavailable) as info:
        await client.chat([{"role": "user", "content": "hi"}])
    assert info.value.service == "completion"
    assert info.value.reason == reason


@pytest.mark.asyncio
async def test_transcribe():
    client = _client([FakeResp(json_data={"text": "I need a car loan"}), FakeResp(status_code=503)])
    assert await client.transcribe(b"audio") == "I need a car loan"
    with pytest.raises(CollaboratorUnavailable) as info:
        await client.transcribe(b"audio")
    assert info.value.service == "transcription"


def test_split_field_hint_variants():
    fenced = split_field_hint('Noted.\n```json\n{"credit_score": 720}\n```')
    assert fenced.text == "Noted."
    assert fenced.hint == {"credit_score": 720}

    broken = split_field_hint("Sure.\nFIELDS: {not json}")
    assert broken.text == "Sure."
    assert broken.hint == {}

    plain = split_field_hint("  Just text.  ")
    assert plain.text == "Just text."
    assert plain.hint == {}
