import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from loanwise.errors import CollaboratorUnavailable
from loanwise.llm import CompletionResult
from loanwise.services import ConversationService, LoanService


class Clock:
    """Deterministic clock that ticks one second per reading."""

    def __init__(self, start=datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class FakeStore:
    def __init__(self):
        self.messages = []
        self.applications = []
        self.fail = False

    def _check(self, operation):
        if self.fail:
            raise CollaboratorUnavailable("persistence", f"{operation}: offline")

    async def get_messages(self, user_id):
        self._check("get_messages")
        return [turn for turn in self.messages if turn.user_id == user_id]

    async def append_message(self, turn):
        self._check("append_message")
        self.messages.append(turn)
        return turn

    async def clear_messages(self, user_id, conversation_id=None):
        self._check("clear_messages")
        self.messages = [
            turn
            for turn in self.messages
            if turn.user_id != user_id
            or (conversation_id is not None and turn.conversation_id != conversation_id)
        ]
        return True

    async def get_applications(self, user_id):
        self._check("get_applications")
        return [record for record in self.applications if record.user_id == user_id]

    async def create_application(self, record):
        self._check("create_application")
        created = record.model_copy(update={"id": len(self.applications) + 1})
        self.applications.append(created)
        return created

    async def update_application_status(self, application_id, status):
        self._check("update_application_status")
        for index, record in enumerate(self.applications):
            if record.id == application_id:
                self.applications[index] = record.model_copy(update={"status": status})
                return True
        return False


class FakeLLM:
    """Scripted completion client; entries may be results or exceptions to raise."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []
        self.gate = None

    async def complete(self, transcript, system_prompt, fields):
        self.calls.append([turn.content for turn in transcript])
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else CompletionResult(text="Tell me more.")
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def transcribe(self, audio):
        return audio.decode()

    async def aclose(self):
        pass


class FakeSynthesizer:
    def __init__(self, auto_complete=True):
        self.spoken = []
        self.stopped = 0
        self.release = asyncio.Event()
        if auto_complete:
            self.release.set()

    async def speak(self, text):
        self.spoken.append(text)
        await self.release.wait()

    async def stop(self):
        self.stopped += 1
        self.release.set()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def conversation_service(store, clock):
    return ConversationService(store, clock=clock)


@pytest.fixture
def loan_service(store, clock):
    return LoanService(store, clock=clock)
