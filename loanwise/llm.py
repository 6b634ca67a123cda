import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from .config import settings
from .errors import CollaboratorUnavailable
from .schemas import ConversationTurn, LoanFieldSet, Sender

logger = logging.getLogger(__name__)

_FIELDS_LINE_RE = re.compile(r"^\s*FIELDS:\s*(\{.*\})\s*$", re.M)
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.S)


@dataclass
class CompletionResult:
    text: str
    hint: dict[str, Any] = field(default_factory=dict)


class CompletionClient(Protocol):
    async def complete(
        self,
        transcript: list[ConversationTurn],
        system_prompt: str,
        fields: LoanFieldSet,
    ) -> CompletionResult:
        ...


def split_field_hint(content: str) -> CompletionResult:
    """
    Separate the reply text from an optional JSON field sidecar, emitted either
    as a trailing ``FIELDS: {...}`` line or as a fenced json block.
    """
    for pattern in (_FIELDS_LINE_RE, _FENCED_JSON_RE):
        match = pattern.search(content)
        if not match:
            continue
        try:
            hint = json.loads(match.group(1))
        except json.JSONDecodeError:
            logger.debug("Model emitted a malformed field hint")
            hint = None
        text = (content[: match.start()] + content[match.end():]).strip()
        return CompletionResult(text=text, hint=hint if isinstance(hint, dict) else {})
    return CompletionResult(text=content.strip())


class LLMClient:
    """
    Minimal OpenAI-compatible chat client.
    Works with local LLaMA runtimes such as Ollama/llama.cpp that expose /v1/chat/completions.
    """

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        self.model = model or settings.llm_model
        self.base_url = base_url or settings.llm_base_url or "http://localhost:11434/v1"
        self.api_key = api_key or settings.llm_api_key
        self.client = httpx.AsyncClient(timeout=timeout or settings.llm_timeout_s)

    async def chat(self, messages: list[dict[str, str]], temperature: float = 0.2) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions", json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("completion", f"transport error: {exc}") from exc

        if response.status_code == 429:
            raise CollaboratorUnavailable("completion", "rate limited")
        if response.status_code >= 400:
            raise CollaboratorUnavailable("completion", f"HTTP {response.status_code}")

        try:
            choice = response.json()["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise CollaboratorUnavailable("completion", "malformed response") from exc
        if choice.get("finish_reason") == "content_filter" or not content:
            raise CollaboratorUnavailable("completion", "content-safety refusal")
        return content

    async def complete(
        self,
        transcript: list[ConversationTurn],
        system_prompt: str,
        fields: LoanFieldSet,
    ) -> CompletionResult:
        messages = [{"role": "system", "content": system_prompt}]
        messages.append(
            {
                "role": "system",
                "content": "Current loan fields: " + json.dumps(fields.model_dump(mode="json")),
            }
        )
        for turn in transcript[-settings.history_window:]:
            if turn.sender == Sender.SYSTEM:
                continue
            messages.append({"role": turn.sender.value, "content": turn.content})
        content = await self.chat(messages)
        return split_field_hint(content)

    async def transcribe(self, audio: bytes) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = await self.client.post(
                f"{self.base_url}/audio/transcriptions",
                data={"model": settings.transcription_model},
                files={"file": ("speech.webm", audio, "application/octet-stream")},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("transcription", f"transport error: {exc}") from exc
        if response.status_code >= 400:
            raise CollaboratorUnavailable("transcription", f"HTTP {response.status_code}")
        try:
            return response.json()["text"]
        except (ValueError, KeyError, TypeError) as exc:
            raise CollaboratorUnavailable("transcription", "malformed response") from exc

    async def aclose(self) -> None:
        await self.client.aclose()
