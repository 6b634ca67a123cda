"""
Voice turn-taking state machine.

One asyncio queue feeds every event to the machine, and each event is handled
to completion before the next is taken. Slow work (transcription, completion,
playback) runs in a background task that posts its outcome back as an event
stamped with the generation it started under. A barge-in bumps the generation
and cancels that task, so a result that still arrives is recognised as stale
and dropped.

    Idle -> Listening -> Transcribing -> Thinking -> Speaking -> Listening
                           Thinking / Speaking --barge-in--> Cancelled -> Listening
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from .config import settings
from .errors import CancelledOperation, CollaboratorUnavailable
from .llm import CompletionResult
from .schemas import ConversationSession, Sender, TurnKind
from .services import TurnOutcome

logger = logging.getLogger(__name__)

TRANSCRIPTION_NOTICE = "Sorry, I couldn't make that out. Please try again."
COMPLETION_NOTICE = "I'm having trouble responding right now. Please try again."
PAUSED_NOTICE = "Voice mode is paused after repeated errors. Resume when you're ready."


class VoiceState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    THINKING = "thinking"
    SPEAKING = "speaking"
    CANCELLED = "cancelled"


# Events from the speech front end. A ``generation`` of None means "current".
@dataclass(frozen=True)
class StartListening:
    pass


@dataclass(frozen=True)
class SpeechStart:
    pass


@dataclass(frozen=True)
class SpeechEnd:
    audio: bytes = b""


@dataclass(frozen=True)
class PartialTranscript:
    text: str


@dataclass(frozen=True)
class FinalTranscript:
    text: str
    generation: int | None = None


@dataclass(frozen=True)
class TranscriptionFailed:
    error: str
    generation: int | None = None


@dataclass(frozen=True)
class PlaybackComplete:
    generation: int | None = None


# Results of the machine's own background tasks.
@dataclass(frozen=True)
class CompletionReady:
    result: CompletionResult
    generation: int
    changed: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompletionFailed:
    error: str
    generation: int


@dataclass(frozen=True)
class SilenceTimeout:
    generation: int


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes) -> str:
        ...


class Synthesizer(Protocol):
    async def speak(self, text: str) -> None:
        """Return once playback has finished."""
        ...

    async def stop(self) -> None:
        ...


class Responder(Protocol):
    async def ingest(
        self, session: ConversationSession, message: str, kind: TurnKind
    ) -> TurnOutcome: ...

    async def complete(self, session: ConversationSession) -> CompletionResult: ...

    async def commit_reply(
        self,
        session: ConversationSession,
        result: CompletionResult,
        kind: TurnKind,
        changed: list[str] | None = None,
    ) -> tuple[str, list[str]]: ...


class NotifyingService(Protocol):
    async def append_turn(
        self, session: ConversationSession, sender: Sender, content: str, kind: TurnKind
    ): ...


TransitionListener = Callable[[VoiceState, VoiceState], None]


class VoiceTurnMachine:
    def __init__(
        self,
        session: ConversationSession,
        responder: Responder,
        conversation_service: NotifyingService,
        transcriber: Transcriber,
        synthesizer: Synthesizer,
        silence_timeout_s: float | None = None,
        max_consecutive_failures: int | None = None,
        continuous: bool | None = None,
    ):
        self.session = session
        self.responder = responder
        self.conversation_service = conversation_service
        self.transcriber = transcriber
        self.synthesizer = synthesizer
        self.silence_timeout_s = (
            settings.silence_timeout_s if silence_timeout_s is None else silence_timeout_s
        )
        self.max_consecutive_failures = max_consecutive_failures or settings.max_consecutive_failures
        self.continuous = settings.continuous_listening if continuous is None else continuous

        self.state = VoiceState.IDLE
        self.generation = 0
        self.consecutive_failures = 0
        self.paused = False
        self.error: str | None = None
        self.partial_text = ""
        self.speech_active = False

        self._queue: asyncio.Queue = asyncio.Queue()
        self._runner: asyncio.Task | None = None
        self._work: asyncio.Task | None = None
        self._silence: asyncio.Task | None = None
        self._listeners: list[TransitionListener] = []
        self._handlers = {
            StartListening: self._on_start,
            SpeechStart: self._on_speech_start,
            SpeechEnd: self._on_speech_end,
            PartialTranscript: self._on_partial,
            FinalTranscript: self._on_final_transcript,
            TranscriptionFailed: self._on_transcription_failed,
            CompletionReady: self._on_completion_ready,
            CompletionFailed: self._on_completion_failed,
            PlaybackComplete: self._on_playback_complete,
            SilenceTimeout: self._on_silence_timeout,
        }

    # -- public API -------------------------------------------------------

    def on_transition(self, listener: TransitionListener) -> Callable[[], None]:
        """Register ``listener(old, new)``; returns a callable that unregisters it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def post(self, event) -> None:
        self._queue.put_nowait(event)

    async def start(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run())
        self.post(StartListening())

    async def resume(self) -> None:
        """Clear a paused error state and start listening again."""
        self.paused = False
        self.error = None
        self.consecutive_failures = 0
        await self.start()

    async def stop(self) -> None:
        self.generation += 1
        for task in (self._work, self._silence, self._runner):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._work, self._silence, self._runner):
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Voice task failed during shutdown")
        self._work = self._silence = self._runner = None
        if self.state == VoiceState.SPEAKING:
            await self.synthesizer.stop()
        if self.state != VoiceState.IDLE:
            self._transition(VoiceState.IDLE)

    async def wait_for(self, state: VoiceState, timeout: float | None = 1.0) -> bool:
        """Wait until the machine enters ``state``. Returns False on timeout."""
        if self.state == state:
            return True
        reached = asyncio.Event()

        def listener(old: VoiceState, new: VoiceState) -> None:
            if new == state:
                reached.set()

        unsubscribe = self.on_transition(listener)
        try:
            await asyncio.wait_for(reached.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            except Exception:
                logger.exception("Voice event %s failed", type(event).__name__)
                self._abandon_work()
                if self.state != VoiceState.IDLE:
                    self._transition(VoiceState.LISTENING)

    async def process(self, event) -> None:
        try:
            self._check_current(event)
            await self._handlers[type(event)](event)
        except CancelledOperation as exc:
            logger.debug("Dropped %s: %s", type(event).__name__, exc)

    # -- internals --------------------------------------------------------

    def _check_current(self, event) -> None:
        generation = getattr(event, "generation", None)
        if generation is not None and generation != self.generation:
            raise CancelledOperation(
                f"generation {generation} superseded by {self.generation}"
            )

    def _transition(self, new: VoiceState) -> None:
        old, self.state = self.state, new
        logger.debug("Voice %s: %s -> %s", self.session.conversation_id, old.value, new.value)
        for listener in list(self._listeners):
            listener(old, new)

    def _spawn(self, coro) -> None:
        self._work = asyncio.create_task(coro)

    def _abandon_work(self) -> None:
        self.generation += 1
        if self._work is not None and not self._work.done():
            self._work.cancel()
        self._work = None

    def _cancel_silence(self) -> None:
        if self._silence is not None and not self._silence.done():
            self._silence.cancel()
        self._silence = None

    async def _notice(self, content: str) -> None:
        await self.conversation_service.append_turn(
            self.session, Sender.SYSTEM, content, TurnKind.VOICE
        )

    async def _on_start(self, event: StartListening) -> None:
        if self.paused:
            logger.info("Voice %s is paused; resume() required", self.session.conversation_id)
            return
        if self.state == VoiceState.IDLE:
            self._transition(VoiceState.LISTENING)

    async def _on_speech_start(self, event: SpeechStart) -> None:
        if self.state in (VoiceState.THINKING, VoiceState.SPEAKING):
            was_speaking = self.state == VoiceState.SPEAKING
            self._abandon_work()
            self._transition(VoiceState.CANCELLED)
            if was_speaking:
                await self.synthesizer.stop()
            logger.info("Barge-in on %s", self.session.conversation_id)
            self._transition(VoiceState.LISTENING)
        if self.state != VoiceState.LISTENING:
            return
        self.speech_active = True
        self._cancel_silence()
        self._silence = asyncio.create_task(self._silence_timer(self.generation))

    async def _silence_timer(self, generation: int) -> None:
        await asyncio.sleep(self.silence_timeout_s)
        self.post(SilenceTimeout(generation))

    async def _on_silence_timeout(self, event: SilenceTimeout) -> None:
        if self.state == VoiceState.LISTENING and self.speech_active:
            logger.debug("False speech trigger on %s", self.session.conversation_id)
            self.speech_active = False

    async def _on_speech_end(self, event: SpeechEnd) -> None:
        if self.state != VoiceState.LISTENING:
            return
        self._cancel_silence()
        self.speech_active = False
        if not event.audio:
            return
        self._transition(VoiceState.TRANSCRIBING)
        self._spawn(self._transcribe(event.audio, self.generation))

    async def _transcribe(self, audio: bytes, generation: int) -> None:
        try:
            text = await self.transcriber.transcribe(audio)
        except CollaboratorUnavailable as exc:
            self.post(TranscriptionFailed(str(exc), generation))
        except Exception as exc:
            logger.exception("Transcriber crashed on %s", self.session.conversation_id)
            self.post(TranscriptionFailed(str(exc) or type(exc).__name__, generation))
        else:
            self.post(FinalTranscript(text, generation))

    async def _on_partial(self, event: PartialTranscript) -> None:
        if self.state in (VoiceState.LISTENING, VoiceState.TRANSCRIBING):
            self.partial_text = event.text

    async def _on_final_transcript(self, event: FinalTranscript) -> None:
        # Front ends that transcribe on their own send the final text straight from Listening.
        if self.state not in (VoiceState.LISTENING, VoiceState.TRANSCRIBING):
            return
        self._cancel_silence()
        self.speech_active = False
        self.partial_text = ""
        text = event.text.strip()
        if not text:
            if self.state == VoiceState.TRANSCRIBING:
                self._transition(VoiceState.LISTENING)
            return
        outcome = await self.responder.ingest(self.session, text, TurnKind.VOICE)
        changed = tuple(outcome.extraction.changed_field_names)
        self._transition(VoiceState.THINKING)
        self._spawn(self._complete(self.generation, changed))

    async def _on_transcription_failed(self, event: TranscriptionFailed) -> None:
        if self.state != VoiceState.TRANSCRIBING:
            return
        logger.warning("Transcription failed on %s: %s", self.session.conversation_id, event.error)
        await self._notice(TRANSCRIPTION_NOTICE)
        self._transition(VoiceState.LISTENING)

    async def _complete(self, generation: int, changed: tuple[str, ...] = ()) -> None:
        try:
            result = await self.responder.complete(self.session)
        except CollaboratorUnavailable as exc:
            self.post(CompletionFailed(str(exc), generation))
        except Exception as exc:
            logger.exception("Completion crashed on %s", self.session.conversation_id)
            self.post(CompletionFailed(str(exc) or type(exc).__name__, generation))
        else:
            self.post(CompletionReady(result, generation, changed))

    async def _on_completion_ready(self, event: CompletionReady) -> None:
        if self.state != VoiceState.THINKING:
            return
        self.consecutive_failures = 0
        reply, _ = await self.responder.commit_reply(
            self.session, event.result, TurnKind.VOICE, changed=list(event.changed)
        )
        self._transition(VoiceState.SPEAKING)
        self._spawn(self._speak(reply, self.generation))

    async def _on_completion_failed(self, event: CompletionFailed) -> None:
        if self.state != VoiceState.THINKING:
            return
        self.consecutive_failures += 1
        logger.warning(
            "Completion failed on %s (%d in a row): %s",
            self.session.conversation_id,
            self.consecutive_failures,
            event.error,
        )
        if self.consecutive_failures >= self.max_consecutive_failures:
            self.paused = True
            self.error = event.error
            await self._notice(PAUSED_NOTICE)
            self._transition(VoiceState.IDLE)
            return
        await self._notice(COMPLETION_NOTICE)
        self._transition(VoiceState.LISTENING)

    async def _speak(self, text: str, generation: int) -> None:
        try:
            await self.synthesizer.speak(text)
        except CollaboratorUnavailable as exc:
            logger.warning("Playback failed on %s: %s", self.session.conversation_id, exc)
        except Exception:
            logger.exception("Playback crashed on %s", self.session.conversation_id)
        self.post(PlaybackComplete(generation))

    async def _on_playback_complete(self, event: PlaybackComplete) -> None:
        if self.state != VoiceState.SPEAKING:
            return
        self._work = None
        self._transition(VoiceState.LISTENING if self.continuous else VoiceState.IDLE)
