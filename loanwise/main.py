import asyncio
import base64
import binascii
import logging

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .agent import AgentOrchestrator
from .config import settings
from .database import SessionLocal, init_models
from .errors import (
    CollaboratorUnavailable,
    DecisionIncomplete,
    LoanwiseError,
    SubmissionNotAllowed,
    UnknownFieldError,
    ValidationError,
)
from .fields import require
from .llm import LLMClient
from .repository import SqlAlchemyStore
from .schemas import (
    ChatRequest,
    ChatResponse,
    ConversationSummary,
    ConversationTurn,
    Decision,
    FieldEdit,
    LoanApplicationRecord,
    LoanFieldSet,
    SessionRequest,
    StatusUpdate,
)
from .services import ConversationService, LoanService
from .underwriting import decide
from .voice import (
    FinalTranscript,
    PartialTranscript,
    SpeechEnd,
    SpeechStart,
    VoiceTurnMachine,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

GREETING = (
    "Hi, I'm LoanWise. Tell me what kind of loan you're looking for "
    "and I'll help you through the application."
)

app = FastAPI(title="LoanWise API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

store = SqlAlchemyStore(SessionLocal)
llm_client = LLMClient()
conversation_service = ConversationService(store)
loan_service = LoanService(store, policy=conversation_service.policy)
agent = AgentOrchestrator(llm_client, loan_service, conversation_service)

ERROR_STATUS = (
    (ValidationError, 422),
    (UnknownFieldError, 422),
    (DecisionIncomplete, 409),
    (SubmissionNotAllowed, 409),
    (CollaboratorUnavailable, 503),
)


@app.on_event("startup")
async def startup_event():
    try:
        await init_models()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database unavailable at startup, conversations stay in memory: %s", exc)


@app.on_event("shutdown")
async def shutdown_event():
    await conversation_service.flush()
    await llm_client.aclose()


@app.exception_handler(LoanwiseError)
async def loanwise_error_handler(request: Request, exc: LoanwiseError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, DecisionIncomplete):
        content["missing"] = exc.missing
    return JSONResponse(status_code=status_code, content=content)


@app.post("/chat", response_model=ChatResponse)
async def chat(body: ChatRequest):
    return await agent.handle_turn(body.user_id, body.message, body.conversation_id, body.kind)


@app.post("/chat/submit", response_model=LoanApplicationRecord)
async def submit_application(body: SessionRequest):
    session = await conversation_service.start_or_resume(body.user_id, body.conversation_id)
    return await agent.submit(session)


@app.patch("/chat/fields", response_model=ChatResponse)
async def edit_field(body: FieldEdit):
    session = await conversation_service.start_or_resume(body.user_id, body.conversation_id)
    await conversation_service.edit_field(session, body.field, body.value)
    return agent.response(session, f"Updated {body.field.replace('_', ' ')}.", [body.field])


@app.post("/conversations/{user_id}/new", response_model=ChatResponse)
async def new_conversation(user_id: str):
    session = await conversation_service.new_conversation(user_id)
    return agent.response(session, GREETING)


@app.get("/conversations/{user_id}", response_model=list[ConversationSummary])
async def recent_conversations(user_id: str, limit: int | None = None):
    return await conversation_service.list_recent(user_id, limit)


@app.get("/conversations/{user_id}/{conversation_id}", response_model=list[ConversationTurn])
async def conversation_turns(user_id: str, conversation_id: str):
    session = await conversation_service.start_or_resume(user_id, conversation_id)
    return session.turns


@app.delete("/conversations/{user_id}/{conversation_id}")
async def clear_conversation(user_id: str, conversation_id: str):
    session = await conversation_service.start_or_resume(user_id, conversation_id)
    return {"cleared": await conversation_service.clear(session)}


@app.get("/applications/{user_id}", response_model=list[LoanApplicationRecord])
async def list_applications(user_id: str):
    return await loan_service.list_applications(user_id)


@app.patch("/applications/{application_id}/status")
async def update_application_status(application_id: int, body: StatusUpdate):
    if not await loan_service.update_status(application_id, body.status):
        raise HTTPException(status_code=404, detail="Application not found")
    return {"id": application_id, "status": body.status}


@app.post("/decide", response_model=Decision)
async def decide_fields(body: LoanFieldSet):
    fields = LoanFieldSet(
        **{
            name: require(name, value)
            for name, value in body.inputs().items()
            if value is not None
        }
    )
    return decide(fields, conversation_service.policy)


class WebSocketSynthesizer:
    """Playback happens in the browser: speak() waits for the client's playback_complete."""

    def __init__(self, outbox: asyncio.Queue):
        self.outbox = outbox
        self._done = asyncio.Event()

    async def speak(self, text: str) -> None:
        self._done.clear()
        await self.outbox.put({"type": "speak", "text": text})
        await self._done.wait()

    async def stop(self) -> None:
        await self.outbox.put({"type": "stop_playback"})
        self._done.set()

    def playback_complete(self) -> None:
        self._done.set()


def _voice_event(message: dict):
    kind = message.get("type")
    if kind == "speech_start":
        return SpeechStart()
    if kind == "speech_end":
        try:
            audio = base64.b64decode(message.get("audio") or "", validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Discarding undecodable audio payload")
            audio = b""
        return SpeechEnd(audio)
    if kind == "partial_transcript":
        return PartialTranscript(message.get("text", ""))
    if kind == "final_transcript":
        return FinalTranscript(message.get("text", ""))
    return None


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        await websocket.send_json(await outbox.get())


@app.websocket("/voice/{user_id}")
async def voice(websocket: WebSocket, user_id: str, conversation_id: str | None = None):
    await websocket.accept()
    session = await conversation_service.start_or_resume(user_id, conversation_id)
    outbox: asyncio.Queue = asyncio.Queue()
    synthesizer = WebSocketSynthesizer(outbox)
    machine = VoiceTurnMachine(session, agent, conversation_service, llm_client, synthesizer)
    machine.on_transition(
        lambda old, new: outbox.put_nowait(
            {
                "type": "state",
                "from": old.value,
                "to": new.value,
                "paused": machine.paused,
                "error": machine.error,
            }
        )
    )
    sender = asyncio.create_task(_pump(websocket, outbox))
    await machine.start()
    try:
        while True:
            message = await websocket.receive_json()
            if message.get("type") == "playback_complete":
                synthesizer.playback_complete()
            elif message.get("type") == "resume":
                await machine.resume()
            else:
                event = _voice_event(message)
                if event is None:
                    logger.debug("Ignoring voice message %r", message.get("type"))
                else:
                    machine.post(event)
    except WebSocketDisconnect:
        logger.info("Voice socket closed for %s", user_id)
    finally:
        await machine.stop()
        sender.cancel()
