import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .config import settings
from .errors import (
    CollaboratorUnavailable,
    DecisionIncomplete,
    SubmissionNotAllowed,
    ValidationError,
)
from .extractor import ExtractionResult, extract, extract_transcript, merge_fields
from .fields import INPUT_FIELDS, LoanStatus, require
from .repository import MessageStore
from .schemas import (
    ConversationSession,
    ConversationSummary,
    ConversationTurn,
    Decision,
    LoanApplicationRecord,
    LoanFieldSet,
    Sender,
    TurnKind,
)
from .underwriting import UnderwritingPolicy, apply_decision, decide

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TurnOutcome:
    turn: ConversationTurn
    extraction: ExtractionResult
    decision: Decision


class ConversationService:
    """
    Authoritative in-process view of each user's current conversation.

    Mutations of one session (appends, field updates, clears) are serialised
    through a lock per conversation id, so interleaved text and voice input
    land in submission order. Turns are persisted fire-and-forget: a store
    failure is logged and marks the session degraded, it never reaches the
    conversation flow.
    """

    def __init__(
        self,
        store: MessageStore,
        policy: UnderwritingPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.policy = policy or UnderwritingPolicy.from_settings()
        self.clock = clock
        self._active: dict[str, ConversationSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._pending: set[asyncio.Task] = set()

    @staticmethod
    def day_bucket_id(user_id: str, now: datetime) -> str:
        return f"{user_id}-{now:%Y%m%d}"

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    def active(self, user_id: str) -> ConversationSession | None:
        return self._active.get(user_id)

    def _activate(self, session: ConversationSession) -> None:
        previous = self._active.get(session.user_id)
        self._active[session.user_id] = session
        if previous is None or previous.conversation_id == session.conversation_id:
            return
        # an unlocked lock has no waiters
        lock = self._locks.get(previous.conversation_id)
        if lock is not None and not lock.locked():
            del self._locks[previous.conversation_id]

    async def start_or_resume(
        self, user_id: str, conversation_id: str | None = None
    ) -> ConversationSession:
        current = self._active.get(user_id)
        if current and conversation_id in (None, current.conversation_id):
            return current
        async with self._user_locks.setdefault(user_id, asyncio.Lock()):
            # another caller may have resumed while this one waited
            current = self._active.get(user_id)
            if current and conversation_id in (None, current.conversation_id):
                return current
            return await self._resume(user_id, conversation_id)

    async def _resume(self, user_id: str, conversation_id: str | None) -> ConversationSession:
        now = self.clock()
        session = ConversationSession(
            conversation_id=conversation_id or self.day_bucket_id(user_id, now),
            user_id=user_id,
            last_activity_at=now,
        )
        try:
            turns = await self.store.get_messages(user_id)
        except CollaboratorUnavailable as exc:
            logger.warning("Starting %s in memory only: %s", session.conversation_id, exc)
            session.degraded = True
        else:
            session.turns = sorted(
                (t for t in turns if t.conversation_id == session.conversation_id),
                key=lambda t: (t.created_at, t.sequence),
            )
            if session.turns:
                self._redecide(session, extract_transcript(session.turns))
                session.last_activity_at = session.turns[-1].created_at
                logger.info(
                    "Resumed %s with %d turns", session.conversation_id, len(session.turns)
                )

        self._activate(session)
        return session

    async def new_conversation(self, user_id: str) -> ConversationSession:
        async with self._user_locks.setdefault(user_id, asyncio.Lock()):
            session = ConversationSession(
                conversation_id=f"{user_id}-{uuid.uuid4().hex[:12]}",
                user_id=user_id,
                last_activity_at=self.clock(),
            )
            self._activate(session)
        return session

    def _append_locked(
        self, session: ConversationSession, sender: Sender, content: str, kind: TurnKind
    ) -> ConversationTurn:
        now = self.clock()
        turn = ConversationTurn(
            id=uuid.uuid4().hex,
            conversation_id=session.conversation_id,
            user_id=session.user_id,
            sender=Sender(sender),
            content=content,
            created_at=now,
            kind=TurnKind(kind),
            sequence=session.turns[-1].sequence + 1 if session.turns else 0,
        )
        session.turns.append(turn)
        session.last_activity_at = now
        task = asyncio.create_task(self._persist(session, turn))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return turn

    async def _persist(self, session: ConversationSession, turn: ConversationTurn) -> None:
        try:
            await self.store.append_message(turn)
        except CollaboratorUnavailable as exc:
            session.degraded = True
            logger.warning("Turn %s kept in memory only: %s", turn.id, exc)
        except Exception:
            session.degraded = True
            logger.exception("Unexpected error persisting turn %s", turn.id)

    def _redecide(self, session: ConversationSession, fields: LoanFieldSet) -> Decision:
        inputs_changed = fields.inputs() != session.fields.inputs()
        decision = decide(fields, self.policy)
        session.fields = apply_decision(fields, decision)
        session.decision = decision
        session.expecting = session.fields.next_missing()
        # terms the user confirms must be the terms last presented
        if inputs_changed or decision.status != LoanStatus.APPROVED:
            session.awaiting_confirmation = False
        return decision

    async def append_turn(
        self,
        session: ConversationSession,
        sender: Sender,
        content: str,
        kind: TurnKind = TurnKind.TEXT,
    ) -> ConversationTurn:
        async with self._lock(session.conversation_id):
            return self._append_locked(session, sender, content, kind)

    async def ingest_user_turn(
        self,
        session: ConversationSession,
        content: str,
        kind: TurnKind = TurnKind.TEXT,
    ) -> TurnOutcome:
        """Append a user turn and fold what it says into the draft fields in one step."""
        async with self._lock(session.conversation_id):
            turn = self._append_locked(session, Sender.USER, content, kind)
            extraction = extract(
                content,
                session.fields,
                expecting=session.expecting,
                locked=session.locked_fields,
            )
            decision = self._redecide(session, extraction.updated_fields)
        if extraction.changed_field_names:
            logger.info(
                "%s fields changed: %s -> %s",
                session.conversation_id,
                ", ".join(extraction.changed_field_names),
                decision.status.value,
            )
        return TurnOutcome(turn=turn, extraction=extraction, decision=decision)

    async def apply_hint(self, session: ConversationSession, hint: dict) -> ExtractionResult:
        async with self._lock(session.conversation_id):
            extraction = extract(None, session.fields, hint=hint, locked=session.locked_fields)
            if extraction.changed_field_names:
                self._redecide(session, extraction.updated_fields)
        return extraction

    async def edit_field(self, session: ConversationSession, field: str, value) -> Decision:
        if field in ("interest_rate", "status"):
            raise ValidationError(field, "read-only")
        value = require(field, value)
        async with self._lock(session.conversation_id):
            fields, _ = merge_fields(session.fields, {field: value})
            session.locked_fields.add(field)
            return self._redecide(session, fields)

    async def clear(self, session: ConversationSession) -> bool:
        async with self._lock(session.conversation_id):
            session.turns.clear()
            session.fields = LoanFieldSet()
            session.decision = None
            session.locked_fields.clear()
            session.awaiting_confirmation = False
            session.expecting = None
            # let in-flight appends land before deleting, or they would resurrect turns
            await self.flush()
            try:
                await self.store.clear_messages(session.user_id, session.conversation_id)
            except CollaboratorUnavailable as exc:
                session.degraded = True
                logger.warning("Cleared %s in memory only: %s", session.conversation_id, exc)
        return True

    async def list_recent(self, user_id: str, limit: int | None = None) -> list[ConversationSummary]:
        await self.flush()
        try:
            turns = await self.store.get_messages(user_id)
        except CollaboratorUnavailable as exc:
            logger.warning("Recent conversations unavailable for %s: %s", user_id, exc)
            return []

        grouped: dict[str, list[ConversationTurn]] = {}
        for turn in turns:
            grouped.setdefault(turn.conversation_id, []).append(turn)

        summaries = []
        for conversation_id, group in grouped.items():
            group.sort(key=lambda t: (t.created_at, t.sequence))
            first_user = next((t for t in group if t.sender == Sender.USER), None)
            summaries.append(
                ConversationSummary(
                    conversation_id=conversation_id,
                    label=_label((first_user or group[-1]).content),
                    message_count=len(group),
                    last_activity_at=group[-1].created_at,
                )
            )
        summaries.sort(key=lambda s: s.last_activity_at, reverse=True)
        return summaries[: limit or settings.recent_conversations_limit]

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def _label(content: str) -> str:
    content = " ".join(content.split())
    if not content:
        return "Chat Session"
    size = settings.summary_label_length
    return content[:size] + "..." if len(content) > size else content


class LoanService:
    def __init__(
        self,
        store: MessageStore,
        policy: UnderwritingPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.policy = policy or UnderwritingPolicy.from_settings()
        self.clock = clock

    async def submit(self, session: ConversationSession) -> LoanApplicationRecord:
        """Turn the approved draft into an application record. Requires an explicit user action."""
        decision = session.decision or decide(session.fields, self.policy)
        if decision.status in (LoanStatus.NEEDS_INFO, LoanStatus.PENDING):
            raise DecisionIncomplete(decision.missing_fields)
        if decision.status != LoanStatus.APPROVED:
            raise SubmissionNotAllowed(f"application is {decision.status.value}")

        fields = session.fields
        record = LoanApplicationRecord(
            user_id=session.user_id,
            conversation_id=session.conversation_id,
            application_date=self.clock(),
            **{name: getattr(fields, name) for name in INPUT_FIELDS if name != "term_months"},
            interest_rate=decision.interest_rate,
            term_months=decision.term_months,
            monthly_payment=decision.monthly_payment,
            status=decision.status.value,
        )
        created = await self.store.create_application(record)
        session.awaiting_confirmation = False
        logger.info("Submitted application %s for %s", created.id, session.user_id)
        return created

    async def list_applications(self, user_id: str) -> list[LoanApplicationRecord]:
        try:
            return await self.store.get_applications(user_id)
        except CollaboratorUnavailable as exc:
            logger.warning("Applications unavailable for %s: %s", user_id, exc)
            return []

    async def update_status(self, application_id: int, status: str) -> bool:
        return await self.store.update_application_status(application_id, require("status", status))
