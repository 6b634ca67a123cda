from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .errors import CollaboratorUnavailable
from .schemas import ConversationTurn, LoanApplicationRecord


class MessageStore(Protocol):
    """
    Persistence collaborator. Every call may fail with ``CollaboratorUnavailable``;
    callers fall back to in-memory operation.
    """

    async def get_messages(self, user_id: str) -> list[ConversationTurn]:
        ...

    async def append_message(self, turn: ConversationTurn) -> ConversationTurn:
        ...

    async def clear_messages(self, user_id: str, conversation_id: str | None = None) -> bool:
        ...

    async def get_applications(self, user_id: str) -> list[LoanApplicationRecord]:
        ...

    async def create_application(self, record: LoanApplicationRecord) -> LoanApplicationRecord:
        ...

    async def update_application_status(self, application_id: int, status: str) -> bool:
        ...


def _to_turn(row: models.ChatMessage) -> ConversationTurn:
    return ConversationTurn(
        id=row.id,
        conversation_id=row.conversation_id,
        user_id=row.user_id,
        sender=row.sender,
        content=row.content,
        created_at=row.created_at,
        kind=row.kind,
        sequence=row.sequence,
    )


class SqlAlchemyStore:
    """Opens a short-lived session per call so fire-and-forget writes outlive the request."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise CollaboratorUnavailable("persistence", f"{operation}: {exc}") from exc

    async def get_messages(self, user_id: str) -> list[ConversationTurn]:
        async with self._session("get_messages") as session:
            result = await session.execute(
                select(models.ChatMessage)
                .where(models.ChatMessage.user_id == user_id)
                .order_by(models.ChatMessage.created_at, models.ChatMessage.sequence)
            )
            return [_to_turn(row) for row in result.scalars().all()]

    async def append_message(self, turn: ConversationTurn) -> ConversationTurn:
        async with self._session("append_message") as session:
            session.add(
                models.ChatMessage(
                    id=turn.id,
                    user_id=turn.user_id,
                    conversation_id=turn.conversation_id,
                    sender=turn.sender.value,
                    kind=turn.kind.value,
                    content=turn.content,
                    sequence=turn.sequence,
                    created_at=turn.created_at,
                )
            )
            await session.commit()
            return turn

    async def clear_messages(self, user_id: str, conversation_id: str | None = None) -> bool:
        async with self._session("clear_messages") as session:
            statement = delete(models.ChatMessage).where(models.ChatMessage.user_id == user_id)
            if conversation_id is not None:
                statement = statement.where(models.ChatMessage.conversation_id == conversation_id)
            await session.execute(statement)
            await session.commit()
            return True

    async def get_applications(self, user_id: str) -> list[LoanApplicationRecord]:
        async with self._session("get_applications") as session:
            result = await session.execute(
                select(models.LoanApplication)
                .where(models.LoanApplication.user_id == user_id)
                .order_by(models.LoanApplication.application_date.desc())
            )
            return [LoanApplicationRecord.model_validate(row) for row in result.scalars().all()]

    async def create_application(self, record: LoanApplicationRecord) -> LoanApplicationRecord:
        async with self._session("create_application") as session:
            row = models.LoanApplication(**record.model_dump(exclude={"id"}))
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return LoanApplicationRecord.model_validate(row)

    async def update_application_status(self, application_id: int, status: str) -> bool:
        async with self._session("update_application_status") as session:
            row = await session.get(models.LoanApplication, application_id)
            if row is None:
                return False
            row.status = status
            await session.commit()
            return True
