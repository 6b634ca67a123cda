from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ChatMessage(Base):
    """One persisted conversation turn, append-only and keyed by user."""

    __tablename__ = "chat_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    conversation_id: Mapped[str] = mapped_column(String(160), index=True)
    sender: Mapped[str] = mapped_column(String(16))
    kind: Mapped[str] = mapped_column(String(16), default="text")
    content: Mapped[str] = mapped_column(Text)
    sequence: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class LoanApplication(Base):
    __tablename__ = "loan_applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    conversation_id: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    applicant_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    amount: Mapped[float] = mapped_column(Float)
    loan_type: Mapped[str] = mapped_column(String(32))
    credit_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    monthly_income: Mapped[float] = mapped_column(Float)
    employment_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    purpose: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    interest_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    term_months: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    monthly_payment: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    application_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )
