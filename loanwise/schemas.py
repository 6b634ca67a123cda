from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .fields import INPUT_FIELDS, REQUIRED_FIELDS, LoanStatus


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnKind(str, Enum):
    TEXT = "text"
    VOICE = "voice"


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    user_id: str
    sender: Sender
    content: str
    created_at: datetime
    kind: TurnKind = TurnKind.TEXT
    sequence: int = 0


class LoanFieldSet(BaseModel):
    """Draft loan fields accumulated over a conversation."""

    applicant_name: str | None = None
    amount: float | None = None
    loan_type: str | None = None
    credit_score: int | None = None
    monthly_income: float | None = None
    employment_status: str | None = None
    purpose: str | None = None
    term_months: int | None = None

    # Filled in by the decision engine.
    interest_rate: float | None = None
    decided_term_months: int | None = None
    status: LoanStatus = LoanStatus.PENDING

    def missing(self, names: tuple[str, ...] = REQUIRED_FIELDS) -> list[str]:
        return [name for name in names if getattr(self, name) is None]

    def next_missing(self) -> str | None:
        missing = self.missing(INPUT_FIELDS[:6])
        return missing[0] if missing else None

    def inputs(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in INPUT_FIELDS}


class FactorEffect(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class Factor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    effect: FactorEffect
    weight: float


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: LoanStatus
    confidence: float
    factors: list[Factor]
    interest_rate: float | None = None
    term_months: int | None = None
    missing_fields: list[str] = Field(default_factory=list)
    risk_score: float | None = None
    debt_service_ratio: float | None = None
    monthly_payment: float | None = None
    conditions: list[str] = Field(default_factory=list)


class ConversationSession(BaseModel):
    conversation_id: str
    user_id: str
    turns: list[ConversationTurn] = Field(default_factory=list)
    fields: LoanFieldSet = Field(default_factory=LoanFieldSet)
    decision: Decision | None = None
    last_activity_at: datetime
    locked_fields: set[str] = Field(default_factory=set)
    awaiting_confirmation: bool = False
    degraded: bool = False
    expecting: str | None = None


class ConversationSummary(BaseModel):
    conversation_id: str
    label: str
    message_count: int
    last_activity_at: datetime


class LoanApplicationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    user_id: str
    conversation_id: str | None = None
    application_date: datetime
    applicant_name: str | None = None
    amount: float
    loan_type: str
    credit_score: int | None = None
    monthly_income: float
    employment_status: str | None = None
    purpose: str | None = None
    interest_rate: float | None = None
    term_months: int | None = None
    monthly_payment: float | None = None
    status: str


class ChatRequest(BaseModel):
    user_id: str
    message: str
    conversation_id: str | None = None
    kind: TurnKind = TurnKind.TEXT


class ChatResponse(BaseModel):
    conversation_id: str
    reply: str
    fields: LoanFieldSet
    decision: Decision | None = None
    changed_fields: list[str] = Field(default_factory=list)
    pending_fields: list[str] = Field(default_factory=list)
    awaiting_confirmation: bool = False
    application: LoanApplicationRecord | None = None
    degraded: bool = False


class SessionRequest(BaseModel):
    user_id: str
    conversation_id: str | None = None


class FieldEdit(SessionRequest):
    field: str
    value: Any


class StatusUpdate(BaseModel):
    status: Literal["pending", "approved", "rejected", "needs-info"]
