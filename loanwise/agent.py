import logging
import re

from .errors import CollaboratorUnavailable, DecisionIncomplete, SubmissionNotAllowed
from .fields import LoanStatus
from .llm import CompletionClient, CompletionResult
from .schemas import (
    ChatResponse,
    ConversationSession,
    Decision,
    LoanApplicationRecord,
    Sender,
    TurnKind,
)
from .services import ConversationService, LoanService, TurnOutcome

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """
You are LoanWise, a friendly loan assistant. Over a natural conversation, collect:
- loan_type (mortgage, auto, personal or business)
- applicant_name
- amount (number)
- monthly_income (number, per month)
- employment_status (full-time, part-time, self-employed, unemployed, retired, student)
- credit_score (300-850, optional)
- purpose (short text, optional)
- term_months (12, 36, 60, 180 or 360, optional)

Rules:
1. Ask for one missing detail at a time, in the order above, in one or two short sentences.
2. Never invent values and never quote an interest rate yourself; the system adds the terms.
3. If the user states or corrects a value, end your reply with one line:
   FIELDS: {"field_name": value, ...}
   using only the field names above. Omit the line when nothing new was said.
"""

_YES_RE = re.compile(
    r"^\s*(?:yes|yeah|yep|yup|sure|ok(?:ay)?|confirm(?:ed)?|go ahead|submit(?: it)?|please do|do it)\b",
    re.I,
)
_NO_RE = re.compile(r"^\s*(?:no|nope|not yet|cancel|wait|hold on|don't)\b", re.I)


def _confirmation(message: str) -> bool | None:
    if _YES_RE.match(message):
        return True
    if _NO_RE.match(message):
        return False
    return None


def terms_summary(decision: Decision) -> str:
    years = decision.term_months // 12
    lines = [
        "Good news, you're pre-approved.",
        f"Interest rate: {decision.interest_rate:.2f}% for {decision.term_months} months ({years} years)",
        f"Estimated monthly payment: ${decision.monthly_payment:,.2f}",
    ]
    lines.extend(f"Condition: {condition}" for condition in decision.conditions)
    lines.append("Would you like me to submit this application? (yes/no)")
    return "\n".join(lines)


class AgentOrchestrator:
    """Runs one text turn end to end; the voice machine drives the same steps one by one."""

    def __init__(
        self,
        llm: CompletionClient,
        loan_service: LoanService,
        conversation_service: ConversationService,
    ):
        self.llm = llm
        self.loan_service = loan_service
        self.conversation_service = conversation_service

    async def handle_turn(
        self,
        user_id: str,
        message: str,
        conversation_id: str | None = None,
        kind: TurnKind = TurnKind.TEXT,
    ) -> ChatResponse:
        session = await self.conversation_service.start_or_resume(user_id, conversation_id)

        if session.awaiting_confirmation:
            answer = _confirmation(message)
            if answer is not None:
                await self.conversation_service.append_turn(session, Sender.USER, message, kind)
                if answer:
                    return await self._submit_reply(session, kind)
                session.awaiting_confirmation = False
                reply = "No problem, nothing has been submitted. Tell me what you'd like to change."
                await self.conversation_service.append_turn(session, Sender.ASSISTANT, reply, kind)
                return self.response(session, reply)

        outcome = await self.ingest(session, message, kind)
        result = await self.complete_or_fallback(session)
        reply, changed = await self.commit_reply(
            session, result, kind, changed=outcome.extraction.changed_field_names
        )
        return self.response(session, reply, changed)

    async def ingest(
        self, session: ConversationSession, message: str, kind: TurnKind = TurnKind.TEXT
    ) -> TurnOutcome:
        return await self.conversation_service.ingest_user_turn(session, message, kind)

    async def complete(self, session: ConversationSession) -> CompletionResult:
        return await self.llm.complete(list(session.turns), SYSTEM_PROMPT, session.fields)

    async def complete_or_fallback(self, session: ConversationSession) -> CompletionResult:
        try:
            return await self.complete(session)
        except CollaboratorUnavailable as exc:
            logger.warning("Completion failed for %s: %s", session.conversation_id, exc)
            return CompletionResult(text="")

    async def commit_reply(
        self,
        session: ConversationSession,
        result: CompletionResult,
        kind: TurnKind = TurnKind.TEXT,
        changed: list[str] | None = None,
    ) -> tuple[str, list[str]]:
        """Merge the model's field hint, then log the assistant turn that will be shown or spoken."""
        changed = list(changed or [])
        if result.hint:
            extraction = await self.conversation_service.apply_hint(session, result.hint)
            changed.extend(n for n in extraction.changed_field_names if n not in changed)

        decision = session.decision
        approved = decision is not None and decision.status == LoanStatus.APPROVED
        if approved and (changed or not session.awaiting_confirmation):
            # Rate and payment always come from the decision engine, never the model.
            reply = terms_summary(decision)
            session.awaiting_confirmation = True
        else:
            reply = result.text or self._fallback_question(session)

        await self.conversation_service.append_turn(session, Sender.ASSISTANT, reply, kind)
        return reply, changed

    async def submit(self, session: ConversationSession) -> LoanApplicationRecord:
        application = await self.loan_service.submit(session)
        await self.conversation_service.append_turn(
            session,
            Sender.ASSISTANT,
            f"Your application #{application.id} has been submitted.",
        )
        return application

    async def _submit_reply(self, session: ConversationSession, kind: TurnKind) -> ChatResponse:
        application = None
        try:
            application = await self.loan_service.submit(session)
        except (DecisionIncomplete, SubmissionNotAllowed):
            reply = self._fallback_question(session)
        except CollaboratorUnavailable as exc:
            logger.warning("Submission failed for %s: %s", session.conversation_id, exc)
            reply = "I couldn't save your application just now. Say yes again in a moment to retry."
        else:
            reply = (
                f"Your application #{application.id} has been submitted. "
                "You can track its status under your applications."
            )
        await self.conversation_service.append_turn(session, Sender.ASSISTANT, reply, kind)
        return self.response(session, reply, application=application)

    def response(
        self,
        session: ConversationSession,
        reply: str,
        changed: list[str] | None = None,
        application: LoanApplicationRecord | None = None,
    ) -> ChatResponse:
        return ChatResponse(
            conversation_id=session.conversation_id,
            reply=reply,
            fields=session.fields,
            decision=session.decision,
            changed_fields=changed or [],
            pending_fields=session.fields.missing(),
            awaiting_confirmation=session.awaiting_confirmation,
            application=application,
            degraded=session.degraded,
        )

    def _fallback_question(self, session: ConversationSession) -> str:
        decision = session.decision
        if decision is not None and decision.status == LoanStatus.REJECTED:
            advice = decision.conditions[0] + ". " if decision.conditions else ""
            return (
                "Based on these details I can't approve this loan. "
                f"{advice}You can change the amount or other details and I'll reassess."
            )
        missing = session.fields.next_missing()
        if not missing:
            return "Is there anything else you'd like to tell me about this loan?"
        question_map = {
            "loan_type": "What kind of loan are you looking for: mortgage, auto, personal or business?",
            "applicant_name": "Could I have your full name?",
            "amount": "How much are you looking to borrow?",
            "monthly_income": "What is your monthly income?",
            "employment_status": "What is your employment status?",
            "credit_score": "Do you know your credit score? If so, what is it?",
        }
        return question_map.get(missing, "Can you share more details?")
