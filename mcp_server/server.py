import logging
import os

from mcp.server.fastmcp import FastMCP
from sqlalchemy.exc import SQLAlchemyError

from loanwise.agent import AgentOrchestrator
from loanwise.database import SessionLocal, init_models
from loanwise.errors import UnknownFieldError, ValidationError
from loanwise.extractor import extract
from loanwise.fields import require
from loanwise.llm import LLMClient
from loanwise.repository import SqlAlchemyStore
from loanwise.schemas import LoanFieldSet
from loanwise.services import ConversationService, LoanService
from loanwise.underwriting import decide

MCP_TRANSPORT = os.getenv("MCP_TRANSPORT", "streamable-http")
MCP_HOST = os.getenv("MCP_HOST", "0.0.0.0")
MCP_PORT = int(os.getenv("MCP_PORT", "8765"))

logger = logging.getLogger(__name__)

mcp = FastMCP("loanwise-mcp", host=MCP_HOST, port=MCP_PORT)
store = SqlAlchemyStore(SessionLocal)
llm_client = LLMClient()
conversation_service = ConversationService(store)
loan_service = LoanService(store, policy=conversation_service.policy)
agent = AgentOrchestrator(llm_client, loan_service, conversation_service)

_tables_ready = False


@mcp.tool()
async def extract_fields(text: str, current: dict | None = None) -> dict:
    """
    Read loan fields (amount, income, loan type, employment, credit score, name,
    purpose, term) out of a free-form message, on top of already known fields.
    """
    extraction = extract(text, LoanFieldSet(**(current or {})))
    return {
        "fields": extraction.updated_fields.model_dump(mode="json"),
        "changed": extraction.changed_field_names,
        "ambiguities": [str(a) for a in extraction.ambiguities],
    }


@mcp.tool()
async def decide_loan(fields: dict) -> dict:
    """Underwriting decision (approved, rejected or needs-info) for a set of loan fields."""
    try:
        normalized = {name: require(name, value) for name, value in fields.items() if value is not None}
    except (UnknownFieldError, ValidationError) as exc:
        return {"error": str(exc)}
    return decide(LoanFieldSet(**normalized), conversation_service.policy).model_dump(mode="json")


@mcp.tool()
async def chat(user_id: str, message: str, conversation_id: str | None = None) -> dict:
    """Send one user message to the loan assistant and get its reply and current draft."""
    await _ensure_tables()
    response = await agent.handle_turn(user_id, message, conversation_id)
    await conversation_service.flush()
    return response.model_dump(mode="json")


@mcp.tool()
async def list_applications(user_id: str) -> list[dict]:
    """List submitted loan applications for a user, newest first."""
    await _ensure_tables()
    records = await loan_service.list_applications(user_id)
    return [record.model_dump(mode="json") for record in records]


async def _ensure_tables():
    global _tables_ready
    if _tables_ready:
        return
    try:
        await init_models()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database unavailable, running in memory: %s", exc)
        return
    _tables_ready = True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    # Use HTTP transport so the container stays up and is reachable.
    mcp.run(transport=MCP_TRANSPORT)
