"""Registration conversation endpoints for end users.

A chat front end forwards each message of a requester here and relays the
returned prompt text.
"""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from grantkeeper.dependencies import get_conversation_engine, get_timeout_notices
from grantkeeper.domain.conversation.engine import ConversationEngine, Prompt, TimeoutNotices
from grantkeeper.domain.errors import GrantKeeperError, NoActiveSessionError, SessionTimedOutError
from grantkeeper.errors import raise_domain_error
from grantkeeper.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

PROMPT_TEXT = {
    Prompt.ASK_NAME: (
        "Please enter a username for your VPN account: "
        "3-20 characters, letters, numbers and underscores only."
    ),
    Prompt.ASK_SECRET: (
        "Please enter a secure password: at least {min_length} characters, "
        "with an uppercase letter, a lowercase letter and a number."
    ),
}


class SessionInput(BaseModel):
    text: str


def _prompt_body(prompt: Prompt) -> dict:
    return {
        "prompt": prompt.value,
        "message": PROMPT_TEXT[prompt].format(min_length=settings.min_secret_length),
        "completed": False,
    }


def _missing_session_error(requester_id: int, notices: TimeoutNotices) -> GrantKeeperError:
    if notices.pop(requester_id):
        return SessionTimedOutError(requester_id)
    return NoActiveSessionError(requester_id)


@router.post("/sessions/{requester_id}", status_code=201)
async def start_session(
    requester_id: int,
    engine: ConversationEngine = Depends(get_conversation_engine),
    notices: TimeoutNotices = Depends(get_timeout_notices),
):
    try:
        prompt = await engine.start_session(requester_id)
    except GrantKeeperError as e:
        raise_domain_error(e)
    notices.pop(requester_id)
    return _prompt_body(prompt)


@router.get("/sessions/{requester_id}")
async def get_session(
    requester_id: int,
    engine: ConversationEngine = Depends(get_conversation_engine),
    notices: TimeoutNotices = Depends(get_timeout_notices),
):
    session = await engine.get_session(requester_id)
    if session is None:
        raise_domain_error(_missing_session_error(requester_id, notices))
    return {
        "requester_id": session.requester_id,
        "step": session.step.value,
        "pending_name": session.pending_name,
        "started_at": session.started_at.isoformat(),
    }


@router.post("/sessions/{requester_id}/input")
async def submit_input(
    requester_id: int,
    data: SessionInput,
    engine: ConversationEngine = Depends(get_conversation_engine),
    notices: TimeoutNotices = Depends(get_timeout_notices),
):
    try:
        reply = await engine.submit_input(requester_id, data.text)
    except NoActiveSessionError:
        raise_domain_error(_missing_session_error(requester_id, notices))
    except GrantKeeperError as e:
        raise_domain_error(e)

    if not reply.completed:
        return _prompt_body(reply.prompt)
    if reply.error is not None:
        # The session is over either way; the error tells the client what happened
        raise_domain_error(reply.error)
    return {
        "completed": True,
        "message": "Your VPN account has been created successfully.",
        "account": reply.account.public_view(),
    }


@router.delete("/sessions/{requester_id}")
async def cancel_session(requester_id: int, engine: ConversationEngine = Depends(get_conversation_engine)):
    cancelled = await engine.cancel(requester_id)
    return {"cancelled": cancelled}
