"""Chat assistant API: sessions, messages and the streaming reply endpoint."""

from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from community.app.core.config import get_config_summary, validate_chatbot_config
from community.app.core.logging import get_logger
from community.app.db import crud
from community.app.db.async_session import SessionDep, get_session_factory
from community.app.db.crud.chat import ROLE_ASSISTANT, ROLE_USER
from community.app.db.models import ChatMessage, ChatSession, User
from community.app.exceptions import LLMServiceError
from community.app.middleware.auth import require_api_key
from community.app.middleware.rate_limit import RateLimitResult, enforce_chat_rate_limit
from community.app.services import llm
from community.app.services.retrieval import (
    RetrievedArticle,
    get_all_categories,
    get_ambiguity_options,
    is_ambiguous_query,
    is_out_of_scope_query,
    is_recommendation_query,
    retrieve_relevant_articles,
)
from community.app.services.streaming import (
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    SourcesChunk,
    encode_chunk,
)

router = APIRouter(prefix="/api/chat", tags=["chat"])
logger = get_logger(__name__)


class SessionCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)


class SessionUpdate(BaseModel):
    title: str = Field(..., max_length=200)


class MessageRequest(BaseModel):
    """Body of ``POST /api/chat/message``; validated by hand to answer 400, not 422."""
    session_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    message: Optional[str] = None


class SessionOut(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: Optional[int] = None


class MessageOut(BaseModel):
    id: str
    session_id: str
    role: str
    content: str
    sources: Optional[List[Dict[str, Any]]] = None
    created_at: datetime


def _session_out(chat_session: ChatSession, message_count: Optional[int] = None) -> dict:
    return SessionOut(
        id=chat_session.id,
        title=chat_session.title,
        created_at=chat_session.created_at,
        updated_at=chat_session.updated_at,
        message_count=message_count,
    ).model_dump(mode="json")


def _message_out(message: ChatMessage) -> dict:
    return MessageOut(
        id=message.id,
        session_id=message.session_id,
        role=message.role,
        content=message.content,
        sources=message.sources,
        created_at=message.created_at,
    ).model_dump(mode="json")


@router.get("/health")
async def chat_health() -> JSONResponse:
    """Report whether the chat assistant is configured to run."""
    validation = validate_chatbot_config()
    summary = get_config_summary()

    if not validation["is_valid"]:
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "message": "Chatbot configuration is invalid",
                "errors": validation["errors"],
                "warnings": validation["warnings"],
                "config": summary,
            },
        )
    if validation["warnings"]:
        return JSONResponse(
            content={
                "status": "warning",
                "message": "Chatbot is operational but has configuration warnings",
                "warnings": validation["warnings"],
                "config": summary,
            }
        )
    return JSONResponse(
        content={
            "status": "ok",
            "message": "Chatbot configuration is valid",
            "config": summary,
        }
    )


@router.get("/sessions")
async def list_sessions(
    session: SessionDep,
    user: User = Depends(require_api_key),
) -> dict:
    rows = await crud.list_sessions(session, user.id)
    return {"sessions": [_session_out(s, count) for s, count in rows]}


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def create_session(
    session: SessionDep,
    body: Optional[SessionCreate] = None,
    user: User = Depends(require_api_key),
) -> dict:
    chat_session = await crud.create_session(session, user.id, body.title if body else None)
    logger.info("Chat session created", extra={"user_id": user.id, "session_id": chat_session.id})
    return {"session": _session_out(chat_session, 0)}


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    session: SessionDep,
    user: User = Depends(require_api_key),
) -> dict:
    chat_session = await crud.get_session(session, session_id, user.id)
    messages = await crud.get_messages(session, chat_session.id)
    return {
        "session": _session_out(chat_session, len(messages)),
        "messages": [_message_out(m) for m in messages],
    }


@router.patch("/sessions/{session_id}")
async def rename_session(
    session_id: str,
    body: SessionUpdate,
    session: SessionDep,
    user: User = Depends(require_api_key),
) -> dict:
    chat_session = await crud.update_session_title(session, session_id, user.id, body.title)
    return {"session": _session_out(chat_session)}


@router.delete("/sessions/{session_id}")
async def delete_session(
    session_id: str,
    session: SessionDep,
    user: User = Depends(require_api_key),
) -> dict:
    await crud.delete_session(session, session_id, user.id)
    logger.info("Chat session deleted", extra={"user_id": user.id, "session_id": session_id})
    return {"success": True}


async def stream_reply(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: str,
    session_id: str,
    text: str,
    retrieved: Sequence[RetrievedArticle],
    history: Sequence[Dict[str, str]],
    is_recommendation: bool,
    is_ambiguous: bool,
    available_categories: Sequence[str],
    is_out_of_scope: bool,
    needs_title: bool,
) -> AsyncIterator[str]:
    """Produce the SSE body of a chat reply.

    Emits ``content`` records as tokens arrive, then ``sources`` (when any
    articles were used) and ``done``. The assistant message is stored
    before ``done``. Any failure ends the stream with a single ``error``
    record.
    """
    parts: List[str] = []
    try:
        async for token in llm.generate_response(
            text,
            retrieved,
            history,
            is_recommendation=is_recommendation,
            is_ambiguous=is_ambiguous,
            available_categories=available_categories,
            is_out_of_scope=is_out_of_scope,
        ):
            parts.append(token)
            yield encode_chunk(ContentChunk(data=token))

        sources = llm.sources_for(retrieved)
        async with session_factory() as db:
            await crud.save_message(
                db,
                session_id,
                ROLE_ASSISTANT,
                "".join(parts),
                [s.model_dump() for s in sources] or None,
            )
            if needs_title:
                title = await llm.generate_title(text)
                await crud.update_session_title(db, session_id, user_id, title)
            await db.commit()

        if sources:
            yield encode_chunk(SourcesChunk(data=sources))
        yield encode_chunk(DoneChunk())
    except LLMServiceError as e:
        logger.error(
            f"Chat reply failed: {e.message}",
            extra={"user_id": user_id, "session_id": session_id},
        )
        yield encode_chunk(ErrorChunk(data=e.message, retryable=e.is_retryable))
    except Exception as e:
        # The response has started; the error can only be reported in-band.
        logger.exception(
            f"Unexpected error while streaming chat reply: {type(e).__name__}",
            extra={"user_id": user_id, "session_id": session_id},
        )
        yield encode_chunk(ErrorChunk(data=llm.MSG_FAILED, retryable=True))


@router.post("/message")
async def send_message(
    body: MessageRequest,
    session: SessionDep,
    user: User = Depends(require_api_key),
    rate: RateLimitResult = Depends(enforce_chat_rate_limit),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> StreamingResponse:
    """Send a user message and stream the assistant reply as Server-Sent Events."""
    if not body.session_id:
        raise HTTPException(status_code=400, detail="Session ID is required")
    text = (body.message or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message is required and cannot be empty")

    chat_session = await crud.get_session(session, body.session_id, user.id)
    user_message = await crud.save_message(session, chat_session.id, ROLE_USER, text)

    retrieved = await retrieve_relevant_articles(session, text)
    available_categories: List[str] = []
    if not retrieved:
        logger.info("No articles found for chat query", extra={"session_id": chat_session.id})
        available_categories = await get_all_categories(session)

    history = [
        {"role": m.role, "content": m.content}
        for m in await crud.get_messages(session, chat_session.id)
        if m.id != user_message.id
    ]

    is_recommendation = is_recommendation_query(text)
    is_ambiguous = is_ambiguous_query(text, retrieved)
    if is_ambiguous:
        options = get_ambiguity_options(retrieved)
        logger.debug(f"Ambiguous chat query: {len(options)} interpretations")
    is_out_of_scope = is_out_of_scope_query(text) or (
        not retrieved and "tum" not in text.lower()
    )
    if is_out_of_scope and not available_categories:
        available_categories = await get_all_categories(session)

    needs_title = chat_session.title == crud.DEFAULT_SESSION_TITLE and not history

    # The stream stores its result through its own session
    await session.commit()

    return StreamingResponse(
        stream_reply(
            session_factory,
            user.id,
            chat_session.id,
            text,
            retrieved,
            history,
            is_recommendation,
            is_ambiguous,
            available_categories,
            is_out_of_scope,
            needs_title,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-RateLimit-Remaining": str(rate.remaining),
        },
    )
