"""Chat session and message CRUD operations.

Every function that takes a ``user_id`` enforces ownership: an unknown
session raises ``SessionNotFoundError`` and a session owned by someone
else raises ``SessionPermissionError``. Writes are flushed, not committed;
the request-scoped ``get_db`` dependency owns the transaction.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from community.app.db.models import ChatMessage, ChatSession, utcnow
from community.app.exceptions import SessionNotFoundError, SessionPermissionError

DEFAULT_SESSION_TITLE = "New Conversation"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
VALID_ROLES = (ROLE_USER, ROLE_ASSISTANT)


def normalize_title(title: Optional[str]) -> str:
    cleaned = (title or "").strip()
    return cleaned or DEFAULT_SESSION_TITLE


async def create_session(
    session: AsyncSession,
    user_id: str,
    title: Optional[str] = None,
) -> ChatSession:
    """Create a chat session for ``user_id``.

    A blank title falls back to ``DEFAULT_SESSION_TITLE``.
    """
    now = utcnow()
    chat_session = ChatSession(
        user_id=user_id,
        title=normalize_title(title),
        created_at=now,
        updated_at=now,
    )
    session.add(chat_session)
    await session.flush()
    return chat_session


async def get_session(
    session: AsyncSession,
    session_id: str,
    user_id: str,
) -> ChatSession:
    """Load a session and verify it belongs to ``user_id``.

    Raises:
        SessionNotFoundError: no session with this id
        SessionPermissionError: the session belongs to another user
    """
    chat_session = await session.get(ChatSession, session_id)
    if chat_session is None:
        raise SessionNotFoundError(session_id)
    if chat_session.user_id != user_id:
        raise SessionPermissionError(session_id, user_id)
    return chat_session


async def list_sessions(
    session: AsyncSession,
    user_id: str,
) -> List[Tuple[ChatSession, int]]:
    """Sessions of ``user_id`` with their message counts, most recently updated first."""
    message_count = (
        select(ChatMessage.session_id, func.count(ChatMessage.id).label("count"))
        .group_by(ChatMessage.session_id)
        .subquery()
    )
    result = await session.execute(
        select(ChatSession, func.coalesce(message_count.c.count, 0))
        .outerjoin(message_count, message_count.c.session_id == ChatSession.id)
        .where(ChatSession.user_id == user_id)
        .order_by(ChatSession.updated_at.desc())
    )
    return [(row[0], int(row[1])) for row in result.all()]


async def delete_session(
    session: AsyncSession,
    session_id: str,
    user_id: str,
) -> None:
    """Delete a session and all of its messages."""
    chat_session = await get_session(session, session_id, user_id)
    await session.execute(
        delete(ChatMessage).where(ChatMessage.session_id == chat_session.id)
    )
    await session.delete(chat_session)
    await session.flush()


async def update_session_title(
    session: AsyncSession,
    session_id: str,
    user_id: str,
    title: str,
) -> ChatSession:
    chat_session = await get_session(session, session_id, user_id)
    chat_session.title = normalize_title(title)
    chat_session.updated_at = utcnow()
    await session.flush()
    return chat_session


async def touch_session(session: AsyncSession, session_id: str) -> None:
    """Bump ``updated_at`` so the session sorts first in listings."""
    chat_session = await session.get(ChatSession, session_id)
    if chat_session is not None:
        chat_session.updated_at = utcnow()
        await session.flush()


async def save_message(
    session: AsyncSession,
    session_id: str,
    role: str,
    content: str,
    sources: Optional[Sequence[dict]] = None,
) -> ChatMessage:
    """Append a message to a session and touch the session.

    Args:
        session: Database session
        session_id: Owning chat session
        role: ``user`` or ``assistant``
        content: Message text
        sources: Cited articles (``{title, slug, category}``) for assistant replies

    Raises:
        ValueError: for an unknown role
    """
    if role not in VALID_ROLES:
        raise ValueError(f"Invalid message role: {role}")

    message = ChatMessage(
        session_id=session_id,
        role=role,
        content=content,
        sources=list(sources) if sources else None,
        created_at=utcnow(),
    )
    session.add(message)
    await session.flush()
    await touch_session(session, session_id)
    return message


async def save_messages(
    session: AsyncSession,
    session_id: str,
    messages: Iterable[Tuple[str, str]],
) -> List[ChatMessage]:
    """Append several ``(role, content)`` pairs in order."""
    saved = []
    for role, content in messages:
        saved.append(await save_message(session, session_id, role, content))
    return saved


async def get_messages(
    session: AsyncSession,
    session_id: str,
    limit: Optional[int] = None,
) -> List[ChatMessage]:
    """Messages of a session, oldest first.

    With ``limit``, only the most recent ``limit`` messages are returned
    (still oldest first).
    """
    if limit is None:
        result = await session.execute(
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at.asc())
        )
        return list(result.scalars().all())

    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.created_at.desc())
        .limit(limit)
    )
    return list(reversed(result.scalars().all()))


async def get_message_count(session: AsyncSession, session_id: str) -> int:
    result = await session.execute(
        select(func.count(ChatMessage.id)).where(ChatMessage.session_id == session_id)
    )
    return int(result.scalar_one())


async def get_latest_message(
    session: AsyncSession,
    session_id: str,
) -> Optional[ChatMessage]:
    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
