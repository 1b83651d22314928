"""CRUD operations package.

- user.py: API key lookup
- chat.py: chat sessions and messages
- game.py: daily game scores and leaderboard
"""

from community.app.db.crud.user import (
    lookup_user_by_hash,
)

from community.app.db.crud.chat import (
    DEFAULT_SESSION_TITLE,
    create_session,
    get_session,
    list_sessions,
    delete_session,
    update_session_title,
    touch_session,
    save_message,
    save_messages,
    get_messages,
    get_message_count,
    get_latest_message,
)

from community.app.db.crud.game import (
    get_score,
    get_rank,
    submit_score,
    get_leaderboard,
)

__all__ = [
    "lookup_user_by_hash",
    "DEFAULT_SESSION_TITLE",
    "create_session",
    "get_session",
    "list_sessions",
    "delete_session",
    "update_session_title",
    "touch_session",
    "save_message",
    "save_messages",
    "get_messages",
    "get_message_count",
    "get_latest_message",
    "get_score",
    "get_rank",
    "submit_score",
    "get_leaderboard",
]
