"""Daily game score CRUD operations."""
import re
from datetime import date, datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from community.app.db.models import GameScore, User
from community.app.exceptions import AlreadyPlayedError

GAME_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)
LEADERBOARD_SIZE = 10


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def is_valid_game_date(value: str) -> bool:
    """True for a real calendar date written as YYYY-MM-DD."""
    if not value or GAME_DATE_PATTERN.fullmatch(value) is None:
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


async def get_score(
    session: AsyncSession, user_id: str, game_date: str
) -> Optional[GameScore]:
    result = await session.execute(
        select(GameScore).where(
            GameScore.user_id == user_id, GameScore.game_date == game_date
        )
    )
    return result.scalar_one_or_none()


async def get_rank(session: AsyncSession, user_id: str, game_date: str) -> Optional[int]:
    """Competition rank of the user's score: 1 + number of strictly higher scores."""
    own = await get_score(session, user_id, game_date)
    if own is None:
        return None
    result = await session.execute(
        select(func.count(GameScore.id)).where(
            GameScore.game_date == game_date, GameScore.score > own.score
        )
    )
    return int(result.scalar_one()) + 1


async def submit_score(
    session: AsyncSession, user_id: str, game_date: str, score: int
) -> GameScore:
    """Record a user's score for a date.

    Raises:
        AlreadyPlayedError: the user already has a score for ``game_date``
    """
    if await get_score(session, user_id, game_date) is not None:
        raise AlreadyPlayedError(game_date)

    entry = GameScore(user_id=user_id, game_date=game_date, score=score)
    session.add(entry)
    try:
        # Concurrent submissions collide on the unique (user_id, game_date) key
        await session.flush()
    except IntegrityError as e:
        await session.rollback()
        raise AlreadyPlayedError(game_date) from e
    return entry


async def get_leaderboard(
    session: AsyncSession, game_date: str, limit: int = LEADERBOARD_SIZE
) -> List[Tuple[GameScore, Optional[str]]]:
    """Top scores for a date with player names, best first."""
    result = await session.execute(
        select(GameScore, User.name)
        .outerjoin(User, GameScore.user_id == User.id)
        .where(GameScore.game_date == game_date)
        .order_by(GameScore.score.desc(), GameScore.created_at.asc())
        .limit(limit)
    )
    return [(row[0], row[1]) for row in result.all()]
