"""Community feed and daily game endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from community.app.core.logging import get_logger
from community.app.db import crud
from community.app.db.async_session import SessionDep
from community.app.db.crud.game import is_valid_game_date, today
from community.app.db.models import User
from community.app.middleware.auth import require_api_key
from community.app.services.feed import DEFAULT_PAGE_SIZE, SORT_NEW, FeedPage, get_feed, validate_feed_params

router = APIRouter(prefix="/api/hives", tags=["hives"])
logger = get_logger(__name__)

INVALID_DATE_MESSAGE = "Invalid date format. Expected YYYY-MM-DD"


class ScoreSubmission(BaseModel):
    score: int
    game_date: str


def _resolve_date(value: Optional[str]) -> str:
    game_date = value or today()
    if not is_valid_game_date(game_date):
        raise HTTPException(status_code=400, detail=INVALID_DATE_MESSAGE)
    return game_date


@router.get("/feed", response_model=FeedPage)
async def feed(
    session: SessionDep,
    user: User = Depends(require_api_key),
    subhive_id: Optional[int] = None,
    search: Optional[str] = None,
    sort: str = SORT_NEW,
    page: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
) -> FeedPage:
    """Posts from the subforums the user has joined."""
    error = validate_feed_params(sort, page, limit)
    if error:
        raise HTTPException(status_code=400, detail=error)
    return await get_feed(
        session,
        user.id,
        subforum_id=subhive_id,
        search=search,
        sort=sort,
        page=page,
        limit=limit,
    )


@router.post("/game-score")
async def submit_game_score(
    body: ScoreSubmission,
    session: SessionDep,
    user: User = Depends(require_api_key),
) -> dict:
    if body.score < 0:
        raise HTTPException(status_code=400, detail="Invalid score")
    if not is_valid_game_date(body.game_date):
        raise HTTPException(
            status_code=400, detail="Invalid game_date format. Expected YYYY-MM-DD"
        )

    await crud.submit_score(session, user.id, body.game_date, body.score)
    rank = await crud.get_rank(session, user.id, body.game_date)
    logger.info(
        f"Game score {body.score} submitted for {body.game_date} (rank {rank})",
        extra={"user_id": user.id},
    )
    return {"success": True, "rank": rank}


@router.get("/has-played")
async def has_played(
    session: SessionDep,
    user: User = Depends(require_api_key),
    date: Optional[str] = Query(None),
) -> dict:
    game_date = _resolve_date(date)
    entry = await crud.get_score(session, user.id, game_date)
    if entry is None:
        return {"has_played": False, "score": None, "rank": None}
    return {
        "has_played": True,
        "score": entry.score,
        "rank": await crud.get_rank(session, user.id, game_date),
    }


@router.get("/leaderboard")
async def leaderboard(
    session: SessionDep,
    user: User = Depends(require_api_key),
    date: Optional[str] = Query(None),
) -> dict:
    """Top ten scores for a date, ranked by position."""
    game_date = _resolve_date(date)
    rows = await crud.get_leaderboard(session, game_date)
    return {
        "leaderboard": [
            {
                "user_id": entry.user_id,
                "display_name": name or "Anonymous",
                "score": entry.score,
                "rank": index + 1,
            }
            for index, (entry, name) in enumerate(rows)
        ]
    }
