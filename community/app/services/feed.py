"""Post feed across the subforums a user has joined.

Sort orders:

- ``new``: newest first
- ``top``: most votes first
- ``hot``: most votes first, newest first among equal votes

``hot`` is a plain two-key sort for now; it has no time decay, so an old
post with many votes stays above a fresh one.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from community.app.core.logging import get_logger
from community.app.db.models import Comment, Post, Subforum, SubforumMembership, User, Vote

logger = get_logger(__name__)

SORT_NEW = "new"
SORT_HOT = "hot"
SORT_TOP = "top"
SORT_ORDERS = (SORT_NEW, SORT_HOT, SORT_TOP)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20

VOTE_NAMES = {1: "upvote", -1: "downvote"}

P = TypeVar("P")


class FeedPost(BaseModel):
    id: int
    subforum_id: int
    subforum_name: str
    author_id: Optional[str]
    author_name: Optional[str]
    title: str
    content: str
    is_anonymous: bool
    vote_count: int
    comment_count: int
    user_vote: Optional[str]
    created_at: datetime


class FeedPage(BaseModel):
    posts: List[FeedPost]
    has_more: bool
    total: int


def validate_feed_params(sort: str, page: int, limit: int) -> Optional[str]:
    """Return an error message for invalid paging/sort input, else None."""
    if sort not in SORT_ORDERS:
        return 'Invalid sort parameter. Must be "new", "hot", or "top"'
    if page < 0:
        return "Page must be non-negative"
    if limit < 1 or limit > MAX_PAGE_SIZE:
        return f"Limit must be between 1 and {MAX_PAGE_SIZE}"
    return None


def order_by_for(sort: str) -> list:
    """SQL ORDER BY clauses for a sort order; ``Post.id`` breaks remaining ties."""
    if sort == SORT_NEW:
        keys = [Post.created_at.desc()]
    elif sort == SORT_TOP:
        keys = [Post.vote_count.desc()]
    elif sort == SORT_HOT:
        keys = [Post.vote_count.desc(), Post.created_at.desc()]
    else:
        raise ValueError(f"Unknown sort order: {sort}")
    return keys + [Post.id.desc()]


def rank_posts(posts: Sequence[P], sort: str = SORT_HOT) -> List[P]:
    """Order already-loaded posts the same way the feed query does.

    Works on anything with ``vote_count`` and ``created_at`` attributes.
    The sort is stable, so posts equal on every key keep their input order.
    """
    if sort == SORT_NEW:
        return sorted(posts, key=lambda p: p.created_at, reverse=True)
    if sort == SORT_TOP:
        return sorted(posts, key=lambda p: p.vote_count, reverse=True)
    if sort == SORT_HOT:
        return sorted(posts, key=lambda p: (p.vote_count, p.created_at), reverse=True)
    raise ValueError(f"Unknown sort order: {sort}")


async def _comment_counts(session: AsyncSession, post_ids: List[int]) -> Dict[int, int]:
    if not post_ids:
        return {}
    result = await session.execute(
        select(Comment.post_id, func.count(Comment.id))
        .where(Comment.post_id.in_(post_ids))
        .group_by(Comment.post_id)
    )
    return {post_id: int(count) for post_id, count in result.all()}


async def _user_votes(
    session: AsyncSession, user_id: str, post_ids: List[int]
) -> Dict[int, str]:
    if not post_ids:
        return {}
    result = await session.execute(
        select(Vote.post_id, Vote.value)
        .where(Vote.user_id == user_id, Vote.post_id.in_(post_ids))
    )
    return {post_id: VOTE_NAMES[value] for post_id, value in result.all() if value in VOTE_NAMES}


async def get_feed(
    session: AsyncSession,
    user_id: str,
    subforum_id: Optional[int] = None,
    search: Optional[str] = None,
    sort: str = SORT_NEW,
    page: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
) -> FeedPage:
    """One page of posts from the subforums ``user_id`` has joined.

    Args:
        session: Database session
        user_id: Viewing user; also used to resolve ``user_vote``
        subforum_id: Restrict to one joined subforum
        search: Case-insensitive substring matched against title or content
        sort: One of ``SORT_ORDERS``
        page: Zero-based page index
        limit: Page size
    """
    joined = select(SubforumMembership.subforum_id).where(
        SubforumMembership.user_id == user_id
    )
    stmt = (
        select(Post, Subforum.name, User.name)
        .join(Subforum, Post.subforum_id == Subforum.id)
        .outerjoin(User, Post.author_id == User.id)
        .where(Post.subforum_id.in_(joined))
    )
    if subforum_id is not None:
        stmt = stmt.where(Post.subforum_id == subforum_id)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(Post.title.ilike(pattern), Post.content.ilike(pattern)))

    total = int(
        (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    )

    offset = page * limit
    result = await session.execute(
        stmt.order_by(*order_by_for(sort)).offset(offset).limit(limit)
    )
    rows = result.all()

    post_ids = [row[0].id for row in rows]
    comment_counts = await _comment_counts(session, post_ids)
    user_votes = await _user_votes(session, user_id, post_ids)

    posts = [
        FeedPost(
            id=post.id,
            subforum_id=post.subforum_id,
            subforum_name=subforum_name or "Unknown",
            author_id=None if post.is_anonymous else post.author_id,
            author_name=None if post.is_anonymous else author_name,
            title=post.title,
            content=post.content,
            is_anonymous=post.is_anonymous,
            vote_count=post.vote_count,
            comment_count=comment_counts.get(post.id, 0),
            user_vote=user_votes.get(post.id),
            created_at=post.created_at,
        )
        for post, subforum_name, author_name in rows
    ]

    logger.debug(
        f"Feed page {page} for user {user_id}: {len(posts)} of {total} posts (sort={sort})"
    )
    return FeedPage(posts=posts, has_more=offset + limit < total, total=total)
