"""User CRUD operations."""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from community.app.db.models import User


async def lookup_user_by_hash(
    session: AsyncSession,
    api_key_hash: str
) -> Optional[User]:
    """Find a user by their API key hash.

    Args:
        session: Database session from FastAPI dependency
        api_key_hash: SHA-256 hex digest of the API key

    Returns:
        User object if found, None otherwise
    """
    result = await session.execute(
        select(User).where(User.api_key_hash == api_key_hash)
    )
    return result.scalar_one_or_none()
