import hashlib

from fastapi import HTTPException, Request

from community.app.db.async_session import SessionDep
from community.app.db.crud import lookup_user_by_hash
from community.app.db.models import User
from community.app.exceptions import AuthenticationError

MAX_API_KEY_LENGTH = 512


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


async def require_api_key(
    request: Request,
    session: SessionDep,
) -> User:
    """Validate the API key and return the associated user.

    Raises:
        AuthenticationError: 401 if the API key is missing or unknown
        HTTPException: 400 if the API key is too long
    """
    token = get_bearer_token(request)
    if not token:
        raise AuthenticationError("Missing API key")

    # Checked before hashing so oversized keys cost nothing
    if len(token) > MAX_API_KEY_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"API key too long (max {MAX_API_KEY_LENGTH} characters)",
        )

    user = await lookup_user_by_hash(session, hash_api_key(token))
    if user is None:
        raise AuthenticationError("Invalid API key")

    request.state.user_id = user.id
    return user
