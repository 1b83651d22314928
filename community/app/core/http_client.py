"""Shared HTTP client management for connection pooling.

The client is created in the application lifespan and handed to the OpenAI
SDK so chat completions reuse one connection pool.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx

from community.app.core.config import settings


_shared_http_client: httpx.AsyncClient | None = None


def _default_timeout() -> httpx.Timeout:
    # Streaming replies need a generous read timeout; connecting should fail fast.
    return httpx.Timeout(
        connect=settings.httpx_connect_timeout,
        read=settings.httpx_read_timeout,
        write=settings.httpx_write_timeout,
        pool=settings.httpx_pool_timeout,
    )


def _default_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.httpx_max_connections,
        max_keepalive_connections=settings.httpx_max_keepalive_connections,
        keepalive_expiry=settings.httpx_keepalive_expiry,
    )


def get_http_client_or_none() -> httpx.AsyncClient | None:
    return _shared_http_client


@asynccontextmanager
async def init_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Initialize and yield the shared HTTP client.

    This context manager should be used in the FastAPI lifespan:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client():
                yield
    """
    global _shared_http_client

    _shared_http_client = httpx.AsyncClient(
        timeout=_default_timeout(), limits=_default_limits()
    )

    try:
        yield _shared_http_client
    finally:
        if _shared_http_client is not None:
            await _shared_http_client.aclose()
            _shared_http_client = None


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client with default settings.

    The caller owns the returned client and must close it:
        async with create_http_client(base_url=...) as client:
            ...

    Args:
        **kwargs: Passed through to ``httpx.AsyncClient``; ``timeout`` and
            ``limits`` default to the configured pool settings.
    """
    kwargs.setdefault("timeout", _default_timeout())
    kwargs.setdefault("limits", _default_limits())
    return httpx.AsyncClient(**kwargs)
