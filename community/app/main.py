from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from community.app.api.chat import router as chat_router
from community.app.api.hives import router as hives_router
from community.app.core.config import settings
from community.app.core.http_client import init_http_client
from community.app.core.logging import get_logger, setup_logging
from community.app.db.async_session import SessionDep, close_async_engine, init_async_db
from community.app.exceptions import CommunityException, RateLimitExceededError
from community.app.middleware.rate_limit import chat_rate_limiter, rate_limit_headers
from community.app.middleware.request_id import RequestIdMiddleware, get_request_id
from community.app.services.llm import reset_openai_client


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Open the shared HTTP pool and database on startup; release them on shutdown."""
        async with init_http_client() as http_client:
            await init_async_db()
            logger.info(
                "Application startup complete",
                extra={"debug_mode": settings.debug, "model": settings.openai_model},
            )
            yield {"http_client": http_client}

            # The OpenAI client holds the pool that is about to close
            reset_openai_client()

        removed = chat_rate_limiter.cleanup()
        await close_async_engine()
        logger.info(f"Application shutdown complete ({removed} expired rate limit keys dropped)")

    app = FastAPI(
        title="Community Service",
        description="Campus community API with a wiki chat assistant, post feed and daily game",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Last added = first executed
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
        max_age=600,
    )

    app.include_router(chat_router)
    app.include_router(hives_router)

    @app.get("/health")
    async def health(session: SessionDep) -> dict[str, Any]:
        """Health check with database status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        try:
            await session.execute(text("SELECT 1"))
            health_status["components"]["database"] = {"status": "ok"}
        except SQLAlchemyError as e:
            health_status["status"] = "degraded"
            health_status["components"]["database"] = {
                "status": "error",
                "error": str(e)[:100],
            }
        return health_status

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 with retry headers."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=rate_limit_headers(exc),
        )

    @app.exception_handler(CommunityException)
    async def community_error_handler(request: Request, exc: CommunityException) -> JSONResponse:
        """Map service exceptions to their HTTP status code."""
        if exc.status_code >= 500:
            logger.error(
                f"{type(exc).__name__}: {exc.message}",
                extra={"request_id": get_request_id(request)},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message and type.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        content: dict[str, Any] = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


app = create_app()
