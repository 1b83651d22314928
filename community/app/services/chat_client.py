"""HTTP client for the chat message endpoint.

Posts a message and consumes the ``text/event-stream`` reply, either
chunk by chunk (``stream_message``) or as a finished reply
(``send_message``).
"""

from typing import AsyncIterator, Optional

import httpx

from community.app.core.http_client import create_http_client
from community.app.core.logging import get_logger
from community.app.providers.retry import ExponentialBackoff, is_retryable_llm_error
from community.app.services.streaming import StreamAccumulator, collect_stream, parse_stream

logger = get_logger(__name__)

MESSAGE_PATH = "/api/chat/message"


class ChatStreamClient:
    """Client for one user's chat conversations.

    If ``http_client`` is given it is used for every request and left open;
    otherwise the client owns a pool that ``aclose()`` releases.

    Example:
        >>> async with ChatStreamClient("http://localhost:8000", api_key) as chat:
        ...     reply = await chat.send_message(session_id, "Where is the library?")
        ...     print(reply.text)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        backoff: Optional[ExponentialBackoff] = None,
        max_parse_errors: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "text/event-stream",
        }
        self._owns_client = http_client is None
        self._client = http_client or create_http_client()
        self.backoff = backoff or ExponentialBackoff()
        self.max_parse_errors = max_parse_errors

    async def __aenter__(self) -> "ChatStreamClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def stream_message(self, session_id: str, message: str) -> AsyncIterator:
        """Yield parsed stream items for one message as they arrive.

        Leaving the loop early (and closing the generator) releases the
        HTTP response.

        Raises:
            httpx.HTTPStatusError: if the server rejects the request
        """
        async with self._client.stream(
            "POST",
            f"{self.base_url}{MESSAGE_PATH}",
            headers=self.headers,
            json={"session_id": session_id, "message": message},
        ) as response:
            if response.is_error:
                await response.aread()
                response.raise_for_status()

            items = parse_stream(response.aiter_bytes())
            try:
                async for item in items:
                    yield item
            finally:
                await items.aclose()

    async def send_message(self, session_id: str, message: str) -> StreamAccumulator:
        """Send a message and wait for the whole reply.

        Rejected or failed requests (429, 5xx, connection errors) are
        retried with backoff. A stream that fails after it started is not
        retried.

        Raises:
            ChatStreamError: if the reply stream reports an error or breaks off
            httpx.HTTPStatusError: if the request is rejected after all retries
        """

        async def attempt() -> StreamAccumulator:
            accumulator = StreamAccumulator(self.max_parse_errors)
            async with self._client.stream(
                "POST",
                f"{self.base_url}{MESSAGE_PATH}",
                headers=self.headers,
                json={"session_id": session_id, "message": message},
            ) as response:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                return await collect_stream(response.aiter_bytes(), accumulator)

        attempt.__name__ = "send_message"
        result = await self.backoff.execute_with_retry(attempt, is_retryable_llm_error)
        logger.debug(
            f"Chat reply for session {session_id}: {len(result.text)} chars, "
            f"{len(result.sources)} sources"
        )
        return result
