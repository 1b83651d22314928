"""Chat completion calls for the wiki assistant.

Builds the system prompt from retrieved wiki articles, streams the reply
token by token from an OpenAI-compatible API, and turns provider failures
into ``LLMServiceError`` with a message that is safe to show to users.
"""

import asyncio
from typing import AsyncIterator, Dict, List, Optional, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from community.app.core.config import settings
from community.app.core.http_client import get_http_client_or_none
from community.app.core.logging import get_logger
from community.app.exceptions import LLMServiceError
from community.app.providers.retry import ExponentialBackoff, is_retryable_llm_error, llm_backoff
from community.app.services.retrieval import RetrievedArticle, get_unique_categories
from community.app.services.streaming import ArticleSource

logger = get_logger(__name__)

PLATFORM_NAME = "TUM Community Platform"
DEFAULT_CATEGORY_SUGGESTIONS = "Academics, Campus Life, Student Services, Events, Resources"

TITLE_MAX_TOKENS = 20
TITLE_FALLBACK_LENGTH = 50

MSG_AUTH_FAILED = "Authentication failed. Please check your API key configuration."
MSG_RATE_LIMITED = "Rate limit exceeded. Please try again in a moment."
MSG_UNAVAILABLE = "The AI service is temporarily unavailable. Please try again later."
MSG_TIMEOUT = "Request timed out. Please try again."
MSG_FAILED = "Failed to generate response. Please try again."
MSG_INTERRUPTED = "Connection interrupted while receiving response. Please try again."

_client: Optional[AsyncOpenAI] = None


def get_openai_client() -> AsyncOpenAI:
    """Lazily create the OpenAI client, reusing the shared connection pool when available."""
    global _client
    if _client is None:
        _client = AsyncOpenAI(
            api_key=settings.openai_api_key or "missing",
            base_url=settings.openai_base_url,
            timeout=settings.openai_timeout,
            max_retries=0,
            http_client=get_http_client_or_none(),
        )
    return _client


def reset_openai_client() -> None:
    global _client
    _client = None


def _category_suggestions(available_categories: Sequence[str]) -> str:
    if not available_categories:
        return DEFAULT_CATEGORY_SUGGESTIONS
    return ", ".join(available_categories[:5])


def _article_block(index: int, retrieved: RetrievedArticle) -> str:
    article = retrieved.article
    rule = "=" * 40
    return (
        f"\n{rule}\n"
        f"ARTICLE {index}: {article.title}\n"
        f"{rule}\n"
        f"Category: {article.category}\n"
        f"Slug: {article.slug}\n"
        f"Link: /wiki/articles/{article.slug}\n\n"
        f"ARTICLE CONTENT (Use this to answer questions):\n"
        f"{retrieved.relevant_content}\n"
        f"{rule}"
    )


def create_system_prompt(
    retrieved: Sequence[RetrievedArticle],
    is_recommendation: bool = False,
    is_ambiguous: bool = False,
    available_categories: Sequence[str] = (),
    is_out_of_scope: bool = False,
) -> str:
    """Build the system prompt that grounds the assistant in wiki content.

    Articles are cited as ``[Article Title](/wiki/articles/slug)``. Extra
    instruction blocks are appended for recommendation requests, ambiguous
    queries, out-of-scope questions and multi-category results.
    """
    has_results = len(retrieved) > 0
    categories = get_unique_categories(retrieved)

    parts = [f"You are a helpful assistant for the {PLATFORM_NAME} wiki."]

    if has_results:
        parts.append(
            "Use the wiki articles below to answer. "
            "Always cite sources using: [Article Title](/wiki/articles/slug)"
        )
        articles = "\n\n".join(
            _article_block(i, item) for i, item in enumerate(retrieved, start=1)
        )
        parts.append(f"WIKI ARTICLES:\n{articles}")
    else:
        parts.append("No relevant articles found.")
        parts.append(
            "No articles found. Suggest 2-3 alternative search terms or browse "
            f"categories: {_category_suggestions(available_categories)}"
        )

    if is_recommendation:
        parts.append(
            "IMPORTANT: The user is asking for article recommendations. Please:\n"
            "1. List 2-5 relevant articles from the provided wiki articles\n"
            "2. Format each as: **[Article Title](/wiki/articles/slug)** - Brief description "
            "(1-2 sentences) [Category: category-name]\n"
            "3. Make descriptions informative and help users understand what each article covers\n"
            "4. Order recommendations by relevance to the user's query\n"
            "5. If articles span multiple categories, highlight this diversity in your recommendations"
        )

    if is_ambiguous:
        topic = retrieved[0].article.title.split(" ")[0] if has_results else "your query"
        parts.append(
            "IMPORTANT: This query appears ambiguous - it could refer to multiple distinct "
            "topics. Before providing a detailed answer:\n"
            "1. Acknowledge that the query could have multiple interpretations\n"
            "2. List the different categories/topics where relevant information was found\n"
            "3. Ask the user which specific topic they're interested in\n"
            "4. Provide a brief preview of what information is available in each category\n"
            f"5. Example: \"I found information about '{topic}' in multiple areas. Are you "
            "asking about: 1) [Category 1 topic], 2) [Category 2 topic], or 3) [Category 3 topic]?\"\n"
            "6. Keep the clarification friendly and concise"
        )

    if is_out_of_scope:
        parts.append(
            "IMPORTANT: This query appears to be outside the scope of this wiki. Please:\n"
            "1. Politely acknowledge that the question is outside the scope of the wiki\n"
            f"2. Explain that you're specifically designed to help with {PLATFORM_NAME} questions\n"
            "3. Suggest related topics or categories the user might be interested in instead\n"
            "4. Provide 2-3 specific examples of topics you can help with\n"
            f"5. Available categories to suggest: {_category_suggestions(available_categories)}\n"
            "6. Keep the tone friendly and helpful, not dismissive"
        )

    if len(categories) > 1:
        parts.append(
            f"NOTE: The articles provided span {len(categories)} different categories: "
            f"{', '.join(categories)}.\n"
            "Make sure to synthesize information from all relevant categories to provide a "
            "comprehensive answer.\n"
            "Cite sources from different categories when they contribute to the answer."
        )

    return "\n\n".join(parts)


def build_messages(
    system_prompt: str,
    history: Sequence[Dict[str, str]],
    user_message: str,
) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    messages.append({"role": "user", "content": user_message})
    return messages


def sources_for(retrieved: Sequence[RetrievedArticle]) -> List[ArticleSource]:
    return [item.source for item in retrieved]


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, openai.APIStatusError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def map_llm_error(error: BaseException) -> LLMServiceError:
    """Translate a provider failure into a user-facing ``LLMServiceError``."""
    status = _status_code(error)
    if status == 401:
        return LLMServiceError(MSG_AUTH_FAILED, error, is_retryable=False)
    if status == 429:
        return LLMServiceError(MSG_RATE_LIMITED, error, is_retryable=True)
    if status is not None and status >= 500:
        return LLMServiceError(MSG_UNAVAILABLE, error, is_retryable=True)
    if isinstance(
        error,
        (openai.APIConnectionError, httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError),
    ):
        return LLMServiceError(MSG_TIMEOUT, error, is_retryable=True)
    return LLMServiceError(MSG_FAILED, error, is_retryable=is_retryable_llm_error(error))


async def generate_response(
    user_message: str,
    retrieved: Sequence[RetrievedArticle],
    history: Sequence[Dict[str, str]] = (),
    is_recommendation: bool = False,
    is_ambiguous: bool = False,
    available_categories: Sequence[str] = (),
    is_out_of_scope: bool = False,
    client: Optional[AsyncOpenAI] = None,
    backoff: Optional[ExponentialBackoff] = None,
) -> AsyncIterator[str]:
    """Stream the assistant reply as text tokens.

    Opening the completion stream is retried with backoff for transient
    failures. Once tokens are flowing, a broken stream is not retried.

    Raises:
        LLMServiceError: on any provider failure
    """
    llm = client or get_openai_client()
    policy = backoff or llm_backoff
    system_prompt = create_system_prompt(
        retrieved, is_recommendation, is_ambiguous, available_categories, is_out_of_scope
    )
    messages = build_messages(system_prompt, history, user_message)
    logger.debug(
        f"Generating response with {len(retrieved)} articles "
        f"(system prompt {len(system_prompt)} chars, {len(history)} history messages)"
    )

    async def open_stream():
        return await llm.chat.completions.create(
            model=settings.openai_model,
            messages=messages,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            stream=True,
        )

    try:
        stream = await policy.execute_with_retry(open_stream, is_retryable_llm_error)
    except (openai.OpenAIError, httpx.HTTPError, asyncio.TimeoutError) as e:
        logger.error(f"LLM API error: {type(e).__name__}: {e}")
        raise map_llm_error(e) from e

    try:
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content
    except (openai.OpenAIError, httpx.HTTPError, OSError, asyncio.TimeoutError) as e:
        logger.error(f"LLM streaming error: {type(e).__name__}: {e}")
        raise LLMServiceError(MSG_INTERRUPTED, e, is_retryable=True) from e


def fallback_title(first_message: str) -> str:
    text = first_message.strip()
    if len(text) > TITLE_FALLBACK_LENGTH:
        return text[:TITLE_FALLBACK_LENGTH] + "..."
    return text


async def generate_title(first_message: str, client: Optional[AsyncOpenAI] = None) -> str:
    """Short title (max 6 words) for a conversation; never raises."""
    llm = client or get_openai_client()
    prompt = (
        "Generate a short, concise title (max 6 words) for a chat conversation "
        f'that starts with this message: "{first_message}"\n\n'
        "Only return the title, nothing else."
    )
    try:
        completion = await llm.chat.completions.create(
            model=settings.openai_model,
            messages=[{"role": "user", "content": prompt}],
            temperature=settings.openai_temperature,
            max_tokens=TITLE_MAX_TOKENS,
        )
    except (openai.OpenAIError, httpx.HTTPError, asyncio.TimeoutError) as e:
        logger.warning(f"Failed to generate title: {type(e).__name__}: {e}")
        return fallback_title(first_message)

    title = ""
    if completion.choices and completion.choices[0].message.content:
        title = completion.choices[0].message.content.strip().strip('"')
    return title or fallback_title(first_message)
