"""Wiki article retrieval for the chat assistant.

Candidate articles are found with a case-insensitive substring search,
scored for relevance against the user's message, and trimmed to a small
set that favours category diversity. Each selected article carries an
excerpt of its most relevant sections for the system prompt.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from community.app.core.config import settings
from community.app.core.logging import get_logger
from community.app.db.models import WikiArticle
from community.app.services.streaming import ArticleSource

logger = get_logger(__name__)

MIN_TERM_LENGTH = 3
MAX_SCORE = 100
TITLE_TERM_SCORE = 10
EXACT_TITLE_BONUS = 20
CONTENT_MATCH_SCORE = 2
CONTENT_TERM_CAP = 10
CATEGORY_TERM_SCORE = 5

# Extra articles beyond the top two must reach this score to be picked for diversity
DIVERSITY_SCORE_THRESHOLD = 20
SEARCH_CANDIDATES = 20

RECOMMENDATION_KEYWORDS = (
    "recommend",
    "suggestion",
    "suggest",
    "what should i read",
    "what can i read",
    "articles about",
    "show me articles",
    "list articles",
    "what articles",
    "find articles",
)

OTHER_UNIVERSITIES = (
    "harvard", "stanford", "mit", "oxford", "cambridge", "yale", "princeton",
    "berkeley", "caltech", "eth zurich", "eth zürich", "lmu", "ludwig maximilian",
    "rwth aachen", "kit karlsruhe", "heidelberg university", "humboldt",
    "free university berlin", "university of",
)
HOME_UNIVERSITY_MARKERS = ("tum", "technical university of munich")

OUT_OF_SCOPE_TOPICS = (
    "recipe", "cooking", "weather", "stock market", "cryptocurrency", "bitcoin",
    "movie", "tv show", "celebrity", "sports score", "football match",
    "game result", "how to fix", "repair", "medical advice", "legal advice",
    "tax", "investment",
)
CAMPUS_MARKERS = ("tum", "campus", "student", "university")

GENERAL_KNOWLEDGE_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"^what is the capital of",
        r"^who is the president of",
        r"^when did .* happen",
        r"^how do i (cook|make|build|fix)",
        r"^what's the weather",
        r"^tell me a joke",
        r"^write me a (story|poem|song)",
    )
)

_HEADING_SPLIT = re.compile(r"(?=^#{1,6}\s)", re.MULTILINE)


@dataclass
class RetrievedArticle:
    article: WikiArticle
    relevant_content: str
    relevance_score: int

    @property
    def source(self) -> ArticleSource:
        return ArticleSource(
            title=self.article.title,
            slug=self.article.slug,
            category=self.article.category,
        )


def query_terms(query: str) -> List[str]:
    """Lower-cased whitespace-separated terms; short terms are ignored."""
    return [t for t in query.lower().split() if len(t) >= MIN_TERM_LENGTH]


def _count(term: str, text: str) -> int:
    return len(re.findall(re.escape(term), text))


def calculate_relevance_score(article: WikiArticle, query: str) -> int:
    """Score an article against a query, from 0 to ``MAX_SCORE``.

    Per term: +10 for a title hit, +2 per content occurrence (at most +10),
    +5 for a category hit. An exact title match adds 20.
    """
    query_lower = query.lower()
    terms = query_terms(query)
    title = article.title.lower()
    content = (article.content or "").lower()
    category = (article.category or "").lower()

    score = 0
    for term in terms:
        if term in title:
            score += TITLE_TERM_SCORE
    if title == query_lower:
        score += EXACT_TITLE_BONUS
    for term in terms:
        score += min(_count(term, content) * CONTENT_MATCH_SCORE, CONTENT_TERM_CAP)
    for term in terms:
        if term in category:
            score += CATEGORY_TERM_SCORE
    return min(score, MAX_SCORE)


def extract_relevant_content(content: str, query: str, is_recommendation: bool = False) -> str:
    """Pick the parts of an article worth putting in the prompt.

    Recommendation queries get the opening paragraphs as an overview.
    Otherwise markdown sections are ranked by query term occurrences and
    the best three are kept.
    """
    if is_recommendation:
        overview = "\n\n".join(content.split("\n\n")[:3])
        return overview[:1500] + "..." if len(overview) > 1500 else overview

    terms = query_terms(query)
    scored: List[Tuple[str, int]] = []
    for section in _HEADING_SPLIT.split(content):
        if not section:
            continue
        lower = section.lower()
        scored.append((section, sum(_count(term, lower) for term in terms)))
    scored.sort(key=lambda item: item[1], reverse=True)

    relevant = [section for section, score in scored if score > 0][:3]
    if not relevant:
        return content[:1000]

    extracted = "\n\n".join(relevant)
    if len(extracted) > 2000:
        extracted = extracted[:2000] + "..."
    return extracted


def get_unique_categories(retrieved: Sequence[RetrievedArticle]) -> List[str]:
    categories: List[str] = []
    for item in retrieved:
        if item.article.category not in categories:
            categories.append(item.article.category)
    return categories


def is_recommendation_query(query: str) -> bool:
    query_lower = query.lower()
    return any(keyword in query_lower for keyword in RECOMMENDATION_KEYWORDS)


def is_out_of_scope_query(query: str) -> bool:
    """Heuristic check for questions the campus wiki cannot answer."""
    query_lower = query.lower()

    if any(uni in query_lower for uni in OTHER_UNIVERSITIES):
        if not any(marker in query_lower for marker in HOME_UNIVERSITY_MARKERS):
            return True

    if any(topic in query_lower for topic in OUT_OF_SCOPE_TOPICS):
        if not any(marker in query_lower for marker in CAMPUS_MARKERS):
            return True

    return any(pattern.search(query_lower) for pattern in GENERAL_KNOWLEDGE_PATTERNS)


def is_ambiguous_query(query: str, retrieved: Sequence[RetrievedArticle]) -> bool:
    """A short query whose top hits are close in score but span 3+ categories."""
    if len(retrieved) < 3:
        return False
    is_short = len(query.split()) <= 2
    if len(get_unique_categories(retrieved)) < 3:
        return False
    top_scores = [item.relevance_score for item in retrieved[:3]]
    return is_short and max(top_scores) - min(top_scores) <= 20


def get_ambiguity_options(retrieved: Sequence[RetrievedArticle]) -> List[dict]:
    """First article title seen per category, in retrieval order."""
    options: dict = {}
    for item in retrieved:
        options.setdefault(item.article.category, item.article.title)
    return [{"category": c, "example_title": t} for c, t in options.items()]


def select_diverse_articles(
    scored: Sequence[Tuple[WikiArticle, int]],
    max_results: int,
) -> List[Tuple[WikiArticle, int]]:
    """Choose up to ``max_results`` articles from a best-first list.

    The top two are always kept. Remaining slots go first to well-scoring
    articles from categories not yet represented, then to the next best.
    """
    if len(scored) <= max_results:
        return list(scored)

    chosen = [0, 1]
    seen_categories = {scored[0][0].category, scored[1][0].category}

    for index in range(2, len(scored)):
        if len(chosen) >= max_results:
            break
        article, score = scored[index]
        if article.category not in seen_categories and score >= DIVERSITY_SCORE_THRESHOLD:
            chosen.append(index)
            seen_categories.add(article.category)

    for index in range(2, len(scored)):
        if len(chosen) >= max_results:
            break
        if index not in chosen:
            chosen.append(index)

    return [scored[index] for index in chosen]


async def search_articles(
    session: AsyncSession, query: str, limit: int = SEARCH_CANDIDATES
) -> List[WikiArticle]:
    """Published articles whose title, content or category contains a query term."""
    terms = query_terms(query) or ([query.strip().lower()] if query.strip() else [])
    if not terms:
        return []

    conditions = []
    for term in terms:
        pattern = f"%{term}%"
        conditions.extend(
            [
                WikiArticle.title.ilike(pattern),
                WikiArticle.content.ilike(pattern),
                WikiArticle.category.ilike(pattern),
            ]
        )
    result = await session.execute(
        select(WikiArticle)
        .where(WikiArticle.published.is_(True), or_(*conditions))
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_all_categories(session: AsyncSession) -> List[str]:
    result = await session.execute(
        select(WikiArticle.category)
        .where(WikiArticle.published.is_(True))
        .distinct()
        .order_by(WikiArticle.category)
    )
    return [category for category in result.scalars().all() if category]


async def retrieve_relevant_articles(
    session: AsyncSession,
    query: str,
    max_results: Optional[int] = None,
) -> List[RetrievedArticle]:
    """Find, score and excerpt the wiki articles most relevant to ``query``."""
    limit = max_results or settings.retrieval_max_articles
    candidates = await search_articles(session, query)
    if not candidates:
        return []

    scored = [(article, calculate_relevance_score(article, query)) for article in candidates]
    scored.sort(key=lambda item: item[1], reverse=True)

    recommendation = is_recommendation_query(query)
    retrieved = [
        RetrievedArticle(
            article=article,
            relevant_content=extract_relevant_content(article.content or "", query, recommendation),
            relevance_score=score,
        )
        for article, score in select_diverse_articles(scored, limit)
    ]

    categories = get_unique_categories(retrieved)
    if len(categories) > 1:
        logger.debug(
            f"Multi-category retrieval: {len(categories)} categories ({', '.join(categories)})"
        )
    return retrieved
