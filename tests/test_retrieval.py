"""Tests for wiki article retrieval and query classification."""

import pytest

from community.app.db.models import WikiArticle
from community.app.services.retrieval import (
    RetrievedArticle,
    calculate_relevance_score,
    extract_relevant_content,
    get_all_categories,
    get_ambiguity_options,
    is_ambiguous_query,
    is_out_of_scope_query,
    is_recommendation_query,
    query_terms,
    retrieve_relevant_articles,
    select_diverse_articles,
)


def article(title, category="Campus Life", content="", slug=None, published=True):
    return WikiArticle(
        title=title,
        slug=slug or title.lower().replace(" ", "-"),
        category=category,
        content=content,
        published=published,
    )


def retrieved(title, category, score):
    return RetrievedArticle(article=article(title, category), relevant_content="", relevance_score=score)


class TestScoring:
    def test_query_terms_drop_short_words(self):
        assert query_terms("Is the MENSA open on Sunday") == ["the", "mensa", "open", "sunday"]

    def test_title_content_and_exact_match(self):
        item = article("Library Hours", content="The library is a quiet library. Library cards at the desk.")

        # title 2 x 10, exact title 20, content "library" 3 x 2
        assert calculate_relevance_score(item, "Library Hours") == 46

    def test_category_hits(self):
        item = article("Mensa Menu", category="Food and Dining")

        assert calculate_relevance_score(item, "dining options") == 5

    def test_content_contribution_is_capped_per_term(self):
        item = article("Parking", content="bike " * 30)

        assert calculate_relevance_score(item, "bike") == 10

    def test_total_is_capped(self):
        query = "exam schedule finals registration deadline"
        item = article(query.title(), category=query, content=query * 10)

        assert calculate_relevance_score(item, query) == 100

    def test_no_terms_no_score(self):
        assert calculate_relevance_score(article("Mensa", content="on it at"), "on it") == 0


class TestExtractRelevantContent:
    content = "# Intro\nWelcome\n# Hours\nThe library opens at 8\n# Food\nMensa"

    def test_best_matching_section(self):
        assert extract_relevant_content(self.content, "library opens") == "# Hours\nThe library opens at 8\n"

    def test_no_match_returns_opening(self):
        assert extract_relevant_content(self.content, "parking") == self.content

    def test_recommendation_uses_first_paragraphs(self):
        text = "One.\n\nTwo.\n\nThree.\n\nFour."

        assert extract_relevant_content(text, "anything", is_recommendation=True) == "One.\n\nTwo.\n\nThree."


class TestClassification:
    @pytest.mark.parametrize(
        "query,expected",
        [
            ("Can you recommend something on housing?", True),
            ("show me articles on exams", True),
            ("Where is the library?", False),
        ],
    )
    def test_recommendation(self, query, expected):
        assert is_recommendation_query(query) is expected

    @pytest.mark.parametrize(
        "query,expected",
        [
            ("What is the capital of France?", True),
            ("Give me a recipe for pasta", True),
            ("Is there a cooking class for students?", False),
            ("How good is Harvard for physics?", True),
            ("Exchange from TUM to Stanford", False),
            ("Where is the library?", False),
        ],
    )
    def test_out_of_scope(self, query, expected):
        assert is_out_of_scope_query(query) is expected

    def test_ambiguous_short_query_across_categories(self):
        results = [
            retrieved("Garching Campus", "Campus Life", 60),
            retrieved("Garching Housing", "Housing", 50),
            retrieved("Garching Research", "Research", 45),
        ]

        assert is_ambiguous_query("garching", results)
        assert not is_ambiguous_query("how do I get to garching", results)
        assert not is_ambiguous_query("garching", results[:2])

    def test_scores_far_apart_are_not_ambiguous(self):
        results = [
            retrieved("A", "One", 90),
            retrieved("B", "Two", 40),
            retrieved("C", "Three", 30),
        ]

        assert not is_ambiguous_query("garching", results)

    def test_ambiguity_options_first_title_per_category(self):
        results = [
            retrieved("Garching Campus", "Campus Life", 60),
            retrieved("Garching Bus", "Campus Life", 55),
            retrieved("Garching Housing", "Housing", 50),
        ]

        assert get_ambiguity_options(results) == [
            {"category": "Campus Life", "example_title": "Garching Campus"},
            {"category": "Housing", "example_title": "Garching Housing"},
        ]


def test_select_diverse_articles_prefers_new_categories():
    scored = [
        (article("A", "X"), 90),
        (article("B", "X"), 80),
        (article("C", "X"), 70),
        (article("D", "Y"), 30),
        (article("E", "Z"), 10),
    ]

    chosen = select_diverse_articles(scored, 4)

    assert [a.title for a, _ in chosen] == ["A", "B", "D", "C"]
    assert select_diverse_articles(scored[:2], 4) == scored[:2]


class TestRetrieveRelevantArticles:
    @pytest.mark.asyncio
    async def test_searches_published_articles_best_first(self, db_session):
        db_session.add_all([
            article("Library Hours", "Campus Life", "The library opens at 8."),
            article("Library Cards", "Student Services", "Get a card at the library desk."),
            article("Draft Library Guide", "Campus Life", "library", published=False),
            article("Mensa Menu", "Food", "Lunch options."),
        ])
        await db_session.flush()

        results = await retrieve_relevant_articles(db_session, "library hours")

        assert [r.article.title for r in results] == ["Library Hours", "Library Cards"]
        assert results[0].relevance_score > results[1].relevance_score
        assert results[0].source.slug == "library-hours"

    @pytest.mark.asyncio
    async def test_no_candidates(self, db_session):
        assert await retrieve_relevant_articles(db_session, "parking") == []

    @pytest.mark.asyncio
    async def test_categories_are_distinct_and_sorted(self, db_session):
        db_session.add_all([
            article("B", "Housing"),
            article("A", "Academics"),
            article("C", "Housing"),
            article("D", "Secret", published=False),
        ])
        await db_session.flush()

        assert await get_all_categories(db_session) == ["Academics", "Housing"]
