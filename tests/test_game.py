"""Tests for daily game scores and the leaderboard."""

from datetime import datetime, timedelta, timezone

import pytest

from community.app.db import crud
from community.app.db.crud.game import is_valid_game_date
from community.app.db.models import GameScore, User
from community.app.exceptions import AlreadyPlayedError
from tests.conftest import BOB_KEY, auth

DAY = "2024-05-01"


@pytest.mark.parametrize(
    "value,valid",
    [
        ("2024-05-01", True),
        ("2024-02-29", True),
        ("2024-5-1", False),
        ("", False),
        ("01-05-2024", False),
        ("2025-13-45", False),
        ("2023-02-29", False),
        ("2024-05-01\n", False),
    ],
)
def test_is_valid_game_date(value, valid):
    assert is_valid_game_date(value) is valid


@pytest.mark.asyncio
async def test_submit_score_once_per_day(db_session, users):
    alice, _ = users

    await crud.submit_score(db_session, alice.id, DAY, 40)

    with pytest.raises(AlreadyPlayedError):
        await crud.submit_score(db_session, alice.id, DAY, 90)
    assert (await crud.get_score(db_session, alice.id, DAY)).score == 40

    await crud.submit_score(db_session, alice.id, "2024-05-02", 10)


@pytest.mark.asyncio
async def test_rank_counts_strictly_higher_scores(db_session, users):
    alice, bob = users
    carol = User(id="user-carol", name="Carol", email="carol@example.com", api_key_hash="x")
    db_session.add(carol)
    await crud.submit_score(db_session, alice.id, DAY, 50)
    await crud.submit_score(db_session, bob.id, DAY, 80)
    await crud.submit_score(db_session, carol.id, DAY, 50)

    assert await crud.get_rank(db_session, bob.id, DAY) == 1
    assert await crud.get_rank(db_session, alice.id, DAY) == 2
    assert await crud.get_rank(db_session, carol.id, DAY) == 2
    assert await crud.get_rank(db_session, alice.id, "2024-01-01") is None


@pytest.mark.asyncio
async def test_leaderboard_orders_by_score_then_submission_time(db_session, users):
    alice, bob = users
    t0 = datetime(2024, 5, 1, 8, tzinfo=timezone.utc)
    db_session.add_all([
        GameScore(user_id=bob.id, game_date=DAY, score=70, created_at=t0 + timedelta(minutes=5)),
        GameScore(user_id=alice.id, game_date=DAY, score=70, created_at=t0),
        GameScore(user_id="user-ghost", game_date=DAY, score=99, created_at=t0),
        GameScore(user_id=alice.id, game_date="2024-05-02", score=100, created_at=t0),
    ])
    await db_session.flush()

    rows = await crud.get_leaderboard(db_session, DAY)

    assert [(entry.user_id, name) for entry, name in rows] == [
        ("user-ghost", None),
        (alice.id, "Alice"),
        (bob.id, "Bob"),
    ]


class TestGameApi:
    @pytest.mark.asyncio
    async def test_submit_and_check(self, client):
        before = await client.get("/api/hives/has-played", params={"date": DAY}, headers=auth())
        submitted = await client.post(
            "/api/hives/game-score", json={"score": 42, "game_date": DAY}, headers=auth()
        )
        after = await client.get("/api/hives/has-played", params={"date": DAY}, headers=auth())

        assert before.json() == {"has_played": False, "score": None, "rank": None}
        assert submitted.status_code == 200
        assert submitted.json() == {"success": True, "rank": 1}
        assert after.json() == {"has_played": True, "score": 42, "rank": 1}

    @pytest.mark.asyncio
    async def test_second_submission_conflicts(self, client):
        payload = {"score": 10, "game_date": DAY}
        await client.post("/api/hives/game-score", json=payload, headers=auth())

        response = await client.post("/api/hives/game-score", json=payload, headers=auth())

        assert response.status_code == 409
        assert response.json()["error"] == "already_played"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"score": -1, "game_date": DAY},
            {"score": 5, "game_date": "May 1st"},
            {"score": 5, "game_date": "2025-13-45"},
        ],
    )
    async def test_invalid_submission(self, client, payload):
        response = await client.post("/api/hives/game-score", json=payload, headers=auth())

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_leaderboard(self, client):
        await client.post("/api/hives/game-score", json={"score": 30, "game_date": DAY}, headers=auth())
        await client.post(
            "/api/hives/game-score", json={"score": 60, "game_date": DAY}, headers=auth(BOB_KEY)
        )

        response = await client.get("/api/hives/leaderboard", params={"date": DAY}, headers=auth())

        assert response.json() == {
            "leaderboard": [
                {"user_id": "user-bob", "display_name": "Bob", "score": 60, "rank": 1},
                {"user_id": "user-alice", "display_name": "Alice", "score": 30, "rank": 2},
            ]
        }

    @pytest.mark.asyncio
    async def test_bad_date_query(self, client):
        response = await client.get("/api/hives/leaderboard", params={"date": "yesterday"}, headers=auth())

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid date format. Expected YYYY-MM-DD"
