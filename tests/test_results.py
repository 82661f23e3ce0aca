import asyncio

import pytest

from matchstake.contracts.contracts import ChessComGame
from matchstake.exceptions import RateLimited
from matchstake.results import MatchOutcome, classify_game, estimate_match_duration, find_recent_result

NOW = 1_760_000_000


def game(white_result, black_result, white="AliceChess", black="BobChess", end_time=NOW - 60, url="https://chess.com/game/1"):
    return {
        "url": url,
        "end_time": end_time,
        "time_control": "300",
        "rules": "chess",
        "white": {"username": white, "result": white_result, "rating": 1500},
        "black": {"username": black, "result": black_result, "rating": 1480},
    }


class FakeArchiveApi:
    def __init__(self, games=None, error=None):
        self.games = games or []
        self.error = error
        self.archive_lookups = []

    async def get_game_archives(self, username):
        self.archive_lookups.append(username)
        if self.error:
            raise self.error
        return ["https://api.chess.com/pub/player/x/games/2025/09", "https://api.chess.com/pub/player/x/games/2025/10"]

    async def get_monthly_games(self, archive_url):
        assert archive_url.endswith("2025/10")
        return self.games


@pytest.mark.parametrize(
    "time_control, expected",
    [("10+5", 1500), ("5+0", 600), ("3+2", 480), (None, 300), ("blitz", 300), ("", 300)],
)
def test_estimate_match_duration(time_control, expected):
    assert estimate_match_duration(time_control) == expected


def test_classify_decisive_game_names_winner_and_loser_code():
    result = classify_game(ChessComGame.model_validate(game("win", "resigned")), "alicechess", "bobchess")
    assert result.outcome == MatchOutcome.CHALLENGER_WINS
    assert result.winner_username == "AliceChess"
    assert result.reason == "resigned"
    assert result.needs_review is False


def test_classify_opponent_win_when_challenger_plays_black():
    raw = game("win", "timeout", white="BobChess", black="AliceChess")
    result = classify_game(ChessComGame.model_validate(raw), "AliceChess", "BobChess")
    assert result.outcome == MatchOutcome.OPPONENT_WINS
    assert result.winner_username == "BobChess"
    assert result.reason == "timeout"


def test_classify_agreed_draw():
    result = classify_game(ChessComGame.model_validate(game("agreed", "agreed")), "AliceChess", "BobChess")
    assert result.outcome == MatchOutcome.DRAW
    assert result.needs_review is False
    assert result.reason == "agreed"


@pytest.mark.parametrize(
    "white_result, black_result",
    [("win", "bughouse_mystery"), ("win", "agreed"), ("win", "win"), ("timeout", "resigned")],
)
def test_unknown_or_contradictory_codes_become_draw_for_review(white_result, black_result):
    result = classify_game(ChessComGame.model_validate(game(white_result, black_result)), "AliceChess", "BobChess")
    assert result.outcome == MatchOutcome.DRAW
    assert result.needs_review is True
    assert result.winner_username is None


def test_find_recent_result_picks_newest_game_between_the_players():
    api = FakeArchiveApi(
        games=[
            game("win", "resigned", end_time=NOW - 3600, url="old"),
            game("checkmated", "win", end_time=NOW - 120, url="recent"),
            game("win", "resigned", white="AliceChess", black="Carol", end_time=NOW - 30, url="other"),
            {"url": "broken"},
        ]
    )
    result = asyncio.run(find_recent_result(api, "AliceChess", "BobChess", "chess.com", now=NOW))
    assert result is not None
    assert result.game_url == "recent"
    assert result.outcome == MatchOutcome.OPPONENT_WINS


def test_find_recent_result_ignores_games_outside_window():
    api = FakeArchiveApi(games=[game("win", "resigned", end_time=NOW - 31 * 60)])
    assert asyncio.run(find_recent_result(api, "AliceChess", "BobChess", "chess.com", now=NOW)) is None


def test_unsupported_platform_has_no_result_and_makes_no_calls():
    api = FakeArchiveApi(games=[game("win", "resigned")])
    assert asyncio.run(find_recent_result(api, "alice_li", "bob_li", "lichess", now=NOW)) is None
    assert api.archive_lookups == []


def test_rate_limit_propagates_to_caller():
    api = FakeArchiveApi(error=RateLimited(300))
    with pytest.raises(RateLimited):
        asyncio.run(find_recent_result(api, "AliceChess", "BobChess", "chess.com", now=NOW))
