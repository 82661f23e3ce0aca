"""
Game lookup and result classification.

chess.com reports one result code per colour ("win", "resigned", "agreed", ...). Codes are
mapped through a closed table; any pairing the table cannot turn into a clear outcome is
settled as a draw and flagged for manual review.
"""
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from matchstake.clients.chess_api import ChessApiClient
from matchstake.config import settings
from matchstake.contracts.contracts import ChessComGame
from matchstake.logging_config import get_logger

logger = get_logger(__name__)

_TIME_CONTROL = re.compile(r"(\d+)\+(\d+)")


class SideResult(str, Enum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"


class MatchOutcome(str, Enum):
    CHALLENGER_WINS = "challenger_wins"
    OPPONENT_WINS = "opponent_wins"
    DRAW = "draw"


RESULT_CODES: dict[str, SideResult] = {
    "win": SideResult.WIN,
    "lose": SideResult.LOSS,
    "resigned": SideResult.LOSS,
    "timeout": SideResult.LOSS,
    "checkmated": SideResult.LOSS,
    "abandoned": SideResult.LOSS,
    "adjudication": SideResult.LOSS,
    "rule_violation": SideResult.LOSS,
    "kingofthehill": SideResult.LOSS,
    "threecheck": SideResult.LOSS,
    "bughousepartnerlose": SideResult.LOSS,
    "agreed": SideResult.DRAW,
    "stalemate": SideResult.DRAW,
    "repetition": SideResult.DRAW,
    "threefold_repetition": SideResult.DRAW,
    "insufficient": SideResult.DRAW,
    "timevsinsufficient": SideResult.DRAW,
    "50move": SideResult.DRAW,
    "fifty_move": SideResult.DRAW,
    "aborted": SideResult.DRAW,
}


@dataclass
class MatchResult:
    outcome: MatchOutcome
    reason: str
    winner_username: Optional[str] = None
    needs_review: bool = False
    game_url: Optional[str] = None
    end_time: Optional[int] = None
    game_data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason,
            "winner": self.winner_username,
            "needsReview": self.needs_review,
            "gameUrl": self.game_url,
            "endTime": self.end_time,
            "gameData": self.game_data,
        }


def estimate_match_duration(time_control: Optional[str]) -> int:
    """Seconds a game is expected to take: both clocks plus the increment over an assumed move count."""
    if not time_control:
        return settings.default_match_duration_seconds
    match = _TIME_CONTROL.search(time_control)
    if not match:
        return settings.default_match_duration_seconds
    minutes, increment = int(match.group(1)), int(match.group(2))
    return minutes * 60 * 2 + settings.assumed_moves * increment * 2


def game_end_reason(white_code: str, black_code: str) -> str:
    """How the game ended, preferring the non-winning side's code."""
    codes = [white_code, black_code]
    for code in codes:
        if code != "win" and code in RESULT_CODES:
            return code
    if "win" in codes:
        return "win"
    return "unknown"


def classify_game(game: ChessComGame, challenger: str, opponent: str) -> MatchResult:
    challenger_is_white = game.white.username.lower() == challenger.lower()
    challenger_side = game.white if challenger_is_white else game.black
    opponent_side = game.black if challenger_is_white else game.white
    challenger_result = RESULT_CODES.get(challenger_side.result)
    opponent_result = RESULT_CODES.get(opponent_side.result)
    reason = game_end_reason(game.white.result, game.black.result)
    common = {
        "game_url": game.url,
        "end_time": game.end_time,
        "game_data": {
            "white": game.white.username,
            "black": game.black.username,
            "whiteResult": game.white.result,
            "blackResult": game.black.result,
        },
    }

    if challenger_result is None or opponent_result is None:
        logger.warning(
            "Unrecognized result codes challenger=%s opponent=%s, settling as draw for review",
            challenger_side.result,
            opponent_side.result,
        )
        return MatchResult(MatchOutcome.DRAW, reason, needs_review=True, **common)

    results = {challenger_result, opponent_result}
    if results == {SideResult.DRAW}:
        return MatchResult(MatchOutcome.DRAW, reason, **common)
    if SideResult.DRAW not in results:
        challenger_won = challenger_result == SideResult.WIN or opponent_result == SideResult.LOSS
        opponent_won = opponent_result == SideResult.WIN or challenger_result == SideResult.LOSS
        if challenger_won and not opponent_won:
            return MatchResult(MatchOutcome.CHALLENGER_WINS, reason, winner_username=challenger_side.username, **common)
        if opponent_won and not challenger_won:
            return MatchResult(MatchOutcome.OPPONENT_WINS, reason, winner_username=opponent_side.username, **common)

    logger.warning(
        "Contradictory result codes challenger=%s opponent=%s, settling as draw for review",
        challenger_side.result,
        opponent_side.result,
    )
    return MatchResult(MatchOutcome.DRAW, reason, needs_review=True, **common)


async def find_recent_result(
    api: ChessApiClient,
    challenger: str,
    opponent: str,
    platform: str,
    window_minutes: Optional[int] = None,
    now: Optional[float] = None,
) -> Optional[MatchResult]:
    """
    Look for a finished game between the two usernames that ended inside the window.

    RateLimited and ProviderError from the API client propagate to the caller.
    """
    if platform != "chess.com":
        logger.warning("Platform %s not supported for automatic result checks", platform)
        return None

    archives = await api.get_game_archives(challenger)
    if not archives:
        return None
    games = await api.get_monthly_games(archives[-1])

    window = window_minutes if window_minutes is not None else settings.result_window_minutes
    cutoff = (now if now is not None else time.time()) - window * 60
    for raw in reversed(games):
        try:
            game = ChessComGame.model_validate(raw)
        except ValidationError:
            logger.debug("Skipping malformed game entry url=%s", raw.get("url") if isinstance(raw, dict) else None)
            continue
        if game.end_time < cutoff:
            continue
        if game.involves(challenger, opponent):
            result = classify_game(game, challenger, opponent)
            logger.info(
                "Found game %s vs %s outcome=%s reason=%s url=%s",
                challenger,
                opponent,
                result.outcome.value,
                result.reason,
                game.url,
            )
            return result
    return None
