from enum import Enum
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from matchstake.auto_refund import AutoRefunder
from matchstake.clients.chess_api import ChessApiClient, RateLimitWindow
from matchstake.config import settings
from matchstake.exceptions import ProviderError, RateLimited
from matchstake.logging_config import get_logger
from matchstake.models import models
from matchstake.results import estimate_match_duration, find_recent_result
from matchstake.scheduler import TaskScheduler
from matchstake.settlement import SettlementService

logger = get_logger(__name__)


class CheckState(str, Enum):
    RESOLVED = "resolved"
    RESCHEDULED = "rescheduled"
    COOLDOWN = "cooldown"
    AUTO_REFUNDED = "auto_refunded"
    STOPPED = "stopped"
    GONE = "gone"


class MatchResultPoller:
    """
    Checks each ongoing match for a finished game on a bounded timer schedule.

    A match gets its first check once the estimated game duration has passed, then up to
    ``max_checks`` checks in total. Checks that land inside the shared rate-limit window are
    pushed back without counting. When the checks run out the stakes are refunded.
    """

    def __init__(
        self,
        api: ChessApiClient,
        cooldown: RateLimitWindow,
        settlement: SettlementService,
        refunder: AutoRefunder,
        session_factory: Callable[[], Session],
        scheduler: Optional[TaskScheduler] = None,
        check_interval: Optional[float] = None,
        max_checks: Optional[int] = None,
    ):
        self.api = api
        self.cooldown = cooldown
        self.settlement = settlement
        self.refunder = refunder
        self.session_factory = session_factory
        self.scheduler = scheduler or TaskScheduler()
        self.check_interval = check_interval if check_interval is not None else settings.result_check_interval_seconds
        self.max_checks = max_checks if max_checks is not None else settings.max_result_checks
        self._active: Dict[int, int] = {}
        # Bumped by stop(); a check that sees a newer generation than it started with discards its outcome.
        self._generations: Dict[int, int] = {}

    def start(self, match: models.OngoingMatch, initial_delay: Optional[float] = None) -> float:
        delay = initial_delay if initial_delay is not None else estimate_match_duration(match.time_control)
        logger.info(
            "Watching match %s (%s vs %s on %s), first check in %.0fs",
            match.id,
            match.challenger_username,
            match.opponent_username,
            match.platform,
            delay,
        )
        self._schedule(match.id, delay, 1)
        return delay

    def _schedule(self, match_id: int, delay: float, attempt: int) -> None:
        self._active[match_id] = attempt
        self.scheduler.schedule(match_id, delay, self.check, match_id, attempt)

    def stop(self, match_id: int) -> bool:
        self._generations[match_id] = self._generations.get(match_id, 0) + 1
        tracked = self._active.pop(match_id, None) is not None
        cancelled = self.scheduler.cancel(match_id)
        if tracked or cancelled:
            logger.info("Stopped result checks for match %s", match_id)
        return tracked or cancelled

    def stop_all(self) -> None:
        for match_id in self._active:
            self._generations[match_id] = self._generations.get(match_id, 0) + 1
        self.scheduler.cancel_all()
        self.scheduler.shutdown()
        self._active.clear()

    def is_watching(self, match_id: int) -> bool:
        return match_id in self._active

    async def check(self, match_id: int, attempt: int) -> CheckState:
        generation = self._generations.get(match_id, 0)
        db = self.session_factory()
        try:
            match = db.get(models.OngoingMatch, match_id)
            if match is None or match.result_checked:
                self._active.pop(match_id, None)
                return CheckState.GONE

            remaining = self.cooldown.remaining()
            if remaining > 0:
                logger.info(
                    "Rate limit active, deferring check %s for match %s by %.0fs", attempt, match_id, remaining + 1
                )
                self._schedule(match_id, remaining + 1, attempt)
                return CheckState.COOLDOWN

            logger.info("Checking match %s attempt=%s/%s", match_id, attempt, self.max_checks)
            retry_delay = self.check_interval
            try:
                result = await find_recent_result(
                    self.api, match.challenger_username, match.opponent_username, match.platform
                )
            except RateLimited as exc:
                if not self.cooldown.is_active():
                    self.cooldown.trigger()
                retry_delay = self.cooldown.duration_seconds + 1
                logger.warning("Rate limited while checking match %s: %s", match_id, exc)
                result = None
            except ProviderError as exc:
                logger.error("Result lookup failed for match %s attempt=%s: %s", match_id, attempt, exc)
                result = None

            if self._generations.get(match_id, 0) != generation:
                logger.info("Result checks for match %s were stopped during attempt %s, discarding", match_id, attempt)
                return CheckState.STOPPED

            if result is not None:
                await self.settlement.settle(db, match, result)
                self._active.pop(match_id, None)
                return CheckState.RESOLVED

            if attempt >= self.max_checks:
                logger.warning("No result for match %s after %s checks, refunding", match_id, attempt)
                await self.refunder.refund(db, match, attempt)
                self._active.pop(match_id, None)
                return CheckState.AUTO_REFUNDED

            self._schedule(match_id, retry_delay, attempt + 1)
            return CheckState.RESCHEDULED
        finally:
            db.close()

    def status(self) -> dict:
        return {
            "activeMatches": len(self._active),
            "attempts": {str(match_id): attempt for match_id, attempt in self._active.items()},
            "scheduled": len(self.scheduler.pending_keys()),
            "maxChecks": self.max_checks,
            "cooldownRemainingSeconds": round(self.cooldown.remaining(), 1),
        }
