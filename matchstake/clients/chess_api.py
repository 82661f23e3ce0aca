import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

import httpx

from matchstake.config import CacheCategory, cache_ttl_seconds, settings
from matchstake.exceptions import ProviderError, RateLimited
from matchstake.logging_config import get_logger

logger = get_logger(__name__)

RATE_LIMIT_STATUS_CODES = {410, 429}
SUCCESS_STREAK_BEFORE_RELAX = 5


class RateLimitWindow:
    """
    Process-wide cooldown for the game-result API.

    Shared by the API client and the match poller; reads are unlocked, races only cost one extra check.
    """

    def __init__(self, duration_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.duration_seconds = duration_seconds if duration_seconds is not None else settings.rate_limit_cooldown_seconds
        self._clock = clock
        self._until: Optional[float] = None

    def remaining(self) -> float:
        if self._until is None:
            return 0.0
        remaining = self._until - self._clock()
        if remaining <= 0:
            self._until = None
            return 0.0
        return remaining

    def is_active(self) -> bool:
        return self.remaining() > 0

    def trigger(self, duration_seconds: float | None = None) -> float:
        duration = duration_seconds if duration_seconds is not None else self.duration_seconds
        self._until = self._clock() + duration
        logger.warning("Game-result API rate limited, pausing all calls for %.0fs", duration)
        return duration

    def clear(self) -> None:
        self._until = None


@dataclass
class _CacheEntry:
    stored_at: float
    ttl: float
    data: Any


@dataclass
class _QueuedRequest:
    method: str
    url: str
    category: CacheCategory
    cache_key: str
    future: asyncio.Future
    added_at: float = field(default_factory=time.monotonic)


def _is_rate_limit_error(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RATE_LIMIT_STATUS_CODES
    text = str(exc)
    return "status code 410" in text or "status code 429" in text


class ChessApiClient:
    """
    Serialized, cached, rate-adaptive client for the chess.com public API.

    One request is in flight at a time. The gap between dispatches starts at two seconds,
    shrinks slowly on sustained success and grows on failure. A 410/429 opens a cooldown
    during which every call fails fast with RateLimited and nothing reaches the network.
    """

    def __init__(
        self,
        base_url: str | None = None,
        initial_delay: float | None = None,
        min_delay: float | None = None,
        max_error_delay: float | None = None,
        max_rate_limited_delay: float | None = None,
        cooldown: RateLimitWindow | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = str(base_url or settings.chess_api_base_url).rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=settings.chess_api_timeout_seconds,
            headers={
                "User-Agent": settings.chess_api_user_agent,
                "Accept": "application/json",
            },
        )
        self.request_delay = initial_delay if initial_delay is not None else settings.chess_api_initial_delay_seconds
        self.min_delay = min_delay if min_delay is not None else settings.chess_api_min_delay_seconds
        self.max_error_delay = max_error_delay if max_error_delay is not None else settings.chess_api_max_error_delay_seconds
        self.max_rate_limited_delay = (
            max_rate_limited_delay if max_rate_limited_delay is not None else settings.chess_api_max_rate_limited_delay_seconds
        )
        self.cooldown = cooldown or RateLimitWindow(clock=clock)
        self._clock = clock
        self._queue: Deque[_QueuedRequest] = deque()
        self._processing = False
        self._last_request_at: Optional[float] = None
        self._cache: Dict[str, _CacheEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self.consecutive_successes = 0
        self.consecutive_failures = 0
        self.cache_hits = 0
        self.cache_misses = 0

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def cache_key(method: str, url: str, category: CacheCategory) -> str:
        return f"{category.value}:{method.upper()}:{url}"

    async def request(self, url: str, cache_category: CacheCategory = CacheCategory.DEFAULT, method: str = "GET") -> Any:
        remaining = self.cooldown.remaining()
        if remaining:
            logger.info("Rejecting request during cooldown url=%s remaining=%.0fs", url, remaining)
            raise RateLimited(remaining)

        method = method.upper()
        key = self.cache_key(method, url, cache_category)
        if method == "GET":
            entry = self._cache.get(key)
            if entry is not None:
                if self._clock() - entry.stored_at < entry.ttl:
                    self.cache_hits += 1
                    logger.debug("Cache hit url=%s", url)
                    return entry.data
                del self._cache[key]
            self.cache_misses += 1

        future = asyncio.get_running_loop().create_future()
        self._queue.append(_QueuedRequest(method, url, cache_category, key, future))
        logger.info("Request queued url=%s queue_length=%s", url, len(self._queue))
        if not self._processing:
            self._processing = True
            asyncio.get_running_loop().create_task(self._process_queue())
        return await future

    async def _process_queue(self) -> None:
        try:
            while self._queue:
                item = self._queue.popleft()
                if item.future.done():
                    continue
                await self._wait_for_slot()
                await self._dispatch(item)
        finally:
            self._processing = False

    async def _wait_for_slot(self) -> None:
        if self._last_request_at is None:
            return
        elapsed = self._clock() - self._last_request_at
        if elapsed < self.request_delay:
            wait = self.request_delay - elapsed
            logger.debug("Waiting %.2fs before next request queue_length=%s", wait, len(self._queue))
            await asyncio.sleep(wait)

    async def _dispatch(self, item: _QueuedRequest) -> None:
        remaining = self.cooldown.remaining()
        if remaining:
            item.future.set_exception(RateLimited(remaining))
            return
        self._last_request_at = self._clock()
        try:
            response = await self.client.request(item.method, item.url)
            response.raise_for_status()
            data = response.json()
        except Exception as exc:  # noqa: BLE001
            self._on_failure(item, exc)
            return

        if item.method == "GET":
            ttl = cache_ttl_seconds.get(item.category, cache_ttl_seconds[CacheCategory.DEFAULT])
            self._cache[item.cache_key] = _CacheEntry(stored_at=self._clock(), ttl=ttl, data=data)
        self.consecutive_successes += 1
        self.consecutive_failures = 0
        if self.consecutive_successes > SUCCESS_STREAK_BEFORE_RELAX and self.request_delay > self.min_delay:
            self.request_delay = max(self.min_delay, self.request_delay * 0.95)
            logger.info(
                "Relaxed request delay to %.2fs after %s successes",
                self.request_delay,
                self.consecutive_successes,
            )
        if not item.future.done():
            item.future.set_result(data)

    def _on_failure(self, item: _QueuedRequest, exc: Exception) -> None:
        self.consecutive_successes = 0
        self.consecutive_failures += 1
        logger.error("Game-result API request failed url=%s error=%s", item.url, exc)
        if _is_rate_limit_error(exc):
            duration = self.cooldown.trigger()
            self._reject_queued(duration)
            self.request_delay = min(self.max_rate_limited_delay, self.request_delay * 2)
            error: ProviderError = RateLimited(duration)
        else:
            self.request_delay = min(self.max_error_delay, self.request_delay * 1.2)
            logger.warning("Non-rate-limit error, request delay now %.2fs", self.request_delay)
            status_code = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            error = ProviderError(f"game-result API request failed: {exc}", status_code=status_code)
        if not item.future.done():
            item.future.set_exception(error)

    def _reject_queued(self, remaining: float) -> None:
        dropped = 0
        while self._queue:
            queued = self._queue.popleft()
            if not queued.future.done():
                queued.future.set_exception(RateLimited(remaining))
                dropped += 1
        if dropped:
            logger.warning("Discarded %s queued requests due to rate limiting", dropped)

    def clean_cache(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if now - entry.stored_at > entry.ttl]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.info("Cleaned %s expired cache entries, cache size=%s", len(expired), len(self._cache))
        return len(expired)

    def clear_cache(self, pattern: str | None = None) -> int:
        if pattern is None:
            cleared = len(self._cache)
            self._cache.clear()
        else:
            keys = [key for key in self._cache if pattern in key]
            for key in keys:
                del self._cache[key]
            cleared = len(keys)
        logger.info("Cleared %s cache entries pattern=%s", cleared, pattern)
        return cleared

    async def _sweep_cache_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.clean_cache()

    def start_cache_sweeper(self, interval: float | None = None) -> None:
        if self._sweeper is None or self._sweeper.done():
            period = interval if interval is not None else settings.cache_sweep_seconds
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_cache_forever(period))

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        while self._queue:
            queued = self._queue.popleft()
            if not queued.future.done():
                queued.future.set_exception(ProviderError("game-result API client shutting down"))
        self._cache.clear()
        await self.client.aclose()

    def status(self) -> dict:
        entries: Dict[str, int] = {}
        for key in self._cache:
            category = key.split(":", 1)[0]
            entries[category] = entries.get(category, 0) + 1
        lookups = self.cache_hits + self.cache_misses
        return {
            "queueLength": len(self._queue),
            "isProcessing": self._processing,
            "currentDelay": round(self.request_delay, 3),
            "consecutiveSuccesses": self.consecutive_successes,
            "consecutiveFailures": self.consecutive_failures,
            "rateLimitedForSeconds": round(self.cooldown.remaining(), 1),
            "cache": {
                "size": len(self._cache),
                "hitRate": round(self.cache_hits / lookups, 3) if lookups else 0.0,
                "entries": entries,
            },
            "oldestRequestAge": round(time.monotonic() - self._queue[0].added_at, 1) if self._queue else 0,
        }

    async def get_player_profile(self, username: str) -> dict:
        return await self.request(self.url_for(f"player/{username.lower()}"), CacheCategory.PLAYER_PROFILE)

    async def get_player_stats(self, username: str) -> dict:
        return await self.request(self.url_for(f"player/{username.lower()}/stats"), CacheCategory.PLAYER_STATS)

    async def get_game_archives(self, username: str) -> list[str]:
        data = await self.request(self.url_for(f"player/{username.lower()}/games/archives"), CacheCategory.GAME_ARCHIVES)
        return list(data.get("archives", []))

    async def get_monthly_games(self, archive_url: str) -> list[dict]:
        data = await self.request(archive_url, CacheCategory.MONTHLY_GAMES)
        return list(data.get("games", []))
