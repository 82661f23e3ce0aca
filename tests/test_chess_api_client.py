import asyncio

import httpx
import pytest

from conftest import FakeClock
from matchstake.clients.chess_api import ChessApiClient, RateLimitWindow
from matchstake.exceptions import ProviderError, RateLimited


class FakeChessHttp:
    def __init__(self, clock, statuses=None, step=10.0):
        self.clock = clock
        self.statuses = list(statuses or [])
        self.step = step
        self.urls = []

    async def request(self, method, url, **kwargs):
        self.urls.append(url)
        self.clock.advance(self.step)
        status = self.statuses.pop(0) if self.statuses else 200
        body = {"archives": [url]} if status == 200 else {"message": "slow down"}
        return httpx.Response(status, json=body, request=httpx.Request(method, url))


def make_client(monkeypatch, statuses=None, initial_delay=1.0, step=10.0):
    clock = FakeClock()
    api = ChessApiClient(base_url="https://chess.test/pub", initial_delay=initial_delay, min_delay=0.5, clock=clock)
    http = FakeChessHttp(clock, statuses, step)
    monkeypatch.setattr(api.client, "request", http.request)
    return api, http, clock


def test_rate_limit_window_expires():
    clock = FakeClock()
    window = RateLimitWindow(300, clock=clock)
    assert not window.is_active()
    assert window.trigger() == 300
    clock.advance(299)
    assert window.is_active()
    assert window.remaining() == pytest.approx(1)
    clock.advance(2)
    assert not window.is_active()
    assert window.remaining() == 0


def test_get_requests_are_cached(monkeypatch):
    api, http, _ = make_client(monkeypatch)

    async def scenario():
        first = await api.get_game_archives("AliceChess")
        second = await api.get_game_archives("alicechess")
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second == ["https://chess.test/pub/player/alicechess/games/archives"]
    assert len(http.urls) == 1
    assert api.cache_hits == 1
    assert api.status()["cache"]["size"] == 1


def test_rate_limit_blocks_all_calls_until_cooldown_passes(monkeypatch):
    api, http, clock = make_client(monkeypatch, statuses=[429])

    async def scenario():
        with pytest.raises(RateLimited):
            await api.get_player_profile("AliceChess")
        assert api.cooldown.is_active()
        assert api.request_delay == pytest.approx(2.0)

        for minute in range(5):
            with pytest.raises(RateLimited):
                await api.get_player_stats(f"player{minute}")
            clock.advance(59)
        assert len(http.urls) == 1

        clock.advance(10)
        return await api.get_player_stats("AliceChess")

    assert asyncio.run(scenario()) == {"archives": ["https://chess.test/pub/player/alicechess/stats"]}
    assert len(http.urls) == 2


def test_gone_is_treated_as_rate_limit(monkeypatch):
    api, http, _ = make_client(monkeypatch, statuses=[410])
    with pytest.raises(RateLimited):
        asyncio.run(api.get_player_profile("AliceChess"))
    assert api.cooldown.is_active()


def test_server_error_raises_provider_error_and_backs_off(monkeypatch):
    api, http, _ = make_client(monkeypatch, statuses=[500])
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(api.get_player_profile("AliceChess"))
    assert not isinstance(excinfo.value, RateLimited)
    assert excinfo.value.status_code == 500
    assert api.request_delay == pytest.approx(1.2)
    assert not api.cooldown.is_active()


def test_error_backoff_is_capped(monkeypatch):
    api, http, _ = make_client(monkeypatch, statuses=[500, 500], initial_delay=4.5)

    async def scenario():
        for name in ("a", "b"):
            with pytest.raises(ProviderError):
                await api.get_player_profile(name)

    asyncio.run(scenario())
    assert api.request_delay == pytest.approx(5.0)


def test_sustained_success_relaxes_delay(monkeypatch):
    api, http, _ = make_client(monkeypatch, initial_delay=2.0)

    async def scenario():
        for index in range(6):
            await api.get_player_profile(f"player{index}")

    asyncio.run(scenario())
    assert api.consecutive_successes == 6
    assert api.request_delay == pytest.approx(1.9)


def test_clean_cache_drops_expired_entries(monkeypatch):
    api, http, clock = make_client(monkeypatch)
    asyncio.run(api.get_player_profile("AliceChess"))
    clock.advance(31 * 60)
    assert api.clean_cache() == 1
    assert api.status()["cache"]["size"] == 0


def test_clear_cache_by_pattern_then_everything(monkeypatch):
    api, http, _ = make_client(monkeypatch)

    async def scenario():
        await api.get_player_profile("AliceChess")
        await api.get_player_stats("AliceChess")

    asyncio.run(scenario())
    assert api.clear_cache("/stats") == 1
    assert api.status()["cache"]["size"] == 1
    assert api.clear_cache() == 1
    assert api.status()["cache"]["size"] == 0
