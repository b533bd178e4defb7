"""
Tests for the scoped TTL cache.
"""
from typing import Any

import pytest

from marketplace_settlement.core.cache import TTLCache


@pytest.fixture
def cache(monotonic_clock: Any) -> TTLCache:
    return TTLCache(ttl_seconds=60, max_entries=2, clock=monotonic_clock)


class TestTTLCache:
    """Test suite for TTLCache."""

    @pytest.mark.unit
    def test_entry_expires_after_ttl(self, cache: TTLCache, monotonic_clock: Any) -> None:
        cache.set("rate", 5)

        monotonic_clock.advance(59)
        assert cache.get("rate") == 5

        monotonic_clock.advance(1)
        assert cache.get("rate") is None
        assert len(cache) == 0

    @pytest.mark.unit
    def test_oldest_entry_evicted_when_full(self, cache: TTLCache) -> None:
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    @pytest.mark.unit
    def test_expired_entries_evicted_before_live_ones(
        self, cache: TTLCache, monotonic_clock: Any
    ) -> None:
        cache.set("old", 1)
        monotonic_clock.advance(30)
        cache.set("live", 2)
        monotonic_clock.advance(31)

        cache.set("new", 3)

        assert cache.get("live") == 2
        assert cache.get("new") == 3

    @pytest.mark.unit
    def test_invalidate(self, cache: TTLCache) -> None:
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("a")
        assert cache.get("a") is None
        assert cache.get("b") == 2

        cache.invalidate()
        assert len(cache) == 0

    @pytest.mark.unit
    def test_evict_expired_counts_removed(self, cache: TTLCache, monotonic_clock: Any) -> None:
        cache.set("a", 1)
        cache.set("b", 2)
        monotonic_clock.advance(61)

        assert cache.evict_expired() == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_or_load_calls_loader_once_while_fresh(
        self, cache: TTLCache, monotonic_clock: Any
    ) -> None:
        calls = []

        async def loader() -> str:
            calls.append(1)
            return f"value-{len(calls)}"

        assert await cache.get_or_load("k", loader) == "value-1"
        assert await cache.get_or_load("k", loader) == "value-1"

        monotonic_clock.advance(60)
        assert await cache.get_or_load("k", loader) == "value-2"
        assert len(calls) == 2

    @pytest.mark.unit
    @pytest.mark.parametrize("kwargs", [{"ttl_seconds": 0}, {"ttl_seconds": 1, "max_entries": 0}])
    def test_invalid_configuration(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            TTLCache(**kwargs)
