"""
Tests for the Redis-backed CacheStore.

Covers:
- JSON round trip and TTL expiry
- Graceful degradation with no client and on redis errors
- Health flag transitions
- Glob deletion
- Fixed-window rate limiting (fail open)
"""
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError, ResponseError

from core.cache import CacheStore, cache_key, filters_key, get_cache_store
from schemas import AnalyticsFilters


class TestCacheKey:

    def test_skips_none_and_renders_bools(self):
        assert cache_key("series", "abc", True) == "series:abc:true"
        assert cache_key("series", "abc", False) == "series:abc:false"
        assert cache_key("analytics:article", None, "x") == "analytics:article:x"

    def test_filters_key_ignores_order_and_unset_fields(self):
        a = filters_key("analytics:dashboard", {"period": "week", "user_role": "COACH", "resource_id": None})
        b = filters_key("analytics:dashboard", AnalyticsFilters(user_role="COACH", period="week"))
        assert a == b == 'analytics:dashboard:{"period":"week","user_role":"COACH"}'

    def test_filters_key_with_id_segment(self):
        assert filters_key("analytics:article", None, "abc") == "analytics:article:abc:{}"


class TestReadWrite:

    def test_json_round_trip(self, cache):
        assert cache.set_json("k", {"a": 1, "b": [1, 2]}, ttl=60) is True
        assert cache.get_json("k") == {"a": 1, "b": [1, 2]}

    def test_entry_expires_after_ttl(self, cache, fake_redis):
        cache.set_json("k", {"a": 1}, ttl=60)
        fake_redis.advance(59)
        assert cache.get_json("k") == {"a": 1}
        fake_redis.advance(2)
        assert cache.get_json("k") is None

    def test_undecodable_entry_is_a_miss(self, cache, fake_redis):
        fake_redis.setex("k", 60, "{not json")
        assert cache.get_json("k") is None

    def test_delete_pattern_counts_deleted_keys(self, cache):
        cache.set("series:a:true", "1", ttl=60)
        cache.set("series:b:false", "1", ttl=60)
        cache.set("analytics:dashboard:{}", "1", ttl=60)

        assert cache.delete_pattern("series:*") == 2
        assert cache.get("analytics:dashboard:{}") == "1"
        assert cache.delete_pattern("series:*") == 0


class TestDegradation:

    def test_disabled_store_is_a_noop(self):
        store = CacheStore.disabled()
        assert store.healthy() is False
        assert store.get("k") is None
        assert store.set("k", "v") is False
        assert store.delete("k") is False
        assert store.delete_pattern("*") == 0

    def test_connection_error_is_soft_and_marks_unhealthy(self):
        client = MagicMock()
        client.get.side_effect = ConnectionError("down")
        store = CacheStore(client)
        assert store.healthy() is True

        assert store.get("k") is None
        assert store.healthy() is False

    def test_successful_call_restores_health(self):
        client = MagicMock()
        client.get.side_effect = [ConnectionError("down"), "v"]
        store = CacheStore(client)

        store.get("k")
        assert store.healthy() is False
        assert store.get("k") == "v"
        assert store.healthy() is True

    def test_command_error_does_not_flip_health(self):
        client = MagicMock()
        client.setex.side_effect = ResponseError("WRONGTYPE")
        store = CacheStore(client)

        assert store.set("k", "v", ttl=10) is False
        assert store.healthy() is True

    def test_from_url_returns_disabled_store_when_unreachable(self):
        with patch("core.cache.redis.from_url") as from_url:
            from_url.return_value.ping.side_effect = ConnectionError("refused")
            store = CacheStore.from_url("redis://nowhere:6379/0")
        assert store.healthy() is False
        assert store.get("k") is None

    def test_get_cache_store_rebuilds_unhealthy_store(self):
        with patch("core.cache._cache_store", CacheStore.disabled()), \
                patch("core.cache.CacheStore.from_url") as from_url:
            from_url.return_value = CacheStore(MagicMock())
            store = get_cache_store()
        assert store is from_url.return_value


class TestRateLimit:

    def test_counts_within_window_then_resets(self, cache, fake_redis):
        results = [cache.rate_limit("user-1", limit=2, window=60) for _ in range(3)]
        assert [r.allowed for r in results] == [True, True, False]
        assert [r.remaining for r in results] == [1, 0, 0]

        fake_redis.advance(61)
        assert cache.rate_limit("user-1", limit=2, window=60).allowed is True

    def test_fails_open_without_redis(self):
        result = CacheStore.disabled().rate_limit("user-1", limit=1, window=60)
        assert result.allowed is True
        assert result.remaining == 1

    def test_fails_open_on_redis_error(self):
        client = MagicMock()
        client.incr.side_effect = ConnectionError("down")
        result = CacheStore(client).rate_limit("user-1", limit=1, window=60)
        assert result.allowed is True

    def test_disabled_by_settings(self, cache):
        with patch("core.cache.settings.RATE_LIMIT_ENABLED", False):
            for _ in range(5):
                assert cache.rate_limit("user-1", limit=1, window=60).allowed is True
