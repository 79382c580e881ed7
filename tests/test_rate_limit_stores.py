"""Tests for the counter stores."""

import asyncio
from unittest.mock import AsyncMock

import fakeredis
import pytest
import redis

from ratekeeper.app.exceptions import StoreErrorKind, StoreUnavailableError
from ratekeeper.app.middleware.rate_limit import LimiterConfig, RateLimiter
from ratekeeper.app.middleware.rate_limit.stores import (
    FIXED_WINDOW_SCRIPT,
    SLIDING_WINDOW_SCRIPT,
    InMemoryCounterStore,
    RedisCounterStore,
    classify_store_error,
    create_counter_store,
)


class TestInMemoryFixedWindow:
    """Tests for InMemoryCounterStore.increment_and_get_window."""

    @pytest.mark.asyncio
    async def test_first_call_starts_window(self, memory_store, clock):
        counter = await memory_store.increment_and_get_window("k", 60000)
        assert counter.count == 1
        assert counter.window_start_ms == clock.now
        assert counter.reset_at_ms == clock.now + 60000

    @pytest.mark.asyncio
    async def test_counts_accumulate_within_window(self, memory_store, clock):
        start = clock.now
        for expected in range(1, 6):
            counter = await memory_store.increment_and_get_window("k", 60000)
            assert counter.count == expected
            assert counter.window_start_ms == start
            clock.advance(1000)

    @pytest.mark.asyncio
    async def test_counter_keeps_counting_past_any_limit(self, memory_store):
        for _ in range(12):
            counter = await memory_store.increment_and_get_window("k", 60000)
        assert counter.count == 12

    @pytest.mark.asyncio
    async def test_rollover_after_window_starts_fresh(self, memory_store, clock):
        start = clock.now
        for _ in range(7):
            await memory_store.increment_and_get_window("k", 60000)

        clock.now = start + 60000 + 1
        counter = await memory_store.increment_and_get_window("k", 60000)
        assert counter.count == 1
        assert counter.window_start_ms == clock.now

    @pytest.mark.asyncio
    async def test_last_millisecond_stays_in_window(self, memory_store, clock):
        start = clock.now
        await memory_store.increment_and_get_window("k", 60000)
        clock.now = start + 59999
        counter = await memory_store.increment_and_get_window("k", 60000)
        assert counter.count == 2

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, memory_store):
        await memory_store.increment_and_get_window("a", 60000)
        await memory_store.increment_and_get_window("a", 60000)
        counter = await memory_store.increment_and_get_window("b", 60000)
        assert counter.count == 1

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, memory_store):
        results = await asyncio.gather(
            *(memory_store.increment_and_get_window("k", 60000) for _ in range(50))
        )
        assert sorted(r.count for r in results) == list(range(1, 51))

    @pytest.mark.asyncio
    async def test_reset_clears_counter(self, memory_store):
        await memory_store.increment_and_get_window("k", 60000)
        await memory_store.increment_and_get_window("k", 60000)
        await memory_store.reset("k")
        counter = await memory_store.increment_and_get_window("k", 60000)
        assert counter.count == 1


class TestInMemorySlidingWindow:
    """Tests for InMemoryCounterStore.record_in_log."""

    @pytest.mark.asyncio
    async def test_rejected_request_reports_limit_plus_one(self, memory_store):
        for expected in (1, 2, 3):
            counter = await memory_store.record_in_log("k", 60000, 3)
            assert counter.count == expected
        counter = await memory_store.record_in_log("k", 60000, 3)
        assert counter.count == 4

    @pytest.mark.asyncio
    async def test_rejections_are_not_recorded(self, memory_store, clock):
        start = clock.now
        for _ in range(3):
            await memory_store.record_in_log("k", 60000, 3)
        for _ in range(5):
            clock.advance(1000)
            await memory_store.record_in_log("k", 60000, 3)

        # Once the three accepted entries age out the log is empty again
        clock.now = start + 60000
        counter = await memory_store.record_in_log("k", 60000, 3)
        assert counter.count == 1

    @pytest.mark.asyncio
    async def test_entries_slide_out_one_by_one(self, memory_store, clock):
        start = clock.now
        await memory_store.record_in_log("k", 10000, 2)
        clock.advance(5000)
        await memory_store.record_in_log("k", 10000, 2)

        clock.now = start + 10000
        counter = await memory_store.record_in_log("k", 10000, 2)
        assert counter.count == 2
        assert counter.window_start_ms == start + 5000
        assert counter.reset_at_ms == start + 15000


class TestInMemoryHousekeeping:
    """Tests for cleanup and LRU bounds."""

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_entries(self, memory_store, clock):
        await memory_store.increment_and_get_window("short", 1000)
        await memory_store.increment_and_get_window("long", 60000)
        await memory_store.record_in_log("log", 1000, 5)

        clock.advance(2000)
        removed = await memory_store.cleanup()

        assert removed == 2
        assert len(memory_store) == 1

    @pytest.mark.asyncio
    async def test_lru_eviction_bounds_memory(self, clock):
        store = InMemoryCounterStore(max_entries=10, clock=clock)
        for i in range(25):
            await store.increment_and_get_window(f"key{i}", 60000)
        assert len(store) <= 10

    @pytest.mark.asyncio
    async def test_ping_is_always_true(self, memory_store):
        assert await memory_store.ping() is True

    def test_rejects_invalid_max_entries(self):
        with pytest.raises(ValueError):
            InMemoryCounterStore(max_entries=0)


class TestRedisCounterStore:
    """Tests for RedisCounterStore with a mocked client."""

    @pytest.mark.asyncio
    async def test_fixed_window_uses_atomic_script(self, clock):
        mock_redis = AsyncMock()
        mock_redis.eval.return_value = [3, 45000]

        store = RedisCounterStore(redis_client=mock_redis, clock=clock)
        counter = await store.increment_and_get_window("ratelimit:auth:abc", 60000)

        mock_redis.eval.assert_awaited_once_with(FIXED_WINDOW_SCRIPT, 1, "ratelimit:auth:abc", 60000)
        assert counter.count == 3
        assert counter.window_start_ms == clock.now - 15000
        assert counter.reset_at_ms == clock.now + 45000

    @pytest.mark.asyncio
    async def test_sliding_window_translates_server_time(self, clock):
        mock_redis = AsyncMock()
        server_now = 5_000_000
        mock_redis.eval.return_value = [2, server_now - 20000, server_now]

        store = RedisCounterStore(redis_client=mock_redis, clock=clock)
        counter = await store.record_in_log("ratelimit:auth:abc", 60000, 5)

        args = mock_redis.eval.await_args.args
        assert args[0] == SLIDING_WINDOW_SCRIPT
        assert args[2:5] == ("ratelimit:auth:abc", 60000, 5)
        assert counter.count == 2
        assert counter.window_start_ms == clock.now - 20000

    @pytest.mark.asyncio
    async def test_connection_error_raises_store_unavailable(self):
        mock_redis = AsyncMock()
        mock_redis.eval.side_effect = redis.ConnectionError("refused")

        store = RedisCounterStore(redis_client=mock_redis)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.increment_and_get_window("k", 60000)
        assert exc_info.value.kind == StoreErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_connection_error_triggers_reconnect_on_next_call(self):
        mock_redis = AsyncMock()
        mock_redis.eval.side_effect = [redis.ConnectionError("reset"), [1, 60000]]

        store = RedisCounterStore(redis_client=mock_redis)
        with pytest.raises(StoreUnavailableError):
            await store.increment_and_get_window("k", 60000)
        counter = await store.increment_and_get_window("k", 60000)

        mock_redis.connection_pool.disconnect.assert_awaited_once()
        assert counter.count == 1

    @pytest.mark.asyncio
    async def test_response_error_does_not_reconnect(self):
        mock_redis = AsyncMock()
        mock_redis.eval.side_effect = [redis.ResponseError("NOSCRIPT"), [1, 60000]]

        store = RedisCounterStore(redis_client=mock_redis)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.increment_and_get_window("k", 60000)
        await store.increment_and_get_window("k", 60000)

        assert exc_info.value.kind == StoreErrorKind.RESPONSE
        mock_redis.connection_pool.disconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self):
        async def slow_eval(*args):
            await asyncio.sleep(1)
            return [1, 60000]

        mock_redis = AsyncMock()
        mock_redis.eval.side_effect = slow_eval

        store = RedisCounterStore(redis_client=mock_redis, timeout=0.01)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.increment_and_get_window("k", 60000)
        assert exc_info.value.kind == StoreErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_malformed_reply_is_a_response_error(self):
        mock_redis = AsyncMock()
        mock_redis.eval.return_value = None

        store = RedisCounterStore(redis_client=mock_redis)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.increment_and_get_window("k", 60000)
        assert exc_info.value.kind == StoreErrorKind.RESPONSE

    @pytest.mark.asyncio
    async def test_reset_deletes_key(self):
        mock_redis = AsyncMock()
        store = RedisCounterStore(redis_client=mock_redis)
        await store.reset("ratelimit:auth:abc")
        mock_redis.delete.assert_awaited_once_with("ratelimit:auth:abc")

    @pytest.mark.asyncio
    async def test_ping(self):
        mock_redis = AsyncMock()
        mock_redis.ping.return_value = True
        store = RedisCounterStore(redis_client=mock_redis)
        assert await store.ping() is True

        mock_redis.ping.side_effect = redis.TimeoutError("slow")
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.ping()
        assert exc_info.value.kind == StoreErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        mock_redis = AsyncMock()
        store = RedisCounterStore(redis_client=mock_redis)
        await store.close()
        mock_redis.aclose.assert_awaited_once()


class TestStoreErrorClassification:

    @pytest.mark.parametrize(
        ("exc", "kind"),
        [
            (redis.ConnectionError("x"), StoreErrorKind.CONNECTION),
            (ConnectionRefusedError(), StoreErrorKind.CONNECTION),
            (redis.TimeoutError("x"), StoreErrorKind.TIMEOUT),
            (asyncio.TimeoutError(), StoreErrorKind.TIMEOUT),
            (redis.ResponseError("x"), StoreErrorKind.RESPONSE),
            (redis.RedisError("x"), StoreErrorKind.UNEXPECTED),
        ],
    )
    def test_classification(self, exc, kind):
        assert classify_store_error(exc) == kind

    def test_only_transport_errors_reconnect(self):
        assert StoreErrorKind.CONNECTION.should_reconnect
        assert StoreErrorKind.TIMEOUT.should_reconnect
        assert not StoreErrorKind.RESPONSE.should_reconnect
        assert not StoreErrorKind.UNEXPECTED.should_reconnect


class TestCreateCounterStore:

    def test_in_memory_by_default(self):
        assert isinstance(create_counter_store(use_redis=False), InMemoryCounterStore)

    def test_redis_when_enabled(self):
        assert isinstance(create_counter_store(use_redis=True), RedisCounterStore)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())


class TestRedisScripts:
    """Run the Lua scripts against an in-process Redis."""

    @pytest.mark.asyncio
    async def test_fixed_window_counts_and_sets_expiry(self, fake_redis, clock):
        store = RedisCounterStore(redis_client=fake_redis, clock=clock)

        counts = [
            (await store.increment_and_get_window("ratelimit:api:k", 60000)).count
            for _ in range(4)
        ]

        assert counts == [1, 2, 3, 4]
        ttl = await fake_redis.pttl("ratelimit:api:k")
        assert 0 < ttl <= 60000

    @pytest.mark.asyncio
    async def test_fixed_window_start_follows_ttl(self, fake_redis, clock):
        store = RedisCounterStore(redis_client=fake_redis, clock=clock)
        counter = await store.increment_and_get_window("ratelimit:api:k", 60000)
        assert clock.now - 1000 <= counter.window_start_ms <= clock.now
        assert counter.reset_at_ms > clock.now

    @pytest.mark.asyncio
    async def test_fixed_window_rolls_over_after_expiry(self, fake_redis):
        store = RedisCounterStore(redis_client=fake_redis)
        await store.increment_and_get_window("ratelimit:api:k", 100)
        await store.increment_and_get_window("ratelimit:api:k", 100)

        await asyncio.sleep(0.15)
        counter = await store.increment_and_get_window("ratelimit:api:k", 100)
        assert counter.count == 1

    @pytest.mark.asyncio
    async def test_fixed_window_restores_missing_expiry(self, fake_redis):
        await fake_redis.set("ratelimit:api:k", 3)
        store = RedisCounterStore(redis_client=fake_redis)

        counter = await store.increment_and_get_window("ratelimit:api:k", 60000)

        assert counter.count == 4
        assert 0 < await fake_redis.pttl("ratelimit:api:k") <= 60000

    @pytest.mark.asyncio
    async def test_sliding_window_rejection_reports_limit_plus_one(self, fake_redis):
        store = RedisCounterStore(redis_client=fake_redis)

        counts = [
            (await store.record_in_log("ratelimit:auth:k", 60000, 2)).count
            for _ in range(4)
        ]

        assert counts == [1, 2, 3, 3]
        # Rejected requests are not logged
        assert await fake_redis.zcard("ratelimit:auth:k") == 2

    @pytest.mark.asyncio
    async def test_sliding_window_prunes_old_entries(self, fake_redis):
        store = RedisCounterStore(redis_client=fake_redis)
        await store.record_in_log("ratelimit:auth:k", 100, 1)
        assert (await store.record_in_log("ratelimit:auth:k", 100, 1)).count == 2

        await asyncio.sleep(0.15)
        counter = await store.record_in_log("ratelimit:auth:k", 100, 1)
        assert counter.count == 1
        assert await fake_redis.zcard("ratelimit:auth:k") == 1

    @pytest.mark.asyncio
    async def test_limiter_over_redis_store(self, fake_redis, clock, context):
        limiter = RateLimiter(
            LimiterConfig(scope="api", window_ms=60000, max_requests=2),
            RedisCounterStore(redis_client=fake_redis, clock=clock),
            clock=clock,
        )
        results = [await limiter.check(context) for _ in range(3)]
        assert [r.allowed for r in results] == [True, True, False]
        assert [r.remaining for r in results] == [1, 0, 0]
        assert results[-1].retry_after_ms >= 1
