import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from portalauth.service.errors import StoreUnavailableError
from portalauth.storage.redis_cache import RedisCache, rate_key, refresh_key


def _cache(**kwargs):
    client = MagicMock()
    sliding, cas = AsyncMock(), AsyncMock()
    client.register_script.side_effect = [sliding, cas]
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, True])
    client.pipeline.return_value = pipe
    cache = RedisCache("redis://unused", client=client, **kwargs)
    return cache, client, sliding, cas, pipe


class TestKeys:
    def test_rate_key_hashes_identity(self):
        key = rate_key("auth", "login:1.2.3.4\r\nFLUSHALL")
        assert key.startswith("rate:auth:")
        assert "FLUSHALL" not in key
        assert rate_key("auth", "a") == rate_key("auth", "a")

    def test_refresh_key_layout(self):
        assert refresh_key("u1", "s1") == "refresh:u1:s1"


class TestRedisCache:
    @pytest.mark.asyncio
    async def test_sliding_window_result_is_parsed(self):
        cache, _, sliding, _, _ = _cache()
        sliding.return_value = [0, 5, 1500]
        assert await cache.sliding_window_hit("auth", "ip", 5, 60000, 1000) == (False, 5, 1500)
        kwargs = sliding.await_args.kwargs
        assert kwargs["keys"] == [rate_key("auth", "ip")]
        assert kwargs["args"][:3] == [1000, 60000, 5]

    @pytest.mark.asyncio
    async def test_compare_and_swap(self):
        cache, _, _, cas, _ = _cache()
        cas.return_value = 1
        assert await cache.compare_and_swap_refresh("u1", "s1", "old", "new", 60)
        assert cas.await_args.kwargs == {"keys": ["refresh:u1:s1"], "args": ["old", "new", 60]}
        cas.return_value = 0
        assert not await cache.compare_and_swap_refresh("u1", "s1", "old", "new", 60)

    @pytest.mark.asyncio
    async def test_revocation_expires_at_token_exp(self):
        cache, client, _, _, _ = _cache()
        client.set = AsyncMock(return_value=True)
        assert await cache.add_revocation("jti", 2000)
        client.set.assert_awaited_once_with("blacklist:jti", "2000", exat=2000)

    @pytest.mark.asyncio
    async def test_any_revoked(self):
        cache, client, _, _, _ = _cache()
        client.exists = AsyncMock(return_value=1)
        assert await cache.any_revoked("jti", "session:s1")
        client.exists.assert_awaited_once_with("blacklist:jti", "blacklist:session:s1")

    @pytest.mark.asyncio
    async def test_touch_of_missing_session(self):
        cache, _, _, _, pipe = _cache()
        pipe.execute.return_value = [None, False]
        assert not await cache.touch_session("s1", "u1", "{}", 60)
        pipe.set.assert_called_once_with("session:s1", "{}", ex=60, xx=True)

    @pytest.mark.asyncio
    async def test_redis_error_maps_to_store_unavailable(self):
        cache, client, _, _, _ = _cache()
        client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        with pytest.raises(StoreUnavailableError) as excinfo:
            await cache.get_refresh("u1", "s1")
        assert excinfo.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_maps_to_store_unavailable(self):
        cache, client, _, _, _ = _cache(operation_timeout=0.01)

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        client.get = slow
        with pytest.raises(StoreUnavailableError, match="timed out"):
            await cache.get_session("s1")
