"""Unit tests for the Redis tick lock."""

import pytest

from cart_recovery.infrastructure.redis import TickLock


class TestTickLockGracefulDegradation:
    """TickLock should grant every lease when Redis is unavailable."""

    @pytest.fixture
    def lock(self) -> TickLock:
        return TickLock(None)

    @pytest.mark.asyncio
    async def test_acquire_always_granted(self, lock: TickLock) -> None:
        assert await lock.acquire("detect", ttl_seconds=60) is True
        assert await lock.acquire("detect", ttl_seconds=60) is True

    @pytest.mark.asyncio
    async def test_release_is_noop(self, lock: TickLock) -> None:
        await lock.release("detect")  # should not raise

    @pytest.mark.asyncio
    async def test_health_check_returns_false(self, lock: TickLock) -> None:
        assert await lock.health_check() is False


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0


class TestTickLockWithRedis:
    @pytest.mark.asyncio
    async def test_second_holder_is_refused_until_release(self) -> None:
        client = FakeRedis()
        first, second = TickLock(client), TickLock(client)

        assert await first.acquire("send", ttl_seconds=900)
        assert not await second.acquire("send", ttl_seconds=900)

        await first.release("send")
        assert await second.acquire("send", ttl_seconds=900)

    @pytest.mark.asyncio
    async def test_release_does_not_drop_foreign_lease(self) -> None:
        client = FakeRedis()
        owner, other = TickLock(client), TickLock(client)

        assert await owner.acquire("sweep", ttl_seconds=60)
        await other.release("sweep")

        assert "cart_recovery:tick:sweep" in client.store
