import pytest

from portalauth.service.revocation import RevocationRegistry
from portalauth.service.tokens import TokenService
from portalauth.storage.memory_cache import MemoryCache


@pytest.fixture
def registry(clock):
    return RevocationRegistry(MemoryCache(clock=clock), clock=clock)


class TestRevocationRegistry:
    @pytest.mark.asyncio
    async def test_revoked_token_is_reported(self, registry, clock):
        assert await registry.revoke("jti-1", int(clock()) + 900)
        assert await registry.is_revoked("jti-1")
        assert not await registry.is_revoked("jti-2")

    @pytest.mark.asyncio
    async def test_entry_expires_with_token_without_sweep(self, registry, clock):
        await registry.revoke("jti-1", int(clock()) + 900)
        clock.advance(899)
        assert await registry.is_revoked("jti-1")
        clock.advance(1)
        assert not await registry.is_revoked("jti-1")

    @pytest.mark.asyncio
    async def test_revoking_expired_token_is_noop(self, registry, clock):
        assert not await registry.revoke("jti-1", int(clock()) - 5)
        assert not await registry.is_revoked("jti-1")

    @pytest.mark.asyncio
    async def test_session_revocation_covers_all_its_tokens(self, registry, clock):
        await registry.revoke_session("session-1", 900)
        assert await registry.is_revoked("any-jti", "session-1")
        assert await registry.is_session_revoked("session-1")
        assert not await registry.is_revoked("any-jti", "session-2")
        clock.advance(900)
        assert not await registry.is_session_revoked("session-1")

    @pytest.mark.asyncio
    async def test_session_revocation_needs_positive_ttl(self, registry):
        assert not await registry.revoke_session("session-1", 0)

    @pytest.mark.asyncio
    async def test_sweep_drops_only_expired_entries(self, registry, clock):
        await registry.revoke("short", int(clock()) + 10)
        await registry.revoke("long", int(clock()) + 1000)
        clock.advance(20)
        assert await registry.sweep() == 1
        assert await registry.is_revoked("long")

    @pytest.mark.asyncio
    async def test_revoke_with_subsecond_life_left(self, registry, clock):
        exp = int(clock()) + 900
        clock.advance(899.5)
        assert await registry.revoke("jti-1", exp)
        assert await registry.is_revoked("jti-1")
        clock.advance(0.5)
        assert not await registry.is_revoked("jti-1")

    @pytest.mark.asyncio
    async def test_access_token_near_expiry_can_be_revoked(self, registry, clock, settings):
        tokens = TokenService(settings, clock=clock)
        issued = tokens.issue_access_token(
            user_id="u1",
            email="user@inst.example",
            role="output",
            organizational_unit_id=1,
            session_id="s1",
        )
        clock.advance(issued.expires_in - 0.5)
        claims = tokens.verify_access(issued.token)
        assert await registry.revoke(claims.jti, claims.expires_at)
        assert await registry.is_revoked(claims.jti)
