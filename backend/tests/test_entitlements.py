"""
Entitlement Tests
Try-once quota, session pass issuance / validation / credit metering

Run: python -m pytest tests/test_entitlements.py -v
"""

import asyncio
from unittest.mock import AsyncMock

import jwt
import pytest

from infrastructure.counter_store import MemoryCounterStore
from infrastructure.errors import CounterStoreError
from services.entitlements import EntitlementManager
from services.session_pass import (
    DEV_JWT_SECRET,
    SESSION_PASS_PREFIX,
    SessionPassPayload,
    SessionPassService,
    SessionPassValidation,
    SessionPolicy,
    supports_session_pass,
)
from services.try_once import PREVIEW_SUFFIX, TryOnceService, truncate_for_preview

JWT_SECRET = "test-secret"
TX = "0x" + "ef" * 32


class RoundTripStore(MemoryCounterStore):
    """Memory store that yields to the loop on every call, like a network round trip"""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def decr_existing(self, key):
        await asyncio.sleep(0)
        return await super().decr_existing(key)


@pytest.fixture
def try_once(memory_store):
    return TryOnceService(memory_store)


@pytest.fixture
def session_passes(memory_store, clock):
    return SessionPassService(memory_store, JWT_SECRET, clock=clock)


@pytest.fixture
def entitlements(try_once, session_passes):
    return EntitlementManager(try_once, session_passes)


# =============================================================================
# TEST: Try-Once
# =============================================================================

class TestTryOnce:

    @pytest.mark.asyncio
    async def test_first_try_is_free(self, try_once, test_addresses):
        result = await try_once.check_eligible("m1", wallet=test_addresses["payer"])
        assert result.eligible

    @pytest.mark.asyncio
    async def test_no_identifier(self, try_once):
        result = await try_once.check_eligible("m1")
        assert not result.eligible
        assert result.reason == "No identifier provided"

    @pytest.mark.asyncio
    async def test_usage_blocks_both_identities(self, try_once, test_addresses):
        await try_once.record_usage("m1", wallet=test_addresses["payer"], ip="10.0.0.1")

        by_wallet = await try_once.check_eligible("m1", wallet=test_addresses["payer"].upper().replace("0X", "0x"))
        assert not by_wallet.eligible
        assert by_wallet.reason == "Free try already used for this wallet"
        assert by_wallet.used_at.endswith("Z")

        # Switching to a fresh wallet from the same IP does not reset the quota
        by_ip = await try_once.check_eligible("m1", wallet=test_addresses["creator"], ip="10.0.0.1")
        assert by_ip.reason == "Free try already used for this IP"

    @pytest.mark.asyncio
    async def test_quota_is_per_module(self, try_once):
        await try_once.record_usage("m1", ip="10.0.0.1")
        assert (await try_once.check_eligible("m2", ip="10.0.0.1")).eligible

    @pytest.mark.asyncio
    async def test_quota_expires_after_24h(self, try_once, clock):
        await try_once.record_usage("m1", ip="10.0.0.1")
        assert await try_once.get_expiry("m1", ip="10.0.0.1") == 24 * 60 * 60

        clock.advance(24 * 60 * 60)
        assert (await try_once.check_eligible("m1", ip="10.0.0.1")).eligible
        assert await try_once.get_expiry("m1", ip="10.0.0.1") is None

    @pytest.mark.asyncio
    async def test_clear_usage(self, try_once):
        await try_once.record_usage("m1", ip="10.0.0.1")
        await try_once.clear_usage("m1", ip="10.0.0.1")
        assert (await try_once.check_eligible("m1", ip="10.0.0.1")).eligible

    @pytest.mark.asyncio
    async def test_store_outage_fails_closed(self):
        store = AsyncMock()
        store.get.side_effect = CounterStoreError("get", ConnectionError("down"))
        result = await TryOnceService(store).check_eligible("m1", ip="10.0.0.1")
        assert not result.eligible
        assert result.reason == "Free try temporarily unavailable"


class TestPreview:

    def test_short_text_untouched(self):
        assert truncate_for_preview("hello") == "hello"

    def test_cut_at_word_boundary(self):
        text = ("word " * 200).strip()
        preview = truncate_for_preview(text)
        assert preview.endswith(PREVIEW_SUFFIX)
        body = preview[:-len(PREVIEW_SUFFIX)]
        assert len(body) <= 500
        assert body.endswith("word")

    def test_hard_cut_without_spaces(self):
        preview = truncate_for_preview("x" * 800)
        assert preview == "x" * 500 + PREVIEW_SUFFIX


# =============================================================================
# TEST: Session Pass
# =============================================================================

class TestSessionPass:

    @pytest.mark.asyncio
    async def test_issue_and_validate(self, session_passes, clock, test_addresses):
        info = await session_passes.issue(test_addresses["payer"], "m1", TX, SessionPolicy(30, 10))
        assert info.credits_remaining == 10
        assert info.expires_at == int(clock.now) + 30 * 60

        validation = await session_passes.validate(info.token)
        assert validation.valid
        assert validation.payload.sub == test_addresses["payer"]
        assert validation.payload.moduleId == "m1"
        assert validation.payload.paymentTxHash == TX

    @pytest.mark.asyncio
    async def test_exhausted_after_all_credits(self, session_passes, test_addresses):
        info = await session_passes.issue(test_addresses["payer"], "m1", TX, SessionPolicy(30, 3))

        remaining = [await session_passes.consume_credit("m1", test_addresses["payer"], TX) for _ in range(3)]
        assert remaining == [2, 1, 0]

        validation = await session_passes.validate(info.token)
        assert not validation.valid
        assert validation.error == "Session pass credits exhausted"
        # Never reported below zero
        assert await session_passes.consume_credit("m1", test_addresses["payer"], TX) == 0

    @pytest.mark.asyncio
    async def test_counter_is_authoritative_over_claim(self, session_passes, test_addresses):
        info = await session_passes.issue(test_addresses["payer"], "m1", TX, SessionPolicy(30, 10))
        await session_passes.consume_credit("m1", test_addresses["payer"], TX)

        validation = await session_passes.validate(info.token)
        assert validation.payload.creditsRemaining == 9

    @pytest.mark.asyncio
    async def test_counter_gone_while_claim_valid(self, memory_store, clock, test_addresses):
        # Token clock stays put while the store clock moves: the claim is live, the counter is gone
        start = clock.now
        token_clock = lambda: start
        service = SessionPassService(memory_store, JWT_SECRET, clock=token_clock)
        info = await service.issue(test_addresses["payer"], "m1", TX, SessionPolicy(30, 10))

        clock.advance(30 * 60)
        validation = await service.validate(info.token)
        assert not validation.valid
        assert validation.error == "Session pass not found or expired"

    @pytest.mark.asyncio
    async def test_expired_claim(self, session_passes, clock, test_addresses):
        info = await session_passes.issue(test_addresses["payer"], "m1", TX, SessionPolicy(1, 10))
        clock.advance(61)
        validation = await session_passes.validate(info.token)
        assert validation.error == "Session pass expired"

    @pytest.mark.asyncio
    async def test_wrong_secret(self, session_passes, memory_store, test_addresses):
        info = await session_passes.issue(test_addresses["payer"], "m1", TX, SessionPolicy(30, 10))
        other = SessionPassService(memory_store, "another-secret")
        assert (await other.validate(info.token)).error == "Invalid session pass token"

    @pytest.mark.asyncio
    async def test_garbage_token(self, session_passes):
        assert (await session_passes.validate("not.a.jwt")).error == "Invalid session pass token"

    @pytest.mark.asyncio
    async def test_missing_claims(self, session_passes):
        token = jwt.encode({"sub": "0x1"}, JWT_SECRET, algorithm="HS256")
        assert (await session_passes.validate(token)).error == "Invalid session pass token"

    @pytest.mark.asyncio
    async def test_dev_secret_fallback(self, memory_store, test_addresses):
        service = SessionPassService(memory_store)
        info = await service.issue(test_addresses["payer"], "m1", TX, SessionPolicy(30, 10))
        claims = jwt.decode(info.token, DEV_JWT_SECRET, algorithms=["HS256"])
        assert claims["moduleId"] == "m1"

    def test_supports_session_pass(self):
        assert supports_session_pass("per_session", SessionPolicy(30, 10))
        assert not supports_session_pass("per_session", None)
        assert not supports_session_pass("per_message", SessionPolicy(30, 10))


# =============================================================================
# TEST: Entitlement Manager
# =============================================================================

class TestEntitlementManager:

    @pytest.mark.asyncio
    async def test_grant_spends_first_credit(self, entitlements, test_addresses):
        info = await entitlements.grant_session(test_addresses["payer"], "m1", TX, SessionPolicy(30, 10))
        assert info.credits_remaining == 9
        assert info.max_credits == 10

    @pytest.mark.asyncio
    async def test_redeem_consumes_credit(self, entitlements, test_addresses):
        info = await entitlements.grant_session(test_addresses["payer"], "m1", TX, SessionPolicy(30, 2))

        redemption = await entitlements.redeem_session(info.token, "m1")
        assert redemption.accepted
        assert redemption.credits_remaining == 0

        exhausted = await entitlements.redeem_session(info.token, "m1")
        assert not exhausted.accepted
        assert exhausted.error == "Session pass credits exhausted"

    @pytest.mark.asyncio
    async def test_redeem_for_other_module(self, entitlements, session_passes, test_addresses):
        info = await entitlements.grant_session(test_addresses["payer"], "m1", TX, SessionPolicy(30, 5))

        redemption = await entitlements.redeem_session(info.token, "m2")
        assert redemption.wrong_module
        assert not redemption.accepted
        assert await session_passes.get_credits("m1", test_addresses["payer"], TX) == 4

    @pytest.mark.asyncio
    async def test_concurrent_redemptions_cannot_overspend(self, clock, test_addresses):
        store = RoundTripStore(clock=clock)
        entitlements = EntitlementManager(TryOnceService(store), SessionPassService(store, JWT_SECRET, clock=clock))
        info = await entitlements.session_passes.issue(test_addresses["payer"], "m1", TX, SessionPolicy(30, 1))

        results = await asyncio.gather(*(entitlements.redeem_session(info.token, "m1") for _ in range(5)))

        accepted = [r for r in results if r.accepted]
        assert len(accepted) == 1
        assert accepted[0].credits_remaining == 0
        assert {r.error for r in results if not r.accepted} == {"Session pass credits exhausted"}

    @pytest.mark.asyncio
    async def test_redeem_after_counter_expired_leaves_no_key(self, memory_store, clock, test_addresses):
        start = clock.now
        service = SessionPassService(memory_store, JWT_SECRET, clock=lambda: start)
        entitlements = EntitlementManager(TryOnceService(memory_store), service)
        info = await service.issue(test_addresses["payer"], "m1", TX, SessionPolicy(30, 3))
        clock.advance(30 * 60)

        # Claim still live on the token clock, counter gone on the store clock
        service.validate = AsyncMock(return_value=SessionPassValidation(True, payload=SessionPassPayload(
            sub=test_addresses["payer"].lower(), moduleId="m1", paymentTxHash=TX,
            creditsRemaining=3, maxCredits=3, issuedAt=int(start), expiresAt=int(start) + 1800)))
        redemption = await entitlements.redeem_session(info.token, "m1")

        assert not redemption.accepted
        assert redemption.error == "Session pass not found or expired"
        assert await service.get_credits("m1", test_addresses["payer"], TX) is None
        assert await service.consume_credit("m1", test_addresses["payer"], TX) == 0
        key = f"{SESSION_PASS_PREFIX}m1:{test_addresses['payer'].lower()}:{TX}"
        assert await memory_store.ttl(key) == -2
