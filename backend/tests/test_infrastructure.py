"""
Infrastructure Tests
Config loading, counter store semantics, TTL cache, service wiring

Run: python -m pytest tests/test_infrastructure.py -v
"""

import base64
import logging
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from infrastructure.config import Environment, PaymentConfig, SecurityConfig, SoulforgeConfig, normalize_network
from infrastructure.container import build_services
from infrastructure.counter_store import (
    DECR_IF_EXISTS_SCRIPT,
    MemoryCounterStore,
    RedisCounterStore,
    create_counter_store,
)
from infrastructure.errors import ConfigMissingError, CounterStoreError, PaymentRequiredError
from infrastructure.ttl_cache import TTLCache
from payments.facilitator import UnavailablePaymentBackend


# =============================================================================
# TEST: Config
# =============================================================================

class TestConfig:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SOULFORGE_ENV", "production")
        monkeypatch.setenv("X402_NETWORK", "cronos-testnet")
        monkeypatch.setenv("X402_MOCK_MODE", "true")
        monkeypatch.setenv("X402_RPC_URL", "https://rpc.example")
        monkeypatch.setenv("JWT_SECRET", "s3cret")

        config = SoulforgeConfig.from_env()
        assert config.environment == Environment.PRODUCTION
        assert config.debug is False
        assert config.payments.mock_mode is True
        assert config.chain.rpc_url_for("cronos-testnet") == "https://rpc.example"
        assert config.payments.chain_id_for("cronos-testnet") == 338

    def test_to_dict_hides_secrets(self):
        config = SoulforgeConfig()
        config.security.jwt_secret = "s3cret"
        config.payments.facilitator_api_key = "fk"
        dumped = config.to_dict()
        assert "jwt_secret" not in dumped["security"]
        assert "facilitator_api_key" not in dumped["payments"]
        assert dumped["environment"] == "development"

    def test_network_aliases(self):
        assert normalize_network("Base-Mainnet") == "base"
        assert normalize_network("cronos") == "cronos-mainnet"
        assert normalize_network("solana") is None

    def test_chain_id_override_only_for_payment_network(self):
        config = PaymentConfig(network="base-sepolia", chain_id=31337)
        assert config.chain_id_for("base-sepolia") == 31337
        assert config.chain_id_for("base") == 8453
        with pytest.raises(ValueError):
            config.chain_id_for("solana")


# =============================================================================
# TEST: Counter Store
# =============================================================================

class TestCounterStore:

    @pytest.mark.asyncio
    async def test_setex_expires(self, memory_store, clock):
        await memory_store.setex("k", 10, "v")
        assert await memory_store.ttl("k") == 10
        clock.advance(10)
        assert await memory_store.get("k") is None
        assert await memory_store.ttl("k") == -2

    @pytest.mark.asyncio
    async def test_decr_keeps_expiry(self, memory_store, clock):
        await memory_store.setex("credits", 60, "2")
        assert await memory_store.decr("credits") == 1
        assert await memory_store.ttl("credits") == 60

    @pytest.mark.asyncio
    async def test_decr_missing_key_starts_at_zero(self, memory_store):
        assert await memory_store.decr("gone") == -1
        assert await memory_store.ttl("gone") == -1

    @pytest.mark.asyncio
    async def test_decr_existing_skips_missing_key(self, memory_store, clock):
        assert await memory_store.decr_existing("gone") is None
        assert await memory_store.ttl("gone") == -2

        await memory_store.setex("credits", 60, "1")
        assert await memory_store.decr_existing("credits") == 0
        assert await memory_store.ttl("credits") == 60
        clock.advance(60)
        assert await memory_store.decr_existing("credits") is None
        assert await memory_store.ttl("credits") == -2

    @pytest.mark.asyncio
    async def test_redis_decr_existing_runs_script(self):
        client = AsyncMock()
        client.eval.side_effect = [None, 4]
        store = RedisCounterStore("redis://unused", client=client)

        assert await store.decr_existing("k") is None
        assert await store.decr_existing("k") == 4
        client.eval.assert_awaited_with(DECR_IF_EXISTS_SCRIPT, 1, "k")

    @pytest.mark.asyncio
    async def test_redis_failure_is_counter_store_error(self):
        client = AsyncMock()
        client.eval.side_effect = RedisConnectionError("down")
        store = RedisCounterStore("redis://unused", client=client)

        with pytest.raises(CounterStoreError):
            await store.decr_existing("k")

    @pytest.mark.asyncio
    async def test_setex_many_and_delete(self, memory_store):
        await memory_store.setex_many([("a", 5, "1"), ("b", 5, "2")])
        await memory_store.delete("a", "b")
        assert await memory_store.get("a") is None

    @pytest.mark.asyncio
    async def test_factory_memory_backend(self):
        from infrastructure.config import CacheConfig
        store = await create_counter_store(CacheConfig(backend="memory"))
        assert isinstance(store, MemoryCounterStore)


# =============================================================================
# TEST: TTL Cache
# =============================================================================

class TestTTLCache:

    def test_per_entry_ttl(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("short", 1, ttl=20)
        cache.set("forever", 2)
        clock.advance(20)
        assert cache.get("short") is None
        assert cache.get("forever") == 2

    def test_bounded(self, clock):
        cache = TTLCache(max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("c") == 3
        assert cache.get_stats()["evictions"] == 1


# =============================================================================
# TEST: Service Wiring
# =============================================================================

class TestContainer:

    @pytest.mark.asyncio
    async def test_misconfigured_remote_mode_disables_payments_only(self, payment_config, memory_store, rpc_registry):
        config = SoulforgeConfig(payments=replace(payment_config, mock_mode=False, facilitator_base_url=None))
        services = await build_services(config, counter_store=memory_store, rpc_registry=rpc_registry)

        assert isinstance(services.facilitator.backend, UnavailablePaymentBackend)
        req = services.facilitator.build_requirements("0x1", "1", "d")
        result = await services.facilitator.verify("anything", req)
        assert result.valid is False
        assert "X402_FACILITATOR_BASE_URL" in result.error

        # Entitlements keep working
        assert (await services.entitlements.check_try_once("m1", ip="10.0.0.1")).eligible
        await services.close()

    @pytest.mark.asyncio
    async def test_wrong_length_master_key_warns_at_startup(self, payment_config, memory_store, rpc_registry, caplog):
        short_key = base64.b64encode(b"\x00" * 16).decode()
        config = SoulforgeConfig(payments=payment_config,
                                 security=SecurityConfig(jwt_secret="s3cret", agent_wallet_encryption_key=short_key))

        with caplog.at_level(logging.WARNING, logger="Container"):
            services = await build_services(config, counter_store=memory_store, rpc_registry=rpc_registry)

        assert not services.vault.is_configured()
        assert any("AGENT_WALLET_ENCRYPTION_KEY" in r.getMessage() for r in caplog.records if r.name == "Container")
        await services.close()

    @pytest.mark.asyncio
    async def test_valid_master_key_no_warning(self, payment_config, memory_store, rpc_registry, master_key, caplog):
        config = SoulforgeConfig(payments=payment_config,
                                 security=SecurityConfig(jwt_secret="s3cret", agent_wallet_encryption_key=master_key))

        with caplog.at_level(logging.WARNING, logger="Container"):
            services = await build_services(config, counter_store=memory_store, rpc_registry=rpc_registry)

        assert services.vault.is_configured()
        assert not [r for r in caplog.records if r.name == "Container" and "ENCRYPTION_KEY" in r.getMessage()]
        await services.close()


# =============================================================================
# TEST: Errors
# =============================================================================

class TestErrors:

    def test_payment_required_is_bare_x402_body(self):
        err = PaymentRequiredError({"payTo": "0x1"}, "Payment settlement failed", "Payment facilitator unavailable")
        assert err.status_code == 402
        assert err.to_dict() == {
            "error": "Payment settlement failed",
            "details": "Payment facilitator unavailable",
            "paymentRequirements": {"payTo": "0x1"},
        }

    def test_config_missing_envelope(self):
        body = ConfigMissingError("JWT_SECRET").to_dict()
        assert body["success"] is False
        assert body["error"]["code"] == "CONFIG_ERROR"
        assert body["error"]["details"] == {"setting": "JWT_SECRET"}

    def test_payment_required_keeps_gate_hints(self):
        body = {
            "error": "Payment Required",
            "paymentRequirements": {"payTo": "0x1"},
            "sessionPassError": "Session pass credits exhausted",
        }
        assert PaymentRequiredError.from_body(body).to_dict() == body
