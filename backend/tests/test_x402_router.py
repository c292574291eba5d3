"""
x402 API Router Tests
Endpoints over a mock-mode payment core wired by build_services

Run: python -m pytest tests/test_x402_router.py -v
"""

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from api.x402_router import DEMO_MODULE_ID, DEMO_PAY_TO, router
from infrastructure.config import SoulforgeConfig
from infrastructure.container import build_services
from infrastructure.errors import register_exception_handlers
from payments.header import encode_payment_header


def payment_header(payer):
    return encode_payment_header({
        "x402Version": 1,
        "scheme": "exact",
        "network": "base-sepolia",
        "payload": {"from": payer, "to": DEMO_PAY_TO, "value": "10000", "validAfter": 0,
                    "validBefore": 1_900_000_000, "nonce": "0x" + "11" * 32, "signature": "0x00"},
    })


@pytest_asyncio.fixture
async def client(payment_config, memory_store, rpc_registry):
    config = SoulforgeConfig(payments=payment_config)
    services = await build_services(config, counter_store=memory_store, rpc_registry=rpc_registry)

    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(router)
    app.state.services = services

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http
    await services.close()


# =============================================================================
# TEST: Demo Paid Endpoint
# =============================================================================

class TestPremiumEcho:

    @pytest.mark.asyncio
    async def test_without_payment_is_402(self, client):
        resp = await client.post("/api/premium/echo", json={"message": "hi"})
        assert resp.status_code == 402
        body = resp.json()
        assert body["error"] == "Payment Required"
        assert body["paymentRequirements"]["payTo"] == DEMO_PAY_TO
        assert body["paymentRequirements"]["maxAmountRequired"] == "10000"

    @pytest.mark.asyncio
    async def test_paid_echo_is_recorded(self, client, test_addresses):
        resp = await client.post(
            "/api/premium/echo",
            json={"message": "hi"},
            headers={"X-Payment": payment_header(test_addresses["payer"])},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["echo"] == "hi"
        assert body["payment"]["from"] == test_addresses["payer"]

        payments = (await client.get("/api/premium/payments", params={"moduleId": DEMO_MODULE_ID})).json()["payments"]
        assert len(payments) == 1
        assert payments[0]["event"] == "settled"
        assert payments[0]["txHash"] == body["payment"]["txHash"]

    @pytest.mark.asyncio
    async def test_bad_header_is_402_with_reason(self, client):
        resp = await client.post("/api/premium/echo", headers={"X-Payment": "garbage"})
        assert resp.status_code == 402
        assert resp.json()["details"] == "Failed to decode payment header"


# =============================================================================
# TEST: Payment Core Endpoints
# =============================================================================

class TestCoreEndpoints:

    @pytest.mark.asyncio
    async def test_requirements(self, client, test_addresses):
        resp = await client.get("/api/x402/requirements", params={"payTo": test_addresses["creator"], "amount": "250"})
        assert resp.status_code == 200
        assert resp.json()["paymentRequirements"]["asset"] == test_addresses["USDC"]

    @pytest.mark.asyncio
    async def test_requirements_rejects_decimal_amount(self, client, test_addresses):
        resp = await client.get("/api/x402/requirements", params={"payTo": test_addresses["creator"], "amount": "0.25"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_verify_tx_not_found(self, client, test_addresses):
        resp = await client.post("/api/x402/verify-tx", json={
            "txHash": "0x" + "ab" * 32,
            "expectedTo": test_addresses["creator"],
            "expectedValue": "10000",
        })
        assert resp.status_code == 200
        assert resp.json()["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_transfers_scan_failure_is_blockchain_error(self, client, fake_rpc, test_addresses):
        fake_rpc.head = 0
        fake_rpc.block_timestamps = {0: 1000}
        fake_rpc.fail_get_logs_above = 0

        resp = await client.get("/api/x402/transfers", params={"to": test_addresses["creator"], "since": 0})
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "BLOCKCHAIN_ERROR"

    @pytest.mark.asyncio
    async def test_transfers_empty(self, client, fake_rpc, test_addresses):
        fake_rpc.head = 0
        fake_rpc.block_timestamps = {0: 1000}

        resp = await client.get("/api/x402/transfers", params={"to": test_addresses["creator"], "since": 0})
        assert resp.status_code == 200
        assert resp.json() == {"transfers": [], "meta": {"fromBlock": "0", "toBlock": "0"}}

    @pytest.mark.asyncio
    async def test_session_pass_header_required(self, client):
        resp = await client.get("/api/x402/session-pass")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_session_pass_invalid_token(self, client):
        resp = await client.get("/api/x402/session-pass", headers={"X-Session-Pass": "nope"})
        assert resp.json() == {"valid": False, "error": "Invalid session pass token"}


# =============================================================================
# TEST: Demo Endpoint Uses the Payment Gate
# =============================================================================

class TestPremiumEchoGate:

    @pytest.mark.asyncio
    async def test_no_free_try_on_demo_module(self, client):
        first = await client.post("/api/premium/echo", json={"message": "hi"})
        assert first.status_code == 402
        assert "tryOnceUsed" not in first.json()

    @pytest.mark.asyncio
    async def test_verification_failure_keeps_requirements(self, client):
        resp = await client.post("/api/premium/echo", headers={"X-Payment": "garbage"})
        body = resp.json()
        assert body["error"] == "Payment verification failed"
        assert body["paymentRequirements"]["payTo"] == DEMO_PAY_TO

    @pytest.mark.asyncio
    async def test_payments_listed_newest_first(self, client, test_addresses):
        await client.post("/api/premium/echo", headers={"X-Payment": "garbage"})
        await client.post("/api/premium/echo", json={"message": "hi"},
                          headers={"X-Payment": payment_header(test_addresses["payer"])})

        payments = (await client.get("/api/premium/payments")).json()["payments"]
        assert [p["event"] for p in payments] == ["settled", "failed"]

    @pytest.mark.asyncio
    async def test_generation_failure_after_settlement_is_reported(self, payment_config, memory_store, rpc_registry,
                                                                   test_addresses):
        config = SoulforgeConfig(payments=payment_config)
        services = await build_services(config, counter_store=memory_store, rpc_registry=rpc_registry)

        app = FastAPI()
        register_exception_handlers(app)
        app.include_router(router)
        app.state.services = services

        original = services.gate.handle

        async def failing_handle(offer, gate_request, generate):
            async def broken(preview):
                raise TimeoutError("generation timed out")
            return await original(offer, gate_request, broken)

        services.gate.handle = failing_handle
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
            resp = await http.post("/api/premium/echo", headers={"X-Payment": payment_header(test_addresses["payer"])})
        await services.close()

        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "PAID_BUT_UNDELIVERED"
        assert error["details"]["payment"]["txHash"] == services.ledger.list()[0].tx_hash
