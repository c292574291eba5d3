"""
Soulforge Backend - x402 payment core
FastAPI application factory

Run: uvicorn main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from api.x402_router import router as x402_router
from infrastructure.config import SoulforgeConfig, get_config
from infrastructure.container import build_services
from infrastructure.errors import register_exception_handlers
from sentry_config import init_sentry

logger = logging.getLogger("Soulforge")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the payment core on startup, release its clients on shutdown"""
    config: SoulforgeConfig = app.state.config
    init_sentry(config)

    services = await build_services(config)
    app.state.services = services
    logger.info(f"Soulforge backend started ({config.environment.value})")
    try:
        yield
    finally:
        await services.close()
        logger.info("Soulforge backend stopped")


def create_app(config: Optional[SoulforgeConfig] = None) -> FastAPI:
    config = config or get_config()
    logging.basicConfig(
        level=getattr(logging, config.monitoring.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="Soulforge Payment Core",
        description="x402 verification, settlement and entitlements",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config

    register_exception_handlers(app)
    app.include_router(x402_router)

    @app.get("/health", tags=["health"])
    async def health_check():
        services = getattr(app.state, "services", None)
        store_ok = False
        if services:
            try:
                store_ok = await services.counter_store.ping()
            except Exception as e:
                logger.warning(f"Counter store ping failed: {e}")
        return {
            "status": "healthy" if store_ok else "degraded",
            "environment": config.environment.value,
            "network": config.payments.network,
            "mockPayments": services.facilitator.is_mock if services else config.payments.mock_mode,
            "counterStore": "ok" if store_ok else "unavailable",
        }

    return app


app = create_app()
