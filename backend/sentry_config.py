"""
Sentry Error Monitoring Configuration
Error tracking for the Soulforge payment core
"""
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from infrastructure.config import SoulforgeConfig

logger = logging.getLogger("Sentry")

SENSITIVE_KEYS = (
    "private_key",
    "privatekey",
    "encryptedprivatekey",
    "encrypted_private_key",
    "signature",
    "secret",
    "password",
    "api_key",
    "x-payment",
    "x-session-pass",
)
FILTERED = "[FILTERED]"


def _is_sensitive(key: str) -> bool:
    key = str(key).lower()
    return any(s in key for s in SENSITIVE_KEYS)


def _scrub(value):
    if isinstance(value, dict):
        return {k: FILTERED if _is_sensitive(k) else _scrub(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def filter_sensitive_data(event, hint):
    """Remove key material, signatures and payment headers from Sentry events."""
    request = event.get("request")
    if isinstance(request, dict):
        for section in ("data", "headers", "cookies"):
            if section in request:
                request[section] = _scrub(request[section])

    if "extra" in event:
        event["extra"] = _scrub(event["extra"])

    # Filter exception values that might contain keys
    for exc in (event.get("exception") or {}).get("values", []) or []:
        value = exc.get("value")
        if isinstance(value, str) and _is_sensitive(value):
            exc["value"] = "[FILTERED - sensitive data]"

    return event


def init_sentry(config: SoulforgeConfig, release: Optional[str] = None) -> bool:
    """Initialize Sentry when SENTRY_DSN is configured."""
    dsn = config.monitoring.sentry_dsn
    if not dsn:
        logger.info("No SENTRY_DSN found - error tracking disabled")
        return False

    release = release or "local"
    sentry_sdk.init(
        dsn=dsn,
        environment=config.environment.value,
        traces_sample_rate=0.2,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        before_send=filter_sensitive_data,
        send_default_pii=False,
        release=f"soulforge-backend@{release}",
    )

    logger.info(f"Sentry initialized for {config.environment.value} (release: {release[:8]})")
    return True


def capture_payment_breadcrumb(action: str, tx_hash: Optional[str] = None, network: Optional[str] = None):
    """Add breadcrumb for settlement activity (hashes shortened)."""
    sentry_sdk.add_breadcrumb(
        category="payment",
        message=action,
        level="info",
        data={"tx": f"{tx_hash[:10]}..." if tx_hash else None, "network": network},
    )
