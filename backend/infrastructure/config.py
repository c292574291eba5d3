"""
Configuration Management for Soulforge
Environment-based configuration for the payment & entitlement core

Features:
- Environment-based config (dev/staging/prod)
- x402 payment settings (network, asset, facilitator, mock mode)
- Per-network chain RPC endpoints
- Secrets handling (JWT secret, agent wallet master key)
- Dynamic reload
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("Config")


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


# ============================================
# NETWORKS
# ============================================

@dataclass(frozen=True)
class NetworkInfo:
    """Static description of a supported EVM network"""
    name: str
    chain_id: int
    default_rpc_url: str


SUPPORTED_NETWORKS: Dict[str, NetworkInfo] = {
    "base": NetworkInfo("base", 8453, "https://mainnet.base.org"),
    "base-sepolia": NetworkInfo("base-sepolia", 84532, "https://sepolia.base.org"),
    "cronos-mainnet": NetworkInfo("cronos-mainnet", 25, "https://evm.cronos.org"),
    "cronos-testnet": NetworkInfo("cronos-testnet", 338, "https://evm-t3.cronos.org"),
}

NETWORK_ALIASES = {
    "base-mainnet": "base",
    "cronos": "cronos-mainnet",
}


def normalize_network(network: str) -> Optional[str]:
    """Canonical network name, or None if the network is not supported"""
    normalized = (network or "").strip().lower()
    normalized = NETWORK_ALIASES.get(normalized, normalized)
    return normalized if normalized in SUPPORTED_NETWORKS else None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ============================================
# CONFIG SECTIONS
# ============================================

@dataclass
class PaymentConfig:
    """x402 payment configuration"""
    network: str = "base-sepolia"
    asset_contract: Optional[str] = None
    asset_decimals: int = 6
    chain_id: Optional[int] = None
    eip712_name: str = "x402"
    eip712_version: str = "1"
    mock_mode: bool = False
    facilitator_base_url: Optional[str] = None
    facilitator_api_key: Optional[str] = None
    facilitator_timeout: float = 30.0
    onchain_crosscheck: bool = False
    max_timeout_seconds: int = 300

    def chain_id_for(self, network: str) -> int:
        """Chain id used in the EIP-712 domain for a network"""
        canonical = normalize_network(network)
        if canonical == normalize_network(self.network) and self.chain_id:
            return self.chain_id
        if canonical is None:
            raise ValueError(f"Unsupported network: {network}")
        return SUPPORTED_NETWORKS[canonical].chain_id


@dataclass
class ChainConfig:
    """Chain RPC configuration"""
    rpc_urls: Dict[str, str] = field(default_factory=dict)
    request_timeout: int = 30

    def rpc_url_for(self, network: str) -> str:
        canonical = normalize_network(network)
        if canonical is None:
            raise ValueError(f"Unsupported network: {network}")
        return self.rpc_urls.get(canonical) or SUPPORTED_NETWORKS[canonical].default_rpc_url


@dataclass
class CacheConfig:
    """Counter/quota store configuration"""
    backend: str = "redis"  # redis or memory
    redis_url: str = "redis://localhost:6379"


@dataclass
class SecurityConfig:
    """Secrets used by the core. NEVER log these."""
    jwt_secret: Optional[str] = None
    agent_wallet_encryption_key: Optional[str] = None


@dataclass
class SupabaseConfig:
    """Supabase (PostgREST) persistence for agent wallets"""
    url: Optional[str] = None
    key: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.key)


@dataclass
class MonitoringConfig:
    """Monitoring configuration"""
    log_level: str = "INFO"
    sentry_dsn: Optional[str] = None


@dataclass
class SoulforgeConfig:
    """Main application configuration"""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True

    payments: PaymentConfig = field(default_factory=PaymentConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_env(cls) -> "SoulforgeConfig":
        """Create configuration from environment variables"""
        env = os.environ.get("SOULFORGE_ENV", "development").lower()

        config = cls(
            environment=Environment(env) if env in [e.value for e in Environment] else Environment.DEVELOPMENT,
            debug=_env_bool("DEBUG", True),
        )

        chain_id = os.environ.get("X402_CHAIN_ID")
        config.payments = PaymentConfig(
            network=os.environ.get("X402_NETWORK", "base-sepolia"),
            asset_contract=os.environ.get("X402_ASSET_CONTRACT") or None,
            asset_decimals=int(os.environ.get("X402_ASSET_DECIMALS", "6")),
            chain_id=int(chain_id) if chain_id else None,
            eip712_name=os.environ.get("X402_EIP712_NAME", "x402"),
            eip712_version=os.environ.get("X402_EIP712_VERSION", "1"),
            mock_mode=_env_bool("X402_MOCK_MODE", False),
            facilitator_base_url=os.environ.get("X402_FACILITATOR_BASE_URL") or None,
            facilitator_api_key=os.environ.get("X402_FACILITATOR_API_KEY") or None,
            facilitator_timeout=float(os.environ.get("X402_FACILITATOR_TIMEOUT", "30")),
            onchain_crosscheck=_env_bool("X402_ONCHAIN_CROSSCHECK", False),
            max_timeout_seconds=int(os.environ.get("X402_MAX_TIMEOUT_SECONDS", "300")),
        )

        # RPC_URL_BASE_SEPOLIA=..., X402_RPC_URL overrides the payment network
        rpc_urls: Dict[str, str] = {}
        for name in SUPPORTED_NETWORKS:
            value = os.environ.get(f"RPC_URL_{name.upper().replace('-', '_')}")
            if value:
                rpc_urls[name] = value
        payment_network = normalize_network(config.payments.network)
        if os.environ.get("X402_RPC_URL") and payment_network:
            rpc_urls[payment_network] = os.environ["X402_RPC_URL"]
        config.chain = ChainConfig(rpc_urls=rpc_urls)

        config.cache = CacheConfig(
            backend=os.environ.get("COUNTER_STORE", "redis").lower(),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
        )

        config.security = SecurityConfig(
            jwt_secret=os.environ.get("JWT_SECRET") or None,
            agent_wallet_encryption_key=os.environ.get("AGENT_WALLET_ENCRYPTION_KEY") or None,
        )

        config.supabase = SupabaseConfig(
            url=os.environ.get("SUPABASE_URL") or None,
            key=os.environ.get("SUPABASE_KEY") or None,
        )

        config.monitoring = MonitoringConfig(
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            sentry_dsn=os.environ.get("SENTRY_DSN") or None,
        )

        if config.environment == Environment.PRODUCTION:
            config.debug = False
            config.monitoring.log_level = "WARNING"

        return config

    def warn_on_missing_secrets(self):
        """Startup-time warnings; the dependent features fail on first use"""
        if not self.security.agent_wallet_encryption_key:
            logger.warning("AGENT_WALLET_ENCRYPTION_KEY not set - agent wallets disabled")
        if not self.security.jwt_secret:
            logger.warning("JWT_SECRET not set - using insecure development secret for session passes")
        if not self.payments.mock_mode and not self.payments.facilitator_base_url:
            logger.warning("X402_FACILITATOR_BASE_URL not set and mock mode is off - payments will fail")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (hiding secrets)"""
        hidden = ("secret", "key", "password", "dsn")

        def sanitize(obj):
            if isinstance(obj, dict):
                return {k: sanitize(v) for k, v in obj.items() if not any(h in k.lower() for h in hidden)}
            elif hasattr(obj, '__dataclass_fields__'):
                return sanitize({k: getattr(obj, k) for k in obj.__dataclass_fields__})
            elif isinstance(obj, Enum):
                return obj.value
            else:
                return obj

        return sanitize(self)


# ============================================
# GLOBAL INSTANCE
# ============================================

config = SoulforgeConfig.from_env()


def get_config() -> SoulforgeConfig:
    """Get the global configuration"""
    return config


def reload_config() -> SoulforgeConfig:
    """Reload configuration from environment"""
    global config
    config = SoulforgeConfig.from_env()
    logger.info("Configuration reloaded")
    return config
