"""
Soulforge Infrastructure Module
Configuration, errors, shared stores and chain access for the payment core
"""

from .config import (
    SoulforgeConfig,
    PaymentConfig,
    ChainConfig,
    CacheConfig,
    SecurityConfig,
    SupabaseConfig,
    MonitoringConfig,
    Environment,
    SUPPORTED_NETWORKS,
    normalize_network,
    config,
    get_config,
    reload_config,
)

from .errors import (
    SoulforgeError,
    ValidationError,
    PaymentRequiredError,
    ConfigMissingError,
    KeyNotFoundError,
    DecryptionFailedError,
    ExternalAPIError,
    BlockchainError,
    CounterStoreError,
    SettledButUndeliveredError,
    ErrorCode,
    ErrorTracker,
    error_tracker,
    retry,
    register_exception_handlers,
)

from .counter_store import (
    CounterStore,
    RedisCounterStore,
    MemoryCounterStore,
    create_counter_store,
)

from .ttl_cache import TTLCache
from .rpc import ChainRPC, RPCRegistry
from .supabase_rest import SupabaseREST
