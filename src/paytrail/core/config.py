"""
Configuration management for PayTrail.

Handles loading configuration from environment variables (and a local
``.env`` file) and validation.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Any

from dotenv import load_dotenv

from paytrail.core.exceptions import ConfigurationError

REPUTATION_MODES = ("batch", "incremental")


def _get_env_var(name: str, default: str | None = None, required: bool = False) -> str | None:
    """Get environment variable with optional default."""
    value = os.environ.get(name, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {name} is not set")
    return value


def _split_urls(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(u.strip() for u in raw.split(",") if u.strip())


@dataclass(frozen=True)
class Config:
    """Core configuration."""

    rpc_urls: tuple[str, ...]
    chain_id: int = 338
    network: str = "cronos-testnet"
    storage_backend: str = "memory"
    redis_url: str | None = None
    log_level: str = "INFO"
    env: str = "development"

    # Chain reader
    rpc_timeout: float = 10.0

    # Contracts
    payment_token_address: str = "0xc01efAaF7C5C61bEbFAeb358E1161b537b8bC0e0"
    token_decimals: int = 6
    reputation_registry_address: str = "0xdaFC2fA590C5Ba88155a009660dC3b14A3651a67"

    # Escrow
    escrow_agent_address: str = ""
    public_host: str = "http://localhost:8000"
    payment_challenge_ttl: int = 300  # seconds a deposit challenge stays valid

    # Indexers
    max_blocks_per_run: int = 1000
    batch_size: int = 100
    start_block: int | None = None
    initial_lookback_blocks: int = 10000
    pending_tx_ttl: int = 600  # seconds before an unsigned tracked tx expires

    # Reputation
    reputation_mode: str = "batch"
    reputation_cache_ttl: int = 120

    # Discovery
    discovery_timeout: float = 5.0

    # Scheduler intervals (seconds)
    payment_indexer_interval: float = 300.0
    feedback_indexer_interval: float = 900.0
    transaction_indexer_interval: float = 60.0
    reputation_interval: float = 86400.0
    session_expiry_interval: float = 60.0

    def __post_init__(self) -> None:
        if not self.rpc_urls:
            raise ConfigurationError("At least one RPC URL is required (PAYTRAIL_RPC_URL)")
        if self.reputation_mode not in REPUTATION_MODES:
            raise ConfigurationError(
                f"Unknown reputation_mode '{self.reputation_mode}'. "
                f"Available: {', '.join(REPUTATION_MODES)}"
            )
        positive = {
            "rpc_timeout": self.rpc_timeout,
            "max_blocks_per_run": self.max_blocks_per_run,
            "batch_size": self.batch_size,
            "pending_tx_ttl": self.pending_tx_ttl,
            "discovery_timeout": self.discovery_timeout,
            "payment_indexer_interval": self.payment_indexer_interval,
            "feedback_indexer_interval": self.feedback_indexer_interval,
            "transaction_indexer_interval": self.transaction_indexer_interval,
            "reputation_interval": self.reputation_interval,
            "session_expiry_interval": self.session_expiry_interval,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables (overrides win)."""
        load_dotenv()

        def pick(key: str, env_name: str, default: Any = None, cast: Any = None) -> Any:
            if key in overrides:
                return overrides[key]
            raw = _get_env_var(env_name)
            if raw is None or raw == "":
                return default
            return cast(raw) if cast else raw

        rpc_urls = overrides.get("rpc_urls")
        if rpc_urls is None:
            rpc_urls = _split_urls(_get_env_var("PAYTRAIL_RPC_URL", required=True))

        start_block = pick("start_block", "PAYTRAIL_START_BLOCK", None, int)

        return cls(
            rpc_urls=tuple(rpc_urls),
            chain_id=pick("chain_id", "PAYTRAIL_CHAIN_ID", cls.chain_id, int),
            network=pick("network", "PAYTRAIL_NETWORK", cls.network),
            storage_backend=pick("storage_backend", "PAYTRAIL_STORAGE_BACKEND", cls.storage_backend),
            redis_url=pick("redis_url", "PAYTRAIL_REDIS_URL", None),
            log_level=pick("log_level", "PAYTRAIL_LOG_LEVEL", cls.log_level),
            env=pick("env", "PAYTRAIL_ENV", cls.env),
            rpc_timeout=pick("rpc_timeout", "PAYTRAIL_RPC_TIMEOUT", cls.rpc_timeout, float),
            payment_token_address=pick(
                "payment_token_address", "PAYTRAIL_PAYMENT_TOKEN", cls.payment_token_address
            ),
            token_decimals=pick("token_decimals", "PAYTRAIL_TOKEN_DECIMALS", cls.token_decimals, int),
            reputation_registry_address=pick(
                "reputation_registry_address",
                "PAYTRAIL_REPUTATION_REGISTRY",
                cls.reputation_registry_address,
            ),
            escrow_agent_address=pick(
                "escrow_agent_address", "PAYTRAIL_ESCROW_AGENT", cls.escrow_agent_address
            ),
            public_host=pick("public_host", "PAYTRAIL_PUBLIC_HOST", cls.public_host),
            max_blocks_per_run=pick(
                "max_blocks_per_run", "PAYTRAIL_MAX_BLOCKS_PER_RUN", cls.max_blocks_per_run, int
            ),
            batch_size=pick("batch_size", "PAYTRAIL_BATCH_SIZE", cls.batch_size, int),
            start_block=start_block,
            reputation_mode=pick("reputation_mode", "PAYTRAIL_REPUTATION_MODE", cls.reputation_mode),
        )

    def with_updates(self, **updates: Any) -> Config:
        """Create a new Config with updated values."""
        current = asdict(self)
        current.update(updates)
        return Config(**current)

    @property
    def resolved_redis_url(self) -> str:
        return self.redis_url or "redis://localhost:6379/0"
