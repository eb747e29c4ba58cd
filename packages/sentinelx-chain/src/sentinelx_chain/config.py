"""Configuration surface for sentinelx-chain.

Provides process-wide settings for:
- Node connection (RPC URL, chain name, timeouts)
- Recovery registry contract location and storage layout
- Deploy defaults (payment amounts, TTL)
- Executable artifact paths
- Deploy status polling

Values are read from environment variables with prefix SENTINELX_ and
nested sections separated by "__", e.g. SENTINELX_DEPLOY__TTL_MS=600000.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Gas price is fixed by the ledger; deploys always carry 1.
GAS_PRICE = 1

MOTES_PER_CSPR = 1_000_000_000


class DeploySettings(BaseSettings):
    """Deploy defaults."""
    # Stored contract calls
    payment_amount: int = 5 * MOTES_PER_CSPR
    # Session bytecode execution
    session_payment_amount: int = 10 * MOTES_PER_CSPR
    # One-time registry installation
    install_payment_amount: int = 400 * MOTES_PER_CSPR
    ttl_ms: int = 30 * 60 * 1000

    class Config:
        env_prefix = "SENTINELX_DEPLOY__"
        extra = "ignore"

    @field_validator("payment_amount", "session_payment_amount", "install_payment_amount", "ttl_ms")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class WasmPaths(BaseSettings):
    """Locations of executable artifacts."""
    recovery_registry: Path = Path("../contracts/wasm/recovery_registry.wasm")
    recovery_session: Path = Path("../contracts/wasm/recovery_session.wasm")
    add_key: Path = Path("../contracts/wasm/add_associated_key.wasm")
    remove_key: Path = Path("../contracts/wasm/remove_associated_key.wasm")
    update_thresholds: Path = Path("../contracts/wasm/update_thresholds.wasm")

    class Config:
        env_prefix = "SENTINELX_WASM__"
        extra = "ignore"


class PollingSettings(BaseSettings):
    """Deploy status polling."""
    interval_seconds: float = 2.0
    timeout_seconds: float = 60.0

    class Config:
        env_prefix = "SENTINELX_POLLING__"
        extra = "ignore"


class SentinelSettings(BaseSettings):
    """Main sentinelx-chain configuration."""

    environment: Literal["dev", "test", "prod"] = "dev"

    # Node
    node_url: str = "http://localhost:7777/rpc"
    chain_name: str = "casper-test"
    rpc_timeout_seconds: float = 30.0

    # Recovery registry
    contract_hash: str = ""
    dictionary_name: str = "d"
    storage_layout: Literal["dictionary", "named_keys"] = "dictionary"

    deploy: DeploySettings = Field(default_factory=DeploySettings)
    wasm: WasmPaths = Field(default_factory=WasmPaths)
    polling: PollingSettings = Field(default_factory=PollingSettings)

    class Config:
        env_prefix = "SENTINELX_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("contract_hash", mode="before")
    @classmethod
    def strip_hash_prefix(cls, v):
        """Accept "hash-<hex>" as well as bare hex."""
        if isinstance(v, str):
            v = v.strip().lower()
            if v.startswith("hash-"):
                v = v[len("hash-"):]
        return v

    @field_validator("contract_hash")
    @classmethod
    def validate_contract_hash(cls, v: str) -> str:
        if v and (len(v) != 64 or any(c not in "0123456789abcdef" for c in v)):
            raise ValueError("contract_hash must be 32 bytes of hex")
        return v

    @property
    def contract_deployed(self) -> bool:
        return bool(self.contract_hash)


@lru_cache
def load_settings(env_file: str | None = None) -> SentinelSettings:
    """Load SentinelSettings once per process to keep components consistent."""
    env_path = Path(env_file) if env_file else None
    settings = SentinelSettings(_env_file=env_path)
    if not settings.contract_deployed:
        logger.info("Recovery contract hash not set; recovery actions will run as session bytecode")
    return settings
