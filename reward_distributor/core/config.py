"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.
"""

import json
from typing import Optional, List

import base58
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.keypair import Keypair

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Reward Distributor"
    app_version: str = "0.1.0"
    environment: str = "development"

    # Assets and credentials (required)
    tracked_mint: str
    reward_mint: str
    wallet_private_key: str = Field(repr=False)

    # Solana
    rpc_urls: str = ""  # comma separated, first one is primary
    solana_rpc_url: str = ""
    solana_commitment: str = "confirmed"
    rpc_timeout: int = 30  # seconds
    rpc_max_retries: int = 5
    rpc_retry_delay: float = 0.25  # seconds, multiplied by attempt

    # Cycle grid
    cycle_width_seconds: int = 300
    claim_offset_seconds: int = 0
    swap_offset_seconds: int = 30
    distribute_offset_seconds: int = 55
    claim_timeout_seconds: float = 25.0
    swap_timeout_seconds: float = 25.0
    distribute_timeout_seconds: float = 240.0
    scheduler_poll_interval: float = 1.0

    # Fee claim
    pumpportal_base: str = "https://pumpportal.fun"
    pumpportal_key: str = Field(default="", repr=False)
    claim_priority_fee: float = 0.000001
    claim_pool: str = "pump"
    claim_settle_seconds: float = 3.0
    min_claim_lamports: int = 1_000

    # Swap
    jupiter_base: str = "https://lite-api.jup.ag/swap/v1"
    swap_spend_bps: int = 7_000
    swap_slippage_bps: int = 300
    swap_max_tries: int = 6
    swap_retry_sleep: float = 1.0  # seconds, multiplied by attempt
    burn_bps: int = 0

    # Distribution
    distribute_bps: int = 10_000
    allocation_mode: str = "proportional"
    excluded_wallets: str = ""  # comma separated
    max_holder_balance: Optional[int] = None  # base units of the tracked mint
    min_holder_balance: int = 0

    # Batch submission
    batch_size_default: int = 8
    batch_size_max: int = 10
    grow_after_successes: int = 3
    max_in_flight: int = 3
    min_submit_interval: float = 0.25  # seconds
    submit_max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    priority_fee_micro_lamports: int = 5_000
    compute_unit_limit: int = 400_000
    confirm_timeout_seconds: float = 90.0
    confirm_poll_interval: float = 2.0

    # Ops recording
    ops_url: str = ""
    ops_secret: str = Field(default="", repr=False)
    ops_timeout: float = 10.0
    redis_url: Optional[str] = None
    redis_prefix: str = "reward_distributor:"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_file: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("allocation_mode")
    @classmethod
    def validate_allocation_mode(cls, v: str) -> str:
        allowed = ["proportional", "equal"]
        if v.lower() not in allowed:
            raise ValueError(f"Allocation mode must be one of: {allowed}")
        return v.lower()

    @field_validator("swap_spend_bps", "burn_bps", "distribute_bps")
    @classmethod
    def validate_bps(cls, v: int) -> int:
        if not 0 <= v <= 10_000:
            raise ValueError("Basis points must be between 0 and 10000")
        return v

    @field_validator("tracked_mint", "reward_mint", "wallet_private_key")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def rpc_endpoints(self) -> List[str]:
        """Ordered RPC endpoints, primary first, duplicates removed."""
        urls = [u.strip() for u in self.rpc_urls.split(",") if u.strip()]
        if self.solana_rpc_url.strip():
            urls.append(self.solana_rpc_url.strip())
        return list(dict.fromkeys(urls))

    @property
    def excluded_wallet_list(self) -> List[str]:
        return [w.strip() for w in self.excluded_wallets.split(",") if w.strip()]

    def load_keypair(self) -> Keypair:
        """Decode the signing wallet from a JSON byte array or a base58 string."""
        return parse_keypair(self.wallet_private_key)


def parse_keypair(secret: str) -> Keypair:
    """Parse a secret key given either as a JSON byte array or base58."""
    secret = secret.strip()
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        return Keypair.from_bytes(base58.b58decode(secret))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            "WALLET_PRIVATE_KEY is not a valid keypair",
            {"reason": str(e)}
        ) from e


def load_settings(**overrides) -> Settings:
    """
    Build settings from the environment, failing fast on bad configuration.

    Raises:
        ConfigurationError: if required values are missing or invalid
    """
    try:
        loaded = Settings(**overrides)
    except ValidationError as e:
        problems = {
            ".".join(str(p) for p in err["loc"]) or "settings": err["msg"]
            for err in e.errors()
        }
        raise ConfigurationError(
            f"Invalid configuration: {', '.join(sorted(problems))}",
            {"fields": problems}
        ) from e

    if not loaded.rpc_endpoints:
        raise ConfigurationError(
            "Invalid configuration: no RPC endpoint configured",
            {"fields": {"rpc_urls": "at least one endpoint is required"}}
        )
    if loaded.batch_size_default < 1 or loaded.batch_size_max < loaded.batch_size_default:
        raise ConfigurationError(
            "Invalid configuration: batch size bounds",
            {"batch_size_default": loaded.batch_size_default, "batch_size_max": loaded.batch_size_max}
        )
    offsets = [
        loaded.claim_offset_seconds,
        loaded.swap_offset_seconds,
        loaded.distribute_offset_seconds,
    ]
    if offsets != sorted(offsets) or offsets[-1] >= loaded.cycle_width_seconds or offsets[0] < 0:
        raise ConfigurationError(
            "Invalid configuration: stage offsets must be ordered and inside the cycle",
            {"offsets": offsets, "cycle_width_seconds": loaded.cycle_width_seconds}
        )
    return loaded

