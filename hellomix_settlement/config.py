"""
Configuration for the HelloMix settlement core.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BLOCKSTREAM_MAINNET = "https://blockstream.info/api"
BLOCKSTREAM_TESTNET = "https://blockstream.info/testnet/api"


class Settings(BaseSettings):
    """
    Settlement core settings.

    All settings can be overridden via environment variables or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./hellomix.db",
        description="SQLAlchemy database URL (sqlite:///... or postgresql://...)",
    )

    # Wallet
    wallet_master_key: str = Field(
        default="",
        description="Master secret the deposit-key encryption key is derived from",
    )
    wallet_testnet: bool = Field(default=False, description="Issue testnet deposit addresses")
    deposit_address_type: str = Field(default="p2wpkh", description="p2wpkh or p2pkh")

    # Price API
    coingecko_api_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: Optional[str] = None
    price_cache_ttl_seconds: float = 300.0

    # Block explorer (Esplora-compatible). Empty means blockstream.info for the network.
    explorer_api_url: str = ""
    http_timeout_seconds: float = 30.0

    # Settlement
    poll_interval_seconds: float = 30.0
    watch_window_seconds: float = 1800.0
    scheduler_tick_seconds: float = 5.0

    # Request validation
    percentage_tolerance: Decimal = Field(
        default=Decimal("0.1"),
        description="Allowed deviation of the percentage split from 100",
    )
    max_output_addresses: int = 7

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("deposit_address_type")
    @classmethod
    def _check_address_type(cls, value: str) -> str:
        value = value.lower()
        if value not in ("p2wpkh", "p2pkh"):
            raise ValueError("deposit_address_type must be p2wpkh or p2pkh")
        return value

    @property
    def network(self) -> str:
        return "testnet" if self.wallet_testnet else "mainnet"

    @property
    def resolved_explorer_url(self) -> str:
        if self.explorer_api_url:
            return self.explorer_api_url
        return BLOCKSTREAM_TESTNET if self.wallet_testnet else BLOCKSTREAM_MAINNET

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "Settings":
        """Load settings, optionally from a specific .env file."""
        return cls(_env_file=env_path) if env_path else cls()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
