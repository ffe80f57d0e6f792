"""
Configuration management for the Shadow Oracle.
"""

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .rpc import SettlementRPCConfig


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database (Supabase exposes plain PostgreSQL)
    database_url: str = "sqlite:///./oracle.db"

    # Keys (32-byte hex)
    oracle_private_key: str = ""
    counterparty_private_key: str = ""

    # Settlement node
    bch_rpc_url: str = "http://localhost:48332"
    bch_rpc_user: str = ""
    bch_rpc_password: str = ""

    # Covenant
    covenant_redeem_script: str = ""
    covenant_function_index: Optional[int] = None
    address_prefix: str = "bchtest"

    # Settlement amounts
    bch_usd_rate: Optional[Decimal] = Field(default=None, gt=0)
    fee_rate_sats_per_byte: int = Field(default=1, ge=1)

    # Pipeline
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    retry_interval_seconds: float = Field(default=60.0, ge=0)
    broadcast_timeout_seconds: float = Field(default=30.0, gt=0)
    worker_count: int = Field(default=4, ge=1)
    queue_size: int = Field(default=100, ge=1)
    reconnect_max_backoff_seconds: float = Field(default=30.0, gt=0)


def mask_key(value: str, visible: int = 6) -> str:
    """Mask a secret for logging, keeping only the first characters."""
    if not value:
        return ""
    return value[:visible] + "..."


@dataclass
class OracleConfig:
    """Full oracle configuration."""

    settings: Settings

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "OracleConfig":
        """Load configuration from environment."""
        settings = Settings(_env_file=env_path) if env_path else Settings()
        return cls(settings=settings)

    @property
    def rpc_config(self) -> SettlementRPCConfig:
        s = self.settings
        return SettlementRPCConfig(
            url=s.bch_rpc_url,
            user=s.bch_rpc_user,
            password=s.bch_rpc_password,
            timeout=s.broadcast_timeout_seconds,
        )

    @property
    def redeem_script(self) -> bytes:
        return bytes.fromhex(self.settings.covenant_redeem_script)

    @property
    def can_broadcast(self) -> bool:
        return bool(
            self.settings.counterparty_private_key and self.settings.covenant_redeem_script
        )

    def missing_keys(self, broadcast: bool = True) -> list[str]:
        """Names of required settings that are not set."""
        missing = []
        if not self.settings.oracle_private_key:
            missing.append("ORACLE_PRIVATE_KEY")
        if broadcast:
            if not self.settings.counterparty_private_key:
                missing.append("COUNTERPARTY_PRIVATE_KEY")
            if not self.settings.covenant_redeem_script:
                missing.append("COVENANT_REDEEM_SCRIPT")
        return missing
