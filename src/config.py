"""Centralized configuration management for the promo bridge service.

Loads all configuration from environment variables with sensible defaults.
"""

from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings
from solders.pubkey import Pubkey

# Load environment variables from .env file
load_dotenv()

DEFAULT_IDL_PATH = str(Path(__file__).parent / "idl" / "promo_targeting.json")


class Config(BaseSettings):
    """Main configuration class for the promo service."""

    # Ledger / RPC
    solana_rpc_url: str = Field(default="https://api.devnet.solana.com", description="Solana RPC endpoint")
    solana_cluster: str = Field(default="", description="Cluster name; inferred from the RPC URL when empty")
    rpc_commitment: Literal["processed", "confirmed", "finalized"] = Field(default="confirmed")
    rpc_max_retries: int = Field(default=5, description="Attempt ceiling for transient RPC failures")
    rpc_retry_delay_ms: int = Field(default=1000, description="Base backoff delay between attempts")
    rpc_retry_cap_multiplier: int = Field(default=5, description="Backoff multiplier ceiling")
    rpc_timeout_seconds: float = Field(default=30.0)
    confirm_timeout_seconds: float = Field(default=60.0, description="How long to wait for a submitted tx")

    # Program
    program_id: str = Field(
        default="41eti7CsZBWD1QYdor2RnxmqzsaNGpRQCkJQZqX2JEKr",
        description="Promo targeting program address",
    )
    promo_idl_path: str = Field(default=DEFAULT_IDL_PATH, description="Anchor interface description (JSON)")

    # Merchant / treasury
    merchant_keypair_path: str = Field(default="./merchant-keypair.json")
    platform_treasury_address: str = Field(default="", description="Receives protocol service fees")
    min_merchant_balance_lamports: int = Field(default=100_000_000)
    max_airdrop_lamports: int = Field(default=200_000_000)

    # Program defaults
    default_max_resale_bps: int = Field(default=5000)
    default_service_fee_bps: int = Field(default=1000)
    min_vault_reserve_lamports: int = Field(default=5_000_000)

    # Solana Pay
    solana_pay_base_url: str = Field(default="http://localhost:3001")
    solana_pay_label: str = Field(default="Promo Targeting Demo Store")
    solana_pay_message: str = Field(default="Order payment via Solana Pay")
    solana_pay_memo: str = Field(default="promo-targeting-demo")
    solana_pay_icon_url: str = Field(
        default="https://upload.wikimedia.org/wikipedia/commons/thumb/3/3b/Coffee_cup_icon.svg/512px-Coffee_cup_icon.svg.png"
    )
    payment_session_ttl_seconds: int = Field(default=3600, description="Sessions older than this are evicted")
    payment_session_max: int = Field(default=10_000, description="Upper bound on retained sessions")

    # Campaign advisor (OpenAI-compatible chat completions)
    openai_api_key: str = Field(default="")
    openai_model: str = Field(default="gpt-4o-mini")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    advisor_timeout_seconds: float = Field(default=30.0)

    # Service
    promo_host: str = Field(default="0.0.0.0")
    promo_port: int = Field(default=3001)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def cluster(self) -> str:
        """Cluster name used in payment links."""
        if self.solana_cluster:
            return self.solana_cluster
        return "devnet" if "devnet" in self.solana_rpc_url else "mainnet-beta"


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["promo", "scripts"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    try:
        Pubkey.from_string(config.program_id)
    except ValueError:
        errors.append(f"PROGRAM_ID is not a valid address: {config.program_id}")

    if config.rpc_max_retries < 1:
        errors.append("RPC_MAX_RETRIES must be at least 1")
    if config.rpc_retry_delay_ms < 0:
        errors.append("RPC_RETRY_DELAY_MS must not be negative")
    if config.rpc_retry_cap_multiplier < 1:
        errors.append("RPC_RETRY_CAP_MULTIPLIER must be at least 1")

    for name in ("default_max_resale_bps", "default_service_fee_bps"):
        value = getattr(config, name)
        if not 0 <= value <= 10_000:
            errors.append(f"{name.upper()} must be between 0 and 10000 (got {value})")

    if service == "promo":
        if config.payment_session_max < 1:
            errors.append("PAYMENT_SESSION_MAX must be at least 1")
        if not config.solana_pay_base_url.startswith(("http://", "https://")):
            errors.append("SOLANA_PAY_BASE_URL must be an http(s) URL")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
