"""
Runtime configuration.

All settings come from environment variables (a local .env file is
loaded first). The API lifespan builds one Settings instance and passes
the values into the components it constructs.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv

# USDC on Base mainnet (6 decimals)
BASE_USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
DEFAULT_RPC_URL = "https://mainnet.base.org"
DEFAULT_TEXT_MODEL = "claude-sonnet-4-20250514"


def env_bool(key: str, default: bool = False) -> bool:
    """Read a boolean flag ("true"/"1"/"yes"/"on")."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one process."""

    db_path: str = "data/paygate.db"
    environment: str = "development"
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Blockchain RPC gateway
    rpc_url: str = DEFAULT_RPC_URL
    rpc_timeout: float = 10.0
    rpc_max_attempts: int = 3
    rpc_backoff: float = 0.5
    token_address: str = BASE_USDC_ADDRESS
    token_decimals: int = 6
    amount_tolerance: Decimal = Decimal("0.001")

    # Wallet that receives payment for locally fulfilled jobs
    platform_wallet: Optional[str] = None

    # Generation providers
    anthropic_api_key: Optional[str] = None
    text_model: str = DEFAULT_TEXT_MODEL
    text_max_tokens: int = 2000
    text_timeout: float = 30.0
    replicate_api_token: Optional[str] = None
    image_timeout: float = 60.0

    # Webhooks
    webhook_timeout: float = 30.0

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def load_settings(dotenv: bool = True) -> Settings:
    """
    Build Settings from the environment.

    Args:
        dotenv: Load ./.env before reading variables (does not override
            variables that are already set)

    Returns:
        Settings instance
    """
    if dotenv:
        load_dotenv(override=False)

    return Settings(
        db_path=os.getenv("PAYGATE_DB_PATH", "data/paygate.db"),
        environment=os.getenv("PAYGATE_ENVIRONMENT", "development"),
        log_level=os.getenv("PAYGATE_LOG_LEVEL", "INFO"),
        log_dir=os.getenv("PAYGATE_LOG_DIR", "logs"),
        rpc_url=os.getenv("PAYGATE_RPC_URL", DEFAULT_RPC_URL),
        rpc_timeout=float(os.getenv("PAYGATE_RPC_TIMEOUT", "10")),
        rpc_max_attempts=int(os.getenv("PAYGATE_RPC_MAX_ATTEMPTS", "3")),
        rpc_backoff=float(os.getenv("PAYGATE_RPC_BACKOFF", "0.5")),
        token_address=os.getenv("PAYGATE_TOKEN_ADDRESS", BASE_USDC_ADDRESS),
        token_decimals=int(os.getenv("PAYGATE_TOKEN_DECIMALS", "6")),
        amount_tolerance=Decimal(os.getenv("PAYGATE_AMOUNT_TOLERANCE", "0.001")),
        platform_wallet=os.getenv("PAYGATE_PLATFORM_WALLET") or None,
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        text_model=os.getenv("PAYGATE_TEXT_MODEL", DEFAULT_TEXT_MODEL),
        text_max_tokens=int(os.getenv("PAYGATE_TEXT_MAX_TOKENS", "2000")),
        text_timeout=float(os.getenv("PAYGATE_TEXT_TIMEOUT", "30")),
        replicate_api_token=os.getenv("REPLICATE_API_TOKEN") or None,
        image_timeout=float(os.getenv("PAYGATE_IMAGE_TIMEOUT", "60")),
        webhook_timeout=float(os.getenv("PAYGATE_WEBHOOK_TIMEOUT", "30")),
    )
