"""
Application settings.

Settings are read from environment variables (optionally from backend/.env)
once and shared through get_settings().
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
# Get the backend directory (parent of chum_rewards/)
backend_dir = Path(__file__).parent.parent
load_dotenv(dotenv_path=backend_dir / ".env")

DEFAULT_CHUM_MINT = "B9nLmgbkW9X59xvwne1Z7qfJ46AsAmNEydMiJrgxpump"


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings(BaseModel):
    """Runtime configuration for the rewards backend."""
    project_name: str = "BullShark P2E Backend"
    debug: bool = False
    api_prefix: str = "/api"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Chain
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    commitment: str = "confirmed"
    chum_mint: str = DEFAULT_CHUM_MINT
    authority_keypair: Optional[str] = None

    # Reward policy
    min_hold_requirement: float = Field(default=25000, ge=0)
    points_per_chum: int = Field(default=1000, gt=0)
    min_points_to_earn: int = Field(default=0, ge=0)
    direct_earn_enabled: bool = False

    # Tournaments
    default_prize_pool: float = Field(default=769230, ge=0)
    default_tournament_hours: float = Field(default=24, gt=0)

    # Claim confirmation polling
    confirm_retry_delay_seconds: float = Field(default=3.0, ge=0)
    confirm_fallback_delay_seconds: float = Field(default=2.0, ge=0)
    # Co-signed claims stay reserved this long unless seen on-chain first
    claim_ttl_seconds: float = Field(default=180.0, gt=0)

    # Outbound HTTP (bonding-curve lookup, document store)
    http_timeout_seconds: float = Field(default=5.0, gt=0)

    # Storage
    database_url: Optional[str] = None
    firebase_db_url: Optional[str] = None

    # Admin
    admin_key: Optional[str] = None


def load_settings() -> Settings:
    """
    Build Settings from the process environment.

    Returns:
        Settings instance populated from env vars (defaults where unset)
    """
    origins = os.getenv("ALLOWED_ORIGINS", "*")
    return Settings(
        project_name=os.getenv("PROJECT_NAME", "BullShark P2E Backend"),
        debug=_env_bool("DEBUG"),
        api_prefix=os.getenv("API_V1_PREFIX", "/api"),
        allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
        rpc_url=os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com"),
        commitment=os.getenv("SOLANA_COMMITMENT", "confirmed"),
        chum_mint=os.getenv("CHUM_MINT", DEFAULT_CHUM_MINT),
        authority_keypair=os.getenv("AUTHORITY_KEYPAIR") or None,
        min_hold_requirement=float(os.getenv("MIN_HOLD_REQUIREMENT", "25000")),
        points_per_chum=int(os.getenv("POINTS_PER_CHUM", "1000")),
        min_points_to_earn=int(os.getenv("MIN_POINTS_TO_EARN", "0")),
        direct_earn_enabled=_env_bool("DIRECT_EARN_ENABLED"),
        default_prize_pool=float(os.getenv("DEFAULT_PRIZE_POOL", "769230")),
        default_tournament_hours=float(os.getenv("DEFAULT_TOURNAMENT_HOURS", "24")),
        confirm_retry_delay_seconds=float(os.getenv("CONFIRM_RETRY_DELAY_SECONDS", "3.0")),
        confirm_fallback_delay_seconds=float(os.getenv("CONFIRM_FALLBACK_DELAY_SECONDS", "2.0")),
        claim_ttl_seconds=float(os.getenv("CLAIM_TTL_SECONDS", "180")),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "5.0")),
        database_url=os.getenv("DATABASE_URL") or None,
        firebase_db_url=os.getenv("FIREBASE_DB_URL") or None,
        admin_key=os.getenv("ADMIN_KEY") or None,
    )


#global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    Returns:
        Settings instance
    """
    global _settings

    if _settings is None:
        _settings = load_settings()

    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Replace the global settings (None resets to the environment on next access)."""
    global _settings
    _settings = settings
