# config.py
"""
Potkeeper — Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from typing import Optional, List, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".potkeeper.env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    # =========================
    # CORS (optional)
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # RPC / Program / Admin
    # =========================
    RPC_URL: str = "https://api.devnet.solana.com"
    PROGRAM_ID: str = "uqF9WXM1GkHE2nKFAPUVX1BSiWys59yzuWZW9GR9Fky"
    ADMIN_TOKEN: Optional[str] = None

    # Pot authority signer: base58 secret (64b or 32b seed) or a JSON wallet file
    AUTHORITY_SECRET: Optional[str] = None
    AUTHORITY_KEYPAIR_PATH: Optional[str] = None

    LEDGER_TIMEOUT_SECONDS: float = 20.0
    # a signed but unseen sponsor transaction is dropped after this (blockhash expiry)
    SPONSOR_PENDING_TTL_SECONDS: float = 120.0

    # =========================
    # Rollover
    # =========================
    GAMES: List[str] = ["flappy_bird"]
    SCHEDULER_ENABLED: bool = True
    ROLLOVER_INTERVAL_SECONDS: float = 60.0
    POT_MIN_AGE_SECONDS: float = 0.0

    # transient failures (ledger / store) only
    RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 0.5

    # =========================
    # Economics / Distribution
    # =========================
    DEFAULT_ENTRY_FEE: int = 10_000_000  # lamports (0.01 SOL)
    WINNER_COUNT: int = 5
    TIE_BREAK: Literal["earliest", "latest"] = "earliest"
    AUTO_DISTRIBUTE: bool = False

    @field_validator("WINNER_COUNT")
    @classmethod
    def _check_winner_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("WINNER_COUNT must be >= 1")
        return v

    # =========================
    # Database
    # =========================
    DB_PATH: str = "/data/potkeeper.db"

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def ledger_timeout(self) -> float:
        """Seconds before a ledger call is abandoned."""
        return max(0.05, float(self.LEDGER_TIMEOUT_SECONDS))

    @property
    def game_ids(self) -> List[str]:
        """Configured game ids, stripped and de-duplicated in order."""
        seen: List[str] = []
        for g in self.GAMES:
            g = (g or "").strip()
            if g and g not in seen:
                seen.append(g)
        return seen

# Instantiate global settings (values resolved from environment)
settings = Settings()
