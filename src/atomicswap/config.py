"""Application configuration using pydantic-settings.

All timing knobs of the swap protocol (reservation TTL, timelock safety
margin, retry/backoff, supervisor interval) live here so operators can tune
them per deployment through the environment or a ``.env`` file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/atomicswap.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # Admin / operator alerts
    # ======================
    admin_token: str = Field(default="", description="Admin API token for operator endpoints")
    participant_tokens: str = Field(
        default="",
        description="Comma-separated participant_id:token pairs authenticating swap participants",
    )
    telegram_bot_token: str = Field(default="", description="Bot token used for operator alerts")
    admin_user_ids: str = Field(
        default="", description="Comma-separated list of Telegram user IDs receiving alerts"
    )

    # ======================
    # Secret storage
    # ======================
    master_key: Optional[str] = Field(
        default=None, description="Fernet key used to seal swap secrets at rest"
    )

    # ======================
    # Ledgers
    # ======================
    dry_run: bool = Field(default=True, description="Use simulated HTLC ledgers")
    dry_run_chains: str = Field(
        default="ethereum,hedera,sui",
        description="Comma-separated chains served by the dry-run ledger",
    )

    # ======================
    # Reservations
    # ======================
    reservation_ttl_seconds: int = Field(
        default=300, description="Lifetime of a reservation that has not been locked"
    )
    reservation_grace_seconds: int = Field(
        default=86400, description="How long released reservations are kept for idempotent replays"
    )

    # ======================
    # Swap protocol
    # ======================
    timelock_safety_margin_seconds: int = Field(
        default=120,
        description="Minimum gap between responder and initiator timelocks (max claim latency)",
    )
    default_required_confirmations: int = Field(
        default=3, description="Confirmations required per leg when the request sets none"
    )
    swap_lock_timeout_seconds: float = Field(
        default=30.0, description="Maximum wait for the per-swap exclusive section"
    )

    # ======================
    # Retry / backoff
    # ======================
    retry_max_attempts: int = Field(default=4, description="Attempts for lock/claim calls")
    retry_base_delay_seconds: float = Field(default=0.5, description="First backoff delay")
    retry_max_delay_seconds: float = Field(default=30.0, description="Backoff delay cap")
    refund_max_attempts: int = Field(
        default=6, description="Refund attempts per rollback pass before escalating"
    )

    # ======================
    # Timeout supervisor
    # ======================
    supervisor_interval_seconds: float = Field(default=30.0, description="Sweep interval")
    supervisor_auto_advance: bool = Field(
        default=True, description="Drive in-flight swaps forward on every sweep"
    )

    @property
    def admin_ids(self) -> list[int]:
        """Parse admin user IDs into a list of integers."""
        if not self.admin_user_ids:
            return []
        return [int(uid.strip()) for uid in self.admin_user_ids.split(",") if uid.strip()]

    @property
    def participant_token_map(self) -> dict[str, str]:
        """Parse participant tokens into a participant_id -> token mapping."""
        tokens = {}
        for pair in self.participant_tokens.split(","):
            participant_id, _, token = pair.strip().partition(":")
            if participant_id and token:
                tokens[participant_id.strip()] = token.strip()
        return tokens

    @property
    def chains(self) -> list[str]:
        """Chains served by the dry-run ledger."""
        return [c.strip().lower() for c in self.dry_run_chains.split(",") if c.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "chains": self.chains,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "master_key": "***" if self.master_key else "(not set)",
            "telegram_bot_token": "***" if self.telegram_bot_token else "(not set)",
            "admin_user_ids": self.admin_user_ids or "(none)",
            "participant_tokens": "***" if self.participant_tokens else "(not set)",
            "swap": {
                "timelock_safety_margin_seconds": self.timelock_safety_margin_seconds,
                "default_required_confirmations": self.default_required_confirmations,
                "reservation_ttl_seconds": self.reservation_ttl_seconds,
            },
            "retry": {
                "max_attempts": self.retry_max_attempts,
                "base_delay_seconds": self.retry_base_delay_seconds,
                "max_delay_seconds": self.retry_max_delay_seconds,
                "refund_max_attempts": self.refund_max_attempts,
            },
            "supervisor": {
                "interval_seconds": self.supervisor_interval_seconds,
                "auto_advance": self.supervisor_auto_advance,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
