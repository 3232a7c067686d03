"""
tokengate - Configuration

Environment driven settings shared by the server and the sweep daemon.
"""

import os
from dataclasses import dataclass
from typing import Optional


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class Config:
    # Telegram Bot API
    telegram_bot_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"

    # Counterparty API (balances)
    xcp_api_base: str = "https://api.counterparty.io:4000/v2"

    # Public web app (verification links sent by DM)
    app_public_url: str = "http://localhost:3000"
    verify_domain: str = "telegram.xcp.io"

    # Shared secrets for the cron and admin endpoints
    cron_secret: str = ""
    admin_secret: str = ""

    # Persistence
    store_path: str = "tokengate-state.json"

    # Sweeps
    enforce_concurrency: int = 10
    external_call_timeout_s: float = 15.0
    sweep_interval_s: int = 24 * 60 * 60

    # Lifecycle
    join_request_ttl_hours: int = 48
    join_request_retention_days: int = 30
    attestation_ttl_days: int = 90

    # Rate limiting (/api/verify)
    rate_limit_max: int = 20
    rate_limit_window_s: int = 60

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "Config":
        """Build a Config from environment variables, falling back to defaults."""
        env = os.environ if env is None else env
        defaults = cls()

        def get(name: str, default, cast=str):
            value = env.get(name)
            if value is None or value == "":
                return default
            return cast(value)

        return cls(
            telegram_bot_token=get("TELEGRAM_BOT_TOKEN", defaults.telegram_bot_token),
            telegram_api_base=get("TELEGRAM_API_BASE", defaults.telegram_api_base),
            xcp_api_base=get("XCP_API_BASE", defaults.xcp_api_base),
            app_public_url=get("APP_PUBLIC_URL", defaults.app_public_url),
            verify_domain=get("VERIFY_DOMAIN", defaults.verify_domain),
            cron_secret=get("CRON_SECRET", defaults.cron_secret),
            admin_secret=get("ADMIN_SECRET", defaults.admin_secret),
            store_path=get("STORE_PATH", defaults.store_path),
            enforce_concurrency=get("ENFORCE_CONCURRENCY", defaults.enforce_concurrency, int),
            external_call_timeout_s=get("EXTERNAL_CALL_TIMEOUT_S",
                                        defaults.external_call_timeout_s, float),
            sweep_interval_s=get("SWEEP_INTERVAL_S", defaults.sweep_interval_s, int),
            join_request_ttl_hours=get("JOIN_REQUEST_TTL_HOURS",
                                       defaults.join_request_ttl_hours, int),
            join_request_retention_days=get("JOIN_REQUEST_RETENTION_DAYS",
                                            defaults.join_request_retention_days, int),
            attestation_ttl_days=get("ATTESTATION_TTL_DAYS", defaults.attestation_ttl_days, int),
            rate_limit_max=get("RATE_LIMIT_MAX", defaults.rate_limit_max, int),
            rate_limit_window_s=get("RATE_LIMIT_WINDOW_S", defaults.rate_limit_window_s, int),
            log_level=get("LOG_LEVEL", defaults.log_level).upper(),
        )


# =============================================================================
# SECURITY HELPERS
# =============================================================================

def mask_secret(secret: str, visible_prefix: int = 8, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. Never log full tokens or signatures."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"
