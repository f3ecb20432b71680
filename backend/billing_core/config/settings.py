"""
Runtime configuration for the billing core.

All values come from environment variables. Services receive a
BillingSettings instance explicitly; get_settings() serves the process-wide
copy for entrypoints and FastAPI dependencies.

Configuration:
- BILLING_ENABLED_PROVIDERS: Providers drained by the inbox sweep (default: stripe)
- STRIPE_WEBHOOK_SECRET: Signing secret for Stripe deliveries
- STRIPE_PRICE_STARTER / STRIPE_PRICE_PRO / STRIPE_PRICE_ENTERPRISE: Price id to plan mapping
- INBOX_SWEEP_INTERVAL_SECONDS / OUTBOX_SWEEP_INTERVAL_SECONDS: Sweep cadence (default: 10)
- RETRY_SWEEP_INTERVAL_SECONDS: Retry sweep cadence (default: 300)
- CLEANUP_SWEEP_INTERVAL_SECONDS: Cleanup sweep cadence (default: 86400)
- OUTBOX_BATCH_SIZE: Outbound events delivered per tick (default: 50)
- OUTBOX_RETENTION_DAYS: Days to keep delivered outbound events (default: 30)
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Tuple


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class BillingSettings:
    """Immutable settings snapshot for one process."""

    enabled_providers: Tuple[str, ...] = ("stripe",)
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance_seconds: int = 300
    stripe_price_plans: Dict[str, str] = field(default_factory=dict)

    inbox_sweep_interval_seconds: float = 10.0
    outbox_sweep_interval_seconds: float = 10.0
    retry_sweep_interval_seconds: float = 300.0
    cleanup_sweep_interval_seconds: float = 86400.0
    sweep_jitter_seconds: float = 2.0
    sweep_tick_deadline_seconds: float = 60.0

    outbox_batch_size: int = 50
    inbox_max_retries: int = 3
    outbox_max_retries: int = 3
    processing_timeout_seconds: int = 900
    outbox_retention_days: int = 30

    outbox_sink: str = "log"
    outbox_relay_url: str = ""

    jwt_secret: str = ""
    session_token_ttl_seconds: int = 3600

    redis_url: str = ""
    entitlement_cache_ttl_seconds: int = 300

    run_sweeps_in_process: bool = False

    @classmethod
    def from_env(cls) -> "BillingSettings":
        price_plans = {}
        for plan_code in ("starter", "pro", "enterprise"):
            price_id = os.getenv(f"STRIPE_PRICE_{plan_code.upper()}", "").strip()
            if price_id:
                price_plans[price_id] = plan_code

        return cls(
            enabled_providers=_env_list("BILLING_ENABLED_PROVIDERS", "stripe"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            stripe_signature_tolerance_seconds=_env_int("STRIPE_SIGNATURE_TOLERANCE_SECONDS", 300),
            stripe_price_plans=price_plans,
            inbox_sweep_interval_seconds=_env_float("INBOX_SWEEP_INTERVAL_SECONDS", 10.0),
            outbox_sweep_interval_seconds=_env_float("OUTBOX_SWEEP_INTERVAL_SECONDS", 10.0),
            retry_sweep_interval_seconds=_env_float("RETRY_SWEEP_INTERVAL_SECONDS", 300.0),
            cleanup_sweep_interval_seconds=_env_float("CLEANUP_SWEEP_INTERVAL_SECONDS", 86400.0),
            sweep_jitter_seconds=_env_float("SWEEP_JITTER_SECONDS", 2.0),
            sweep_tick_deadline_seconds=_env_float("SWEEP_TICK_DEADLINE_SECONDS", 60.0),
            outbox_batch_size=_env_int("OUTBOX_BATCH_SIZE", 50),
            inbox_max_retries=_env_int("INBOX_MAX_RETRIES", 3),
            outbox_max_retries=_env_int("OUTBOX_MAX_RETRIES", 3),
            processing_timeout_seconds=_env_int("PROCESSING_TIMEOUT_SECONDS", 900),
            outbox_retention_days=_env_int("OUTBOX_RETENTION_DAYS", 30),
            outbox_sink=os.getenv("OUTBOX_SINK", "log").strip().lower(),
            outbox_relay_url=os.getenv("OUTBOX_RELAY_URL", ""),
            jwt_secret=os.getenv("JWT_SECRET", ""),
            session_token_ttl_seconds=_env_int("SESSION_TOKEN_TTL_SECONDS", 3600),
            redis_url=os.getenv("REDIS_URL", ""),
            entitlement_cache_ttl_seconds=_env_int("ENTITLEMENT_CACHE_TTL_SECONDS", 300),
            run_sweeps_in_process=_env_bool("RUN_SWEEPS_IN_PROCESS"),
        )

    def is_provider_enabled(self, provider: str) -> bool:
        return provider.lower() in self.enabled_providers


@lru_cache(maxsize=1)
def get_settings() -> BillingSettings:
    """Process-wide settings, read once from the environment."""
    return BillingSettings.from_env()
