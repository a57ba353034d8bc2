"""Configuration management for the Safe Transit deposit engine"""

import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not an integer, using {default}")
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not a number, using {default}")
        return default


class Config:
    """Application configuration"""

    # Environment detection (ENVIRONMENT takes absolute priority)
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "Safe Transit")
    WEBAPP_URL = os.getenv("WEBAPP_URL", "http://localhost:3000")

    # Persistence - unset DATABASE_URL means the volatile in-memory store
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL") or None

    # Email (Brevo transactional API). Without a key notifications go to the log sink.
    BREVO_API_KEY = os.getenv("BREVO_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@safetransit.com")
    FROM_NAME = os.getenv("FROM_NAME", "Safe Transit")
    UNKNOWN_RECIPIENT = "unknown@example.com"
    NOTIFICATION_SEND_DELAY_SECONDS = _get_float("NOTIFICATION_SEND_DELAY_SECONDS", 1.0)

    # Payment gateway (Stripe manual-capture PaymentIntents)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
    STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS = _get_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)
    PAYMENT_GATEWAY_TIMEOUT_SECONDS = _get_float("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 15.0)
    # "gateway" (hold -> completed -> captured) or "simple" (processing -> completed/active)
    PAYMENT_FLOW_PROFILE = os.getenv("PAYMENT_FLOW_PROFILE", "gateway").lower().strip()

    # Deposit validation
    REQUIREMENT_MAX_LENGTH = 1000

    # Per-record lock acquisition bound
    DEPOSIT_LOCK_TIMEOUT_SECONDS = _get_float("DEPOSIT_LOCK_TIMEOUT_SECONDS", 30.0)

    # Reconciliation scheduler
    EXPIRED_SWEEP_INTERVAL_MINUTES = _get_int("EXPIRED_SWEEP_INTERVAL_MINUTES", 1)
    EXPIRING_SOON_SWEEP_INTERVAL_MINUTES = _get_int("EXPIRING_SOON_SWEEP_INTERVAL_MINUTES", 15)
    EXPIRING_SOON_WINDOW_MINUTES = _get_int("EXPIRING_SOON_WINDOW_MINUTES", 60)
    NOTIFICATION_SUPPRESSION_HOURS = _get_int("NOTIFICATION_SUPPRESSION_HOURS", 2)
    NOTIFICATION_RETENTION_DAYS = _get_int("NOTIFICATION_RETENTION_DAYS", 30)
    CLEANUP_CRON_HOUR = _get_int("CLEANUP_CRON_HOUR", 2)
    SCHEDULER_MISFIRE_GRACE_SECONDS = _get_int("SCHEDULER_MISFIRE_GRACE_SECONDS", 120)

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info(f"🔧 {Config.PLATFORM_NAME} Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        logger.info(
            f"   Record store: {'SQL (' + Config.DATABASE_URL.split('://')[0] + ')' if Config.DATABASE_URL else 'in-memory (volatile)'}"
        )
        logger.info(f"   Email transport: {'Brevo' if Config.BREVO_API_KEY else 'console'}")
        logger.info(f"   Payment gateway: {'Stripe' if Config.STRIPE_SECRET_KEY else 'offline'}")
        logger.info(f"   Payment flow profile: {Config.PAYMENT_FLOW_PROFILE}")

    @staticmethod
    def validate() -> list:
        """Return a list of configuration warnings; nothing here is fatal"""
        warnings = []
        if Config.PAYMENT_FLOW_PROFILE not in ("gateway", "simple"):
            warnings.append(
                f"PAYMENT_FLOW_PROFILE={Config.PAYMENT_FLOW_PROFILE!r} is unknown, expected 'gateway' or 'simple'"
            )
        if not Config.BREVO_API_KEY:
            warnings.append("BREVO_API_KEY not configured - notifications will be logged only")
        if Config.STRIPE_SECRET_KEY and not Config.STRIPE_WEBHOOK_SECRET:
            warnings.append("STRIPE_WEBHOOK_SECRET not configured - gateway events cannot be verified")
        if Config.IS_PRODUCTION and not Config.DATABASE_URL:
            warnings.append("DATABASE_URL not configured in PRODUCTION - deposits will not survive restarts")

        for warning in warnings:
            logger.warning(f"⚠️ CONFIG: {warning}")
        return warnings
