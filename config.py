"""Configuration management for the Investment Chat Bot"""

import os
import logging
import secrets
import string
from decimal import Decimal
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "").strip()
    return [item.strip() for item in raw.split(",") if item.strip()]


def _random_admin_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "ADMIN-" + "".join(secrets.choice(alphabet) for _ in range(5))


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production" or bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Bot token: TELEGRAM_BOT_TOKEN > BOT_TOKEN
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
    GENERIC_BOT_TOKEN = os.getenv("BOT_TOKEN")
    BOT_TOKEN = TELEGRAM_BOT_TOKEN or GENERIC_BOT_TOKEN
    BOT_USERNAME = os.getenv("BOT_USERNAME", "fys_investment_bot")

    # Branding
    BRAND = os.getenv("BRAND", "FY'S INVESTMENT BOT")
    CURRENCY_LABEL = os.getenv("CURRENCY_LABEL", "Ksh")

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///investbot.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")

    # HTTP status page / webhook
    PORT = int(os.getenv("PORT", "3000"))
    USE_WEBHOOK = _env_bool("USE_WEBHOOK")
    WEBHOOK_URL = os.getenv("WEBHOOK_URL")

    # Admin configuration
    SUPER_ADMIN_PHONE = os.getenv("SUPER_ADMIN_PHONE", "0701339573")
    ADMIN_PHONES = _env_list("ADMIN_PHONES")
    ADMIN_REFERRAL_CODE = os.getenv("ADMIN_REFERRAL_CODE", "").strip().upper() or _random_admin_code()

    # Initial system settings (admins can change these at runtime)
    EARNING_PERCENTAGE = Decimal(os.getenv("EARNING_PERCENTAGE", "10"))
    REFERRAL_PERCENTAGE = Decimal(os.getenv("REFERRAL_PERCENTAGE", "5"))
    INVESTMENT_DURATION_MINUTES = int(os.getenv("INVESTMENT_DURATION_MINUTES", "60"))
    MIN_INVESTMENT = Decimal(os.getenv("MIN_INVESTMENT", "1000"))
    MAX_INVESTMENT = Decimal(os.getenv("MAX_INVESTMENT", "150000"))
    MIN_WITHDRAWAL = Decimal(os.getenv("MIN_WITHDRAWAL", "1000"))
    MAX_WITHDRAWAL = Decimal(os.getenv("MAX_WITHDRAWAL", "1000000"))
    # Largest single deposit; must stay within the Numeric(14, 2) money columns
    MAX_DEPOSIT = Decimal(os.getenv("MAX_DEPOSIT", "10000000"))
    DEPOSIT_INSTRUCTIONS = os.getenv(
        "DEPOSIT_INSTRUCTIONS", "M-Pesa 0701339573 (Name: Camlus Okoth)"
    )
    WITHDRAWAL_INSTRUCTIONS = os.getenv(
        "WITHDRAWAL_INSTRUCTIONS",
        "Your withdrawal will be processed shortly. Please ensure your MPESA number is correct.",
    )

    # Withdrawal rejection returns the debited amount to its source bucket
    REFUND_REJECTED_WITHDRAWALS = _env_bool("REFUND_REJECTED_WITHDRAWALS", "true")

    # Conversation sessions
    SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "1440"))

    # Background jobs
    MATURATION_SWEEP_INTERVAL_SECONDS = int(os.getenv("MATURATION_SWEEP_INTERVAL_SECONDS", "60"))
    DEPOSIT_POLL_INTERVAL_SECONDS = float(os.getenv("DEPOSIT_POLL_INTERVAL_SECONDS", "5"))
    DEPOSIT_POLL_MAX_ATTEMPTS = int(os.getenv("DEPOSIT_POLL_MAX_ATTEMPTS", "4"))

    # PayHero STK push
    PAYHERO_BASE_URL = os.getenv("PAYHERO_BASE_URL", "https://backend.payhero.co.ke")
    PAYHERO_CHANNEL_ID = int(os.getenv("PAYHERO_CHANNEL_ID", "724"))
    PAYHERO_AUTH_TOKEN = os.getenv("PAYHERO_AUTH_TOKEN")
    PAYHERO_STATUS_AUTH_TOKEN = os.getenv("PAYHERO_STATUS_AUTH_TOKEN") or PAYHERO_AUTH_TOKEN
    PAYHERO_CALLBACK_URL = os.getenv(
        "PAYHERO_CALLBACK_URL", "https://your-callback-url.com/callback"
    )
    PAYHERO_TIMEOUT_SECONDS = int(os.getenv("PAYHERO_TIMEOUT_SECONDS", "30"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Bot Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Bot Username: @{Config.BOT_USERNAME}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(f"   Super Admin: {Config.SUPER_ADMIN_PHONE}")
        logger.info(
            f"   Earning: {Config.EARNING_PERCENTAGE}% | Referral: {Config.REFERRAL_PERCENTAGE}% | "
            f"Duration: {Config.INVESTMENT_DURATION_MINUTES} min"
        )
        logger.info(
            f"   Investment bounds: {Config.MIN_INVESTMENT}-{Config.MAX_INVESTMENT} | "
            f"Withdrawal bounds: {Config.MIN_WITHDRAWAL}-{Config.MAX_WITHDRAWAL} | "
            f"Max deposit: {Config.MAX_DEPOSIT}"
        )
        logger.info(f"   STK push: {'✅ configured' if Config.PAYHERO_AUTH_TOKEN else '❌ not configured'}")
        logger.info(f"   Refund rejected withdrawals: {Config.REFUND_REJECTED_WITHDRAWALS}")

    @staticmethod
    def validate_bot_configuration():
        """Validate bot configuration and provide helpful error messages"""
        if not Config.BOT_TOKEN:
            logger.critical(
                f"❌ Bot token configuration error for {Config.CURRENT_ENVIRONMENT} environment! "
                "Set TELEGRAM_BOT_TOKEN (or BOT_TOKEN)."
            )
            raise ValueError("Bot token not configured for current environment")
        return True
