"""Configuration management for the deposit refund monitor"""

import os
import logging
from typing import List

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}={raw!r}, using default {default}")
        return default


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///refund_monitor.db")

    # Deposit rules
    DEPOSIT_ADDRESS = os.getenv("DEPOSIT_ADDRESS", "")
    REQUIRED_DEPOSIT_AMOUNT = _env_int("REQUIRED_DEPOSIT_AMOUNT", 2_000_000)  # 2 ADA in lovelace
    REQUIRED_CONFIRMATIONS = _env_int("REQUIRED_CONFIRMATIONS", 1)
    INITIAL_CHECKPOINT = _env_int("INITIAL_CHECKPOINT", 0)

    # Monitor loop
    AUTO_REFUND_ENABLED = _env_bool("AUTO_REFUND_ENABLED")
    AUTO_REFUND_POLLING_INTERVAL = _env_int("AUTO_REFUND_POLLING_INTERVAL", 30)  # seconds
    AUTO_REFUND_ADAPTIVE = _env_bool("AUTO_REFUND_ADAPTIVE")
    AUTO_REFUND_MIN_INTERVAL = _env_int("AUTO_REFUND_MIN_INTERVAL", 30)
    AUTO_REFUND_MAX_INTERVAL = _env_int("AUTO_REFUND_MAX_INTERVAL", 300)

    # Ledger query API (Blockfrost compatible)
    LEDGER_API_URL = os.getenv("LEDGER_API_URL", "https://cardano-preprod.blockfrost.io/api/v0")
    LEDGER_API_KEY = os.getenv("LEDGER_API_KEY", os.getenv("BLOCKFROST_API_KEY", ""))
    LEDGER_PAGE_SIZE = _env_int("LEDGER_PAGE_SIZE", 100)
    LEDGER_MAX_PAGES = _env_int("LEDGER_MAX_PAGES", 5)
    LEDGER_REQUEST_TIMEOUT = _env_float("LEDGER_REQUEST_TIMEOUT", 15.0)
    LEDGER_QUOTA_COOLDOWN = _env_int("LEDGER_QUOTA_COOLDOWN", 300)  # 5 minutes after HTTP 402
    MAX_TRANSFER_AGE_SECONDS = _env_int("MAX_TRANSFER_AGE_SECONDS", 0)  # 0 disables the age filter

    # Wallet service that builds, signs and submits refund transactions
    WALLET_SERVICE_URL = os.getenv("WALLET_SERVICE_URL", "http://localhost:8090")
    WALLET_SERVICE_TOKEN = os.getenv("WALLET_SERVICE_TOKEN", "")
    REFUND_SUBMIT_TIMEOUT = _env_float("REFUND_SUBMIT_TIMEOUT", 30.0)

    # Refund retry policy
    MAX_REFUND_ATTEMPTS = _env_int("MAX_REFUND_ATTEMPTS", 3)
    REFUND_BACKOFF_BASE = _env_int("REFUND_BACKOFF_BASE", 30)  # seconds
    REFUND_BACKOFF_MAX = _env_int("REFUND_BACKOFF_MAX", 900)
    REFUND_CLAIM_LEASE = _env_int("REFUND_CLAIM_LEASE", 120)
    REFUND_WORKERS = _env_int("REFUND_WORKERS", 4)

    # Webhooks
    WEBHOOK_TIMEOUT = _env_float("WEBHOOK_TIMEOUT", 5.0)
    WEBHOOK_MAX_ATTEMPTS = _env_int("WEBHOOK_MAX_ATTEMPTS", 3)
    WEBHOOK_QUEUE_SIZE = _env_int("WEBHOOK_QUEUE_SIZE", 1000)
    WEBHOOK_USER_AGENT = "Deposit-Refund-Monitor/1.0"

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_DIR = os.getenv("LOG_DIR", "logs")

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems (empty when the config is usable)"""
        problems = []
        if not cls.DEPOSIT_ADDRESS:
            problems.append("DEPOSIT_ADDRESS is not configured")
        if cls.AUTO_REFUND_ENABLED and not cls.LEDGER_API_KEY:
            problems.append("LEDGER_API_KEY is required when AUTO_REFUND_ENABLED=true")
        if cls.REQUIRED_DEPOSIT_AMOUNT <= 0:
            problems.append("REQUIRED_DEPOSIT_AMOUNT must be positive")
        if cls.MAX_REFUND_ATTEMPTS < 1:
            problems.append("MAX_REFUND_ATTEMPTS must be at least 1")
        if cls.AUTO_REFUND_MIN_INTERVAL > cls.AUTO_REFUND_MAX_INTERVAL:
            problems.append("AUTO_REFUND_MIN_INTERVAL must not exceed AUTO_REFUND_MAX_INTERVAL")
        return problems

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Refund Monitor Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Auto refund enabled: {Config.AUTO_REFUND_ENABLED}")
        logger.info(f"   Deposit address: {Config.DEPOSIT_ADDRESS or 'NOT CONFIGURED'}")
        logger.info(f"   Required deposit: {Config.REQUIRED_DEPOSIT_AMOUNT} lovelace")
        logger.info(f"   Polling interval: {Config.AUTO_REFUND_POLLING_INTERVAL}s (adaptive={Config.AUTO_REFUND_ADAPTIVE})")
        logger.info(f"   Max refund attempts: {Config.MAX_REFUND_ATTEMPTS}")
        # Never log the API key or database credentials
        logger.info(f"   Ledger API key configured: {bool(Config.LEDGER_API_KEY)}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")

        for problem in Config.validate():
            logger.warning(f"   ⚠️ {problem}")
