# treeledger/config.py
"""
Configuration management for the treeledger engine.
Loads from .env, parses money/percentage settings, validates critical keys.
"""
import os
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


DEFAULT_TEAM_INCOME_PERCENTAGES = "[10, 5, 2, 1, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5]"

DEFAULT_PROFIT_RATE_TIERS = '{"100": 12, "1000": 15}'

DEFAULT_RANK_CONFIG = json.dumps([
    {"name": "Rank 1", "threshold": 5000, "salary": 100},
    {"name": "Rank 2", "threshold": 15000, "salary": 250},
    {"name": "Rank 3", "threshold": 50000, "salary": 500},
    {"name": "Rank 4", "threshold": 80000, "salary": 750},
    {"name": "Rank 5", "threshold": 100000, "salary": 1000},
])


def _decimal_env(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        minimum = Config.get(Config.DEPOSIT_MIN)

        # Override at runtime (tests, operator tools)
        Config.set(Config.LOCK_PERIOD_MONTHS, 3)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # HTTP API
    API_HOST = "API_HOST"
    API_PORT = "API_PORT"
    IDENTITY_SECRET_KEY = "IDENTITY_SECRET_KEY"
    ADMIN_USER_IDS = "ADMIN_USER_IDS"

    # Email - Mailgun
    MAILGUN_API_KEY = "MAILGUN_API_KEY"
    MAILGUN_DOMAIN = "MAILGUN_DOMAIN"
    MAILGUN_FROM_EMAIL = "MAILGUN_FROM_EMAIL"
    MAILGUN_REGION = "MAILGUN_REGION"
    SECURE_EMAIL_DOMAINS = "SECURE_EMAIL_DOMAINS"

    # Email - SMTP
    SMTP_HOST = "SMTP_HOST"
    SMTP_PORT = "SMTP_PORT"
    SMTP_USERNAME = "SMTP_USERNAME"
    SMTP_PASSWORD = "SMTP_PASSWORD"
    SMTP_FROM_EMAIL = "SMTP_FROM_EMAIL"

    # Registration
    REFERRAL_CODE_PREFIX = "REFERRAL_CODE_PREFIX"

    # Request limits
    DEPOSIT_MIN = "DEPOSIT_MIN"
    DEPOSIT_STEP = "DEPOSIT_STEP"
    WITHDRAWAL_MIN = "WITHDRAWAL_MIN"
    WITHDRAWAL_STEP = "WITHDRAWAL_STEP"
    TRANSFER_MIN = "TRANSFER_MIN"
    TRANSFER_STEP = "TRANSFER_STEP"

    # Investments
    LOCK_PERIOD_MONTHS = "LOCK_PERIOD_MONTHS"
    PROFIT_RATE_TIERS = "PROFIT_RATE_TIERS"

    # Compensation plan
    DIRECT_BONUS_PERCENT = "DIRECT_BONUS_PERCENT"
    TEAM_INCOME_PERCENTAGES = "TEAM_INCOME_PERCENTAGES"
    RANK_CONFIG = "RANK_CONFIG"

    # OTP
    OTP_TTL_SECONDS = "OTP_TTL_SECONDS"
    OTP_LENGTH = "OTP_LENGTH"
    OTP_MAX_ATTEMPTS = "OTP_MAX_ATTEMPTS"

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        DATABASE_URL,
        IDENTITY_SECRET_KEY,
    ]

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = {}
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file and the process environment.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                "sqlite:///treeledger.db"
            )

            # HTTP API
            cls._config[cls.API_HOST] = os.getenv("API_HOST", "127.0.0.1")
            cls._config[cls.API_PORT] = int(os.getenv("API_PORT", "8080"))
            cls._config[cls.IDENTITY_SECRET_KEY] = os.getenv("IDENTITY_SECRET_KEY")

            admin_ids_str = os.getenv("ADMIN_USER_IDS", "")
            if admin_ids_str:
                cls._config[cls.ADMIN_USER_IDS] = [
                    int(x.strip()) for x in admin_ids_str.split(',') if x.strip()
                ]
            else:
                cls._config[cls.ADMIN_USER_IDS] = []

            # Email - Mailgun
            cls._config[cls.MAILGUN_API_KEY] = os.getenv("MAILGUN_API_KEY")
            cls._config[cls.MAILGUN_DOMAIN] = os.getenv("MAILGUN_DOMAIN")
            cls._config[cls.MAILGUN_REGION] = os.getenv("MAILGUN_REGION", "eu")
            cls._config[cls.MAILGUN_FROM_EMAIL] = os.getenv("MAILGUN_FROM_EMAIL")
            cls._config[cls.SECURE_EMAIL_DOMAINS] = os.getenv("SECURE_EMAIL_DOMAINS", "")

            # Email - SMTP
            cls._config[cls.SMTP_HOST] = os.getenv("SMTP_HOST")
            cls._config[cls.SMTP_PORT] = int(os.getenv("SMTP_PORT", "587"))
            cls._config[cls.SMTP_USERNAME] = os.getenv("SMTP_USERNAME")
            cls._config[cls.SMTP_PASSWORD] = os.getenv("SMTP_PASSWORD")
            cls._config[cls.SMTP_FROM_EMAIL] = os.getenv("SMTP_FROM_EMAIL")

            # Registration
            cls._config[cls.REFERRAL_CODE_PREFIX] = os.getenv("REFERRAL_CODE_PREFIX", "RSG")

            # Request limits
            cls._config[cls.DEPOSIT_MIN] = _decimal_env("DEPOSIT_MIN", "100")
            cls._config[cls.DEPOSIT_STEP] = _decimal_env("DEPOSIT_STEP", "10")
            cls._config[cls.WITHDRAWAL_MIN] = _decimal_env("WITHDRAWAL_MIN", "10")
            cls._config[cls.WITHDRAWAL_STEP] = _decimal_env("WITHDRAWAL_STEP", "10")
            cls._config[cls.TRANSFER_MIN] = _decimal_env("TRANSFER_MIN", "10")
            cls._config[cls.TRANSFER_STEP] = _decimal_env("TRANSFER_STEP", "10")

            # Investments
            cls._config[cls.LOCK_PERIOD_MONTHS] = int(os.getenv("LOCK_PERIOD_MONTHS", "6"))

            tiers_raw = json.loads(os.getenv("PROFIT_RATE_TIERS", DEFAULT_PROFIT_RATE_TIERS))
            cls._config[cls.PROFIT_RATE_TIERS] = {
                Decimal(str(amount)): Decimal(str(rate))
                for amount, rate in tiers_raw.items()
            }

            # Compensation plan
            cls._config[cls.DIRECT_BONUS_PERCENT] = _decimal_env("DIRECT_BONUS_PERCENT", "10")

            team_raw = json.loads(
                os.getenv("TEAM_INCOME_PERCENTAGES", DEFAULT_TEAM_INCOME_PERCENTAGES)
            )
            cls._config[cls.TEAM_INCOME_PERCENTAGES] = [Decimal(str(p)) for p in team_raw]

            cls._config[cls.RANK_CONFIG] = json.loads(
                os.getenv("RANK_CONFIG", DEFAULT_RANK_CONFIG)
            )

            # OTP
            cls._config[cls.OTP_TTL_SECONDS] = int(os.getenv("OTP_TTL_SECONDS", "600"))
            cls._config[cls.OTP_LENGTH] = int(os.getenv("OTP_LENGTH", "6"))
            cls._config[cls.OTP_MAX_ATTEMPTS] = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except ConfigurationError:
            raise
        except (ValueError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    async def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present.

        Raises:
            ConfigurationError: If any critical key is missing
        """
        missing = []
        for key in cls.CRITICAL_KEYS:
            if not cls.get(key):
                missing.append(key)

        if missing:
            error_msg = f"Missing critical configuration keys: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ConfigurationError(error_msg)

        logger.info("All critical configuration keys validated ✓")

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return cls._config.get(key, default)

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value (for dynamic updates).

        Args:
            key: Configuration key
            value: New value
            source: Source of the update (for logging)
        """
        cls._config[key] = value
        logger.debug(f"Config updated: {key} = {value} (source: {source})")

    @classmethod
    def get_team_percentages(cls) -> List[Decimal]:
        """Team income percentages, index 0 = level 1."""
        return list(cls.get(cls.TEAM_INCOME_PERCENTAGES, []))

    @classmethod
    def is_admin(cls, user_id: int) -> bool:
        """
        Check if user id is listed in ADMIN_USER_IDS.

        Args:
            user_id: Platform user ID

        Returns:
            True if user is admin
        """
        admin_ids = cls.get(cls.ADMIN_USER_IDS, [])
        return user_id in admin_ids
