"""Configuration management for the Subscription Bot"""

import os
import re
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when one or more configuration values are invalid"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Invalid configuration: " + "; ".join(errors))


class Config:
    """Application configuration

    Built once at process start (normally via ``Config.from_env()``) and
    handed to every component that needs it.
    """

    DEFAULT_MPESA_BASE_URL = "https://sandbox.safaricom.co.ke"

    # Group invite / removal timings (seconds)
    INVITE_LINK_TTL_SECONDS = 3600
    BAN_DURATION_SECONDS = 60
    UNBAN_DELAY_SECONDS = 10

    # Provider HTTP timeout (seconds)
    MPESA_TIMEOUT_SECONDS = 30

    def __init__(
        self,
        bot_token: str = "",
        group_id: str = "",
        admin_id: int = 0,
        admin_username: str = "",
        database_url: str = "",
        consumer_key: str = "",
        consumer_secret: str = "",
        mpesa_base_url: str = DEFAULT_MPESA_BASE_URL,
        business_short_code: str = "",
        pass_key: str = "",
        callback_url: str = "",
        port: int = 3000,
        daily_price: int = 50,
        weekly_price: int = 300,
        monthly_price: int = 1000,
        log_level: str = "INFO",
    ):
        self.bot_token = bot_token
        self.group_id = group_id
        self.admin_id = admin_id
        self.admin_username = admin_username
        self.database_url = database_url
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.mpesa_base_url = mpesa_base_url.rstrip("/")
        self.business_short_code = business_short_code
        self.pass_key = pass_key
        self.callback_url = callback_url
        self.port = port
        self.daily_price = daily_price
        self.weekly_price = weekly_price
        self.monthly_price = monthly_price
        self.log_level = log_level

    @classmethod
    def from_env(cls) -> "Config":
        """Read configuration from environment variables"""
        return cls(
            bot_token=os.getenv("BOT_TOKEN", ""),
            group_id=os.getenv("GROUP_ID", ""),
            admin_id=_int_env("ADMIN_ID", 0),
            admin_username=os.getenv("ADMIN_USERNAME", ""),
            database_url=os.getenv("DATABASE_URL", ""),
            consumer_key=os.getenv("SAFARICOM_CONSUMER_KEY", ""),
            consumer_secret=os.getenv("SAFARICOM_CONSUMER_SECRET", ""),
            mpesa_base_url=os.getenv("MPESA_BASE_URL", cls.DEFAULT_MPESA_BASE_URL),
            business_short_code=os.getenv("BUSINESS_SHORT_CODE", ""),
            pass_key=os.getenv("PASS_KEY", ""),
            callback_url=os.getenv("CALLBACK_URL", ""),
            port=_int_env("PORT", 3000),
            daily_price=_int_env("DAILY_PRICE", 50),
            weekly_price=_int_env("WEEKLY_PRICE", 300),
            monthly_price=_int_env("MONTHLY_PRICE", 1000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def prices(self) -> Dict[str, int]:
        return {
            "daily": self.daily_price,
            "weekly": self.weekly_price,
            "monthly": self.monthly_price,
        }

    def get_price(self, package: str) -> int:
        """Price for a subscription tier; raises KeyError for unknown tiers"""
        return self.prices[package]

    def collect_errors(self) -> List[str]:
        errors: List[str] = []

        required = {
            "BOT_TOKEN": self.bot_token,
            "GROUP_ID": self.group_id,
            "ADMIN_USERNAME": self.admin_username,
            "DATABASE_URL": self.database_url,
            "SAFARICOM_CONSUMER_KEY": self.consumer_key,
            "SAFARICOM_CONSUMER_SECRET": self.consumer_secret,
            "BUSINESS_SHORT_CODE": self.business_short_code,
            "PASS_KEY": self.pass_key,
            "CALLBACK_URL": self.callback_url,
        }
        for name, value in required.items():
            if not value:
                errors.append(f"{name} is required")

        if self.group_id and not self.group_id.startswith("-"):
            errors.append("GROUP_ID must be a negative chat id (starting with '-')")

        if self.admin_id <= 0:
            errors.append("ADMIN_ID must be a positive integer")

        if self.business_short_code and not self.business_short_code.isdigit():
            errors.append("BUSINESS_SHORT_CODE must contain digits only")

        if self.callback_url and not re.match(r"^https?://", self.callback_url):
            errors.append("CALLBACK_URL must be an http(s) URL")

        if not 0 < self.port < 65536:
            errors.append("PORT must be between 1 and 65535")

        for package, price in self.prices.items():
            if price <= 0:
                errors.append(f"{package.upper()}_PRICE must be positive")

        return errors

    def validate(self) -> None:
        """Validate configuration, raising ConfigError listing every problem"""
        errors = self.collect_errors()
        if errors:
            for error in errors:
                logger.critical(f"🚨 CONFIG_ERROR: {error}")
            raise ConfigError(errors)
        logger.info("✅ Configuration validated")

    def log_summary(self) -> None:
        """Log non-secret configuration for debugging"""
        logger.info("🔧 Subscription Bot Configuration:")
        logger.info(f"   Group ID: {self.group_id}")
        logger.info(f"   Admin: @{self.admin_username} ({self.admin_id})")
        logger.info(f"   M-Pesa Base URL: {self.mpesa_base_url}")
        logger.info(f"   Callback URL: {self.callback_url}")
        logger.info(
            f"   Prices: daily={self.daily_price} weekly={self.weekly_price} "
            f"monthly={self.monthly_price}"
        )


def _int_env(name: str, default: int) -> int:
    raw: Optional[str] = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ {name}={raw!r} is not an integer, using {default}")
        return default
