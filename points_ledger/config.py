import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from .models import PricingConfig

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _getenv(key: str, default: Optional[str] = None) -> Optional[str]:
    """Small wrapper to read environment variables."""
    val = os.getenv(key)
    return val if (val is not None and val != "") else default


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_int(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    return int(value)


def _as_decimal(value: Optional[str], default: str) -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(value)


def _as_list(value: Optional[str], default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    def __init__(self):
        self.env = _getenv("LEDGER_ENV", "development")
        self.debug = _as_bool(_getenv("LEDGER_DEBUG"), default=(self.env != "production"))

        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
        log_file = _getenv("LOG_FILE")
        self.log_file = Path(log_file) if log_file else None

        # Shared secret for the time-based trigger of the monthly jobs
        self.cron_secret = _getenv("CRON_SECRET")
        self.cors_allow_origins = _as_list(_getenv("CORS_ALLOW_ORIGINS"), ["*"])

        # Starting pricing; administrators edit it at runtime afterwards
        self.point_buy_price = _as_decimal(_getenv("POINT_BUY_PRICE"), "0.80")
        self.point_user_value = _as_decimal(_getenv("POINT_USER_VALUE"), "1.00")
        self.storage_purchase_price_per_gb = _as_int(_getenv("STORAGE_PURCHASE_PRICE_PER_GB"), 10)
        self.storage_monthly_cost_per_gb = _as_int(_getenv("STORAGE_MONTHLY_COST_PER_GB"), 4)
        self.mandatory_top_up_minimum = _as_decimal(_getenv("MANDATORY_TOP_UP_MINIMUM"), "0")
        self.payout_minimum_amount = _as_decimal(_getenv("PAYOUT_MINIMUM_AMOUNT"), "0")
        self.earnings_hold_seconds = _as_int(_getenv("EARNINGS_HOLD_SECONDS"), 0)

    def initial_pricing(self) -> PricingConfig:
        return PricingConfig(
            point_buy_price=self.point_buy_price,
            point_user_value=self.point_user_value,
            storage_purchase_price_per_gb=self.storage_purchase_price_per_gb,
            storage_monthly_cost_per_gb=self.storage_monthly_cost_per_gb,
            mandatory_top_up_minimum=self.mandatory_top_up_minimum,
            payout_minimum_amount=self.payout_minimum_amount,
            earnings_hold_seconds=self.earnings_hold_seconds,
        )


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    """Configure the package logger once; later calls return it untouched."""
    logger = logging.getLogger("points_ledger")
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_settings() -> Settings:
    return Settings()
