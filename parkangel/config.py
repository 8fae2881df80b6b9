# File: parkangel/config.py
"""
Engine configuration and logging setup

Settings are plain class attributes read once from the environment, so every
component can be constructed with EngineSettings() and individual values can
be overridden by keyword for tests.
"""

import logging
import os
import sys
from decimal import Decimal
from logging.handlers import RotatingFileHandler
from typing import Any, Optional


class EngineSettings:
    """Runtime settings for the pricing and remittance engine"""

    CURRENCY: str = os.getenv("PARKANGEL_CURRENCY", "PHP")

    # PHP 50.00 per hour, 12% VAT
    DEFAULT_BASE_RATE: int = int(os.getenv("PARKANGEL_DEFAULT_BASE_RATE", "5000"))
    DEFAULT_VAT_RATE: Decimal = Decimal(os.getenv("PARKANGEL_DEFAULT_VAT_RATE", "0.12"))

    PARK_ANGEL_RECIPIENT_ID: str = os.getenv("PARKANGEL_RECIPIENT_ID", "park-angel")

    TRANSFER_TIMEOUT_SECONDS: float = float(os.getenv("PARKANGEL_TRANSFER_TIMEOUT", "30"))
    REMITTANCE_RETRY_BUDGET: int = int(os.getenv("PARKANGEL_REMITTANCE_RETRIES", "3"))
    REMITTANCE_WORKERS: int = int(os.getenv("PARKANGEL_REMITTANCE_WORKERS", "4"))
    REMITTANCE_TOPIC: str = os.getenv("PARKANGEL_REMITTANCE_TOPIC", "remittance-jobs")

    DATABASE_URL: str = os.getenv("PARKANGEL_DATABASE_URL", "sqlite:///./parkangel.db")
    REDIS_URL: str = os.getenv("PARKANGEL_REDIS_URL", "redis://localhost:6379")
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("PARKANGEL_KAFKA_SERVERS", "localhost:9092")
    MONGO_URL: str = os.getenv("PARKANGEL_MONGO_URL", "mongodb://localhost:27017")

    LOG_LEVEL: str = os.getenv("PARKANGEL_LOG_LEVEL", "INFO")
    LOG_DIR: Optional[str] = os.getenv("PARKANGEL_LOG_DIR")

    def __init__(self, **overrides: Any):
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    def __repr__(self) -> str:
        return (
            f"EngineSettings(currency={self.CURRENCY}, base_rate={self.DEFAULT_BASE_RATE}, "
            f"vat_rate={self.DEFAULT_VAT_RATE}, database={self.DATABASE_URL})"
        )


def setup_logging(settings: Optional[EngineSettings] = None) -> logging.Logger:
    """Setup engine logging configuration"""
    settings = settings or EngineSettings()

    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.LOG_DIR:
        if not os.path.exists(settings.LOG_DIR):
            os.makedirs(settings.LOG_DIR)
        handlers.append(
            RotatingFileHandler(
                os.path.join(settings.LOG_DIR, 'parkangel_engine.log'),
                maxBytes=10 * 1024 * 1024,
                backupCount=5
            )
        )

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger("parkangel")
