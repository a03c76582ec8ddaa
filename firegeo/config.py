import logging.config
import os
from typing import Any, Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service configuration
    service_name: str = "firegeo"
    service_version: str = "1.0.0"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8921

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Backing store
    store_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    redis_url: str = "redis://localhost:6379/0"

    # Security
    jwt_secret_key: str = "super-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"

    # Geospatial settings
    storage_precision: int = Field(default=9, ge=1, le=12)
    index_precision: int = Field(default=5, ge=1, le=12)
    default_radius_km: float = 5.0
    max_radius_km: float = 50.0
    min_feed_radius_km: float = 0.1
    default_limit: int = Field(default=50, ge=1)
    profile_batch_size: int = Field(default=10, ge=1)

    # Index policy
    privacy_zone_suppresses_index: bool = False
    reject_stale_updates: bool = True

    # Rate limiting
    rate_limit_enabled: bool = True
    rate_limit_capacity: int = 60
    rate_limit_refill_rate: float = 1.0

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration"""
        return {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'standard': {
                    'format': self.log_format
                },
            },
            'handlers': {
                'default': {
                    'level': self.log_level,
                    'formatter': 'standard',
                    'class': 'logging.StreamHandler',
                    'stream': 'ext://sys.stdout'
                }
            },
            'loggers': {
                '': {
                    'handlers': ['default'],
                    'level': self.log_level,
                    'propagate': False
                },
                'uvicorn': {
                    'handlers': ['default'],
                    'level': self.log_level,
                    'propagate': False
                },
                'redis': {
                    'handlers': ['default'],
                    'level': 'WARNING',
                    'propagate': False
                }
            }
        }


class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    store_backend: str = "redis"


class TestSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    store_backend: str = "memory"
    rate_limit_enabled: bool = False


def get_settings() -> Settings:
    """
    Get settings based on environment
    """
    env = os.getenv("ENVIRONMENT", "development").lower()

    if env == "production":
        return ProductionSettings()
    elif env == "test":
        return TestSettings()
    else:
        return DevelopmentSettings()


def configure_logging(settings: Settings) -> None:
    logging.config.dictConfig(settings.get_logging_config())
