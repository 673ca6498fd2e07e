"""
Runtime settings for the Crop Connect order service.

Everything comes from environment variables (a local .env file is loaded
first), mirroring how the database module reads DATABASE_URL.
"""
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    app_env: str = Field("development", description="development|test|production")
    database_url: Optional[str] = Field(None, description="Mongo connection string")
    database_name: Optional[str] = Field(None, description="Mongo database name")
    paystack_secret_key: Optional[str] = None
    paystack_base_url: str = "https://api.paystack.co"
    frontend_url: str = "http://localhost:5173"
    gateway_timeout: float = Field(10.0, gt=0, description="Seconds before a gateway call is abandoned")
    order_max_attempts: int = Field(3, ge=1, description="Attempts for a contended order write")
    order_retry_backoff: float = Field(0.1, ge=0, description="Base backoff in seconds, multiplied by attempt")
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


def load_settings() -> Settings:
    values = {
        "app_env": os.getenv("APP_ENV"),
        "database_url": os.getenv("DATABASE_URL"),
        "database_name": os.getenv("DATABASE_NAME"),
        "paystack_secret_key": os.getenv("PAYSTACK_SECRET_KEY"),
        "paystack_base_url": os.getenv("PAYSTACK_BASE_URL"),
        "frontend_url": os.getenv("FRONTEND_URL"),
        "gateway_timeout": os.getenv("GATEWAY_TIMEOUT"),
        "order_max_attempts": os.getenv("ORDER_MAX_ATTEMPTS"),
        "order_retry_backoff": os.getenv("ORDER_RETRY_BACKOFF"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    # unset variables fall back to the model defaults
    return Settings(**{k: v for k, v in values.items() if v is not None})


@lru_cache
def get_settings() -> Settings:
    return load_settings()
