# app/config/config.py
from functools import lru_cache
from typing import Optional

from pydantic_settings import SettingsConfigDict, BaseSettings

# Import the GSM loader - this will run at import time and set env vars
from app.config.gsm_settings import gsm_secrets  # noqa: F401


class Settings(BaseSettings):
    PROJECT_NAME: str = "Menu SaaS API"
    API_V1_PREFIX: str = "/api/v1"
    LOG_JSON: bool = False

    # PostgreSQL database connection settings
    DATABASE_URL: Optional[str] = None
    POSTGRES_SERVER: str = ""
    POSTGRES_USER: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""
    POSTGRES_PORT: Optional[int] = 5432
    POSTGRES_SSL: bool = True

    RABBITMQ_QUEUE: str = "notification_tasks_queue"
    RABBITMQ_USER: str = ""
    RABBITMQ_PASSWORD: str = ""
    RABBITMQ_HOST: str = ""
    RABBITMQ_PORT: int = 5671
    RABBITMQ_VHOST: str = ""

    # Chapa payment provider
    CHAPA_BASE_URL: str = "https://api.chapa.co/v1"
    CHAPA_SECRET_KEY: str = ""
    CHAPA_WEBHOOK_SECRET: str = ""
    CHAPA_CALLBACK_URL: str = ""
    CHAPA_RETURN_URL: str = ""
    CHAPA_TIMEOUT_SECONDS: float = 10.0

    # Used to build links in notifications (e.g. {APP_BASE_URL}/billing)
    APP_BASE_URL: str = "http://localhost:3000"

    TRIAL_DAYS: int = 14
    TRIAL_PLAN_SLUG: str = "free-trial"
    FREE_PLAN_SLUG: str = "free"

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        """Get SQLAlchemy database URI"""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def RABBITMQ_URL(self) -> str:
        return f"amqps://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/{self.RABBITMQ_VHOST}"

    # JWT settings
    SECRET_KEY: str = ""
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 600

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file_encoding='utf-8'
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Module level instance for startup code (engine, broker URL). Request
# handlers resolve settings through get_settings so tests can override it.
settings = get_settings()
