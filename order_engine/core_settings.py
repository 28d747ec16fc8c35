from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "shop"
    POSTGRES_USER: str = "shop"
    POSTGRES_PASSWORD: str = "shop"
    # Full SQLAlchemy URL; takes precedence over the POSTGRES_* parts
    DATABASE_URL: Optional[str] = None

    SERVICE_NAME: str = "order-engine"
    SERVICE_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    RUN_MIGRATIONS: bool = False

    INVOICE_PREFIX: str = "JG"
    INVOICE_START: int = 1000
    LOCK_TIMEOUT_MS: int = 5000

    STRICT_STATUS_TRANSITIONS: bool = False
    STRICT_ORDER_DELETION: bool = False

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    # Receives {"event": "order_placed", "order_id": ...} after each placement
    NOTIFY_WEBHOOK_URL: Optional[str] = None

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

@lru_cache
def get_settings() -> Settings:
    return Settings()
