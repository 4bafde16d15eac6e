from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "storefront"
    POSTGRES_USER: str = "storefront"
    POSTGRES_PASSWORD: str = "storefront"
    # Full SQLAlchemy URL; overrides the POSTGRES_* parts when set
    DATABASE_URL: Optional[str] = None

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"
    CRON_SECRET: Optional[str] = None

    PHONEPE_CLIENT_ID: str = ""
    PHONEPE_CLIENT_SECRET: str = ""
    PHONEPE_CLIENT_VERSION: str = "1"
    PHONEPE_BASE_URL: str = "https://api.phonepe.com/apis/pg"
    PHONEPE_AUTH_URL: str = "https://api.phonepe.com/apis/identity-manager"
    PHONEPE_TIMEOUT_SECONDS: float = 15.0
    APP_URL: str = "http://localhost:3000"
    MERCHANT_ORDER_PREFIX: str = "CHULBULI"

    PAYMENT_RETRY_ATTEMPTS: int = 3
    PAYMENT_RETRY_BASE_DELAY: float = 0.5
    PENDING_PAYMENT_TTL_MINUTES: int = 30

    LOG_LEVEL: str = "INFO"

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
