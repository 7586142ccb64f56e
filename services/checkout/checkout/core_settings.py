from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "poultry"
    POSTGRES_USER: str = "poultry"
    POSTGRES_PASSWORD: str = "poultry"
    # Full SQLAlchemy URL; takes precedence over the POSTGRES_* coordinates
    DATABASE_URL: Optional[str] = None

    JWT_SECRET: str = "change-me-poultry-marketplace-dev-secret"
    JWT_ALG: str = "HS256"

    LIPIA_BASE_URL: str = "https://lipia-api.kreativelabske.com/api/v2"
    LIPIA_API_KEY: Optional[str] = None
    LIPIA_TIMEOUT_SECONDS: float = 30.0
    APP_URL: str = "http://localhost:8000"

    ORDER_TX_TIMEOUT_SECONDS: int = 15
    AMOUNT_TOLERANCE: Decimal = Decimal("1")
    RESTOCK_ON_PAYMENT_FAILURE: bool = False

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
