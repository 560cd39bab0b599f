from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "DT Exotics Rentals API"
    # Comma-separated origins for CORS (e.g. https://dtexoticslv.com,https://admin.dtexoticslv.com). If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v

    # Calendar cache only; bookings are never served from Redis. Empty disables the cache.
    REDIS_URL: str = "redis://localhost:6379/0"
    AVAILABILITY_CACHE_TTL_SECONDS: int = 300

    # Rental rules
    MAX_RENTAL_DAYS: int = 30

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""       # live endpoint secret (whsec_...)
    STRIPE_WEBHOOK_SECRET_TEST: str = ""  # optional, tried after the live secret
    STRIPE_CURRENCY: str = "usd"
    STRIPE_ENV: str = "dev"               # copied into intent metadata


settings = Settings()
