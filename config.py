from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./marketplace.db"
    SQL_ECHO: bool = False  # True to print SQL

    # Sessions / auth
    SECRET_KEY: str = "change-me-in-production"
    SESSION_MAX_AGE: int = 86400
    SESSION_HTTPS_ONLY: bool = False
    BCRYPT_ROUNDS: int = 12

    LOG_LEVEL: str = "INFO"

    # Marketplace defaults
    DEFAULT_CURRENCY: str = "BDT"
    DEFAULT_PER_PAGE: int = 20
    MAX_PER_PAGE: int = 100
    MESSAGES_PER_PAGE: int = 50

    # Admin seeded at startup when none exists
    ADMIN_EMAIL: str = "admin@marketplace.com"
    ADMIN_PASSWORD: str = "admin12345"

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
