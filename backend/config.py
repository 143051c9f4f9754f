"""
Configuration management for the application.
Loads settings from environment variables using Pydantic Settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./gymops_local.sqlite"

    @property
    def database_url_async(self) -> str:
        """
        Transform DATABASE_URL to use the appropriate async driver.
        - PostgreSQL: postgresql+asyncpg://...
        - SQLite: sqlite+aiosqlite:///...
        """
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("sqlite://"):
            return self.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self.DATABASE_URL

    # Security
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 480  # 8 hours

    # Application
    APP_NAME: str = "GymOps API"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Localisation
    DEFAULT_LOCALE: str = "en"  # 'en' or 'tr'
    DEFAULT_TIMEZONE: str = "Europe/Istanbul"
    DEFAULT_CURRENCY: str = "TRY"

    # Bootstrap Super Admin Configuration
    BOOTSTRAP_SUPER_ADMIN_EMAIL: str = ""
    BOOTSTRAP_SUPER_ADMIN_PASSWORD_HASH: str = ""
    BOOTSTRAP_SUPER_ADMIN_FULL_NAME: str = "Platform Administrator"

    # Billing
    TRIAL_PERIOD_DAYS: int = 7
    BILLING_GATE_WARN_MS: int = 10  # Log slow billing checks above this threshold

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# Singleton instance - import this in other modules
settings = Settings()
