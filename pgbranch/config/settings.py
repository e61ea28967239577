"""
pgbranch configuration settings
"""
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "pgbranch"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Server
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3001)

    # CORS (comma separated)
    CORS_ORIGINS: str = Field(default="*")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    DB_PREFIX: str = Field(default="db_")
    SOURCE_DATABASE: str = Field(default="production")
    DATABASE_MAX_CONNECTIONS: int = Field(default=10, ge=1)
    DATABASE_CONNECTION_TIMEOUT_MS: int = Field(default=2000, ge=0)
    DATABASE_IDLE_TIMEOUT_MS: int = Field(default=30000, ge=0)

    # Branch lifecycle
    BRANCH_SETTLE_TIMEOUT_MS: int = Field(default=5000, ge=0)
    BRANCH_SETTLE_INTERVAL_MS: int = Field(default=250, ge=1)

    # Security
    BRANCH_MANAGEMENT_API_KEY: Optional[str] = Field(default=None)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @field_validator("ENVIRONMENT", "LOG_LEVEL", mode="before")
    @classmethod
    def normalize_case(cls, v, info):
        if isinstance(v, str):
            v = v.strip()
            return v.upper() if info.field_name == "LOG_LEVEL" else v.lower()
        return v

    @property
    def cors_origins(self) -> List[str]:
        """CORS origins as a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def connection_timeout(self) -> float:
        """Pool connect/acquire timeout in seconds"""
        return self.DATABASE_CONNECTION_TIMEOUT_MS / 1000

    @property
    def idle_timeout(self) -> float:
        """Pool idle connection lifetime in seconds"""
        return self.DATABASE_IDLE_TIMEOUT_MS / 1000

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.ENVIRONMENT == "development"


# Create singleton instance
settings = Settings()
