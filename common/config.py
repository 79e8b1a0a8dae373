"""
Configuration settings for the record store
"""
from typing import Optional
from pydantic_settings import BaseSettings

from common.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # ===================================
    # Encryption
    # ===================================
    # Process-wide root secret used to derive per-record keys.
    # Generate one with: python -c 'from common.security import FieldCodec; print(FieldCodec.generate_root_secret())'
    root_secret: Optional[str] = None

    # ===================================
    # Database Configuration
    # ===================================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "storyvault"
    postgres_user: str = "storyvault"
    postgres_password: str = ""
    database_url: Optional[str] = None

    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # ===================================
    # Logging
    # ===================================
    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_root_secret(self) -> bytes:
        """Get the root secret as bytes"""
        if not self.root_secret or not self.root_secret.strip():
            raise ConfigurationError(
                "ROOT_SECRET must be set before any encrypted record is read or written"
            )
        return self.root_secret.encode("utf-8")

    def get_dsn(self) -> str:
        """Get the PostgreSQL connection string"""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


# Global settings instance
settings = Settings()
