"""
Factory for creating database adapter instances
"""
from typing import Optional
from loguru import logger

from .base import DatabaseAdapter
from .postgres_adapter import PostgreSQLAdapter
from common.config import Settings, settings as default_settings
from common.security import FieldCodec


class DatabaseFactory:
    """
    Factory for creating database adapter instances

    Usage:
        # Explicit parameters
        db = await DatabaseFactory.create(
            db_type="postgresql",
            host="localhost",
            database="storyvault",
            user="storyvault",
            password="password"
        )

        # From ROOT_SECRET / DATABASE_URL / POSTGRES_* environment variables
        db = await DatabaseFactory.create_from_env()
    """

    @staticmethod
    async def create(
        db_type: str,
        **kwargs
    ) -> DatabaseAdapter:
        """
        Create and connect a database adapter instance

        Args:
            db_type: Type of database ("postgresql")
            **kwargs: Database-specific connection parameters

        Returns:
            DatabaseAdapter instance

        Raises:
            ValueError: If db_type is not supported
        """
        db_type = db_type.lower()

        if db_type == "postgresql":
            logger.info("Creating PostgreSQL adapter")
            adapter = PostgreSQLAdapter(**kwargs)
            await adapter.connect()
            return adapter

        raise ValueError(
            f"Unsupported database type: {db_type}. "
            f"Supported types: {', '.join(DatabaseFactory.get_supported_databases())}"
        )

    @staticmethod
    def get_supported_databases() -> list:
        """Get list of supported database types"""
        return ["postgresql"]

    @staticmethod
    async def create_from_env(
        settings: Optional[Settings] = None,
        **kwargs
    ) -> DatabaseAdapter:
        """
        Create database adapter from settings

        The root secret is checked before any connection is attempted.

        Args:
            settings: Settings to use (module settings if None)
            **kwargs: Overrides passed to the adapter

        Returns:
            Connected DatabaseAdapter instance

        Raises:
            ConfigurationError: If ROOT_SECRET is not set
        """
        settings = settings or default_settings
        codec = kwargs.pop("codec", None) or FieldCodec(settings.get_root_secret())

        return await DatabaseFactory.create(
            db_type="postgresql",
            dsn=settings.get_dsn(),
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            codec=codec,
            **kwargs
        )
