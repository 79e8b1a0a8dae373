"""
Database adapters and ordering helpers for the record store
"""
from .base import DatabaseAdapter
from .postgres_adapter import PostgreSQLAdapter
from .factory import DatabaseFactory
from .ordering import OrderReindexer, PostgresSiblingStore, SiblingStore

__all__ = [
    'DatabaseAdapter',
    'PostgreSQLAdapter',
    'DatabaseFactory',
    'OrderReindexer',
    'PostgresSiblingStore',
    'SiblingStore',
]
