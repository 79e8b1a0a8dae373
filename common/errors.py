"""
Error taxonomy for the encrypted record store

Messages are safe to log: they carry record ids and field names only,
never key material, plaintext or derivation inputs.
"""
from typing import Optional


class StoreError(Exception):
    """Base class for all errors raised by the record store"""


class ConfigurationError(StoreError):
    """Required configuration (e.g. the root secret) is missing or invalid"""


class CodecError(StoreError):
    """Base class for field codec failures on a single record"""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class AlignmentError(CodecError):
    """IV/tag segment counts do not match the number of encrypted fields"""


class IntegrityError(CodecError):
    """AEAD authentication failed for one field of a record"""

    def __init__(self, message: str, record_id: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message, record_id=record_id)
        self.field = field


class TransactionError(StoreError):
    """An ordered write could not complete and its transaction must roll back"""
