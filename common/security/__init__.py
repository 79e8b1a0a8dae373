"""
Security utilities for the record store

This module provides:
- Field-level authenticated encryption bound to record ids
- Process-wide codec accessor backed by the configured root secret

Usage:
    from common.security import get_field_codec

    codec = get_field_codec()
    bundle = codec.encrypt_record({"email": "a@b.com", "display_name": "Alice"}, user_id)
    fields = codec.decrypt_bundle(bundle, user_id)
"""

from .encryption import (
    CipherBundle,
    FieldCodec,
    get_field_codec,
    reset_field_codec,
)

__all__ = [
    "CipherBundle",
    "FieldCodec",
    "get_field_codec",
    "reset_field_codec",
]
