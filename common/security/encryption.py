"""
Field-level encryption for sensitive record attributes

Every sensitive attribute of a record is sealed with AES-256-GCM under a key
derived from the process root secret, the record id and the field name:

- Entity key: SHAKE256(root_secret || record_id), 32 bytes
- Field key: SHA3-256(hex(entity_key) || field_name)
- Fresh 96-bit nonce per field per call
- Associated data "field:<record_id>:<field_name>" binds each ciphertext to
  its slot, so it cannot be replayed into another field or another record

A sealed record is a CipherBundle: one hex ciphertext per field plus the
nonces and tags of all fields joined with ':'. The joined segments follow the
lexicographic order of the field names, which is how decryption realigns
them without storing the order separately.

Security Notes:
- Derived keys exist only for the duration of a call and are never persisted
- Changing a record id invalidates every encrypted field of that record
- Errors name the record id and field only, never keys or plaintext
"""

import os
import re
import base64
import secrets
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

from common.errors import AlignmentError, ConfigurationError, IntegrityError

RecordId = Union[str, UUID]
FieldValues = Union[Mapping[str, str], Iterable[Tuple[str, str]]]

# Lowercase hex exactly as written by bytes.hex()
CANONICAL_HEX = re.compile(r"[0-9a-f]*")


@dataclass(frozen=True)
class CipherBundle:
    """Sealed form of a record's sensitive fields, stored verbatim as strings"""
    cipher_by_field: Dict[str, str] = field(default_factory=dict)
    iv_joined: str = ""
    tag_joined: str = ""

    def to_columns(self) -> Dict[str, str]:
        """Flatten into storage columns (one per field plus iv and tag)"""
        columns = dict(self.cipher_by_field)
        columns["iv"] = self.iv_joined
        columns["tag"] = self.tag_joined
        return columns


class FieldCodec:
    """
    Encrypts and decrypts named field sets bound to a record id

    The codec holds only the root secret; every call derives its own keys,
    so one instance can be shared across concurrent tasks.
    """

    # AES-256 requires 32-byte keys
    KEY_SIZE = 32

    # GCM recommended nonce size is 12 bytes
    NONCE_SIZE = 12

    # GCM authentication tag size
    TAG_SIZE = 16

    SEPARATOR = ":"

    def __init__(self, root_secret: Union[bytes, str]):
        """
        Initialize the codec

        Args:
            root_secret: Process-wide root secret

        Raises:
            ConfigurationError: If the root secret is empty
        """
        if isinstance(root_secret, str):
            root_secret = root_secret.encode("utf-8")
        if not root_secret or not root_secret.strip():
            raise ConfigurationError("Root secret must not be empty")

        self._root_secret = bytes(root_secret)
        logger.info("FieldCodec initialized")

    def encrypt_record(self, fields: FieldValues, record_id: RecordId) -> CipherBundle:
        """
        Seal a set of plaintext fields for one record

        Args:
            fields: Mapping or (name, value) pairs of plaintext strings
            record_id: Stable id of the record owning the fields

        Returns:
            CipherBundle with hex ciphertexts and ':'-joined nonces and tags
        """
        record_id = self._normalize_record_id(record_id)
        entity_key = self._derive_entity_key(record_id)

        cipher_by_field: Dict[str, str] = {}
        nonces: List[str] = []
        tags: List[str] = []

        for name, plaintext in self._sorted_fields(fields):
            if not isinstance(plaintext, str):
                raise TypeError(f"Field '{name}' must be a string, got {type(plaintext).__name__}")

            nonce = os.urandom(self.NONCE_SIZE)
            cipher = AESGCM(self._derive_field_key(entity_key, name))
            sealed = cipher.encrypt(nonce, plaintext.encode("utf-8"), self._associated_data(record_id, name))

            # cryptography appends the tag to the ciphertext
            cipher_by_field[name] = sealed[:-self.TAG_SIZE].hex()
            nonces.append(nonce.hex())
            tags.append(sealed[-self.TAG_SIZE:].hex())

        return CipherBundle(
            cipher_by_field=cipher_by_field,
            iv_joined=self.SEPARATOR.join(nonces),
            tag_joined=self.SEPARATOR.join(tags),
        )

    def decrypt_record(
        self,
        cipher_by_field: Mapping[str, str],
        record_id: RecordId,
        iv_joined: str,
        tag_joined: str,
    ) -> Dict[str, str]:
        """
        Open a sealed record

        Args:
            cipher_by_field: Hex ciphertext per field name
            record_id: Id the fields were sealed under
            iv_joined: ':'-joined hex nonces in sorted field-name order
            tag_joined: ':'-joined hex tags in sorted field-name order

        Returns:
            Plaintext per field name, in sorted field-name order

        Raises:
            AlignmentError: If nonce or tag counts differ from the field count
            IntegrityError: If any field fails authentication
        """
        record_id = self._normalize_record_id(record_id)
        nonces = self._split(iv_joined)
        tags = self._split(tag_joined)

        if len(nonces) != len(cipher_by_field) or len(tags) != len(cipher_by_field):
            raise AlignmentError(
                f"Record {record_id} has {len(cipher_by_field)} encrypted fields "
                f"but {len(nonces)} iv and {len(tags)} tag segments",
                record_id=record_id,
            )

        entity_key = self._derive_entity_key(record_id)
        plaintext_by_field: Dict[str, str] = {}

        for (name, ciphertext_hex), nonce_hex, tag_hex in zip(
            self._sorted_fields(cipher_by_field), nonces, tags
        ):
            plaintext_by_field[name] = self._open_field(
                entity_key, record_id, name, ciphertext_hex, nonce_hex, tag_hex
            )

        return plaintext_by_field

    def decrypt_bundle(self, bundle: CipherBundle, record_id: RecordId) -> Dict[str, str]:
        """Open a CipherBundle produced by encrypt_record"""
        return self.decrypt_record(bundle.cipher_by_field, record_id, bundle.iv_joined, bundle.tag_joined)

    def _open_field(
        self,
        entity_key: bytes,
        record_id: str,
        name: str,
        ciphertext_hex: str,
        nonce_hex: str,
        tag_hex: str,
    ) -> str:
        try:
            for segment in (ciphertext_hex, nonce_hex, tag_hex):
                if not isinstance(segment, str) or not CANONICAL_HEX.fullmatch(segment):
                    raise ValueError("non-canonical hex segment")

            nonce = bytes.fromhex(nonce_hex)
            sealed = bytes.fromhex(ciphertext_hex) + bytes.fromhex(tag_hex)
            if len(nonce) != self.NONCE_SIZE or len(tag_hex) != self.TAG_SIZE * 2:
                raise ValueError("malformed nonce or tag")

            cipher = AESGCM(self._derive_field_key(entity_key, name))
            plaintext = cipher.decrypt(nonce, sealed, self._associated_data(record_id, name))
            return plaintext.decode("utf-8")

        except (InvalidTag, ValueError, TypeError) as e:
            logger.warning(f"Authentication failed for field '{name}' of record {record_id}")
            raise IntegrityError(
                f"Field '{name}' of record {record_id} failed authentication",
                record_id=record_id,
                field=name,
            ) from e

    def _derive_entity_key(self, record_id: str) -> bytes:
        digest = hashes.Hash(hashes.SHAKE256(self.KEY_SIZE))
        digest.update(self._root_secret + record_id.encode("utf-8"))
        return digest.finalize()

    def _derive_field_key(self, entity_key: bytes, field_name: str) -> bytes:
        digest = hashes.Hash(hashes.SHA3_256())
        digest.update((entity_key.hex() + field_name).encode("utf-8"))
        return digest.finalize()

    @staticmethod
    def _associated_data(record_id: str, field_name: str) -> bytes:
        return f"field:{record_id}:{field_name}".encode("utf-8")

    @staticmethod
    def _normalize_record_id(record_id: RecordId) -> str:
        record_id = str(record_id) if record_id is not None else ""
        if not record_id:
            raise ValueError("record_id is required")
        return record_id

    @classmethod
    def _split(cls, joined: Optional[str]) -> List[str]:
        if not joined:
            return []
        return joined.split(cls.SEPARATOR)

    @staticmethod
    def _sorted_fields(fields: FieldValues) -> List[Tuple[str, str]]:
        """Field pairs sorted by name; this order aligns nonces and tags"""
        pairs = list(fields.items()) if isinstance(fields, Mapping) else list(fields)
        names = [name for name, _ in pairs]
        if len(set(names)) != len(names):
            raise ValueError("Duplicate field names in record")
        for name in names:
            if not isinstance(name, str) or not name:
                raise ValueError("Field names must be non-empty strings")
        return sorted(pairs, key=lambda pair: pair[0])

    @staticmethod
    def generate_root_secret() -> str:
        """
        Generate a new random 256-bit root secret

        Returns:
            URL-safe base64 string (safe for environment variables)

        Usage:
            >>> secret = FieldCodec.generate_root_secret()
            >>> # Save to .env file: ROOT_SECRET=<secret>
        """
        return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")


# Singleton instance for application-wide use
_field_codec: Optional[FieldCodec] = None


def get_field_codec(root_secret: Optional[Union[bytes, str]] = None) -> FieldCodec:
    """
    Get or create the process-wide codec

    Args:
        root_secret: Root secret (loads from settings if None)

    Returns:
        FieldCodec instance

    Raises:
        ConfigurationError: If no root secret is configured
    """
    global _field_codec

    if _field_codec is None:
        if root_secret is None:
            from common.config import settings
            root_secret = settings.get_root_secret()
        _field_codec = FieldCodec(root_secret)

    return _field_codec


def reset_field_codec():
    """Reset singleton (for testing or secret rotation)"""
    global _field_codec
    _field_codec = None
