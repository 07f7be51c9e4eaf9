"""Encryption Service.

Wraps typed payloads into ``Encrypted`` envelopes with the current
encryption secret, and unwraps envelopes with whichever secret they
reference. Cipher work runs in a worker thread so long rotation sweeps do
not stall the event loop.
"""
import asyncio
import base64
import binascii
import logging
from functools import lru_cache
from typing import Any, Optional, Type, TypeVar

from cryptography.exceptions import InvalidTag
from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_json

from envelope_store.domain.encryption.ciphers import get_cipher
from envelope_store.domain.encryption.models import Encrypted
from envelope_store.domain.result import Err, Ok, Result
from envelope_store.domain.secrets.ports import SecretStore
from envelope_store.domain.secrets.service import SecretService
from envelope_store.errors import (
    CipherError,
    EncodingError,
    EncryptionError,
    EncryptionSecretError,
    ObjectMappingError,
)
from envelope_store.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@lru_cache(maxsize=None)
def _adapter(target_type: Any) -> TypeAdapter:
    return TypeAdapter(target_type)


def _type_name(target_type: Any) -> str:
    return getattr(target_type, "__name__", repr(target_type))


def _b64u_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _b64u_decode(s: str) -> bytes:
    missing_padding = len(s) % 4
    if missing_padding:
        s += "=" * (4 - missing_padding)
    return base64.urlsafe_b64decode(s.encode("ascii"))


def _decode_key(value: str) -> Result[bytes, CipherError]:
    try:
        return Ok(base64.b64decode(value, validate=True))
    except (binascii.Error, ValueError) as e:
        return Err(CipherError("Failed to decode cipher key", e))


class EncryptionService:
    """Envelope encryption over the encryption secret category."""

    def __init__(
        self,
        encryption_secret_service: SecretService,
        secret_store: SecretStore,
        cipher: Optional[str] = None,
    ):
        self.encryption_secret_service = encryption_secret_service
        self.secret_store = secret_store
        self.cipher = get_cipher(cipher or settings.encryption_cipher)

    async def wrap(self, value: T) -> Result[Encrypted[T], EncryptionError]:
        """Serialize ``value`` to canonical JSON and encrypt it with the current secret."""
        try:
            serialized = to_json(value).decode("utf-8")
        except (PydanticSerializationError, TypeError, ValueError) as e:
            return Err(ObjectMappingError(f"Failed to write {type(value).__name__} as string", e))

        return await self.encrypt(serialized)

    async def unwrap(self, encrypted: Encrypted[Any], target_type: Type[T]) -> Result[T, EncryptionError]:
        """Decrypt ``encrypted`` with the secret it references and validate it as ``target_type``."""
        decrypted = await self.decrypt(encrypted)
        if decrypted.is_err():
            return decrypted

        try:
            return Ok(_adapter(target_type).validate_json(decrypted.unwrap()))
        except ValidationError as e:
            # The payload itself stays out of the message
            return Err(ObjectMappingError(
                f"Failed to create object of type {_type_name(target_type)} "
                f"from decrypted payload: {e.error_count()} validation errors",
                e,
            ))

    async def encrypt(self, plaintext: str) -> Result[Encrypted[Any], EncryptionError]:
        logger.debug("Encrypting...")

        secret = await self.encryption_secret_service.get_current_secret()
        if secret.is_err():
            return Err(EncryptionSecretError("Failed to retrieve current encryption secret", secret.unwrap_err()))
        secret = secret.unwrap()

        key = _decode_key(secret.value)
        if key.is_err():
            return key

        try:
            sealed = await asyncio.to_thread(self.cipher.encrypt, key.unwrap(), plaintext.encode("utf-8"))
        except (ValueError, TypeError) as e:
            return Err(CipherError(f"Failed to encrypt with {self.cipher.alg}: {e}", e))

        try:
            ciphertext = _b64u_encode(sealed)
        except (binascii.Error, ValueError) as e:
            return Err(EncodingError("Failed to encode encrypted bytes as Base64", e))

        return Ok(Encrypted(secret_key=secret.key, ciphertext=ciphertext, alg=self.cipher.alg))

    async def decrypt(self, encrypted: Encrypted[Any]) -> Result[str, EncryptionError]:
        logger.debug("Decrypting...")

        secret = await self.secret_store.get(encrypted.secret_key)
        if secret.is_err():
            return Err(EncryptionSecretError(
                f"Failed to retrieve encryption secret {encrypted.secret_key}",
                secret.unwrap_err(),
            ))

        try:
            sealed = _b64u_decode(encrypted.ciphertext)
        except (binascii.Error, ValueError) as e:
            return Err(EncodingError("Failed to decode encrypted string as Base64", e))

        key = _decode_key(secret.unwrap().value)
        if key.is_err():
            return key

        try:
            cipher = get_cipher(encrypted.alg)
        except ValueError as e:
            return Err(CipherError(str(e), e))

        try:
            plaintext = await asyncio.to_thread(cipher.decrypt, key.unwrap(), sealed)
        except (InvalidTag, ValueError, TypeError) as e:
            return Err(CipherError(f"Failed to decrypt with {cipher.alg}", e))

        try:
            return Ok(plaintext.decode("utf-8"))
        except UnicodeDecodeError as e:
            return Err(EncodingError("Decrypted bytes are not valid UTF-8", e))
