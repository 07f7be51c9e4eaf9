"""Searchable hashing of plaintext values.

Values that must stay encrypted but still need equality lookups (emails,
identity provider principal ids) are stored next to their envelope as a
keyed HMAC-SHA256. The hash is deterministic for a given input and hash
secret and cannot be reversed without the secret.
"""
import base64
import binascii
import hashlib
import hmac
import logging

from pydantic import BaseModel

from envelope_store.domain.result import Err, Ok, Result
from envelope_store.domain.secrets.service import SecretService
from envelope_store.errors import HashEncodingError, HashError, HashingError, HashSecretError

logger = logging.getLogger(__name__)


class SearchableHash(BaseModel):
    data: str
    secret_id: str

    def __repr__(self) -> str:
        return f"SearchableHash(secret_id={self.secret_id!r})"

    __str__ = __repr__


def normalize(value: str) -> str:
    return value.strip().lower()


class HashService:
    def __init__(self, hash_secret_service: SecretService):
        self.hash_secret_service = hash_secret_service

    async def hash_searchable_hmac_sha256(self, value: str) -> Result[SearchableHash, HashError]:
        """Hash ``value`` after trimming and lowercasing it."""
        secret = await self.hash_secret_service.get_current_secret()
        if secret.is_err():
            return Err(HashSecretError("Failed to retrieve current hash secret", secret.unwrap_err()))
        secret = secret.unwrap()

        try:
            key = base64.b64decode(secret.value, validate=True)
        except (binascii.Error, ValueError) as e:
            return Err(HashEncodingError("Failed to decode hash secret", e))

        try:
            digest = hmac.new(key, normalize(value).encode("utf-8"), hashlib.sha256).digest()
        except (TypeError, ValueError) as e:
            return Err(HashingError("Failed to hash input", e))

        encoded = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
        return Ok(SearchableHash(data=encoded, secret_id=secret.key))
