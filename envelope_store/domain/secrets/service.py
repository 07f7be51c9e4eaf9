"""Secret services bound to a named secret category.

Each category ("encryption", "hash") has a pointer entry in the secret store,
``<slug>-<category>``, whose value is the key of the category's current
secret. Historical secrets stay in the store under their own keys so data
written with them can still be read.
"""
import asyncio
import base64
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Optional, Union

from envelope_store.domain.result import Err, Ok, Result
from envelope_store.domain.secrets.models import (
    ALGORITHM_AES,
    ALGORITHM_HMAC_SHA256,
    CATEGORY_ENCRYPTION,
    CATEGORY_HASH,
    Secret,
)
from envelope_store.domain.secrets.ports import SecretStore
from envelope_store.errors import (
    SecretKeyGeneratorError,
    SecretNotFoundError,
    SecretStoreError,
    SecretStoreUnavailableError,
)
from envelope_store.settings import settings

logger = logging.getLogger(__name__)

AES_KEY_SIZES = (128, 192, 256)


class SecretService:
    """Resolves and advances the current secret of one category."""

    def __init__(
        self,
        secret_store: SecretStore,
        category: str,
        algorithm: str,
        slug: Optional[str] = None,
        fix_secret: bool = False,
        key_size_bits: Optional[int] = None,
        cache_ttl_seconds: Optional[float] = 10.0,
    ):
        self.secret_store = secret_store
        self.category = category
        self.algorithm = algorithm
        self.pointer_key = f"{slug or settings.app_slug}-{category}"
        self.fix_secret = fix_secret
        self.key_size_bits = key_size_bits if key_size_bits is not None else settings.secret_key_size_bits
        self.cache_ttl_seconds = cache_ttl_seconds
        self._current: Optional[Secret] = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return f"{self.category}-secret-service"

    async def get_current_secret(self) -> Result[Secret, SecretStoreError]:
        """Return the current secret, loading it from the store when not cached."""
        logger.debug(f"Getting current {self.category} secret")

        if self._cache_valid():
            return Ok(self._current)

        async with self._lock:
            if self._cache_valid():
                return Ok(self._current)
            return await self._load_current_secret()

    async def get_secret(self, key: str) -> Result[Secret, Union[SecretNotFoundError, SecretStoreUnavailableError]]:
        """Return a historical secret of this category by its key."""
        return await self.secret_store.get(key)

    async def update_secret(self) -> Result[Secret, SecretStoreError]:
        """Generate a new secret, store it and advance the pointer to it."""
        async with self._lock:
            return await self._update_secret()

    async def rotate_secret(self) -> Result[Secret, SecretStoreError]:
        """Advance to a new secret unless this category is pinned."""
        if self.fix_secret:
            logger.info(f"Secret for category {self.category} is fixed, skipping rotation")
            return await self.get_current_secret()
        return await self.update_secret()

    def generate_key(self, key_size_bits: Optional[int] = None) -> Result[str, SecretKeyGeneratorError]:
        """Generate base64 encoded key material for this category's algorithm."""
        size = key_size_bits if key_size_bits is not None else self.key_size_bits
        if size <= 0 or size % 8 != 0:
            return Err(SecretKeyGeneratorError(f"Invalid key size: {size} bits"))
        if self.algorithm == ALGORITHM_AES and size not in AES_KEY_SIZES:
            return Err(SecretKeyGeneratorError(f"Invalid AES key size: {size} bits"))
        return Ok(base64.b64encode(secrets.token_bytes(size // 8)).decode("ascii"))

    def get_last_update(self) -> Optional[datetime]:
        return self._current.created_at if self._current else None

    def invalidate(self) -> None:
        """Drop the cached secret so the next call reads the pointer again."""
        self._current = None
        self._loaded_at = 0.0

    def _cache_valid(self) -> bool:
        if self._current is None:
            return False
        if self.cache_ttl_seconds is None:
            return True
        return (time.monotonic() - self._loaded_at) < self.cache_ttl_seconds

    def _remember(self, secret: Secret) -> Secret:
        self._current = secret
        self._loaded_at = time.monotonic()
        return secret

    async def _load_current_secret(self) -> Result[Secret, SecretStoreError]:
        logger.debug(f"Loading current {self.category} secret from secret store")

        pointer = await self.secret_store.get(self.pointer_key)
        if pointer.is_err():
            if isinstance(pointer.unwrap_err(), SecretNotFoundError):
                logger.info(f"No {self.category} secret exists yet, creating one")
                return await self._update_secret()
            return pointer

        current = await self.secret_store.get(pointer.unwrap().value)
        if current.is_err():
            return current
        return Ok(self._remember(current.unwrap()))

    async def _update_secret(self) -> Result[Secret, SecretStoreError]:
        now = datetime.now(timezone.utc)
        new_key = f"{self.pointer_key}-{now.strftime('%Y%m%dT%H%M%S%fZ')}-{secrets.token_hex(4)}"
        note = f"Generated on {now.isoformat()}"

        new_value = self.generate_key()
        if new_value.is_err():
            return new_value

        stored = await self.secret_store.put(new_key, new_value.unwrap(), note, self.algorithm)
        if stored.is_err():
            return stored

        pointer = await self.secret_store.put(self.pointer_key, new_key, note)
        if pointer.is_err():
            return pointer

        logger.info(f"Current {self.category} secret is now {new_key}")
        return Ok(self._remember(stored.unwrap()))


def encryption_secret_service(secret_store: SecretStore, **kwargs) -> SecretService:
    kwargs.setdefault("fix_secret", settings.encryption_secret_fixed)
    return SecretService(secret_store, CATEGORY_ENCRYPTION, ALGORITHM_AES, **kwargs)


def hash_secret_service(secret_store: SecretStore, **kwargs) -> SecretService:
    kwargs.setdefault("fix_secret", settings.hash_secret_fixed)
    return SecretService(secret_store, CATEGORY_HASH, ALGORITHM_HMAC_SHA256, **kwargs)
