"""Encryption Domain Models."""
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from envelope_store.settings import CIPHER_AES_256_GCM, CIPHER_AES_ECB

T = TypeVar("T")

SUPPORTED_ALGORITHMS = (CIPHER_AES_256_GCM, CIPHER_AES_ECB)


class Encrypted(BaseModel, Generic[T]):
    """Envelope holding an encrypted payload and the key needed to open it.

    ``T`` only tags the payload type for readers of the code, it is not
    serialized. Envelopes without an ``alg`` marker were written by the
    legacy deterministic format and default to ``aes-ecb``.
    """
    secret_key: str = Field(..., min_length=1)
    ciphertext: str = Field(..., min_length=1)
    alg: str = CIPHER_AES_ECB

    def __repr__(self) -> str:
        return f"Encrypted(secret_key={self.secret_key!r}, alg={self.alg!r})"

    __str__ = __repr__
