"""Secrets Domain Models."""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

ALGORITHM_AES = "AES"
ALGORITHM_HMAC_SHA256 = "HmacSHA256"

CATEGORY_ENCRYPTION = "encryption"
CATEGORY_HASH = "hash"


class Secret(BaseModel):
    """A versioned piece of symmetric key material.

    ``value`` is the base64 encoded raw key. Never log this model as a whole.
    """
    key: str = Field(..., min_length=1, max_length=255)
    value: str
    algorithm: str = ALGORITHM_AES
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return f"Secret(key={self.key!r}, algorithm={self.algorithm!r})"

    __str__ = __repr__
