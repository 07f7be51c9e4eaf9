"""Document Domain Models."""
from datetime import datetime
from math import ceil
from typing import Generic, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field, field_validator

from envelope_store.domain.documents.criteria import SENSITIVE_FIELD
from envelope_store.domain.encryption.models import Encrypted
from envelope_store.utils.id import uuid7

S = TypeVar("S")
D = TypeVar("D")

SORT_ASC = "asc"
SORT_DESC = "desc"


class SensitiveDocument(BaseModel, Generic[S]):
    """Domain-visible document holding its decrypted sensitive payload."""
    id: str = Field(default_factory=uuid7)
    sensitive: S


class EncryptedSensitiveDocument(BaseModel, Generic[S]):
    """Storage-visible document. ``sensitive`` is only ever an envelope."""
    id: str = Field(default_factory=uuid7)
    sensitive: Encrypted[S]


class PageRequest(BaseModel):
    page: int = Field(default=0, ge=0)
    size: int = Field(default=20, ge=1, le=1000)
    sort: List[Tuple[str, str]] = Field(default_factory=list)

    @field_validator("sort")
    @classmethod
    def validate_sort(cls, v):
        for field_path, direction in v:
            if direction not in (SORT_ASC, SORT_DESC):
                raise ValueError(f"Unsupported sort direction: {direction}")
        return v

    def touches_ciphertext(self) -> bool:
        return any(field_path.split(".")[0] == SENSITIVE_FIELD for field_path, _ in self.sort)

    @property
    def offset(self) -> int:
        return self.page * self.size


class Page(BaseModel, Generic[D]):
    content: List[D]
    page: int
    size: int
    total: int

    @property
    def total_pages(self) -> int:
        return ceil(self.total / self.size) if self.size else 0

    @property
    def has_next(self) -> bool:
        return self.page + 1 < self.total_pages


class RotationReport(BaseModel):
    """Outcome of one rotation or rehash sweep."""
    document: str
    scanned: int = 0
    rotated: int = 0
    skipped: int = 0
    conflicts: int = 0
    failed: int = 0
    failures: List[Tuple[str, str]] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.failed == 0
