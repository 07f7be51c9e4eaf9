"""Document Domain Ports (Interfaces)."""
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from envelope_store.domain.documents.criteria import Criteria
from envelope_store.domain.documents.models import PageRequest

Document = Dict[str, Any]


class DocumentStore(ABC):
    """Abstract Port for one collection of encrypted documents.

    Documents are JSON-compatible dicts keyed by their ``id`` field. A
    single-document write is the atomicity boundary. Implementations raise
    on infrastructure failures; the CRUD service converts those into error
    values.
    """

    @abstractmethod
    async def find_by_id(self, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def exists_by_id(self, doc_id: str) -> bool:
        ...

    @abstractmethod
    async def find_one(self, criteria: Criteria) -> Optional[Document]:
        ...

    @abstractmethod
    async def exists(self, criteria: Criteria) -> bool:
        ...

    @abstractmethod
    async def count(self, criteria: Optional[Criteria] = None) -> int:
        ...

    @abstractmethod
    async def find_page(self, criteria: Optional[Criteria], page_request: PageRequest) -> List[Document]:
        ...

    @abstractmethod
    def find_all(self, criteria: Optional[Criteria] = None) -> AsyncIterator[Document]:
        """Lazily stream every matching document in store iteration order."""
        ...

    @abstractmethod
    async def save(self, document: Document) -> Document:
        """Upsert by id."""
        ...

    @abstractmethod
    async def save_all(self, documents: List[Document]) -> List[Document]:
        ...

    @abstractmethod
    async def replace_if(self, document: Document, expected_secret_key: str) -> bool:
        """Replace the stored document only if its envelope still references ``expected_secret_key``.

        Returns False when the document is gone or was rewritten meanwhile.
        """
        ...

    @abstractmethod
    async def delete_by_id(self, doc_id: str) -> None:
        ...

    @abstractmethod
    async def delete_all(self) -> None:
        ...
