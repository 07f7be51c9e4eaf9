"""Memory Store Implementations."""
import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from envelope_store.domain.documents.criteria import Criteria, comparable, resolve
from envelope_store.domain.documents.models import SORT_DESC, PageRequest
from envelope_store.domain.documents.ports import Document, DocumentStore
from envelope_store.domain.result import Err, Ok, Result
from envelope_store.domain.secrets.models import ALGORITHM_AES, Secret
from envelope_store.domain.secrets.ports import SecretLookupError, SecretStore
from envelope_store.errors import SecretNotFoundError, SecretStoreUnavailableError

logger = logging.getLogger(__name__)


class MemorySecretStore(SecretStore):
    """Dict backed secret store. ``unavailable`` simulates an unreachable backend."""

    def __init__(self):
        self._entries: Dict[str, Secret] = {}
        self.unavailable = False

    async def get(self, key: str) -> Result[Secret, SecretLookupError]:
        if self.unavailable:
            return Err(SecretStoreUnavailableError("Secret store is unavailable"))
        entry = self._entries.get(key)
        if entry is None:
            return Err(SecretNotFoundError(f"No secret stored under {key}"))
        return Ok(entry)

    async def put(
        self,
        key: str,
        value: str,
        note: Optional[str] = None,
        algorithm: Optional[str] = None,
    ) -> Result[Secret, SecretStoreUnavailableError]:
        if self.unavailable:
            return Err(SecretStoreUnavailableError("Secret store is unavailable"))
        entry = Secret(key=key, value=value, note=note, algorithm=algorithm or ALGORITHM_AES)
        self._entries[key] = entry
        return Ok(entry)


def _sort_key(field_path: str):
    path = field_path.split(".")

    def key(document: Document) -> Any:
        value = resolve(document, path)
        # Missing values sort first ascending, matching NULLS FIRST
        if value is None or not isinstance(value, (str, int, float, bool, datetime)):
            return (0, "")
        return (1, comparable(value))

    return key


class MemoryDocumentStore(DocumentStore):
    """In-process document collection for dev mode and tests.

    Documents are deep-copied on the way in and out so callers never share
    state with the store. Operation names listed in ``failing`` raise
    ``ConnectionError``, which is how tests simulate an unreachable store.
    """

    def __init__(self, collection: str = "documents"):
        self.collection = collection
        self._documents: Dict[str, Document] = {}
        self._lock = asyncio.Lock()
        self.failing: Set[str] = set()
        self.writes = 0

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise ConnectionError(f"{self.collection} store unavailable during {operation}")

    def _matching(self, criteria: Optional[Criteria]) -> List[Document]:
        if criteria is None or criteria.is_empty():
            return list(self._documents.values())
        return [d for d in self._documents.values() if criteria.matches(d)]

    async def find_by_id(self, doc_id: str) -> Optional[Document]:
        self._check("find_by_id")
        document = self._documents.get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def exists_by_id(self, doc_id: str) -> bool:
        self._check("exists_by_id")
        return doc_id in self._documents

    async def find_one(self, criteria: Criteria) -> Optional[Document]:
        self._check("find_one")
        matches = self._matching(criteria)
        return copy.deepcopy(matches[0]) if matches else None

    async def exists(self, criteria: Criteria) -> bool:
        self._check("exists")
        return bool(self._matching(criteria))

    async def count(self, criteria: Optional[Criteria] = None) -> int:
        self._check("count")
        return len(self._matching(criteria))

    async def find_page(self, criteria: Optional[Criteria], page_request: PageRequest) -> List[Document]:
        self._check("find_page")
        matches = self._matching(criteria)
        # Stable sorts applied last-key-first give multi-key ordering
        for field_path, direction in reversed(page_request.sort):
            matches.sort(key=_sort_key(field_path), reverse=direction == SORT_DESC)
        page = matches[page_request.offset:page_request.offset + page_request.size]
        return copy.deepcopy(page)

    async def find_all(self, criteria: Optional[Criteria] = None) -> AsyncIterator[Document]:
        self._check("find_all")
        # Snapshot ids so writes during iteration do not disturb the stream
        for doc_id in [d["id"] for d in self._matching(criteria)]:
            self._check("find_all")
            document = self._documents.get(doc_id)
            if document is not None:
                yield copy.deepcopy(document)
            await asyncio.sleep(0)

    async def save(self, document: Document) -> Document:
        self._check("save")
        async with self._lock:
            stored = self._store(document)
        return copy.deepcopy(stored)

    async def save_all(self, documents: List[Document]) -> List[Document]:
        self._check("save_all")
        async with self._lock:
            stored = [self._store(d) for d in documents]
        return copy.deepcopy(stored)

    async def replace_if(self, document: Document, expected_secret_key: str) -> bool:
        self._check("replace_if")
        async with self._lock:
            current = self._documents.get(document["id"])
            if current is None or current["sensitive"]["secret_key"] != expected_secret_key:
                return False
            self._store(document)
        return True

    async def delete_by_id(self, doc_id: str) -> None:
        self._check("delete_by_id")
        async with self._lock:
            self._documents.pop(doc_id, None)

    async def delete_all(self) -> None:
        self._check("delete_all")
        async with self._lock:
            self._documents.clear()

    def _store(self, document: Document) -> Document:
        stored = copy.deepcopy(document)
        stored["updated_at"] = datetime.now(timezone.utc).isoformat()
        self._documents[stored["id"]] = stored
        self.writes += 1
        return stored
