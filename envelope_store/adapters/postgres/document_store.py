"""Postgres document store over a single JSONB table.

All collections share the ``documents`` table and are told apart by the
``collection`` column. Criteria compile to JSONB containment, key-existence
and cast comparisons, so filtering happens in the database. Sessions are
synchronous and driven from worker threads.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import DateTime, cast, or_
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from envelope_store.adapters.postgres.models import DocumentRecord
from envelope_store.domain.documents.criteria import (
    OP_EQ,
    OP_EXISTS_ANY,
    OP_GT,
    OP_IN,
    OP_LT,
    Condition,
    Criteria,
)
from envelope_store.domain.documents.models import SORT_DESC, PageRequest
from envelope_store.domain.documents.ports import Document, DocumentStore

logger = logging.getLogger(__name__)

R = TypeVar("R")

STREAM_BATCH_SIZE = 200


def _json_path(path: List[str]):
    body = DocumentRecord.body
    return body[path[0]] if len(path) == 1 else body[tuple(path)]


def _nested(path: List[str], value: Any) -> Dict[str, Any]:
    for part in reversed(path):
        value = {part: value}
    return value


def _equals(path: List[str], value: Any) -> ColumnElement:
    # Scalar equality or membership in an array field
    return or_(
        DocumentRecord.body.contains(_nested(path, value)),
        DocumentRecord.body.contains(_nested(path, [value])),
    )


def compile_condition(condition: Condition) -> ColumnElement:
    path = condition.path

    if condition.op == OP_EQ:
        return _equals(path, condition.value)
    if condition.op == OP_IN:
        return or_(*[_equals(path, v) for v in condition.value])
    if condition.op == OP_EXISTS_ANY:
        return _json_path(path).has_any(postgresql.array(condition.value))
    if condition.op == OP_LT:
        return cast(_json_path(path).astext, DateTime(timezone=True)) < condition.value
    if condition.op == OP_GT:
        return cast(_json_path(path).astext, DateTime(timezone=True)) > condition.value

    raise ValueError(f"Unknown criteria operator: {condition.op}")


def compile_criteria(criteria: Optional[Criteria]) -> List[ColumnElement]:
    if criteria is None:
        return []
    return [compile_condition(c) for c in criteria.conditions]


class PostgresDocumentStore(DocumentStore):
    def __init__(self, session_factory: sessionmaker, collection: str):
        self._session_factory = session_factory
        self.collection = collection

    async def _run(self, fn: Callable[[Session], R]) -> R:
        def work() -> R:
            with self._session_factory() as db:
                return fn(db)

        return await asyncio.to_thread(work)

    def _query(self, db: Session, criteria: Optional[Criteria] = None):
        return db.query(DocumentRecord).filter(
            DocumentRecord.collection == self.collection,
            *compile_criteria(criteria),
        )

    async def find_by_id(self, doc_id: str) -> Optional[Document]:
        def fn(db: Session) -> Optional[Document]:
            record = db.get(DocumentRecord, (self.collection, doc_id))
            return record.body if record else None

        return await self._run(fn)

    async def exists_by_id(self, doc_id: str) -> bool:
        return await self.find_by_id(doc_id) is not None

    async def find_one(self, criteria: Criteria) -> Optional[Document]:
        def fn(db: Session) -> Optional[Document]:
            record = self._query(db, criteria).order_by(DocumentRecord.id).first()
            return record.body if record else None

        return await self._run(fn)

    async def exists(self, criteria: Criteria) -> bool:
        return await self.find_one(criteria) is not None

    async def count(self, criteria: Optional[Criteria] = None) -> int:
        return await self._run(lambda db: self._query(db, criteria).count())

    async def find_page(self, criteria: Optional[Criteria], page_request: PageRequest) -> List[Document]:
        def fn(db: Session) -> List[Document]:
            query = self._query(db, criteria)
            for field_path, direction in page_request.sort:
                column = _json_path(field_path.split(".")).astext
                query = query.order_by(column.desc() if direction == SORT_DESC else column.asc())
            query = query.order_by(DocumentRecord.id)
            return [r.body for r in query.offset(page_request.offset).limit(page_request.size).all()]

        return await self._run(fn)

    async def find_all(self, criteria: Optional[Criteria] = None) -> AsyncIterator[Document]:
        # Keyset pagination by id, one short-lived session per batch
        last_id: Optional[str] = None
        while True:
            def fn(db: Session, after: Optional[str] = last_id) -> List[Document]:
                query = self._query(db, criteria)
                if after is not None:
                    query = query.filter(DocumentRecord.id > after)
                return [r.body for r in query.order_by(DocumentRecord.id).limit(STREAM_BATCH_SIZE).all()]

            batch = await self._run(fn)
            for document in batch:
                yield document
            if len(batch) < STREAM_BATCH_SIZE:
                return
            last_id = batch[-1]["id"]

    def _upsert(self, db: Session, document: Document) -> None:
        now = datetime.now(timezone.utc)
        stmt = postgresql.insert(DocumentRecord).values(
            collection=self.collection, id=document["id"], body=document, updated_at=now
        )
        db.execute(stmt.on_conflict_do_update(
            index_elements=[DocumentRecord.collection, DocumentRecord.id],
            set_={"body": stmt.excluded.body, "updated_at": stmt.excluded.updated_at},
        ))

    async def save(self, document: Document) -> Document:
        def fn(db: Session) -> Document:
            self._upsert(db, document)
            db.commit()
            return document

        return await self._run(fn)

    async def save_all(self, documents: List[Document]) -> List[Document]:
        def fn(db: Session) -> List[Document]:
            for document in documents:
                self._upsert(db, document)
            db.commit()
            return documents

        return await self._run(fn)

    async def replace_if(self, document: Document, expected_secret_key: str) -> bool:
        def fn(db: Session) -> bool:
            updated = db.query(DocumentRecord).filter(
                DocumentRecord.collection == self.collection,
                DocumentRecord.id == document["id"],
                DocumentRecord.body[("sensitive", "secret_key")].astext == expected_secret_key,
            ).update(
                {DocumentRecord.body: document, DocumentRecord.updated_at: datetime.now(timezone.utc)},
                synchronize_session=False,
            )
            db.commit()
            return updated == 1

        return await self._run(fn)

    async def delete_by_id(self, doc_id: str) -> None:
        def fn(db: Session) -> None:
            db.query(DocumentRecord).filter(
                DocumentRecord.collection == self.collection,
                DocumentRecord.id == doc_id,
            ).delete(synchronize_session=False)
            db.commit()

        await self._run(fn)

    async def delete_all(self) -> None:
        def fn(db: Session) -> None:
            deleted = self._query(db).delete(synchronize_session=False)
            db.commit()
            logger.info(f"Deleted {deleted} documents from {self.collection}")

        await self._run(fn)
