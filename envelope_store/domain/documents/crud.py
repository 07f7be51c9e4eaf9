"""Sensitive CRUD Service.

Generic create/read/update/delete over documents whose ``sensitive`` payload
is stored only as an ``Encrypted`` envelope. The service is parameterized by
a ``DocumentCodec`` that knows how to assemble the storage shape from a
decrypted document plus its envelope (including any searchable hashes) and
the domain shape back from a stored document plus its decrypted payload.

It also owns the secret rotation sweep: every stored document whose envelope
references a non-current encryption secret is decrypted with the old secret
and re-encrypted with the current one, in place.
"""
import logging
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Protocol,
    Type,
    TypeVar,
    Union,
)

from pydantic import BaseModel, ValidationError

from envelope_store.domain.documents.criteria import Criteria
from envelope_store.domain.documents.models import Page, PageRequest, RotationReport
from envelope_store.domain.documents.ports import Document, DocumentStore
from envelope_store.domain.encryption.models import Encrypted
from envelope_store.domain.encryption.service import EncryptionService
from envelope_store.domain.result import Err, Ok, Result
from envelope_store.domain.secrets.service import SecretService
from envelope_store.errors import (
    DocumentDatabaseError,
    DocumentEncryptionError,
    DocumentNotFoundError,
    EncryptionError,
    InvalidCriteriaError,
    PostCommitSideEffectError,
)

logger = logging.getLogger(__name__)

S = TypeVar("S")
D = TypeVar("D", bound=BaseModel)
E = TypeVar("E", bound=BaseModel)
R = TypeVar("R")


class DocumentCodec(Protocol[S, D, E]):
    """Per-entity conversion between the decrypted and the encrypted shape."""

    document_name: str
    sensitive_type: Any
    encrypted_type: Type[E]

    async def do_encrypt(self, document: D, encrypted_sensitive: Encrypted[S]) -> Result[E, EncryptionError]:
        ...

    async def do_decrypt(self, encrypted: E, decrypted_sensitive: S) -> Result[D, EncryptionError]:
        ...


class SensitiveCrudService(Generic[S, D, E]):
    def __init__(
        self,
        codec: DocumentCodec[S, D, E],
        store: DocumentStore,
        encryption_service: EncryptionService,
        encryption_secret_service: SecretService,
    ):
        self.codec = codec
        self.store = store
        self.encryption_service = encryption_service
        self.encryption_secret_service = encryption_secret_service
        self._last_successful_rotation: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.codec.document_name

    @property
    def last_successful_rotation(self) -> Optional[datetime]:
        return self._last_successful_rotation

    # --- conversion ---

    async def encrypt(self, document: D) -> Result[E, EncryptionError]:
        """Wrap ``document.sensitive`` and let the codec assemble the storage shape."""
        wrapped = await self.encryption_service.wrap(document.sensitive)
        if wrapped.is_err():
            return wrapped
        return await self.codec.do_encrypt(document, wrapped.unwrap())

    async def decrypt(self, encrypted: E) -> Result[D, EncryptionError]:
        """Unwrap ``encrypted.sensitive`` and let the codec assemble the domain shape."""
        unwrapped = await self.encryption_service.unwrap(encrypted.sensitive, self.codec.sensitive_type)
        if unwrapped.is_err():
            return unwrapped
        return await self.codec.do_decrypt(encrypted, unwrapped.unwrap())

    def load(self, raw: Document) -> Result[E, DocumentDatabaseError]:
        try:
            return Ok(self.codec.encrypted_type.model_validate(raw))
        except ValidationError as e:
            return Err(DocumentDatabaseError(
                f"Stored {self.name} {raw.get('id')} does not match the expected shape", e
            ))

    def dump(self, encrypted: E) -> Document:
        return encrypted.model_dump(mode="json")

    async def _db(self, action: str, operation: Awaitable[R]) -> Result[R, DocumentDatabaseError]:
        try:
            return Ok(await operation)
        except Exception as e:
            return Err(DocumentDatabaseError(f"Failed to {action}: {e}", e))

    # --- reads ---

    async def exists_by_id(self, doc_id: str) -> Result[bool, DocumentDatabaseError]:
        logger.debug(f"Checking if {self.name} with ID {doc_id} exists")
        return await self._db(f"check existence of {self.name} with ID {doc_id}", self.store.exists_by_id(doc_id))

    async def find_encrypted_by_id(
        self, doc_id: str
    ) -> Result[E, Union[DocumentNotFoundError, DocumentDatabaseError]]:
        """Fetch the stored form without decrypting it."""
        logger.debug(f"Getting encrypted {self.name} with ID: {doc_id}")

        raw = await self._db(f"fetch {self.name} by ID {doc_id}", self.store.find_by_id(doc_id))
        if raw.is_err():
            return raw
        if raw.unwrap() is None:
            return Err(DocumentNotFoundError(f"No {self.name} with ID {doc_id} found"))
        return self.load(raw.unwrap())

    async def find_by_id(
        self, doc_id: str
    ) -> Result[D, Union[DocumentNotFoundError, DocumentDatabaseError, DocumentEncryptionError]]:
        logger.debug(f"Finding {self.name} by ID: {doc_id}")

        encrypted = await self.find_encrypted_by_id(doc_id)
        if encrypted.is_err():
            return encrypted
        return (await self.decrypt(encrypted.unwrap())).map_err(
            lambda e: DocumentEncryptionError(f"Failed to decrypt {self.name} with ID {doc_id}: {e.message}", e)
        )

    async def find_by_id_or_none(
        self, doc_id: str
    ) -> Result[Optional[D], Union[DocumentDatabaseError, DocumentEncryptionError]]:
        found = await self.find_by_id(doc_id)
        if found.is_err() and isinstance(found.unwrap_err(), DocumentNotFoundError):
            return Ok(None)
        return found

    async def find_encrypted_one(self, criteria: Criteria) -> Result[Optional[E], DocumentDatabaseError]:
        """Find the first stored document matching plaintext/hashed criteria, still encrypted."""
        if criteria.touches_ciphertext():
            return Err(InvalidCriteriaError(f"Criteria for {self.name} must not reference encrypted fields"))

        raw = await self._db(f"find {self.name}", self.store.find_one(criteria))
        if raw.is_err():
            return raw
        if raw.unwrap() is None:
            return Ok(None)
        return self.load(raw.unwrap())

    async def exists(self, criteria: Criteria) -> Result[bool, DocumentDatabaseError]:
        if criteria.touches_ciphertext():
            return Err(InvalidCriteriaError(f"Criteria for {self.name} must not reference encrypted fields"))
        return await self._db(f"check existence of {self.name}", self.store.exists(criteria))

    async def find_all(
        self, criteria: Optional[Criteria] = None
    ) -> AsyncIterator[Result[D, Union[DocumentDatabaseError, DocumentEncryptionError]]]:
        """Lazily decrypt every stored document.

        Each item is a Result so one undecryptable document does not end the
        stream. A store failure yields a final ``Err`` and stops iteration.
        """
        logger.debug(f"Finding all {self.name}s")

        if criteria is not None and criteria.touches_ciphertext():
            yield Err(InvalidCriteriaError(f"Criteria for {self.name} must not reference encrypted fields"))
            return

        try:
            async for raw in self.store.find_all(criteria):
                encrypted = self.load(raw)
                if encrypted.is_err():
                    yield encrypted
                    continue
                yield (await self.decrypt(encrypted.unwrap())).map_err(
                    lambda e, i=raw.get("id"): DocumentEncryptionError(
                        f"Failed to decrypt {self.name} with ID {i}: {e.message}", e
                    )
                )
        except Exception as e:
            yield Err(DocumentDatabaseError(f"Failed to find all {self.name}s: {e}", e))

    async def find_all_paginated(
        self,
        page_request: PageRequest,
        criteria: Optional[Criteria] = None,
    ) -> Result[Page[D], Union[DocumentDatabaseError, DocumentEncryptionError]]:
        """Return one page of decrypted documents plus the total count of matches."""
        logger.debug(
            f"Finding {self.name}: page {page_request.page}, size: {page_request.size}, sort: {page_request.sort}"
        )

        if page_request.touches_ciphertext():
            return Err(InvalidCriteriaError(f"Cannot sort {self.name}s by encrypted fields"))
        if criteria is not None and criteria.touches_ciphertext():
            return Err(InvalidCriteriaError(f"Criteria for {self.name} must not reference encrypted fields"))

        count = await self._db(f"count {self.name}s with given criteria", self.store.count(criteria))
        if count.is_err():
            return count

        raws = await self._db(f"fetch page of {self.name}s", self.store.find_page(criteria, page_request))
        if raws.is_err():
            return raws

        content: List[D] = []
        for raw in raws.unwrap():
            encrypted = self.load(raw)
            if encrypted.is_err():
                return encrypted
            decrypted = await self.decrypt(encrypted.unwrap())
            if decrypted.is_err():
                return Err(DocumentEncryptionError(
                    f"Failed to decrypt {self.name}: {decrypted.unwrap_err().message}", decrypted.unwrap_err()
                ))
            content.append(decrypted.unwrap())

        return Ok(Page(content=content, page=page_request.page, size=page_request.size, total=count.unwrap()))

    # --- writes ---

    async def save(
        self, document: D
    ) -> Result[D, Union[DocumentEncryptionError, DocumentDatabaseError, PostCommitSideEffectError]]:
        """Encrypt and upsert ``document``; return the decrypted form of what was stored."""
        logger.debug(f"Saving {self.name} with id {document.id}")

        encrypted = await self.encrypt(document)
        if encrypted.is_err():
            return Err(DocumentEncryptionError(
                f"Failed to encrypt {self.name}: {encrypted.unwrap_err().message}", encrypted.unwrap_err()
            ))

        saved = await self._db(f"save {self.name}", self.store.save(self.dump(encrypted.unwrap())))
        if saved.is_err():
            return saved

        logger.debug(f"Successfully saved {self.name}")
        return await self._decrypt_after_commit(saved.unwrap())

    async def save_all(
        self, documents: List[D]
    ) -> Result[List[D], Union[DocumentEncryptionError, DocumentDatabaseError, PostCommitSideEffectError]]:
        logger.debug(f"Saving all {self.name}s")

        dumped: List[Document] = []
        for document in documents:
            encrypted = await self.encrypt(document)
            if encrypted.is_err():
                return Err(DocumentEncryptionError(
                    f"Failed to encrypt {self.name}: {encrypted.unwrap_err().message}", encrypted.unwrap_err()
                ))
            dumped.append(self.dump(encrypted.unwrap()))

        saved = await self._db(f"save {self.name}s", self.store.save_all(dumped))
        if saved.is_err():
            return saved

        decrypted: List[D] = []
        for raw in saved.unwrap():
            result = await self._decrypt_after_commit(raw)
            if result.is_err():
                return result
            decrypted.append(result.unwrap())
        return Ok(decrypted)

    async def _decrypt_after_commit(self, raw: Document) -> Result[D, PostCommitSideEffectError]:
        encrypted = self.load(raw)
        if encrypted.is_ok():
            encrypted = await self.decrypt(encrypted.unwrap())
        return encrypted.map_err(lambda e: PostCommitSideEffectError(
            f"Failed to decrypt {self.name} after it was saved to the database successfully: {e.message}", e
        ))

    async def delete_by_id(self, doc_id: str) -> Result[None, DocumentDatabaseError]:
        logger.debug(f"Deleting {self.name} by ID {doc_id}")
        return await self._db(f"delete {self.name} by ID {doc_id}", self.store.delete_by_id(doc_id))

    async def delete_all(self) -> Result[None, DocumentDatabaseError]:
        logger.debug(f"Deleting all {self.name}s")
        return await self._db(f"delete all {self.name}s", self.store.delete_all())

    # --- rotation ---

    async def rotate_secret(self) -> Result[RotationReport, Union[DocumentEncryptionError, DocumentDatabaseError]]:
        """Re-encrypt every document whose envelope references a non-current secret.

        Per-document failures are logged with the document id, counted in the
        report and skipped; the sweep continues. The sweep itself fails only
        when no current secret is available or the store cannot be streamed.
        Documents rewritten concurrently are left alone and counted as
        conflicts.
        """
        logger.info(f"Rotating encryption secret for {self.name}s")

        current = await self.encryption_secret_service.get_current_secret()
        if current.is_err():
            return Err(DocumentEncryptionError(
                f"Failed to retrieve current encryption secret: {current.unwrap_err().message}",
                current.unwrap_err(),
            ))

        async def envelope_is_stale(encrypted: E) -> Result[bool, Any]:
            # Re-read per document so a pointer advanced mid-sweep is picked up
            latest = await self.encryption_secret_service.get_current_secret()
            return latest.map(lambda secret: encrypted.sensitive.secret_key != secret.key)

        report = await self.resave_stale("encryption secret", envelope_is_stale)
        if report.is_ok() and report.unwrap().success:
            self._last_successful_rotation = report.unwrap().finished_at
        return report

    async def resave_stale(
        self,
        reason: str,
        is_stale: Callable[[E], Awaitable[Result[bool, Any]]],
    ) -> Result[RotationReport, DocumentDatabaseError]:
        """Stream every stored document and re-save those ``is_stale`` flags.

        Re-saving decrypts with the secret the envelope references and
        encrypts again through the codec, so envelopes and searchable hashes
        both end up under the current secrets. Documents are processed one
        at a time in store iteration order.
        """
        report = RotationReport(document=self.name, started_at=datetime.now(timezone.utc))

        try:
            async for raw in self.store.find_all():
                report.scanned += 1
                await self._resave_if_stale(raw, reason, is_stale, report)
        except Exception as e:
            logger.error(f"Sweep of {self.name}s aborted after {report.scanned} documents: {e}")
            return Err(DocumentDatabaseError(f"Failed to stream {self.name}s: {e}", e))

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Sweep of {self.name}s for stale {reason} finished: scanned={report.scanned} "
            f"rotated={report.rotated} skipped={report.skipped} conflicts={report.conflicts} failed={report.failed}"
        )
        return Ok(report)

    async def _resave_if_stale(
        self,
        raw: Document,
        reason: str,
        is_stale: Callable[[E], Awaitable[Result[bool, Any]]],
        report: RotationReport,
    ) -> None:
        doc_id = str(raw.get("id"))

        def fail(error: Any) -> None:
            report.failed += 1
            report.failures.append((doc_id, error.code))
            logger.error(f"Failed to rotate {self.name} {doc_id}: {error.message}")

        encrypted = self.load(raw)
        if encrypted.is_err():
            return fail(encrypted.unwrap_err())
        old_key = encrypted.unwrap().sensitive.secret_key

        stale = await is_stale(encrypted.unwrap())
        if stale.is_err():
            return fail(stale.unwrap_err())
        if not stale.unwrap():
            report.skipped += 1
            logger.debug(f"Skipping {self.name} {doc_id}: {reason} did not change")
            return None

        logger.debug(f"Rotating {reason} of {self.name} {doc_id}")
        decrypted = await self.decrypt(encrypted.unwrap())
        if decrypted.is_err():
            return fail(decrypted.unwrap_err())

        reencrypted = await self.encrypt(decrypted.unwrap())
        if reencrypted.is_err():
            return fail(reencrypted.unwrap_err())

        replaced = await self._db(
            f"replace {self.name} {doc_id}",
            self.store.replace_if(self.dump(reencrypted.unwrap()), expected_secret_key=old_key),
        )
        if replaced.is_err():
            return fail(replaced.unwrap_err())

        if replaced.unwrap():
            report.rotated += 1
        else:
            report.conflicts += 1
            logger.warning(f"{self.name} {doc_id} changed during rotation, leaving the newer version in place")
        return None
