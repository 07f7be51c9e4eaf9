"""Dependency Injection Module.

Builds the service graph once per process. ``DEV_MODE`` swaps the Postgres
adapters for in-memory ones.
"""
import logging
from functools import lru_cache

from envelope_store.adapters.memory_store.stores import MemoryDocumentStore, MemorySecretStore
from envelope_store.domain.documents.ports import DocumentStore
from envelope_store.domain.encryption.service import EncryptionService
from envelope_store.domain.hashing.service import HashService
from envelope_store.domain.principals.service import PrincipalService
from envelope_store.domain.secrets.ports import SecretStore
from envelope_store.domain.secrets.rotation import SecretRotationService
from envelope_store.domain.secrets.service import (
    SecretService,
    encryption_secret_service,
    hash_secret_service,
)
from envelope_store.settings import settings

logger = logging.getLogger(__name__)

PRINCIPALS_COLLECTION = "principals"


@lru_cache
def get_secret_store() -> SecretStore:
    if settings.dev_mode:
        logger.warning("DEV_MODE: using in-memory secret store, secrets are lost on restart")
        return MemorySecretStore()

    from envelope_store.adapters.postgres.secret_store import PostgresSecretStore
    from envelope_store.adapters.postgres.session import get_session_factory
    return PostgresSecretStore(get_session_factory())


@lru_cache
def get_document_store(collection: str) -> DocumentStore:
    if settings.dev_mode:
        return MemoryDocumentStore(collection)

    from envelope_store.adapters.postgres.document_store import PostgresDocumentStore
    from envelope_store.adapters.postgres.session import get_session_factory
    return PostgresDocumentStore(get_session_factory(), collection)


@lru_cache
def get_encryption_secret_service() -> SecretService:
    return encryption_secret_service(get_secret_store())


@lru_cache
def get_hash_secret_service() -> SecretService:
    return hash_secret_service(get_secret_store())


@lru_cache
def get_encryption_service() -> EncryptionService:
    return EncryptionService(get_encryption_secret_service(), get_secret_store())


@lru_cache
def get_hash_service() -> HashService:
    return HashService(get_hash_secret_service())


@lru_cache
def get_principal_service() -> PrincipalService:
    return PrincipalService(
        get_document_store(PRINCIPALS_COLLECTION),
        get_encryption_service(),
        get_encryption_secret_service(),
        get_hash_service(),
    )


@lru_cache
def get_rotation_service() -> SecretRotationService:
    principals = get_principal_service()
    return SecretRotationService(
        [get_encryption_secret_service(), get_hash_secret_service()],
        {
            f"{principals.name}-encryption": principals.rotate_secret,
            f"{principals.name}-hashes": principals.rehash_searchable_fields,
        },
    )
