from types import SimpleNamespace
from typing import List

import pytest
from pydantic import BaseModel, Field

from envelope_store.adapters.memory_store.stores import MemoryDocumentStore, MemorySecretStore
from envelope_store.domain.documents.crud import SensitiveCrudService
from envelope_store.domain.documents.models import EncryptedSensitiveDocument, SensitiveDocument
from envelope_store.domain.encryption.models import Encrypted
from envelope_store.domain.encryption.service import EncryptionService
from envelope_store.domain.hashing.service import HashService
from envelope_store.domain.principals.service import PrincipalService
from envelope_store.domain.result import Ok
from envelope_store.domain.secrets.service import encryption_secret_service, hash_secret_service


class NoteContent(BaseModel):
    title: str
    body: str


class Note(SensitiveDocument[NoteContent]):
    tags: List[str] = Field(default_factory=list)


class EncryptedNote(EncryptedSensitiveDocument[NoteContent]):
    tags: List[str] = Field(default_factory=list)
    sensitive: Encrypted[NoteContent]


class NoteCodec:
    document_name = "Note"
    sensitive_type = NoteContent
    encrypted_type = EncryptedNote

    async def do_encrypt(self, document: Note, encrypted_sensitive):
        return Ok(EncryptedNote(id=document.id, tags=sorted(document.tags), sensitive=encrypted_sensitive))

    async def do_decrypt(self, encrypted: EncryptedNote, decrypted_sensitive):
        return Ok(Note(id=encrypted.id, tags=list(encrypted.tags), sensitive=decrypted_sensitive))


@pytest.fixture
def secret_store():
    return MemorySecretStore()


@pytest.fixture
def encryption_secrets(secret_store):
    return encryption_secret_service(secret_store, slug="test", fix_secret=False)


@pytest.fixture
def hash_secrets(secret_store):
    return hash_secret_service(secret_store, slug="test", fix_secret=False)


@pytest.fixture
def encryption_service(encryption_secrets, secret_store):
    return EncryptionService(encryption_secrets, secret_store)


@pytest.fixture
def hash_service(hash_secrets):
    return HashService(hash_secrets)


@pytest.fixture
def note_store():
    return MemoryDocumentStore("notes")


@pytest.fixture
def notes():
    return SimpleNamespace(Note=Note, NoteContent=NoteContent, EncryptedNote=EncryptedNote)


@pytest.fixture
def note_crud(note_store, encryption_service, encryption_secrets):
    return SensitiveCrudService(NoteCodec(), note_store, encryption_service, encryption_secrets)


@pytest.fixture
def principal_store():
    return MemoryDocumentStore("principals")


@pytest.fixture
def principal_service(principal_store, encryption_service, encryption_secrets, hash_service):
    return PrincipalService(principal_store, encryption_service, encryption_secrets, hash_service)
