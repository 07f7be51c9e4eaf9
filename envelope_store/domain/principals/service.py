"""Principal persistence on top of the sensitive CRUD service.

Emails and identity provider principal ids live inside the encrypted
payload. Next to the envelope, the stored document carries searchable
hashes of them, so lookups compare hashes server side and only the matching
document is ever decrypted.
"""
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Union

from envelope_store.domain.documents.criteria import Criteria, CriteriaBuilder
from envelope_store.domain.documents.crud import SensitiveCrudService
from envelope_store.domain.documents.models import Page, PageRequest, RotationReport
from envelope_store.domain.documents.ports import DocumentStore
from envelope_store.domain.encryption.models import Encrypted
from envelope_store.domain.encryption.service import EncryptionService
from envelope_store.domain.hashing.service import HashService, SearchableHash
from envelope_store.domain.principals.models import (
    KIND_USER,
    PASSWORD_IDENTITY,
    EncryptedPrincipal,
    Guest,
    HashedIdentity,
    PasswordIdentity,
    Role,
    SensitivePrincipalData,
    SensitiveUserData,
    User,
    UserIdentities,
)
from envelope_store.domain.result import Err, Ok, Result
from envelope_store.domain.secrets.service import SecretService
from envelope_store.errors import (
    DocumentConflictError,
    DocumentDatabaseError,
    DocumentEncryptionError,
    DocumentHashError,
    DocumentNotFoundError,
    EncryptionError,
    InvalidCriteriaError,
    ObjectMappingError,
    PostCommitSideEffectError,
)

logger = logging.getLogger(__name__)

PrincipalDoc = Union[User, Guest]
FindError = Union[DocumentNotFoundError, DocumentDatabaseError, DocumentEncryptionError, DocumentHashError]
SaveError = Union[DocumentEncryptionError, DocumentDatabaseError, PostCommitSideEffectError]


class PrincipalCodec:
    """Converts between User/Guest and the shared EncryptedPrincipal shape."""

    document_name = "Principal"
    sensitive_type = SensitivePrincipalData
    encrypted_type = EncryptedPrincipal

    def __init__(self, hash_service: HashService):
        self.hash_service = hash_service

    async def do_encrypt(
        self, document: PrincipalDoc, encrypted_sensitive: Encrypted[Any]
    ) -> Result[EncryptedPrincipal, EncryptionError]:
        email: Optional[SearchableHash] = None
        identities: Dict[str, HashedIdentity] = {}

        if isinstance(document, User):
            hashed_email = await self.hash_service.hash_searchable_hmac_sha256(document.sensitive.email)
            if hashed_email.is_err():
                return Err(ObjectMappingError(
                    "Failed to encrypt user because no searchable hash of email could be generated",
                    hashed_email.unwrap_err(),
                ))
            email = hashed_email.unwrap()

            if document.sensitive.identities.password is not None:
                identities[PASSWORD_IDENTITY] = HashedIdentity()

            for provider, identity in document.sensitive.identities.providers.items():
                hashed_id = await self.hash_service.hash_searchable_hmac_sha256(identity.principal_id)
                if hashed_id.is_err():
                    return Err(ObjectMappingError(
                        f"Failed to encrypt user because no searchable hash of principal ID "
                        f"could be generated for provider {provider}",
                        hashed_id.unwrap_err(),
                    ))
                identities[provider] = HashedIdentity(principal_id=hashed_id.unwrap())

        return Ok(EncryptedPrincipal(
            id=document.id,
            kind=document.kind,
            email=email,
            identities=identities,
            roles=sorted(document.roles, key=lambda r: r.value),
            groups=sorted(document.groups),
            created_at=document.created_at,
            last_active=document.last_active,
            sensitive=encrypted_sensitive,
        ))

    async def do_decrypt(
        self, encrypted: EncryptedPrincipal, decrypted_sensitive: Any
    ) -> Result[PrincipalDoc, EncryptionError]:
        if decrypted_sensitive.kind != encrypted.kind:
            return Err(ObjectMappingError(
                f"Principal {encrypted.id} is stored as {encrypted.kind} "
                f"but its payload is {decrypted_sensitive.kind}"
            ))

        principal_type = User if encrypted.kind == KIND_USER else Guest
        return Ok(principal_type(
            id=encrypted.id,
            sensitive=decrypted_sensitive,
            roles=set(encrypted.roles),
            groups=set(encrypted.groups),
            created_at=encrypted.created_at,
            last_active=encrypted.last_active,
        ))


class PrincipalService:
    """Stores users and guests and answers hashed-field lookups for them."""

    def __init__(
        self,
        store: DocumentStore,
        encryption_service: EncryptionService,
        encryption_secret_service: SecretService,
        hash_service: HashService,
    ):
        self.hash_service = hash_service
        self.codec = PrincipalCodec(hash_service)
        self.crud: SensitiveCrudService[Any, PrincipalDoc, EncryptedPrincipal] = SensitiveCrudService(
            self.codec, store, encryption_service, encryption_secret_service
        )
        self._last_successful_rehash: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.crud.name

    @property
    def last_successful_rehash(self) -> Optional[datetime]:
        return self._last_successful_rehash

    async def save(self, principal: PrincipalDoc) -> Result[PrincipalDoc, SaveError]:
        return await self.crud.save(principal)

    async def find_by_id(self, principal_id: str) -> Result[PrincipalDoc, FindError]:
        return await self.crud.find_by_id(principal_id)

    async def delete_by_id(self, principal_id: str) -> Result[None, DocumentDatabaseError]:
        return await self.crud.delete_by_id(principal_id)

    async def rotate_secret(self) -> Result[RotationReport, Union[DocumentEncryptionError, DocumentDatabaseError]]:
        return await self.crud.rotate_secret()

    async def find_user_by_id(self, user_id: str) -> Result[User, FindError]:
        found = await self.crud.find_by_id(user_id)
        if found.is_ok() and not isinstance(found.unwrap(), User):
            return Err(DocumentNotFoundError(f"No user with ID {user_id} found"))
        return found

    async def _hash(self, value: str, label: str) -> Result[SearchableHash, DocumentHashError]:
        hashed = await self.hash_service.hash_searchable_hmac_sha256(value)
        return hashed.map_err(lambda e: DocumentHashError(f"Failed to hash {label}: {e.message}", e))

    async def _find_user(self, criteria: Criteria, description: str) -> Result[User, FindError]:
        encrypted = await self.crud.find_encrypted_one(criteria)
        if encrypted.is_err():
            return encrypted
        if encrypted.unwrap() is None:
            return Err(DocumentNotFoundError(f"No user found with {description}"))

        return (await self.crud.decrypt(encrypted.unwrap())).map_err(
            lambda e: DocumentEncryptionError(f"Failed to decrypt user data: {e.message}", e)
        )

    async def find_by_email(self, email: str) -> Result[User, FindError]:
        """Find a user by email through the hashed email field only."""
        logger.debug("Fetching user by email")

        hashed = await self._hash(email, "email")
        if hashed.is_err():
            return hashed

        criteria = (
            CriteriaBuilder()
            .is_equal_to("kind", KIND_USER)
            .is_equal_to("email.data", hashed.unwrap().data)
            .build()
        )
        return await self._find_user(criteria, "the given email")

    async def exists_by_email(self, email: str) -> Result[bool, Union[DocumentDatabaseError, DocumentHashError]]:
        logger.debug("Checking if email already exists")

        hashed = await self._hash(email, "email")
        if hashed.is_err():
            return hashed

        return await self.crud.exists(CriteriaBuilder().is_equal_to("email.data", hashed.unwrap().data).build())

    async def find_by_provider_identity(self, provider: str, principal_id: str) -> Result[User, FindError]:
        logger.debug(f"Finding user by provider identity of {provider}")

        if not provider or "." in provider:
            return Err(InvalidCriteriaError(f"Invalid identity provider name: {provider!r}"))

        hashed = await self._hash(principal_id, "principal ID")
        if hashed.is_err():
            return hashed

        criteria = (
            CriteriaBuilder()
            .is_equal_to("kind", KIND_USER)
            .is_equal_to(f"identities.{provider}.principal_id.data", hashed.unwrap().data)
            .build()
        )
        return await self._find_user(criteria, f"provider identity {provider}")

    def find_all_by_role(
        self, role: Role
    ) -> AsyncIterator[Result[PrincipalDoc, Union[DocumentDatabaseError, DocumentEncryptionError]]]:
        logger.debug(f"Finding all principals with role {role.value}")
        return self.crud.find_all(CriteriaBuilder().is_in("roles", [role.value]).build())

    def find_all_by_group(
        self, group: str
    ) -> AsyncIterator[Result[PrincipalDoc, Union[DocumentDatabaseError, DocumentEncryptionError]]]:
        logger.debug(f"Finding all principals with group membership {group}")
        return self.crud.find_all(CriteriaBuilder().is_in("groups", [group]).build())

    async def find_users_paginated(
        self,
        page_request: PageRequest,
        email: Optional[str] = None,
        roles: Optional[Iterable[Role]] = None,
        groups: Optional[Iterable[str]] = None,
        created_at_before: Optional[datetime] = None,
        created_at_after: Optional[datetime] = None,
        last_active_before: Optional[datetime] = None,
        last_active_after: Optional[datetime] = None,
        identity_keys: Optional[Iterable[str]] = None,
    ) -> Result[Page[PrincipalDoc], Union[DocumentDatabaseError, DocumentEncryptionError, DocumentHashError]]:
        """Page through users filtered on plaintext and hashed fields."""
        hashed_email: Optional[str] = None
        if email is not None:
            hashed = await self._hash(email, "email")
            if hashed.is_err():
                return hashed
            hashed_email = hashed.unwrap().data

        criteria = (
            CriteriaBuilder()
            .is_equal_to("kind", KIND_USER)
            .is_equal_to("email.data", hashed_email)
            .is_in("roles", [r.value for r in roles] if roles else None)
            .is_in("groups", groups)
            .compare("created_at", created_at_before, created_at_after)
            .compare("last_active", last_active_before, last_active_after)
            .exists_any(identity_keys, "identities")
            .build()
        )
        return await self.crud.find_all_paginated(page_request, criteria)

    async def convert_guest_to_user(
        self,
        guest_id: str,
        email: str,
        password_hash: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Result[User, Union[FindError, DocumentConflictError, SaveError]]:
        """Turn a guest into a user in place, keeping its id, groups and sessions."""
        logger.debug(f"Converting guest {guest_id} to user")

        found = await self.crud.find_by_id(guest_id)
        if found.is_err():
            return found
        guest = found.unwrap()
        if not isinstance(guest, Guest):
            return Err(DocumentConflictError(f"Principal {guest_id} is not a guest"))

        taken = await self.exists_by_email(email)
        if taken.is_err():
            return taken
        if taken.unwrap():
            return Err(DocumentConflictError("Email is already taken"))

        identities = UserIdentities(
            password=PasswordIdentity(password_hash=password_hash) if password_hash else None
        )
        user = User(
            id=guest.id,
            sensitive=SensitiveUserData(
                name=name or guest.sensitive.name,
                email=email,
                identities=identities,
                sessions=dict(guest.sensitive.sessions),
            ),
            roles={Role.USER},
            groups=set(guest.groups),
            created_at=guest.created_at,
        )
        return await self.crud.save(user)

    async def rehash_searchable_fields(self) -> Result[RotationReport, Union[DocumentHashError, DocumentDatabaseError]]:
        """Recompute searchable hashes written under a non-current hash secret.

        Independent of ``rotate_secret``. Until this sweep has visited a
        document, hash lookups for it miss whenever the hash secret has
        advanced since it was written.
        """
        logger.info(f"Rehashing searchable fields of {self.name}s")

        current = await self.hash_service.hash_secret_service.get_current_secret()
        if current.is_err():
            return Err(DocumentHashError(
                f"Failed to retrieve current hash secret: {current.unwrap_err().message}", current.unwrap_err()
            ))

        async def hashes_are_stale(encrypted: EncryptedPrincipal) -> Result[bool, Any]:
            latest = await self.hash_service.hash_secret_service.get_current_secret()
            return latest.map(lambda secret: any(i != secret.key for i in encrypted.hash_secret_ids()))

        report = await self.crud.resave_stale("hash secret", hashes_are_stale)
        if report.is_ok() and report.unwrap().success:
            self._last_successful_rehash = report.unwrap().finished_at
        return report
