"""Principal Domain Models.

Users and guests share one encrypted document family. The ``kind`` field
discriminates them both in storage and in the decrypted sensitive payload.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, field_validator

from envelope_store.domain.documents.models import EncryptedSensitiveDocument, SensitiveDocument
from envelope_store.domain.encryption.models import Encrypted
from envelope_store.domain.hashing.service import SearchableHash

logger = logging.getLogger(__name__)

KIND_USER = "user"
KIND_GUEST = "guest"

PASSWORD_IDENTITY = "password"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    GUEST = "GUEST"


class SessionInfo(BaseModel):
    refresh_token_id: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    issued_at: datetime = Field(default_factory=_now)


class PasswordIdentity(BaseModel):
    # One-way hash produced by the authentication layer, never the password itself
    password_hash: str


class ProviderIdentity(BaseModel):
    principal_id: str


class UserIdentities(BaseModel):
    password: Optional[PasswordIdentity] = None
    providers: Dict[str, ProviderIdentity] = Field(default_factory=dict)

    @field_validator("providers")
    @classmethod
    def validate_provider_names(cls, v):
        for provider in v:
            if not provider or "." in provider:
                raise ValueError(f"Invalid identity provider name: {provider!r}")
        return v


class UserSecurityDetails(BaseModel):
    email_verified: bool = False
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    failed_login_attempts: int = 0


class SensitiveUserData(BaseModel):
    kind: Literal["user"] = KIND_USER
    name: str
    email: str
    identities: UserIdentities = Field(default_factory=UserIdentities)
    security: UserSecurityDetails = Field(default_factory=UserSecurityDetails)
    sessions: Dict[str, SessionInfo] = Field(default_factory=dict)


class SensitiveGuestData(BaseModel):
    kind: Literal["guest"] = KIND_GUEST
    name: str
    sessions: Dict[str, SessionInfo] = Field(default_factory=dict)


AnySensitivePrincipalData = Union[SensitiveUserData, SensitiveGuestData]

SensitivePrincipalData = Annotated[
    AnySensitivePrincipalData,
    Field(discriminator="kind"),
]


class _PrincipalMixin:
    """Session and activity bookkeeping shared by users and guests."""

    def update_last_active(self):
        logger.debug("Updating last active")
        self.last_active = _now()
        return self

    def add_or_update_session(self, session_id: str, session_info: SessionInfo):
        logger.debug(f"Adding or updating session {session_id}")
        self.sensitive.sessions[session_id] = session_info
        return self

    def remove_session(self, session_id: str):
        logger.debug(f"Removing session {session_id}")
        self.sensitive.sessions.pop(session_id, None)
        return self

    def clear_sessions(self):
        logger.debug("Clearing all sessions")
        self.sensitive.sessions.clear()
        return self


class User(_PrincipalMixin, SensitiveDocument[SensitiveUserData]):
    kind: Literal["user"] = KIND_USER
    sensitive: SensitiveUserData
    roles: Set[Role] = Field(default_factory=lambda: {Role.USER})
    groups: Set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=_now)
    last_active: datetime = Field(default_factory=_now)

    @property
    def email(self) -> str:
        return self.sensitive.email

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles


class Guest(_PrincipalMixin, SensitiveDocument[SensitiveGuestData]):
    kind: Literal["guest"] = KIND_GUEST
    sensitive: SensitiveGuestData
    roles: Set[Role] = Field(default_factory=lambda: {Role.GUEST})
    groups: Set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=_now)
    last_active: datetime = Field(default_factory=_now)


Principal = Annotated[Union[User, Guest], Field(discriminator="kind")]


class HashedIdentity(BaseModel):
    """Identity marker stored next to the envelope. Provider ids are hashed."""
    principal_id: Optional[SearchableHash] = None


class EncryptedPrincipal(EncryptedSensitiveDocument[AnySensitivePrincipalData]):
    kind: Literal["user", "guest"]
    email: Optional[SearchableHash] = None
    identities: Dict[str, HashedIdentity] = Field(default_factory=dict)
    roles: List[Role] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    created_at: datetime
    last_active: datetime
    sensitive: Encrypted[AnySensitivePrincipalData]

    def hash_secret_ids(self) -> Set[str]:
        ids = {self.email.secret_id} if self.email else set()
        ids.update(i.principal_id.secret_id for i in self.identities.values() if i.principal_id)
        return ids
