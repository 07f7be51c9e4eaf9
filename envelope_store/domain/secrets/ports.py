"""Secrets Domain Ports (Interfaces)."""
from abc import ABC, abstractmethod
from typing import Optional, Union

from envelope_store.domain.result import Result
from envelope_store.domain.secrets.models import Secret
from envelope_store.errors import SecretNotFoundError, SecretStoreUnavailableError

SecretLookupError = Union[SecretNotFoundError, SecretStoreUnavailableError]


class SecretStore(ABC):
    """Abstract Port for a versioned key repository.

    Entries are addressed by key. A category's current secret is found
    through a pointer entry whose value is the key of the current secret.
    """

    @abstractmethod
    async def get(self, key: str) -> Result[Secret, SecretLookupError]:
        """Return the entry stored under ``key``."""
        ...

    @abstractmethod
    async def put(
        self,
        key: str,
        value: str,
        note: Optional[str] = None,
        algorithm: Optional[str] = None,
    ) -> Result[Secret, SecretStoreUnavailableError]:
        """Create or replace the entry stored under ``key``."""
        ...
