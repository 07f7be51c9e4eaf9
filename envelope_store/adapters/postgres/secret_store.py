"""PostgresSecretStore - Database-backed key material and category pointers."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from envelope_store.adapters.postgres.models import SecretEntry
from envelope_store.domain.result import Err, Ok, Result
from envelope_store.domain.secrets.models import ALGORITHM_AES, Secret
from envelope_store.domain.secrets.ports import SecretLookupError, SecretStore
from envelope_store.errors import SecretNotFoundError, SecretStoreUnavailableError

logger = logging.getLogger(__name__)


def _to_secret(entry: SecretEntry) -> Secret:
    return Secret(
        key=entry.key,
        value=entry.value,
        algorithm=entry.algorithm or ALGORITHM_AES,
        note=entry.note,
        created_at=entry.created_at,
    )


class PostgresSecretStore(SecretStore):
    """Entries are never deleted here; retiring old key material is an operator task."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get(self, key: str) -> Optional[Secret]:
        with self._session_factory() as db:
            entry = db.get(SecretEntry, key)
            return _to_secret(entry) if entry else None

    def _put(self, key: str, value: str, note: Optional[str], algorithm: Optional[str]) -> Secret:
        with self._session_factory() as db:
            entry = db.get(SecretEntry, key)
            if entry:
                entry.value = value
                entry.note = note
                entry.algorithm = algorithm
                entry.created_at = datetime.now(timezone.utc)
            else:
                entry = SecretEntry(
                    key=key,
                    value=value,
                    note=note,
                    algorithm=algorithm,
                    created_at=datetime.now(timezone.utc),
                )
                db.add(entry)
            db.commit()
            return _to_secret(entry)

    async def get(self, key: str) -> Result[Secret, SecretLookupError]:
        try:
            secret = await asyncio.to_thread(self._get, key)
        except SQLAlchemyError as e:
            logger.error(f"Secret store lookup failed: {e}")
            return Err(SecretStoreUnavailableError("Secret store is unavailable", e))

        if secret is None:
            return Err(SecretNotFoundError(f"No secret stored under {key}"))
        return Ok(secret)

    async def put(
        self,
        key: str,
        value: str,
        note: Optional[str] = None,
        algorithm: Optional[str] = None,
    ) -> Result[Secret, SecretStoreUnavailableError]:
        try:
            return Ok(await asyncio.to_thread(self._put, key, value, note, algorithm))
        except SQLAlchemyError as e:
            logger.error(f"Secret store write failed for {key}: {e}")
            return Err(SecretStoreUnavailableError("Secret store is unavailable", e))
