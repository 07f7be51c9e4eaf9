"""Secret Rotation Service.

Coordinates one full rotation run: advance every secret category, then
re-encrypt every document collection under the new encryption secret, then
re-hash searchable fields under the new hash secret. Only one run may be in
progress at a time.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from envelope_store.domain.documents.models import RotationReport
from envelope_store.domain.result import Err, Ok, Result
from envelope_store.domain.secrets.service import SecretService
from envelope_store.errors import EnvelopeStoreError, RotationOngoingError

logger = logging.getLogger(__name__)

Sweep = Callable[[], Awaitable[Result[RotationReport, EnvelopeStoreError]]]


class RotationInformation(BaseModel):
    last_rotation: Optional[datetime] = None
    success: bool = True
    error: Optional[str] = None
    report: Optional[RotationReport] = None


class RotationStatus(BaseModel):
    ongoing: bool
    infos: Dict[str, RotationInformation] = Field(default_factory=dict)


class SecretRotationService:
    def __init__(
        self,
        secret_services: Sequence[SecretService],
        sweeps: Optional[Dict[str, Sweep]] = None,
    ):
        """Create a coordinator.

        Args:
            secret_services: categories to advance at the start of each run
            sweeps: named rotation or rehash sweeps, run in insertion order
        """
        self.secret_services: List[SecretService] = list(secret_services)
        self.sweeps: Dict[str, Sweep] = dict(sweeps or {})
        self._ongoing = asyncio.Lock()
        self._infos: Dict[str, RotationInformation] = {}

    @property
    def ongoing(self) -> bool:
        return self._ongoing.locked()

    def get_rotation_status(self) -> RotationStatus:
        return RotationStatus(ongoing=self.ongoing, infos=dict(self._infos))

    async def last_secret_update(self) -> Optional[datetime]:
        """Creation time of the newest current secret, as seen through the secret store."""
        latest: Optional[datetime] = None
        for service in self.secret_services:
            if (await service.get_current_secret()).is_err():
                continue
            updated = service.get_last_update()
            if updated is not None and (latest is None or updated > latest):
                latest = updated
        return latest

    async def rotate_keys(self) -> Result[RotationStatus, RotationOngoingError]:
        """Run a full rotation. Individual failures are recorded, not raised."""
        if self._ongoing.locked():
            logger.warning("Refusing to start key rotation: a rotation is already in progress")
            return Err(RotationOngoingError("A key rotation is already in progress"))

        async with self._ongoing:
            logger.info("Starting key rotation")

            for service in self.secret_services:
                await self._rotate_secret(service)

            for name, sweep in self.sweeps.items():
                await self._run_sweep(name, sweep)

            failed = [name for name, info in self._infos.items() if not info.success]
            if failed:
                logger.warning(f"Key rotation finished with failures in: {', '.join(failed)}")
            else:
                logger.info("Key rotation finished successfully")

        return Ok(self.get_rotation_status())

    async def _rotate_secret(self, service: SecretService) -> None:
        rotated = await service.rotate_secret()
        if rotated.is_err():
            error = rotated.unwrap_err()
            logger.error(f"Failed to rotate {service.name}: {error.message}")
            self._record_failure(service.name, error.message)
            return
        self._infos[service.name] = RotationInformation(last_rotation=datetime.now(timezone.utc))

    async def _run_sweep(self, name: str, sweep: Sweep) -> None:
        try:
            result = await sweep()
        except Exception as e:
            logger.error(f"Sweep {name} raised unexpectedly: {e}", exc_info=True)
            self._record_failure(name, str(e))
            return

        if result.is_err():
            error = result.unwrap_err()
            logger.error(f"Sweep {name} failed: {error.message}")
            self._record_failure(name, error.message)
            return

        report = result.unwrap()
        previous = self._infos.get(name)
        self._infos[name] = RotationInformation(
            last_rotation=report.finished_at if report.success else (previous.last_rotation if previous else None),
            success=report.success,
            error=None if report.success else f"{report.failed} documents failed",
            report=report,
        )

    def _record_failure(self, name: str, message: str) -> None:
        previous = self._infos.get(name)
        self._infos[name] = RotationInformation(
            last_rotation=previous.last_rotation if previous else None,
            success=False,
            error=message,
        )
