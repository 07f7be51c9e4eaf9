import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from envelope_store.domain.secrets.rotation import SecretRotationService
from envelope_store.settings import settings

logger = logging.getLogger(__name__)


async def rotation_worker(
    service: SecretRotationService,
    shutdown_event: asyncio.Event,
    interval: Optional[float] = None,
):
    """Background worker that runs a full key rotation every ``interval`` seconds.

    The first cycle runs one interval after start, and a cycle is skipped while
    the current secret is younger than ``interval``, so restarts and sibling
    workers sharing the secret store do not rotate again.
    """
    interval = interval if interval is not None else settings.rotation_poll_interval_sec
    logger.info(f"Starting rotation worker (interval={interval}s)...")

    while not shutdown_event.is_set():
        # Wait before each cycle, waking early on shutdown
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

        try:
            last_update = await service.last_secret_update()
            if last_update is not None and datetime.now(timezone.utc) - last_update < timedelta(seconds=interval):
                logger.info(f"Rotation worker: secrets last rotated at {last_update.isoformat()}, skipping this cycle")
                continue

            result = await service.rotate_keys()
            if result.is_err():
                logger.info(f"Rotation worker: {result.unwrap_err().message}, skipping this cycle")
            else:
                status = result.unwrap()
                failed = [name for name, info in status.infos.items() if not info.success]
                if failed:
                    logger.warning(f"Rotation worker: cycle completed with failures in {failed}")
                else:
                    logger.info("Rotation worker: cycle completed")
        except Exception as e:
            logger.error(f"Error in rotation worker loop: {e}", exc_info=True)

    logger.info("Rotation worker stopped.")
