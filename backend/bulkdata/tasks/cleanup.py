"""Stale export job cleanup.

Jobs (and with them their manifests and download links) live for
``MAX_EXPORT_AGE`` minutes. A sweep started with the application deletes the
older ones every ``CLEANUP_INTERVAL_SECONDS``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from bulkdata.core.config import settings
from bulkdata.middleware.prometheus import record_export_event
from bulkdata.services.export_job_service import ExportJobService


logger = logging.getLogger(__name__)


async def cleanup_expired_jobs(
    service: Optional[ExportJobService] = None,
    now: Optional[datetime] = None,
) -> int:
    """Delete every job older than the maximum export age. Returns the count."""
    service = service or ExportJobService()
    job_ids = await service.repository.list_expired(settings.MAX_EXPORT_AGE, now=now)
    for job_id in job_ids:
        await service.delete(job_id)
        record_export_event("expired")
        logger.info("Deleted expired export job %s", job_id)
    return len(job_ids)


async def run_cleanup_loop(interval: Optional[float] = None) -> None:
    """Run the sweep forever. Failures are logged and the loop keeps going."""
    interval = settings.CLEANUP_INTERVAL_SECONDS if interval is None else interval
    service = ExportJobService()
    while True:
        try:
            await cleanup_expired_jobs(service)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Export job cleanup failed")
        await asyncio.sleep(interval)
