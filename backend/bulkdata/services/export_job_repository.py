"""
Export Job Repository
=====================

Persistence of export job state in the job store.

Writes are gated on the job registry: a job that is no longer registered
(cancelled, deleted, or started by a previous process) is never written,
so a stray save from a build that is winding down cannot bring a cancelled
job back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkdata.core.database import async_session_factory
from bulkdata.models.export_job import ExportJob
from bulkdata.schemas.export_job import ExportJobState, JobStatus
from bulkdata.services.job_registry import JobRegistry, job_registry


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExportJobRepository:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        registry: JobRegistry = job_registry,
    ):
        self.session_factory = session_factory
        self.registry = registry

    async def save(self, state: ExportJobState, keep: Sequence[str] = ()) -> bool:
        """
        Write the complete job snapshot. Returns False (and writes nothing)
        if the job is not registered.

        Fields named in ``keep`` are taken from the stored snapshot instead,
        for writers that do not own them.
        """
        if state.id not in self.registry:
            logger.debug("Skipping save of unregistered export job %s", state.id)
            return False

        async with self.session_factory() as session:
            job = await session.get(ExportJob, state.id)
            if job is None:
                job = ExportJob(
                    id=state.id,
                    created_at=datetime.fromtimestamp(state.created_at, tz=timezone.utc),
                )
                session.add(job)
            data = state.to_state()
            if keep and job.state:
                for name in keep:
                    if name in job.state:
                        data[name] = job.state[name]
            job.status = JobStatus(data["job_status"]).value
            job.state = data

            # the job may have been cancelled while the row was loaded
            if state.id not in self.registry:
                logger.debug("Dropping save of cancelled export job %s", state.id)
                return False
            await session.commit()
        return True

    async def load(self, job_id: str) -> Optional[ExportJobState]:
        if not job_id:
            return None
        async with self.session_factory() as session:
            job = await session.get(ExportJob, job_id)
            if job is None:
                return None
            return ExportJobState.model_validate(job.state)

    async def delete(self, job_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(delete(ExportJob).where(ExportJob.id == job_id))
            await session.commit()
            return bool(result.rowcount)

    async def list_expired(self, max_age_minutes: float, now: Optional[datetime] = None) -> List[str]:
        """Ids of the jobs created more than ``max_age_minutes`` ago."""
        cutoff = (now or _utcnow()) - timedelta(minutes=max_age_minutes)
        async with self.session_factory() as session:
            result = await session.execute(select(ExportJob.id).where(ExportJob.created_at < cutoff))
            return list(result.scalars().all())
