"""
Job Registry
============

Process-wide map of live export jobs to their cancellation tokens.

A job is "live" while its id is registered. Saving job state is only
allowed for live jobs, which keeps a cancelled job from being written back
by a build step that was already in flight. The registry is in-memory only,
so builds do not survive a restart.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional


logger = logging.getLogger(__name__)


class BuildCancelled(Exception):
    """Raised inside a build when its job has been cancelled."""


@dataclass
class CancellationToken:
    job_id: str
    event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self.event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.event.is_set():
            raise BuildCancelled(self.job_id)

    def cancel(self) -> None:
        self.event.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()


class JobRegistry:
    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def get(self, job_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(job_id)

    def register(self, job_id: str) -> CancellationToken:
        """Return the token of a job, creating it on first use."""
        token = self._tokens.get(job_id)
        if token is None:
            token = CancellationToken(job_id=job_id)
            self._tokens[job_id] = token
        return token

    def cancel(self, job_id: str) -> bool:
        """
        Signal cancellation and forget the job. Returns False if the job was
        not registered.
        """
        token = self._tokens.pop(job_id, None)
        if token is None:
            return False
        token.cancel()
        logger.debug("Cancelled export job %s", job_id)
        return True

    def clear(self) -> None:
        for token in list(self._tokens.values()):
            token.cancel()
        self._tokens.clear()


job_registry = JobRegistry()
