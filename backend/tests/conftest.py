"""Pytest configuration.

Settings are read from the environment when ``bulkdata.core.config`` is
first imported, so the test defaults (a temporary dataset folder and job
store) are set here before anything from the package is imported.
"""

import os
import tempfile
from pathlib import Path


_TMP_DIR = Path(tempfile.mkdtemp(prefix="bulkdata-tests-"))

os.environ["APP_ENV"] = "test"
os.environ.setdefault("SECRET_KEY", "dev-test-secret")
os.environ["DATASET_DIR"] = str(_TMP_DIR / "data")
os.environ["JOBS_DATABASE_URL"] = f"sqlite+aiosqlite:///{(_TMP_DIR / 'jobs.db').as_posix()}"
# pydantic-settings parses List[str] from env/.env as JSON; force a safe value
# to keep tests import-safe regardless of local developer .env contents.
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["THROTTLE_MS"] = "0"
os.environ["STATUS_THROTTLE_MS"] = "0"

import asyncio
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport, Response
from sqlalchemy import create_engine, delete

from bulkdata.core.config import settings
from bulkdata.main import app
from bulkdata.models.base import Base
from bulkdata.models.export_job import ExportJob
from bulkdata.scripts.generate_dataset import create_dataset
from bulkdata.services.job_registry import job_registry
from bulkdata.services.manifest import encode_capsule


# 100 Patients, 100 Encounters, 200 Observations, 10 DocumentReferences,
# 5 Practitioners and 2 Groups
DATASET_COUNTS = {
    "DocumentReference": 10,
    "Encounter": 100,
    "Group": 2,
    "Observation": 200,
    "Patient": 100,
    "Practitioner": 5,
}

FHIR_JSON = {
    "Accept": "application/fhir+json",
    "Prefer": "respond-async",
}


def _sync_jobs_url() -> str:
    return settings.JOBS_DATABASE_URL.replace("sqlite+aiosqlite://", "sqlite://", 1)


@pytest.fixture(scope="session", autouse=True)
def dataset() -> Path:
    """Synthetic R4 dataset and an empty job store for the test session."""
    path = settings.dataset_path(4)
    create_dataset(path, patients=100, observations_per_patient=2, seed=1)

    engine = create_engine(_sync_jobs_url())
    Base.metadata.create_all(engine)
    engine.dispose()
    return path


@pytest.fixture(autouse=True)
def empty_job_store():
    yield
    engine = create_engine(_sync_jobs_url())
    with engine.begin() as conn:
        conn.execute(delete(ExportJob))
    engine.dispose()


@pytest_asyncio.fixture
async def registry():
    """The process-wide job registry, with running builds stopped afterwards."""
    yield job_registry
    job_registry.clear()
    # let cancelled builds unwind before the loop closes
    for _ in range(5):
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def client(registry) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def sim_path(**knobs) -> str:
    """The ``/{sim}/fhir`` prefix for the given simulation knobs."""
    return f"/{encode_capsule(knobs)}/fhir"


async def kick_off(
    client: AsyncClient,
    path: str = "/$export",
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    **knobs,
) -> Response:
    knobs.setdefault("dur", 0)
    return await client.get(
        sim_path(**knobs) + path,
        params=params,
        headers={**FHIR_JSON, **(headers or {})},
    )


async def wait_for_status(
    client: AsyncClient,
    location: str,
    headers: Optional[dict] = None,
    attempts: int = 500,
) -> Response:
    """Poll the status location until it stops answering 202."""
    for _ in range(attempts):
        resp = await client.get(location, headers=headers)
        if resp.status_code != 202:
            return resp
        await asyncio.sleep(0.01)
    raise AssertionError(f"{location} kept answering 202")


async def run_export(client: AsyncClient, path: str = "/$export", **kwargs) -> Response:
    """Kick off an export and return the final status response."""
    resp = await kick_off(client, path, **kwargs)
    assert resp.status_code == 202, resp.text
    return await wait_for_status(
        client,
        resp.headers["Content-Location"],
        headers=kwargs.get("headers"),
    )
