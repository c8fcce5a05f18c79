"""
Database Configuration
======================

SQLAlchemy async setup for the two stores used by the server:

- the job store, a small read/write database holding one row per export job;
- the backing datasets, one read-only SQLite file per FHIR version that the
  export streams resources from.
"""

from typing import Dict

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import NullPool

from bulkdata.core.config import settings
from bulkdata.models.base import Base


# SQLite engines do not pool well across event loops (tests create one loop
# per test), so connections are opened per checkout.
_engine_kwargs = dict(
    echo=settings.DEBUG,
    poolclass=NullPool,
)

engine: AsyncEngine = create_async_engine(settings.JOBS_DATABASE_URL, **_engine_kwargs)

# Session factory
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def create_db_and_tables() -> None:
    """
    Create the job store tables if they don't exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# One engine per FHIR version
_DATASET_ENGINES: Dict[int, AsyncEngine] = {}


def get_dataset_engine(fhir_version: int) -> AsyncEngine:
    """
    Return the (lazily created) engine of the backing dataset for the given
    FHIR version.
    """
    dataset_engine = _DATASET_ENGINES.get(fhir_version)
    if dataset_engine is None:
        dataset_engine = create_async_engine(
            settings.dataset_url(fhir_version),
            **_engine_kwargs,
        )
        _DATASET_ENGINES[fhir_version] = dataset_engine
    return dataset_engine


async def dispose_engines() -> None:
    """Close the job store and every dataset engine."""
    await engine.dispose()
    for dataset_engine in list(_DATASET_ENGINES.values()):
        await dataset_engine.dispose()
    _DATASET_ENGINES.clear()
