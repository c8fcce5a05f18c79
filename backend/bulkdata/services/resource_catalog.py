"""
Resource catalog.

Read-only view of which resource types a backing dataset contains.
"""

from typing import List

from sqlalchemy import select

from bulkdata.core.database import get_dataset_engine
from bulkdata.services.query_builder import data_table


# Always available, even when the dataset has no rows of that type
SYNTHETIC_RESOURCE_TYPES = ("OperationDefinition",)


async def get_available_resource_types(fhir_version: int) -> List[str]:
    """Distinct resource types present in the dataset for ``fhir_version``."""
    engine = get_dataset_engine(fhir_version)
    stmt = select(data_table.c.fhir_type).distinct().order_by(data_table.c.fhir_type)
    async with engine.connect() as conn:
        result = await conn.execute(stmt)
        return [row[0] for row in result.all()]

