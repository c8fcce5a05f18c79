"""
Pydantic Schemas
================

Job state, manifest and simulation parameter schemas.
"""

from bulkdata.schemas.base import BaseSchema, FhirSchema
from bulkdata.schemas.export_job import (
    ExportJobState,
    JobStatus,
    Manifest,
    ManifestFile,
    SimParams,
)

__all__ = [
    "BaseSchema",
    "FhirSchema",
    "ExportJobState",
    "JobStatus",
    "Manifest",
    "ManifestFile",
    "SimParams",
]
