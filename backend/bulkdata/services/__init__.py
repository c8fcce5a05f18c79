"""
Services module initialization.
"""

from bulkdata.services.export_job_service import ExportJobService
from bulkdata.services.export_job_repository import ExportJobRepository
from bulkdata.services.job_registry import job_registry
from bulkdata.services.resource_stream import ResourceStream
from bulkdata.services.type_filter import compile_filter

__all__ = [
    "ExportJobService",
    "ExportJobRepository",
    "job_registry",
    "ResourceStream",
    "compile_filter",
]
