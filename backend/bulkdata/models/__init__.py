"""ORM models."""

from bulkdata.models.base import Base
from bulkdata.models.export_job import ExportJob

__all__ = ["Base", "ExportJob"]
