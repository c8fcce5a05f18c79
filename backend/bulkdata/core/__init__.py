"""Core module initialization."""

from bulkdata.core.config import settings
from bulkdata.core.database import engine, get_dataset_engine
from bulkdata.core.outcomes import OutcomeError, create_operation_outcome
from bulkdata.core.security import create_access_token, decode_access_token

__all__ = [
    "settings",
    "engine",
    "get_dataset_engine",
    "OutcomeError",
    "create_operation_outcome",
    "create_access_token",
    "decode_access_token",
]
