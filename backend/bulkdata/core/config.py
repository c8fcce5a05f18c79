"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
All configuration is loaded from environment variables with sensible defaults.
"""

from typing import List, Optional
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Elements that are always kept when the "_elements" parameter is used.
# Can contain:
# - [element] to match against any resourceType
# - [ResourceType].[element] to match within a specified resource type
DEFAULT_REQUIRED_ELEMENTS = [
    "resourceType",
    "id",
    "AllergyIntolerance.patient",
    "AllergyIntolerance.substance",
    "AllergyIntolerance.status",
    "CarePlan.text",
    "CarePlan.subject",
    "CarePlan.status",
    "CarePlan.category",
    "CareTeam.subject",
    "CareTeam.status",
    "CareTeam.category",
    "Condition.patient",
    "Condition.code",
    "Condition.category",
    "Condition.clinicalStatus",
    "Condition.verificationStatus",
    "Device.type",
    "Device.udicarrier",
    "Device.patient",
    "DiagnosticReport.status",
    "DiagnosticReport.category",
    "DiagnosticReport.code",
    "DiagnosticReport.subject",
    "DiagnosticReport.effectiveDateTime",
    "DiagnosticReport.effectivePeriod",
    "DiagnosticReport.issued",
    "DiagnosticReport.performer",
    "DiagnosticReport.result",
    "DiagnosticReport.image",
    "DiagnosticReport.presentedForm",
    "DocumentReference.status",
    "DocumentReference.type",
    "DocumentReference.category",
    "DocumentReference.subject",
    "DocumentReference.content",
    "Encounter.status",
    "Encounter.class",
    "Encounter.type",
    "Encounter.subject",
    "MedicationRequest.status",
    "MedicationRequest.intent",
    "MedicationRequest.medicationCodeableConcept",
    "MedicationRequest.medicationReference",
    "MedicationRequest.subject",
    "MedicationRequest.authoredOn",
    "MedicationRequest.requester",
    "Organization.active",
    "Organization.name",
    "Practitioner.identifier",
    "Practitioner.name",
    "Observation.status",
    "Observation.category",
    "Observation.code",
    "Observation.subject",
    "Observation.valueQuantity",
    "Observation.valueCodeableConcept",
    "Observation.valueString",
    "Observation.valueRange",
    "Observation.valueRatio",
    "Observation.valueSampledData",
    "Observation.valueAttachment",
    "Observation.valueTime",
    "Observation.valueDateTime",
    "Observation.valuePeriod",
    "Observation.DataAbsentReason",
    "Observation.effectiveDateTime",
    "Observation.effectivePeriod",
    "Observation.referenceRange",
    "Immunization.status",
    "Immunization.date",
    "Immunization.vaccineCode",
    "Immunization.patient",
    "Immunization.wasNotGiven",
]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Settings are validated using Pydantic and cached for performance.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    APP_NAME: str = "Bulk Data Server"
    APP_ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Absolute base URL used for status locations and file links. When unset
    # the base URL of the incoming request is used.
    BASE_URL: Optional[str] = None

    CORS_ORIGINS: List[str] = ["*"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from a comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # -------------------------------------------------------------------------
    # Security
    # -------------------------------------------------------------------------
    SECRET_KEY: str = "this-is-our-big-secret"
    JWT_ALGORITHM: str = "HS256"

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------
    # Job store (one row per export job)
    JOBS_DATABASE_URL: str = "sqlite+aiosqlite:///./jobs.db"

    # Folder containing the read-only backing datasets (database.r{N}.db)
    DATASET_DIR: str = "./data"

    # -------------------------------------------------------------------------
    # Export defaults and limits
    # -------------------------------------------------------------------------
    # Max. number of resources (lines) in one file
    DEFAULT_PAGE_SIZE: int = 10000

    # Pretend that we are creating files for this many seconds
    DEFAULT_WAIT_TIME: int = 10

    # Access token lifetime in minutes
    DEFAULT_TOKEN_LIFETIME: int = 15

    # Maximum number of file links in one manifest
    MAX_FILES: int = 150

    # Output files per manifest page when allowPartialManifests is requested
    MANIFEST_PAGE_SIZE: int = 50

    # How many rows the paginator loads into memory per query
    ROWS_PER_CHUNK: int = 500

    # Minutes before a job (and its manifest) expires
    MAX_EXPORT_AGE: int = 30

    # Delay in milliseconds between streamed rows
    THROTTLE_MS: int = 0

    # Delay in milliseconds between manifest entries while building
    STATUS_THROTTLE_MS: int = 0

    # Period of the stale job sweep
    CLEANUP_INTERVAL_SECONDS: float = 5.0

    REQUIRED_ELEMENTS: List[str] = Field(default_factory=lambda: list(DEFAULT_REQUIRED_ELEMENTS))

    @field_validator("REQUIRED_ELEMENTS", mode="before")
    @classmethod
    def parse_required_elements(cls, v):
        """Parse required elements from a comma-separated string or list."""
        if v is None:
            return list(DEFAULT_REQUIRED_ELEMENTS)
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def dataset_path(self, fhir_version: int) -> Path:
        """Location of the backing dataset for the given FHIR version."""
        return Path(self.DATASET_DIR) / f"database.r{fhir_version}.db"

    def dataset_url(self, fhir_version: int) -> str:
        return f"sqlite+aiosqlite:///{self.dataset_path(fhir_version).as_posix()}"

    @property
    def is_test(self) -> bool:
        return self.APP_ENV == "test"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once and reused.

    Returns:
        Settings: Validated settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
