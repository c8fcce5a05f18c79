from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

from pydantic import Field, field_validator

from bulkdata.core.config import settings
from bulkdata.core.fhir_datetime import to_bool, uint
from bulkdata.schemas.base import BaseSchema, FhirSchema


class JobStatus(str, Enum):
    UNDEFINED = "UNDEFINED"
    STARTED = "STARTED"
    EXPORTED = "EXPORTED"


class ManifestFile(FhirSchema):
    """
    One output, error or deleted entry of a manifest. Output files of an
    export organized by Patient or Group hold several types and have none.
    """

    type: Optional[str] = None
    count: int
    url: str


class ManifestLink(FhirSchema):
    relation: str
    url: str


class Manifest(FhirSchema):
    """The completed result of an export job."""

    transaction_time: str
    request: str
    requires_access_token: bool
    output_organized_by: Optional[str] = None
    output: List[ManifestFile] = Field(default_factory=list)
    error: List[ManifestFile] = Field(default_factory=list)
    deleted: List[ManifestFile] = Field(default_factory=list)
    link: Optional[List[ManifestLink]] = None

    # [output_start, output_end, error_start, error_end, deleted_start, deleted_end]
    # of every saved page; never sent to clients
    pages: List[List[int]] = Field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"pages"})


class SimParams(BaseSchema):
    """
    Simulation knobs and retrieval capsule fields.

    The same capsule format is used in two places: as the ``{sim}`` path
    segment in front of ``/fhir`` (kick-off knobs chosen by the client) and
    as the segment in front of every manifest file URL (the parameters needed
    to rebuild that file).
    """

    # kick-off knobs
    err: str = ""
    dur: int = Field(default_factory=lambda: settings.DEFAULT_WAIT_TIME)
    m: int = 1
    page: int = Field(default_factory=lambda: settings.DEFAULT_PAGE_SIZE)
    tlt: int = Field(default_factory=lambda: settings.DEFAULT_TOKEN_LIFETIME)
    del_: int = Field(default=0, alias="del")
    stu: Any = 4
    extended: bool = False
    file_error: str = Field(default="", alias="fileError")

    # file capsule fields
    id: str = ""
    secure: bool = False
    offset: int = 0
    limit: int = 0
    stratum: Optional[str] = None

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }

    @field_validator("err", "file_error", "id", mode="before")
    @classmethod
    def _text(cls, v):
        return str(v or "").strip()

    @field_validator("dur", mode="before")
    @classmethod
    def _duration(cls, v):
        return uint(v, settings.DEFAULT_WAIT_TIME)

    @field_validator("m", mode="before")
    @classmethod
    def _multiplier(cls, v):
        return uint(v, 1)

    @field_validator("page", mode="before")
    @classmethod
    def _page_size(cls, v):
        return uint(v, settings.DEFAULT_PAGE_SIZE) or settings.DEFAULT_PAGE_SIZE

    @field_validator("tlt", mode="before")
    @classmethod
    def _token_lifetime(cls, v):
        return uint(v, settings.DEFAULT_TOKEN_LIFETIME)

    @field_validator("del_", "offset", "limit", mode="before")
    @classmethod
    def _unsigned(cls, v):
        return uint(v, 0)

    @field_validator("extended", "secure", mode="before")
    @classmethod
    def _flag(cls, v):
        return to_bool(v)

    @classmethod
    def from_capsule(cls, data: Optional[Dict[str, Any]]) -> "SimParams":
        return cls.model_validate(data or {})


class ExportJobState(BaseSchema):
    """
    Complete persisted state of one export job.

    The whole object is written to the job store on every save, so every
    field that the build, the status poll or a download needs lives here.
    """

    id: str
    created_at: float = Field(description="Creation time, epoch seconds")
    job_status: JobStatus = JobStatus.UNDEFINED

    # simulation
    simulated_error: str = ""
    simulated_export_duration: int = Field(default_factory=lambda: settings.DEFAULT_WAIT_TIME)
    database_multiplier: int = 1
    simulate_deleted_pct: int = 0
    access_token_lifetime: int = Field(default_factory=lambda: settings.DEFAULT_TOKEN_LIFETIME)
    file_error: str = ""
    ignore_transient_error: bool = False
    extended: bool = False

    # request
    stu: int = 4
    resources_per_file: int = Field(default_factory=lambda: settings.DEFAULT_PAGE_SIZE)
    resource_types: List[str] = Field(default_factory=list)
    fhir_elements: List[str] = Field(default_factory=list)
    request_start: float = 0
    secure: bool = False
    output_format: str = "ndjson"
    group: str = ""
    request: str = ""
    base_url: str = ""
    since: str = ""
    system_level: bool = False
    patients: List[str] = Field(default_factory=list)
    type_filter: str = ""
    organize_output_by: str = ""
    allow_partial_manifests: bool = False
    kickoff_errors: List[Dict[str, Any]] = Field(default_factory=list)

    # progress
    progress: float = 0
    status_message: str = "Please wait..."
    manifest: Optional[Manifest] = None
    partial_manifest: Optional[Manifest] = None
    too_many_files: bool = False

    @property
    def filter_expression(self) -> str:
        """The ``_filter`` entry of the ``_typeFilter`` parameter, if any."""
        values = parse_qs(self.type_filter, keep_blank_values=True).get("_filter") or [""]
        return values[0]

    def to_state(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=False)
