"""
Export Job Service
==================

Drives the lifecycle of bulk data export jobs:

- kick-off: validate the request, persist the job and start the build;
- build: count the matching resources and fill in the manifest in the
  background;
- status: answer polls until the manifest can be handed out;
- download: rebuild one manifest file from its URL capsule and stream it;
- cancel: stop the build and forget the job.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from bulkdata.core import outcomes
from bulkdata.core.config import settings
from bulkdata.core.database import get_dataset_engine
from bulkdata.core.fhir_datetime import InvalidDateTimeError, fhir_datetime, to_bool, uint
from bulkdata.core.outcomes import OutcomeError, create_operation_outcome
from bulkdata.core.security import get_granted_scopes, has_access_to_resource_type
from bulkdata.middleware.prometheus import record_export_build, record_export_event
from bulkdata.models.base import generate_job_id
from bulkdata.schemas.export_job import ExportJobState, JobStatus, Manifest, SimParams
from bulkdata.services.export_job_repository import ExportJobRepository
from bulkdata.services.job_registry import BuildCancelled, CancellationToken, JobRegistry, job_registry
from bulkdata.services.manifest import ManifestBuilder, get_manifest_page
from bulkdata.services.query_builder import STRATIFIERS, QueryBuilder, make_list
from bulkdata.services.resource_catalog import get_available_resource_types, SYNTHETIC_RESOURCE_TYPES
from bulkdata.services.resource_stream import ResourceStream
from bulkdata.services.transforms import (
    EXPORT_TYPES,
    SUPPORTED_FORMATS,
    compress,
    negotiate_encoding,
    prepend_file_header,
    translate_rows,
)
from bulkdata.services.type_filter import FilterSyntaxError, compile_filter, iter_filter_expressions


logger = logging.getLogger(__name__)

RE_ELEMENT = re.compile(r"^([a-zA-Z]+)(\.([a-zA-Z]+))?$")
RE_PATIENT_PREFIX = re.compile(r"^/?Patient/", re.IGNORECASE)

# Fields written by the status poll while a build may still be running, and
# the ones written by the build. Each writer keeps the other's fields.
POLL_OWNED_FIELDS = ("ignore_transient_error", "job_status")
BUILD_OWNED_FIELDS = ("progress", "status_message", "manifest", "partial_manifest", "too_many_files")


def _now() -> float:
    return time.time()


def _js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


# -----------------------------------------------------------------------------
# Request parameters
# -----------------------------------------------------------------------------

@dataclass
class ExportParameters:
    """
    Kick-off parameters, taken either from the query string (GET) or from
    a Parameters resource (POST). Repeated parameters become lists.
    """

    values: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        value = self.values.get(name)
        if value is None or value == "" or value == []:
            return default
        return value

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    @classmethod
    def from_query(cls, items: Sequence[tuple]) -> "ExportParameters":
        values: Dict[str, Any] = {}
        for key, value in items:
            if key in values:
                current = values[key]
                values[key] = (current if isinstance(current, list) else [current]) + [value]
            else:
                values[key] = value
        return cls(values)

    @classmethod
    def from_parameters(cls, body: Dict[str, Any]) -> "ExportParameters":
        collected: Dict[str, List[Any]] = {}
        for param in body.get("parameter") or []:
            if not isinstance(param, dict) or "name" not in param:
                continue
            value_key = next((k for k in param if k.startswith("value")), None)
            if value_key is not None:
                collected.setdefault(param["name"], []).append(param[value_key])
        return cls({k: v[0] if len(v) == 1 else v for k, v in collected.items()})


def _as_list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


def _as_query_string(value: Any) -> str:
    return "&".join(str(v) for v in _as_list(value) if v)


def _first(value: Any) -> str:
    items = _as_list(value)
    return str(items[0]).strip() if items else ""


@dataclass
class KickoffRequest:
    method: str
    params: ExportParameters
    sim: SimParams
    base_url: str
    request_url: str
    system_level: bool = False
    group: str = ""
    authorization: Optional[str] = None
    lenient: bool = False


@dataclass
class StatusResult:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    manifest: Optional[Manifest] = None


@dataclass
class DownloadResult:
    body: AsyncIterator[bytes]
    headers: Dict[str, str] = field(default_factory=dict)
    media_type: str = "application/fhir+ndjson"


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------

class ExportJobService:
    def __init__(
        self,
        repository: Optional[ExportJobRepository] = None,
        registry: JobRegistry = job_registry,
    ):
        self.registry = registry
        self.repository = repository or ExportJobRepository(registry=registry)

    # ------------------------------------------------------------------ create

    @staticmethod
    def new_state(sim: SimParams) -> ExportJobState:
        return ExportJobState(
            id=generate_job_id(),
            created_at=_now(),
            simulated_error=sim.err,
            simulated_export_duration=sim.dur,
            database_multiplier=sim.m,
            resources_per_file=sim.page,
            access_token_lifetime=sim.tlt,
            simulate_deleted_pct=sim.del_,
            file_error=sim.file_error,
            extended=sim.extended,
        )

    async def kick_off(self, request: KickoffRequest) -> ExportJobState:
        """
        Validate a kick-off request and start the export.

        Raises:
            OutcomeError: For every rejected request (no job is started)
        """
        state = self.new_state(request.sim)
        params = request.params
        state.secure = bool(request.authorization)
        scopes = get_granted_scopes(request.authorization)

        if state.simulated_error == "file_generation_failed":
            raise outcomes.file_generation_failed()

        stu = uint(request.sim.stu, 4)
        if stu < 2 or stu > 4:
            raise OutcomeError(f'Invalid FHIR version "{request.sim.stu}". Must be 2, 3 or 4', 400)
        state.stu = stu

        state.group = str(request.group or "").strip()
        state.system_level = bool(request.system_level)

        if "_includeAssociatedData" in params:
            self._warn_or_raise(
                state,
                request.lenient,
                'The "_includeAssociatedData" parameter is not supported by this server',
            )

        patient_param = params.get("patient")
        if patient_param and request.method != "POST":
            raise OutcomeError('The "patient" parameter is only available in POST requests', 400)

        state.type_filter = _as_query_string(params.get("_typeFilter", ""))
        for expression in iter_filter_expressions(state.type_filter):
            try:
                compile_filter(expression)
            except FilterSyntaxError as exc:
                self._warn_or_raise(state, request.lenient, str(exc))
                state.type_filter = ""
                break

        organize_output_by = _first(params.get("organizeOutputBy"))
        if organize_output_by not in STRATIFIERS:
            raise OutcomeError("Unsupported organizeOutputBy parameter value", 400)
        state.organize_output_by = organize_output_by

        available = await self._available_types(state.stu)
        state.resource_types = self._resolve_resource_types(
            params.get("_type", ""), available, state.secure, scopes
        )
        state.patients = self._resolve_patients(patient_param, state.system_level)

        since = params.get("_since", "")
        if since:
            try:
                state.since = fhir_datetime(since, no_future=True)
            except InvalidDateTimeError as exc:
                raise outcomes.invalid_since_parameter(since) from exc

        state.fhir_elements = self._resolve_elements(params.get("_elements", ""), available)

        output_format = str(_as_list(params.get("_outputFormat", "application/fhir+ndjson"))[0])
        if output_format not in SUPPORTED_FORMATS:
            raise OutcomeError(f'The "{output_format}" _outputFormat is not supported', 400)
        state.output_format = SUPPORTED_FORMATS[output_format]
        state.allow_partial_manifests = to_bool(_first(params.get("allowPartialManifests")))

        state.request_start = _now()
        state.request = request.request_url
        state.base_url = request.base_url.rstrip("/")
        state.job_status = JobStatus.STARTED.value

        token = self.registry.register(state.id)
        await self.repository.save(state)

        token.task = asyncio.create_task(self._run_build(state, token))
        record_export_event("started")
        logger.info(
            "Started export job %s (types=%s, stu=%s, multiplier=%s)",
            state.id,
            ",".join(state.resource_types),
            state.stu,
            state.database_multiplier,
        )
        return state

    @staticmethod
    def _warn_or_raise(state: ExportJobState, lenient: bool, message: str) -> None:
        outcome = create_operation_outcome(message)
        if not lenient:
            raise OutcomeError(message, 400)
        state.kickoff_errors.append(outcome)

    @staticmethod
    async def _available_types(stu: int) -> List[str]:
        try:
            return await get_available_resource_types(stu)
        except SQLAlchemyError as exc:
            logger.error("Failed to read resource types of dataset r%s: %s", stu, exc)
            raise OutcomeError(f"The dataset for FHIR version {stu} is not available", 500) from exc

    @staticmethod
    def _resolve_resource_types(
        requested_param: Any,
        available: List[str],
        secure: bool,
        scopes: list,
    ) -> List[str]:
        requested: List[str] = []
        for item in _as_list(requested_param):
            requested.extend(make_list(item))
        if not requested:
            requested = list(available)

        exportable = list(available) + [t for t in SYNTHETIC_RESOURCE_TYPES if t not in available]
        for resource_type in requested:
            if resource_type not in exportable:
                raise OutcomeError(
                    f'The requested resource type "{resource_type}" is not available on this server',
                    400,
                )

        if not secure:
            return requested

        allowed = [
            t for t in requested
            if t in SYNTHETIC_RESOURCE_TYPES or has_access_to_resource_type(scopes, t)
        ]
        if not allowed:
            raise OutcomeError("Could not authorize access to any resources", 400)
        return allowed

    @staticmethod
    def _resolve_patients(patient_param: Any, system_level: bool) -> List[str]:
        references = [p for p in _as_list(patient_param) if p]
        if system_level and references:
            raise OutcomeError(
                "The patient parameter is not available in system-level export requests",
                400,
            )

        out: List[str] = []
        for ref in references:
            value = ref.get("reference") if isinstance(ref, dict) else ref
            if value:
                out.append(RE_PATIENT_PREFIX.sub("", str(value)))
        return out

    @staticmethod
    def _resolve_elements(elements_param: Any, available: List[str]) -> List[str]:
        elements: List[str] = []
        for item in _as_list(elements_param):
            elements.extend(make_list(item))

        for element in elements:
            match = RE_ELEMENT.match(element)
            if not match:
                raise OutcomeError(
                    'The _elements parameter should contain entries of the form "[element]" '
                    f'or "[ResourceType].[element]". Found "{element}".',
                    400,
                )
            if match.group(3) and match.group(1) not in available:
                raise OutcomeError(
                    f'The _elements parameter includes a resource type "{match.group(1)}" '
                    "which is not available on this server.",
                    400,
                )
        return elements

    # ------------------------------------------------------------------- build

    async def _run_build(self, state: ExportJobState, token: CancellationToken) -> None:
        started = time.monotonic()
        try:
            manifest = await self.build_manifest(state, token)
        except (BuildCancelled, asyncio.CancelledError):
            logger.debug("Build of export job %s was cancelled", state.id)
            record_export_build("cancelled", time.monotonic() - started)
            return
        except Exception:
            logger.exception("Build of export job %s failed", state.id)
            record_export_build("failed", time.monotonic() - started)
            await self._save_failed_build(state)
            return

        outcome = "completed" if manifest is not None else "too_many_files"
        record_export_build(outcome, time.monotonic() - started)

    async def _save_failed_build(self, state: ExportJobState) -> None:
        """Finish the job without a manifest so that status polls report the failure."""
        state.progress = 100
        state.manifest = None
        state.status_message = "Failed to build export manifest."
        try:
            await self.repository.save(state, keep=POLL_OWNED_FIELDS)
        except SQLAlchemyError:
            logger.exception("Failed to save the state of export job %s", state.id)

    async def _save_from_build(self, state: ExportJobState, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        await self.repository.save(state, keep=POLL_OWNED_FIELDS)

    async def stratify(self, state: ExportJobState) -> List[Any]:
        """
        Matching physical rows per resource type, or per Patient or Group
        when the output is organized by one.
        """
        builder = QueryBuilder(
            types=state.resource_types,
            since=state.since,
            group=state.group,
            system_level=state.system_level,
            patients=state.patients,
            stratifier=STRATIFIERS[state.organize_output_by],
        )
        async with get_dataset_engine(state.stu).connect() as conn:
            result = await conn.execute(builder.compile_count())
            return result.all()

    def stream_for(self, state: ExportJobState, stratum: str, *, limit: int, offset: int = 0) -> ResourceStream:
        """
        Rows of one stratum: a resource type, or the Patient or Group whose
        resources (of every exported type) make up an organized file.
        """
        stratifier = STRATIFIERS[state.organize_output_by]
        organized = stratifier != "fhir_type"
        return ResourceStream(
            stu=state.stu,
            types=state.resource_types if organized else [stratum],
            limit=limit,
            offset=offset,
            multiplier=state.database_multiplier,
            extended=state.extended,
            group=state.group,
            since=state.since,
            system_level=state.system_level,
            patients=state.patients,
            filter_expression=state.filter_expression or None,
            stratifier=stratifier,
            stratum=stratum if organized else None,
        )

    async def build_manifest(self, state: ExportJobState, token: CancellationToken) -> Optional[Manifest]:
        """
        Fill in the manifest of a started job. Returns None if the job
        produced too many files.

        With partial manifests allowed, every completed manifest page is
        published as ``partial_manifest`` while the build goes on.

        Raises:
            BuildCancelled: If the job is cancelled while building
        """
        organized_by = state.organize_output_by
        builder = ManifestBuilder(
            job_id=state.id,
            base_url=state.base_url,
            transaction_time=datetime.fromtimestamp(state.request_start, tz=timezone.utc).isoformat(timespec="seconds"),
            request=state.request,
            secure=state.secure,
            output_format=state.output_format,
            organized_by=organized_by,
            output_per_page=settings.MANIFEST_PAGE_SIZE if state.allow_partial_manifests else 0,
        )

        for index, outcome in enumerate(state.kickoff_errors):
            message = outcome.get("issue", [{}])[0].get("diagnostics", "")
            builder.add_error(builder.file_name(index + 1, "OperationOutcome"), message)

        rows = await self.stratify(state)
        multiplier = state.database_multiplier
        per_file = state.resources_per_file
        total = sum(row.row_count for row in rows) * multiplier
        throttle = uint(settings.STATUS_THROTTLE_MS, 0) / 1000

        processed = 0
        for stratum, row_count in rows:
            token.raise_if_cancelled()

            stratum = stratum or ""
            if organized_by:
                # resources without a Patient or Group go to files of their own
                label = stratum or "unassociated"
                file_type = None
                file_params = {"stratum": stratum}
                state.status_message = f"currently processing resources of {organized_by} {label}"
            else:
                label = file_type = stratum
                file_params = {}
                state.status_message = f"currently processing {stratum} resources"
            await self._save_from_build(state, token)

            resource_count = row_count * multiplier
            filtered_count = resource_count

            # _filter is evaluated in Python, so the only way to know how many
            # resources pass is to stream and count them
            if state.filter_expression:
                filtered_count = await self.stream_for(state, stratum, limit=resource_count).count_all()

            num_files = math.ceil(filtered_count / per_file) if filtered_count > 0 else 0
            for i in range(num_files):
                if throttle:
                    await asyncio.sleep(throttle)

                file_name = builder.file_name(i + 1, label)

                # Every other file fails if such error is requested
                if state.simulated_error == "some_file_generation_failed" and i % 2:
                    builder.add_error(file_name, f"Failed to export {file_name}")
                else:
                    offset = per_file * i
                    count = min(per_file, filtered_count - offset)

                    # Report a percentage of the resources as deleted
                    if state.simulate_deleted_pct and state.since:
                        deleted = _js_round(count / 100 * state.simulate_deleted_pct)
                        if deleted:
                            builder.add_deleted(file_name, deleted, offset=offset, limit=deleted, **file_params)
                            count -= deleted
                            offset += deleted

                    if count > 0:
                        pages = builder.page_count
                        builder.add_file(file_type, count, file_name, offset=offset, limit=count, **file_params)
                        if builder.page_count > pages:
                            state.partial_manifest = builder.to_manifest()
                            await self._save_from_build(state, token)

                if builder.size() > settings.MAX_FILES:
                    state.too_many_files = True
                    await self._save_from_build(state, token)
                    record_export_event("too_many_files")
                    logger.info("Export job %s exceeded %s files", state.id, settings.MAX_FILES)
                    return None

            # 100% is only reported together with the manifest
            processed += row_count * multiplier
            if total:
                state.progress = min(processed / total * 100, 99)
            await self._save_from_build(state, token)

        if state.allow_partial_manifests:
            builder.save_page()

        state.progress = 100
        state.manifest = builder.to_manifest()
        await self._save_from_build(state, token)
        record_export_event("built")
        logger.info("Built manifest of export job %s with %s files", state.id, builder.size())
        return state.manifest

    # ------------------------------------------------------------------ status

    @staticmethod
    def _waiting_headers(state: ExportJobState) -> Optional[Dict[str, str]]:
        """Progress headers while the client should keep waiting, else None."""
        if state.filter_expression or state.simulated_export_duration <= 0:
            progress = _js_round(state.progress)
            if progress < 100:
                return {
                    "X-Progress": f"{progress}% complete, {state.status_message}",
                    "Retry-After": "1",
                }
            return None

        now = _now()
        end_time = state.request_start + state.simulated_export_duration
        if math.floor(end_time) > math.floor(now):
            pct = _js_round((now - state.request_start) / state.simulated_export_duration * 100)
            return {
                "X-Progress": f"{pct}% complete, {state.status_message}",
                "Retry-After": "2",
            }
        return None

    @staticmethod
    def _expires_header(state: ExportJobState) -> Dict[str, str]:
        expires = datetime.fromtimestamp(
            state.created_at + settings.MAX_EXPORT_AGE * 60, tz=timezone.utc
        )
        return {"Expires": format_datetime(expires, usegmt=True)}

    async def get_status(self, job_id: str, authorization: Optional[str] = None, page: Any = 1) -> StatusResult:
        state = await self.repository.load(job_id)
        if state is None:
            raise outcomes.export_not_found()

        if state.secure and not authorization:
            raise outcomes.not_authorized()

        if state.too_many_files:
            raise outcomes.too_many_files()

        if state.simulated_error == "transient_error" and not state.ignore_transient_error:
            state.ignore_transient_error = True
            await self.repository.save(state, keep=BUILD_OWNED_FIELDS)
            raise outcomes.transient_error()

        if state.job_status == JobStatus.EXPORTED:
            raise outcomes.cancel_completed()

        page_number = uint(page, 1) or 1
        next_url = f"{state.base_url}/fhir/bulkstatus/{state.id}?page={page_number + 1}"

        waiting = self._waiting_headers(state)
        if waiting is not None:
            partial = None
            if state.allow_partial_manifests and state.partial_manifest is not None:
                partial = get_manifest_page(state.partial_manifest, page_number, next_url, complete=False)
            if partial is None:
                return StatusResult(status_code=202, headers=waiting)
            return StatusResult(status_code=200, headers=self._expires_header(state), manifest=partial)

        if state.manifest is None:
            raise outcomes.manifest_build_failed()

        manifest = get_manifest_page(state.manifest, page_number, next_url)
        if manifest is None:
            raise outcomes.manifest_page_not_found(page_number)

        # The job is complete once the last page was handed out
        if not manifest.link:
            state.job_status = JobStatus.EXPORTED.value
            await self.repository.save(state, keep=BUILD_OWNED_FIELDS)
            record_export_event("completed")

        return StatusResult(
            status_code=200,
            headers=self._expires_header(state),
            manifest=manifest,
        )

    # ---------------------------------------------------------------- download

    @staticmethod
    def _files_available(state: ExportJobState) -> bool:
        if state.job_status == JobStatus.EXPORTED:
            return True
        # files listed on a partial manifest page can be fetched right away
        return state.allow_partial_manifests and (
            state.partial_manifest is not None or state.manifest is not None
        )

    async def download(
        self,
        sim: SimParams,
        file_name: str,
        *,
        authorization: Optional[str] = None,
        accept_encoding: Optional[str] = None,
    ) -> DownloadResult:
        state = await self.repository.load(sim.id)
        if state is None:
            raise outcomes.export_deleted()

        organized_by = state.organize_output_by
        if organized_by:
            # one Patient or Group per file, with every exported type in it
            stratum = sim.stratum or ""
            file_types = [t for t in state.resource_types if t not in SYNTHETIC_RESOURCE_TYPES]
        else:
            parts = file_name.split(".")
            stratum = parts[1] if len(parts) > 1 else ""
            file_types = [stratum]

        if state.secure:
            if not authorization:
                raise outcomes.not_authorized()
            if not sim.file_error:
                scopes = get_granted_scopes(authorization)
                for resource_type in file_types:
                    if not has_access_to_resource_type(scopes, resource_type):
                        raise outcomes.permission_denied(resource_type)

        if not self._files_available(state):
            raise outcomes.export_not_completed()

        if state.simulated_error == "file_expired":
            raise outcomes.file_expired()

        if sim.file_error:
            body = json.dumps(create_operation_outcome(sim.file_error)).encode("utf-8")
            return DownloadResult(body=_single_chunk(body), media_type="application/fhir+ndjson")

        export_type = EXPORT_TYPES[state.output_format]
        encoding = negotiate_encoding(accept_encoding)

        headers = {"Content-Disposition": "attachment"}
        if encoding:
            headers["Content-Encoding"] = encoding

        stream = self.stream_for(state, stratum, limit=sim.limit, offset=sim.offset)
        rows = translate_rows(
            stream,
            base_url=state.base_url,
            elements=state.fhir_elements,
            deleted=bool(sim.del_),
            err=state.file_error,
            secure=state.secure,
        )
        if organized_by:
            rows = prepend_file_header(rows, organized_by, STRATIFIERS[organized_by])
        chunks = export_type["encoder"](rows, extended=state.extended)

        return DownloadResult(
            body=compress(chunks, encoding),
            headers=headers,
            media_type=export_type["content_type"],
        )

    # ------------------------------------------------------------------ cancel

    async def cancel(self, job_id: str) -> None:
        state = await self.repository.load(job_id)
        if state is None:
            raise outcomes.cancel_not_found()
        await self.delete(job_id)
        record_export_event("cancelled")
        logger.info("Cancelled export job %s", job_id)

    async def delete(self, job_id: str) -> None:
        """Stop the build (if any) and remove the job."""
        self.registry.cancel(job_id)
        await self.repository.delete(job_id)
