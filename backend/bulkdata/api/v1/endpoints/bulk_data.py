"""
Bulk Data Endpoints
===================

FHIR bulk data export routes. The router is mounted twice: under ``/fhir``
and under ``/{sim}/fhir``, where ``{sim}`` is a base64url encoded JSON
capsule of simulation knobs (or, for downloads, of file parameters).
"""

from __future__ import annotations

import json
import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from bulkdata.core import outcomes
from bulkdata.core.config import settings
from bulkdata.core.outcomes import OutcomeError
from bulkdata.core.security import InvalidTokenError, decode_access_token
from bulkdata.schemas.export_job import SimParams
from bulkdata.services.export_job_service import (
    ExportJobService,
    ExportParameters,
    KickoffRequest,
)
from bulkdata.services.manifest import decode_capsule


logger = logging.getLogger(__name__)

router = APIRouter()

RE_LENIENT = re.compile(r"\bhandling\s*=\s*lenient\b", re.IGNORECASE)


def get_export_service() -> ExportJobService:
    return ExportJobService()


def get_sim(request: Request) -> SimParams:
    """Simulation knobs from the optional ``{sim}`` path segment."""
    return SimParams.from_capsule(decode_capsule(request.path_params.get("sim")))


def get_base_url(request: Request) -> str:
    return (settings.BASE_URL or str(request.base_url)).rstrip("/")


async def check_auth(request: Request, sim: SimParams = Depends(get_sim)) -> Optional[str]:
    """
    Validate the bearer token when one is sent. Without a token, requests
    against a secure capsule are rejected.
    """
    authorization = request.headers.get("authorization")
    if authorization:
        try:
            token = decode_access_token(authorization)
        except InvalidTokenError as exc:
            raise outcomes.invalid_token(str(exc)) from exc
        if token.error:
            raise OutcomeError(token.error, 401)
    elif sim.secure:
        raise outcomes.authentication_required()
    return authorization


def require_kickoff_headers(request: Request) -> None:
    if request.headers.get("accept") != "application/fhir+json":
        raise outcomes.require_accept_fhir_json()

    prefer = [t.strip() for t in re.split(r"[,;]", request.headers.get("prefer", ""))]
    if "respond-async" not in prefer:
        raise outcomes.require_prefer_async()


async def _read_parameters(request: Request) -> ExportParameters:
    if request.method != "POST":
        return ExportParameters.from_query(request.query_params.multi_items())

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise OutcomeError("The POST body should be a Parameters resource", 400) from exc

    if not isinstance(body, dict) or body.get("resourceType") != "Parameters":
        raise OutcomeError("The POST body should be a Parameters resource", 400)

    return ExportParameters.from_parameters(body)


async def _kick_off(
    request: Request,
    service: ExportJobService,
    *,
    system_level: bool,
    group: str = "",
) -> JSONResponse:
    require_kickoff_headers(request)
    sim = get_sim(request)
    authorization = await check_auth(request, sim)
    params = await _read_parameters(request)

    base_url = get_base_url(request)
    state = await service.kick_off(
        KickoffRequest(
            method=request.method,
            params=params,
            sim=sim,
            base_url=base_url,
            request_url=str(request.url),
            system_level=system_level,
            group=group,
            authorization=authorization,
            lenient=bool(RE_LENIENT.search(request.headers.get("prefer", ""))),
        )
    )

    return outcomes.export_accepted(f"{base_url}/fhir/bulkstatus/{state.id}")


# -----------------------------------------------------------------------------
# Kick-off
# -----------------------------------------------------------------------------

@router.api_route("/$export", methods=["GET", "POST"])
async def system_export(request: Request, service: ExportJobService = Depends(get_export_service)):
    """Export everything, whether or not it belongs to a patient."""
    return await _kick_off(request, service, system_level=True)


@router.api_route("/Patient/$export", methods=["GET", "POST"])
async def patient_export(request: Request, service: ExportJobService = Depends(get_export_service)):
    """Export the data of all patients."""
    return await _kick_off(request, service, system_level=False)


@router.api_route("/Group/{group_id}/$export", methods=["GET", "POST"])
async def group_export(
    request: Request,
    group_id: str,
    service: ExportJobService = Depends(get_export_service),
):
    """Export the data of the patients in one group."""
    return await _kick_off(request, service, system_level=False, group=group_id)


# -----------------------------------------------------------------------------
# Status, cancel, download
# -----------------------------------------------------------------------------

@router.get("/bulkstatus/{job_id}")
async def export_status(
    job_id: str,
    page: str = Query("1"),
    authorization: Optional[str] = Depends(check_auth),
    service: ExportJobService = Depends(get_export_service),
):
    """
    Poll an export. Manifests split into pages (``allowPartialManifests``)
    are walked with ``?page=N``.
    """
    result = await service.get_status(job_id, authorization, page=page)
    if result.manifest is None:
        return Response(status_code=result.status_code, headers=result.headers)

    return JSONResponse(
        status_code=result.status_code,
        content=result.manifest.to_response(),
        headers=result.headers,
    )


@router.delete("/bulkstatus/{job_id}")
async def cancel_export(
    job_id: str,
    _authorization: Optional[str] = Depends(check_auth),
    service: ExportJobService = Depends(get_export_service),
):
    await service.cancel(job_id)
    return outcomes.cancel_accepted()


@router.get("/bulkfiles/{file_name}")
async def download_file(
    request: Request,
    file_name: str,
    sim: SimParams = Depends(get_sim),
    authorization: Optional[str] = Depends(check_auth),
    service: ExportJobService = Depends(get_export_service),
):
    result = await service.download(
        sim,
        file_name,
        authorization=authorization,
        accept_encoding=request.headers.get("accept-encoding"),
    )
    return StreamingResponse(result.body, media_type=result.media_type, headers=result.headers)
