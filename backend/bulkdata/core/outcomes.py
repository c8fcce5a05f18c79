"""
Operation Outcomes
==================

Every client facing error of the bulk data API is rendered as a FHIR
OperationOutcome. Services raise ``OutcomeError`` and the exception handler
registered by the application factory turns it into a JSON response.
"""

from __future__ import annotations

import html
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)


def create_operation_outcome(
    message: str,
    *,
    issue_code: str = "processing",
    severity: str = "error",
) -> Dict[str, Any]:
    """
    Build an OperationOutcome resource.

    Args:
        message: Human readable diagnostics
        issue_code: http://hl7.org/fhir/valueset-issue-type.html code
        severity: fatal | error | warning | information
    """
    return {
        "resourceType": "OperationOutcome",
        "text": {
            "status": "generated",
            "div": (
                '<div xmlns="http://www.w3.org/1999/xhtml">'
                '<h1>Operation Outcome</h1><table border="0"><tr>'
                f'<td style="font-weight:bold;">{severity}</td><td>[]</td>'
                f"<td><pre>{html.escape(str(message).strip())}</pre></td></tr></table></div>"
            ),
        },
        "issue": [
            {
                "severity": severity,
                "code": issue_code,
                "diagnostics": message,
            }
        ],
    }


class OutcomeError(Exception):
    """An error that should reach the client as an OperationOutcome."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        *,
        issue_code: str = "processing",
        severity: str = "error",
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.issue_code = issue_code
        self.severity = severity
        self.headers = headers

    def to_outcome(self) -> Dict[str, Any]:
        return create_operation_outcome(
            self.message,
            issue_code=self.issue_code,
            severity=self.severity,
        )


def outcome_response(
    message: str,
    status_code: int = 500,
    *,
    issue_code: str = "processing",
    severity: str = "error",
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=create_operation_outcome(message, issue_code=issue_code, severity=severity),
        headers=headers,
    )


def add_exception_handlers(app: FastAPI) -> None:
    async def handle_outcome_error(request: Request, exc: OutcomeError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_outcome(),
            headers=exc.headers,
        )

    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return outcome_response(str(exc) or exc.__class__.__name__, 500)

    app.add_exception_handler(OutcomeError, handle_outcome_error)
    app.add_exception_handler(Exception, handle_unexpected_error)


# -----------------------------------------------------------------------------
# Named outcomes
# -----------------------------------------------------------------------------

def file_expired() -> OutcomeError:
    return OutcomeError(
        "Access to the target resource is no longer available at the server "
        "and this condition is likely to be permanent because the file "
        "expired",
        410,
    )


def invalid_since_parameter(value: Any) -> OutcomeError:
    return OutcomeError(
        f'Invalid _since parameter "{value}". It must be valid FHIR instant and '
        "cannot be a date in the future",
        400,
    )


def require_accept_fhir_json() -> OutcomeError:
    return OutcomeError("The Accept header must be application/fhir+json", 400)


def require_prefer_async() -> OutcomeError:
    return OutcomeError("The Prefer header must be respond-async", 400)


def file_generation_failed() -> OutcomeError:
    return OutcomeError("File generation failed", 500)


def not_authorized() -> OutcomeError:
    return OutcomeError("Not authorized", 401)


def authentication_required() -> OutcomeError:
    return OutcomeError("Authentication is required", 401)


def cancel_completed() -> OutcomeError:
    return OutcomeError("The export was already completed", 404)


def cancel_not_found() -> OutcomeError:
    return OutcomeError(
        "Unknown procedure. Perhaps it is already completed and thus, it cannot be canceled",
        404,
    )


def export_not_found() -> OutcomeError:
    return OutcomeError("The export was not found", 404)


def export_deleted() -> OutcomeError:
    return OutcomeError("The exported resources have been deleted", 404)


def export_not_completed() -> OutcomeError:
    return OutcomeError("The export is not completed yet", 404)


def too_many_files() -> OutcomeError:
    return OutcomeError("Too many files", 413, issue_code="too-costly")


def transient_error() -> OutcomeError:
    return OutcomeError(
        "An unknown error ocurred (transient_error). Please try again.",
        500,
        issue_code="transient",
    )


def manifest_build_failed() -> OutcomeError:
    return OutcomeError("Failed to build export manifest.", 400)


def manifest_page_not_found(page: int) -> OutcomeError:
    return OutcomeError(f"Manifest page {page} was not found", 404)


def cancel_accepted() -> JSONResponse:
    return outcome_response("The procedure was canceled", 202, severity="information")


def export_accepted(location: str) -> JSONResponse:
    return outcome_response(
        f'Your request has been accepted. You can check its status at "{location}"',
        202,
        severity="information",
        headers={"Content-Location": location},
    )


def permission_denied(resource_type: str) -> OutcomeError:
    return OutcomeError(
        f'Permission denied. The access token does not allow reading "{resource_type}" resources',
        403,
        issue_code="forbidden",
    )


def invalid_token(reason: str) -> OutcomeError:
    return OutcomeError(f"Invalid token {reason}", 401)
