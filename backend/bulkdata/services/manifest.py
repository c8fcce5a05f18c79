"""
Manifest Builder
================

Accumulates the output, error and deleted entries of an export manifest.

Every entry URL carries a "capsule": a base64url encoded JSON object placed
in front of ``/fhir/bulkfiles/<file>`` that holds everything needed to
rebuild the file later (job id, offset, limit and flags). Nothing else is
stored per file.

With partial manifests the builder also cuts the lists into pages of
``output_per_page`` output files, so that a client can be handed the
first pages while the rest of the export is still being built.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, List, Optional

from bulkdata.middleware.prometheus import record_export_file
from bulkdata.schemas.export_job import Manifest, ManifestFile, ManifestLink


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode((text + padding).encode("ascii"))


def encode_capsule(data: Dict[str, Any]) -> str:
    body = json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return _b64url_encode(body)


def decode_capsule(text: Optional[str]) -> Dict[str, Any]:
    """
    Decode a capsule. Anything that is not a base64url encoded JSON object
    decodes to an empty dict.
    """
    if not text:
        return {}
    try:
        data = json.loads(_b64url_decode(str(text)).decode("utf-8"))
    except (ValueError, UnicodeDecodeError, binascii.Error):
        return {}
    return data if isinstance(data, dict) else {}


def build_url_path(*segments: Any) -> str:
    return "/".join(str(s).strip("/") for s in segments if str(s).strip("/"))


class ManifestBuilder:
    """Append-only collector for the three manifest lists."""

    def __init__(
        self,
        *,
        job_id: str,
        base_url: str,
        transaction_time: str,
        request: str,
        secure: bool,
        output_format: str = "ndjson",
        organized_by: str = "",
        output_per_page: int = 0,
    ):
        self.job_id = job_id
        self.base_url = base_url
        self.output_format = output_format
        self.output_per_page = output_per_page
        self.manifest = Manifest(
            transaction_time=transaction_time,
            request=request,
            requires_access_token=secure,
            output_organized_by=organized_by or None,
        )
        self._page_start = [0, 0, 0]

    @property
    def secure(self) -> bool:
        return self.manifest.requires_access_token

    def file_name(self, index: int, resource_type: str) -> str:
        return f"{index}.{resource_type}.{self.output_format}"

    def build_url(self, file_name: str, **params: Any) -> str:
        capsule = encode_capsule({"id": self.job_id, "secure": self.secure, **params})
        return build_url_path(self.base_url, capsule, "fhir", "bulkfiles", file_name)

    def add_file(
        self,
        resource_type: Optional[str],
        count: int,
        file_name: str,
        *,
        offset: int,
        limit: int,
        **params: Any,
    ) -> ManifestFile:
        """
        Add an output file. Saves a page once ``output_per_page`` output
        files were added since the previous one.
        """
        entry = ManifestFile(
            type=resource_type,
            count=count,
            url=self.build_url(file_name, offset=offset, limit=limit, **params),
        )
        self.manifest.output.append(entry)
        record_export_file("output")
        if self.output_per_page and len(self.manifest.output) - self._page_start[0] >= self.output_per_page:
            self.save_page()
        return entry

    def add_error(self, file_name: str, file_error: str, count: int = 1) -> ManifestFile:
        entry = ManifestFile(
            type="OperationOutcome",
            count=count,
            url=self.build_url(file_name, fileError=file_error),
        )
        self.manifest.error.append(entry)
        record_export_file("error")
        return entry

    def add_deleted(self, file_name: str, count: int, *, offset: int, limit: int, **params: Any) -> ManifestFile:
        entry = ManifestFile(
            type="Bundle",
            count=count,
            url=self.build_url(file_name, **{"del": 1, "offset": offset, "limit": limit, **params}),
        )
        self.manifest.deleted.append(entry)
        record_export_file("deleted")
        return entry

    def size(self) -> int:
        return len(self.manifest.output) + len(self.manifest.error) + len(self.manifest.deleted)

    def to_manifest(self) -> Manifest:
        return self.manifest.model_copy(deep=True)

    @property
    def page_count(self) -> int:
        return len(self.manifest.pages)

    def save_page(self) -> int:
        """Close the current page. Returns the number of saved pages."""
        ends = [len(self.manifest.output), len(self.manifest.error), len(self.manifest.deleted)]
        (o, e, d), self._page_start = self._page_start, ends
        self.manifest.pages.append([o, ends[0], e, ends[1], d, ends[2]])
        return self.page_count


def get_manifest_page(
    manifest: Manifest,
    number: int,
    next_url: str,
    *,
    complete: bool = True,
) -> Optional[Manifest]:
    """
    Page ``number`` (1-based) of a manifest, or None if there is no such
    page (yet). A manifest without saved pages is a single page.

    Every page but the last one of a complete manifest links to the next
    page. Pages of a manifest that is still being built always do.
    """
    pages: List[List[int]] = manifest.pages
    if not pages:
        if number != 1 or not complete:
            return None
        return manifest.model_copy(deep=True)

    if number < 1 or number > len(pages):
        return None

    o, o_end, e, e_end, d, d_end = pages[number - 1]
    page = Manifest(
        transaction_time=manifest.transaction_time,
        request=manifest.request,
        requires_access_token=manifest.requires_access_token,
        output_organized_by=manifest.output_organized_by,
        output=[f.model_copy() for f in manifest.output[o:o_end]],
        error=[f.model_copy() for f in manifest.error[e:e_end]],
        deleted=[f.model_copy() for f in manifest.deleted[d:d_end]],
    )
    if not complete or number < len(pages):
        page.link = [ManifestLink(relation="next", url=next_url)]
    return page
