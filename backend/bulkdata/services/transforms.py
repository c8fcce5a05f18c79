"""
Download Transforms
===================

Async generator stages that turn resource stream rows into the bytes of a
downloaded file::

    rows -> translate_rows [-> prepend_file_header] -> to_ndjson | to_csv -> compress -> response
"""

from __future__ import annotations

import json
import re
import zlib
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Sequence

from bulkdata.core.config import settings
from bulkdata.services.manifest import build_url_path, encode_capsule


SUBSETTED_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ObservationValue"

RE_ATTACHMENT_URL = re.compile(r"^/attachments/.*")


def tag_resource(resource: Dict[str, Any], code: str, system: str = "https://smarthealthit.org/tags") -> None:
    meta = resource.setdefault("meta", {})
    tags = meta.get("tag")
    if not isinstance(tags, list):
        tags = meta["tag"] = []
    for tag in tags:
        if tag.get("system") == system:
            tag["code"] = code
            return
    tags.append({"system": system, "code": code})


def filter_elements(
    resource: Dict[str, Any],
    elements: Sequence[str],
    required: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """
    Keep only the requested root elements (plus the required ones) and tag
    the result as SUBSETTED. Elements are ``name`` or ``ResourceType.name``.
    """
    if not elements:
        return resource

    if required is None:
        required = settings.REQUIRED_ELEMENTS

    resource_type = resource.get("resourceType")
    out: Dict[str, Any] = {}

    for element in list(required) + list(elements):
        parts = [p.strip() for p in element.split(".", 1)]
        if len(parts) == 2:
            element_type, name = parts
        else:
            element_type, name = resource_type, parts[0]

        if element_type != resource_type:
            continue

        if name in resource:
            out[name] = resource[name]

    tag_resource(out, "SUBSETTED", SUBSETTED_SYSTEM)
    return out


def delete_transaction(resource: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "resourceType": "Bundle",
        "type": "transaction",
        "entry": [
            {
                "request": {
                    "method": "DELETE",
                    "url": f"{resource.get('resourceType')}/{resource.get('id')}",
                }
            }
        ],
    }


def rewrite_attachment_url(resource: Dict[str, Any], base_url: str, err: str = "", secure: bool = False) -> None:
    """
    DocumentReference attachments stored as ``/attachments/...`` paths are
    made absolute so that clients can fetch them directly.
    """
    try:
        attachment = resource["content"][0]["attachment"]
    except (KeyError, IndexError, TypeError):
        return

    url = attachment.get("url") if isinstance(attachment, dict) else None
    if url and RE_ATTACHMENT_URL.match(url):
        capsule = encode_capsule({"err": err or "", "secure": bool(secure)})
        attachment["url"] = build_url_path(base_url, capsule, "fhir", url)


async def translate_rows(
    rows: AsyncIterable[Dict[str, Any]],
    *,
    base_url: str,
    elements: Optional[List[str]] = None,
    deleted: bool = False,
    err: str = "",
    secure: bool = False,
) -> AsyncIterator[Dict[str, Any]]:
    async for row in rows:
        resource = row["resource_json"]
        if deleted:
            row["resource_json"] = delete_transaction(resource)
        else:
            if elements:
                resource = row["resource_json"] = filter_elements(resource, elements)
            if resource.get("resourceType") == "DocumentReference":
                rewrite_attachment_url(resource, base_url, err=err, secure=secure)
        yield row


async def prepend_file_header(
    rows: AsyncIterable[Dict[str, Any]],
    organized_by: str,
    column: str,
) -> AsyncIterator[Dict[str, Any]]:
    """
    Put a Parameters resource naming the file's Patient or Group in front
    of the first row that is associated with one.
    """
    header_added = False
    async for row in rows:
        if not header_added and row.get(column):
            yield {
                "resource_json": {
                    "resourceType": "Parameters",
                    "parameter": [
                        {
                            "name": "header",
                            "valueReference": {"reference": f"{organized_by}/{row[column]}"},
                        }
                    ],
                }
            }
            header_added = True
        yield row


def csv_escape(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)

    out = json.dumps(value, separators=(",", ":")) if isinstance(value, (dict, list)) else str(value)
    if re.search(r'[",\r\n]', out):
        return '"' + out.replace('"', '""') + '"'
    return out


async def to_ndjson(rows: AsyncIterable[Dict[str, Any]], *, extended: bool = False) -> AsyncIterator[bytes]:
    async for row in rows:
        obj = row if extended else row["resource_json"]
        yield (json.dumps(obj, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


async def to_csv(rows: AsyncIterable[Dict[str, Any]], *, extended: bool = False) -> AsyncIterator[bytes]:
    """Header from the keys of the first record, then one line per record."""
    keys: Optional[List[str]] = None
    async for row in rows:
        obj = row if extended else row["resource_json"]
        if keys is None:
            keys = list(obj.keys())
            yield (",".join(csv_escape(k) for k in keys) + "\r\n").encode("utf-8")
        yield (",".join(csv_escape(obj.get(k)) for k in keys) + "\r\n").encode("utf-8")


async def compress(chunks: AsyncIterable[bytes], encoding: Optional[str]) -> AsyncIterator[bytes]:
    """gzip or deflate (zlib wrapped) compression; passthrough otherwise."""
    if encoding not in ("gzip", "deflate"):
        async for chunk in chunks:
            yield chunk
        return

    wbits = 16 + zlib.MAX_WBITS if encoding == "gzip" else zlib.MAX_WBITS
    compressor = zlib.compressobj(wbits=wbits)
    async for chunk in chunks:
        data = compressor.compress(chunk)
        if data:
            yield data
    yield compressor.flush()


def negotiate_encoding(accept_encoding: Optional[str]) -> Optional[str]:
    value = str(accept_encoding or "")
    if re.search(r"\bgzip\b", value):
        return "gzip"
    if re.search(r"\bdeflate\b", value):
        return "deflate"
    return None


EXPORT_TYPES = {
    "ndjson": {
        "file_extension": "ndjson",
        "content_type": "application/fhir+ndjson",
        "encoder": to_ndjson,
    },
    "csv": {
        "file_extension": "csv",
        "content_type": "text/csv; charset=UTF-8; header=present",
        "encoder": to_csv,
    },
}

SUPPORTED_FORMATS = {
    "application/fhir+ndjson": "ndjson",
    "application/ndjson": "ndjson",
    "ndjson": "ndjson",
    "text/csv": "csv",
    "csv": "csv",
}
