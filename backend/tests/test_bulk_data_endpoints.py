"""End-to-end tests of the bulk data routes against the synthetic dataset."""

import json

import pytest

from bulkdata.core.config import settings
from bulkdata.core.security import create_access_token
from bulkdata.scripts.generate_dataset import generate_rows
from bulkdata.services.export_job_repository import ExportJobRepository
from bulkdata.services.export_job_service import ExportJobService
from bulkdata.services.manifest import decode_capsule, encode_capsule

from conftest import FHIR_JSON, kick_off, run_export, sim_path, wait_for_status


def _lines(resp) -> list:
    return [json.loads(line) for line in resp.text.splitlines() if line]


def _diagnostics(resp) -> str:
    return resp.json()["issue"][0]["diagnostics"]


def _job_id(location: str) -> str:
    return location.rsplit("/", 1)[-1]


# -----------------------------------------------------------------------------
# Kick-off
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_kick_off_returns_status_location(client):
    resp = await kick_off(client, "/Patient/$export", params={"_type": "Patient"})

    assert resp.status_code == 202
    location = resp.headers["Content-Location"]
    assert location.startswith("http://test/fhir/bulkstatus/")

    body = resp.json()
    assert body["resourceType"] == "OperationOutcome"
    assert body["issue"][0]["severity"] == "information"
    assert location in body["issue"][0]["diagnostics"]

    state = await ExportJobRepository().load(_job_id(location))
    assert state is not None
    assert state.job_status == "STARTED"
    assert state.resource_types == ["Patient"]


@pytest.mark.asyncio
async def test_kick_off_requires_fhir_json_and_respond_async(client):
    resp = await client.get("/fhir/$export", headers={"Prefer": "respond-async"})
    assert resp.status_code == 400
    assert _diagnostics(resp) == "The Accept header must be application/fhir+json"

    resp = await client.get("/fhir/$export", headers={"Accept": "application/fhir+json"})
    assert resp.status_code == 400
    assert _diagnostics(resp) == "The Prefer header must be respond-async"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path, params, knobs",
    [
        ("/$export", {"_type": "Foo"}, {}),
        ("/$export", {"_since": "3000-01-01"}, {}),
        ("/$export", {"_since": "not a date"}, {}),
        ("/$export", {"_outputFormat": "application/xml"}, {}),
        ("/$export", {"_elements": "Foo.bar"}, {}),
        ("/$export", {"_elements": "a.b.c"}, {}),
        ("/$export", {"_includeAssociatedData": "LatestProvenanceResources"}, {}),
        ("/$export", {"_typeFilter": "_filter=gender like male"}, {}),
        ("/Patient/$export", {"patient": "123"}, {}),
        ("/$export", {}, {"stu": 5}),
    ],
)
async def test_kick_off_validation_errors(client, path, params, knobs):
    resp = await kick_off(client, path, params=params, **knobs)
    assert resp.status_code == 400
    assert resp.json()["resourceType"] == "OperationOutcome"


@pytest.mark.asyncio
async def test_simulated_kick_off_failure(client):
    resp = await kick_off(client, err="file_generation_failed")
    assert resp.status_code == 500
    assert _diagnostics(resp) == "File generation failed"


@pytest.mark.asyncio
async def test_post_kick_off_with_patients(client):
    patient_ids = [row["patient_id"] for row in generate_rows(100, 2, 1) if row["fhir_type"] == "Patient"][:2]
    body = {
        "resourceType": "Parameters",
        "parameter": [
            {"name": "_type", "valueString": "Patient,Observation"},
            *({"name": "patient", "valueReference": {"reference": f"Patient/{pid}"}} for pid in patient_ids),
        ],
    }

    resp = await client.post(sim_path(dur=0) + "/Patient/$export", json=body, headers=FHIR_JSON)
    assert resp.status_code == 202

    status = await wait_for_status(client, resp.headers["Content-Location"])
    counts = {entry["type"]: entry["count"] for entry in status.json()["output"]}
    assert counts == {"Observation": 4, "Patient": 2}


@pytest.mark.asyncio
async def test_post_body_must_be_parameters(client):
    resp = await client.post(
        sim_path(dur=0) + "/$export",
        json={"resourceType": "Bundle"},
        headers=FHIR_JSON,
    )
    assert resp.status_code == 400
    assert _diagnostics(resp) == "The POST body should be a Parameters resource"


@pytest.mark.asyncio
async def test_patient_parameter_not_allowed_at_system_level(client):
    body = {"resourceType": "Parameters", "parameter": [{"name": "patient", "valueReference": {"reference": "Patient/1"}}]}
    resp = await client.post(sim_path(dur=0) + "/$export", json=body, headers=FHIR_JSON)
    assert resp.status_code == 400


# -----------------------------------------------------------------------------
# Status
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_status_reports_progress_while_waiting(client):
    resp = await kick_off(client, params={"_type": "Patient"}, dur=30)
    status = await client.get(resp.headers["Content-Location"])

    assert status.status_code == 202
    assert "% complete" in status.headers["X-Progress"]
    assert status.headers["Retry-After"] == "2"


@pytest.mark.asyncio
async def test_multiplied_dataset_is_split_into_files(client):
    resp = await run_export(client, "/Patient/$export", params={"_type": "Patient"}, page=22, m=10)
    assert resp.status_code == 200
    assert "Expires" in resp.headers

    manifest = resp.json()
    assert manifest["requiresAccessToken"] is False
    assert manifest["transactionTime"]
    assert manifest["request"].startswith("http://test/")
    assert manifest["error"] == []

    output = manifest["output"]
    assert len(output) == 46
    assert [entry["count"] for entry in output] == [22] * 45 + [10]
    assert output[0]["url"].endswith("/fhir/bulkfiles/1.Patient.ndjson")
    assert output[-1]["url"].endswith("/fhir/bulkfiles/46.Patient.ndjson")

    first = _lines(await client.get(output[0]["url"]))
    last = _lines(await client.get(output[-1]["url"]))
    assert len(first) == 22
    assert len(last) == 10
    assert not any(r["id"].startswith("o") for r in first)
    assert all(r["id"].startswith("o9-") for r in last)


@pytest.mark.asyncio
async def test_too_many_files(client):
    resp = await run_export(client, params={"_type": "Observation"}, page=1)
    assert resp.status_code == 413

    again = await client.get(str(resp.request.url))
    assert again.status_code == 413


@pytest.mark.asyncio
async def test_some_file_generation_failed(client):
    resp = await run_export(
        client, params={"_type": "Patient"}, page=50, err="some_file_generation_failed"
    )
    manifest = resp.json()

    assert [e["url"].rsplit("/", 1)[-1] for e in manifest["output"]] == ["1.Patient.ndjson"]
    assert [e["url"].rsplit("/", 1)[-1] for e in manifest["error"]] == ["2.Patient.ndjson"]

    error = await client.get(manifest["error"][0]["url"])
    assert error.status_code == 200
    assert _diagnostics(error) == "Failed to export 2.Patient.ndjson"


@pytest.mark.asyncio
async def test_deleted_resources(client):
    resp = await run_export(
        client,
        params={"_type": "Patient", "_since": "2019-01-01"},
        page=100,
        **{"del": 10},
    )
    manifest = resp.json()

    assert [(e["type"], e["count"]) for e in manifest["deleted"]] == [("Bundle", 10)]
    assert [(e["type"], e["count"]) for e in manifest["output"]] == [("Patient", 90)]

    deleted = _lines(await client.get(manifest["deleted"][0]["url"]))
    output = _lines(await client.get(manifest["output"][0]["url"]))

    assert len(deleted) == 10
    assert all(b["type"] == "transaction" for b in deleted)
    deleted_ids = {b["entry"][0]["request"]["url"].split("/")[1] for b in deleted}
    output_ids = {r["id"] for r in output}
    assert len(output_ids) == 90
    assert not deleted_ids & output_ids


@pytest.mark.asyncio
async def test_transient_error_happens_once(client):
    resp = await kick_off(client, params={"_type": "Patient"}, err="transient_error")
    location = resp.headers["Content-Location"]

    first = await client.get(location)
    assert first.status_code == 500
    assert first.json()["issue"][0]["code"] == "transient"

    assert (await wait_for_status(client, location)).status_code == 200


@pytest.mark.asyncio
async def test_completed_export_is_handed_out_once(client):
    resp = await run_export(client, params={"_type": "Patient"})
    assert resp.status_code == 200

    again = await client.get(str(resp.request.url))
    assert again.status_code == 404
    assert _diagnostics(again) == "The export was already completed"


@pytest.mark.asyncio
async def test_zero_multiplier_builds_an_empty_manifest(client):
    resp = await run_export(client, params={"_type": "Patient"}, m=0)

    assert resp.status_code == 200
    assert resp.json()["output"] == []


@pytest.mark.asyncio
async def test_failed_build_is_reported(client, monkeypatch):
    async def broken_stratify(self, state):
        raise RuntimeError("dataset went away")

    monkeypatch.setattr(ExportJobService, "stratify", broken_stratify)
    resp = await run_export(client, params={"_type": "Patient"})

    assert resp.status_code == 400
    assert _diagnostics(resp) == "Failed to build export manifest."


@pytest.mark.asyncio
async def test_unknown_job(client):
    resp = await client.get("/fhir/bulkstatus/" + "0" * 32)
    assert resp.status_code == 404
    assert _diagnostics(resp) == "The export was not found"


# -----------------------------------------------------------------------------
# Download
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_repeated_downloads_are_identical(client):
    manifest = (await run_export(client, params={"_type": "Observation"}, page=40, m=2)).json()
    url = manifest["output"][-1]["url"]

    a = await client.get(url)
    b = await client.get(url)
    assert a.status_code == 200
    assert a.headers["content-type"] == "application/fhir+ndjson"
    assert a.content == b.content
    assert len(_lines(a)) == 40


@pytest.mark.asyncio
async def test_download_before_completion(client):
    resp = await kick_off(client, params={"_type": "Patient"}, dur=30)
    capsule = encode_capsule({"id": _job_id(resp.headers["Content-Location"]), "offset": 0, "limit": 10})

    download = await client.get(f"/{capsule}/fhir/bulkfiles/1.Patient.ndjson")
    assert download.status_code == 404
    assert _diagnostics(download) == "The export is not completed yet"


@pytest.mark.asyncio
async def test_expired_file(client):
    manifest = (await run_export(client, params={"_type": "Patient"}, err="file_expired")).json()
    resp = await client.get(manifest["output"][0]["url"])
    assert resp.status_code == 410


@pytest.mark.asyncio
async def test_gzip_download(client):
    manifest = (await run_export(client, params={"_type": "Patient"})).json()
    resp = await client.get(manifest["output"][0]["url"], headers={"Accept-Encoding": "gzip"})

    assert resp.headers["content-encoding"] == "gzip"
    assert len(_lines(resp)) == 100


@pytest.mark.asyncio
async def test_csv_output(client):
    manifest = (await run_export(client, params={"_type": "Patient", "_outputFormat": "text/csv"})).json()
    url = manifest["output"][0]["url"]
    assert url.endswith("/1.Patient.csv")

    resp = await client.get(url)
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.text.split("\r\n")
    assert lines[0] == "resourceType,id,gender,birthDate,maritalStatus,name"
    assert len([line for line in lines[1:] if line]) == 100


@pytest.mark.asyncio
async def test_elements_subsetting(client):
    manifest = (await run_export(client, params={"_type": "Patient", "_elements": "gender"})).json()
    resources = _lines(await client.get(manifest["output"][0]["url"]))

    assert set(resources[0]) == {"resourceType", "id", "gender", "meta"}
    assert resources[0]["meta"]["tag"][0]["code"] == "SUBSETTED"


@pytest.mark.asyncio
async def test_type_filter(client):
    manifest = (
        await run_export(
            client,
            params={"_type": "Patient", "_typeFilter": '_filter=maritalStatus.text eq "Never Married"'},
        )
    ).json()

    assert [entry["count"] for entry in manifest["output"]] == [33]
    resources = _lines(await client.get(manifest["output"][0]["url"]))
    assert len(resources) == 33
    assert {r["maritalStatus"]["text"] for r in resources} == {"Never Married"}


@pytest.mark.asyncio
async def test_lenient_warnings_become_error_files(client):
    resp = await run_export(
        client,
        params={"_type": "Patient", "_includeAssociatedData": "LatestProvenanceResources"},
        headers={"Prefer": "respond-async, handling=lenient"},
    )
    manifest = resp.json()

    assert len(manifest["output"]) == 1
    assert manifest["error"][0]["url"].endswith("/1.OperationOutcome.ndjson")

    error = await client.get(manifest["error"][0]["url"])
    assert "_includeAssociatedData" in _diagnostics(error)


@pytest.mark.asyncio
async def test_extended_rows(client):
    manifest = (await run_export(client, params={"_type": "Patient"}, extended=True)).json()
    rows = _lines(await client.get(manifest["output"][0]["url"]))

    assert rows[0]["fhir_type"] == "Patient"
    assert rows[0]["resource_json"]["__modified_date"] == "2020-01-01 00:00:00"


@pytest.mark.asyncio
async def test_document_reference_attachments_are_absolute(client):
    manifest = (await run_export(client, params={"_type": "DocumentReference"})).json()
    docs = _lines(await client.get(manifest["output"][0]["url"]))

    url = docs[0]["content"][0]["attachment"]["url"]
    assert url.startswith("http://test/")
    assert url.endswith("/fhir/attachments/note-0.txt")


@pytest.mark.asyncio
async def test_export_levels(client):
    system = (await run_export(client)).json()
    patient = (await run_export(client, "/Patient/$export")).json()
    group = (await run_export(client, "/Group/Medicare/$export", params={"_type": "Patient"})).json()

    assert "Practitioner" in {e["type"] for e in system["output"]}
    assert "Practitioner" not in {e["type"] for e in patient["output"]}
    assert [e["count"] for e in group["output"]] == [50]


# -----------------------------------------------------------------------------
# Authorization
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_secure_export(client):
    token = create_access_token(scope="system/Patient.rs")
    auth = {"Authorization": f"Bearer {token}"}

    resp = await run_export(client, params={"_type": "Patient,Observation"}, headers=auth)
    manifest = resp.json()
    assert manifest["requiresAccessToken"] is True
    assert {e["type"] for e in manifest["output"]} == {"Patient"}

    url = manifest["output"][0]["url"]
    assert decode_capsule(url.split("/")[3])["secure"] is True

    assert (await client.get(url)).status_code == 401

    other = create_access_token(scope="system/Observation.rs")
    denied = await client.get(url, headers={"Authorization": f"Bearer {other}"})
    assert denied.status_code == 403

    ok = await client.get(url, headers=auth)
    assert ok.status_code == 200
    assert len(_lines(ok)) == 100


@pytest.mark.asyncio
async def test_secure_status_requires_a_token(client):
    token = create_access_token(scope="system/*.read")
    resp = await kick_off(client, params={"_type": "Patient"}, headers={"Authorization": f"Bearer {token}"})

    status = await client.get(resp.headers["Content-Location"])
    assert status.status_code == 401


@pytest.mark.asyncio
async def test_token_errors(client):
    resp = await kick_off(client, headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert _diagnostics(resp).startswith("Invalid token")

    token = create_access_token(err="Invalid scope")
    resp = await kick_off(client, headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert _diagnostics(resp) == "Invalid scope"


@pytest.mark.asyncio
async def test_token_without_matching_scopes(client):
    token = create_access_token(scope="system/Observation.rs")
    resp = await kick_off(client, params={"_type": "Patient"}, headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 400
    assert _diagnostics(resp) == "Could not authorize access to any resources"


# -----------------------------------------------------------------------------
# Cancel
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancelled_job_becomes_unknown(client):
    resp = await kick_off(client, params={"_type": "Patient"}, dur=30)
    location = resp.headers["Content-Location"]

    cancel = await client.delete(location)
    assert cancel.status_code == 202
    assert _diagnostics(cancel) == "The procedure was canceled"

    assert (await client.get(location)).status_code == 404
    assert (await client.delete(location)).status_code == 404


@pytest.mark.asyncio
async def test_files_of_a_cancelled_job_are_gone(client):
    resp = await run_export(client, params={"_type": "Patient"})
    url = resp.json()["output"][0]["url"]

    assert (await client.delete(str(resp.request.url))).status_code == 202

    download = await client.get(url)
    assert download.status_code == 404
    assert _diagnostics(download) == "The exported resources have been deleted"


# -----------------------------------------------------------------------------
# Organized output and partial manifests
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_output_organized_by_patient(client):
    resp = await run_export(
        client,
        "/Patient/$export",
        params={"_type": "Patient,Observation", "organizeOutputBy": "Patient"},
    )
    manifest = resp.json()

    assert manifest["outputOrganizedBy"] == "Patient"
    output = manifest["output"]
    assert len(output) == 100
    assert all("type" not in entry and entry["count"] == 3 for entry in output)

    header, *resources = _lines(await client.get(output[0]["url"]))
    assert header["resourceType"] == "Parameters"
    reference = header["parameter"][0]["valueReference"]["reference"]

    assert sorted(r["resourceType"] for r in resources) == ["Observation", "Observation", "Patient"]
    patient = next(r for r in resources if r["resourceType"] == "Patient")
    assert reference == f"Patient/{patient['id']}"
    assert all(r["subject"]["reference"] == reference for r in resources if r["resourceType"] == "Observation")


@pytest.mark.asyncio
async def test_organized_output_keeps_unassociated_resources_apart(client):
    manifest = (
        await run_export(client, params={"_type": "Practitioner,Patient", "organizeOutputBy": "Patient"})
    ).json()

    names = [entry["url"].rsplit("/", 1)[-1] for entry in manifest["output"]]
    assert len(names) == 101
    assert names[0] == "1.unassociated.ndjson"

    practitioners = _lines(await client.get(manifest["output"][0]["url"]))
    assert [r["resourceType"] for r in practitioners] == ["Practitioner"] * 5


@pytest.mark.asyncio
async def test_unsupported_organize_output_by(client):
    resp = await kick_off(client, params={"organizeOutputBy": "Encounter"})

    assert resp.status_code == 400
    assert _diagnostics(resp) == "Unsupported organizeOutputBy parameter value"


@pytest.mark.asyncio
async def test_partial_manifest_pages(client, monkeypatch):
    monkeypatch.setattr(settings, "MANIFEST_PAGE_SIZE", 4)
    resp = await kick_off(client, params={"_type": "Patient", "allowPartialManifests": "true"}, page=10)
    location = resp.headers["Content-Location"]

    first = (await wait_for_status(client, location)).json()
    assert [entry["count"] for entry in first["output"]] == [10] * 4
    assert first["link"] == [{"relation": "next", "url": location + "?page=2"}]

    second = (await wait_for_status(client, location + "?page=2")).json()
    assert len(second["output"]) == 4
    assert second["link"][0]["url"] == location + "?page=3"

    # files of a handed out page can be fetched before the last page
    assert len(_lines(await client.get(first["output"][0]["url"]))) == 10

    last = await wait_for_status(client, location + "?page=3")
    assert last.status_code == 200
    assert len(last.json()["output"]) == 2
    assert "link" not in last.json()

    urls = {entry["url"] for page in (first, second, last.json()) for entry in page["output"]}
    assert len(urls) == 10

    again = await client.get(location)
    assert again.status_code == 404
    assert _diagnostics(again) == "The export was already completed"


@pytest.mark.asyncio
async def test_missing_manifest_page(client):
    resp = await kick_off(client, params={"_type": "Patient"})
    location = resp.headers["Content-Location"]

    missing = await wait_for_status(client, location + "?page=2")
    assert missing.status_code == 404
    assert _diagnostics(missing) == "Manifest page 2 was not found"

    assert (await client.get(location)).status_code == 200


# -----------------------------------------------------------------------------
# Service endpoints
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health_and_metrics(client):
    health = await client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "export_jobs_total" in metrics.text
