"""End-to-end tests through the HTTP API."""
from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit

import pytest
from httpx import AsyncClient

from tests.conftest import AUTH_HEADERS, AUTH_HEADERS_USER2, docx_text, make_docx, make_pdf


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _register(client: AsyncClient, file_type: str = "docx") -> dict:
    resp = await client.post(
        "/api/templates/upload",
        json={"file_name": f"lease.{file_type}", "file_type": file_type, "template_name": "Lease"},
    )
    assert resp.status_code == 201
    return resp.json()


async def _put_bytes(client: AsyncClient, upload_url: str, content: bytes):
    parts = urlsplit(upload_url)
    return await client.put(f"{parts.path}?{parts.query}", content=content)


async def _parsed_template(client: AsyncClient, file_type: str = "docx") -> dict:
    registration = await _register(client, file_type)
    content = make_pdf() if file_type == "pdf" else make_docx()
    resp = await _put_bytes(client, registration["upload_url"], content)
    assert resp.status_code == 201
    resp = await client.get(f"/api/templates/{registration['template_id']}")
    assert resp.status_code == 200
    return resp.json()


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upload_then_put_parses_template(client: AsyncClient):
    template = await _parsed_template(client, "pdf")

    assert template["status"] == "parsed"
    assert [f["name"] for f in template["extracted_fields"]] == ["fullName", "email", "propertyAddress"]
    assert template["etag"]
    assert template["version"] == 1

    listed = await client.get("/api/templates/", params={"status": "parsed"})
    assert [t["id"] for t in listed.json()] == [template["id"]]


@pytest.mark.asyncio
async def test_redelivered_finalize_event_is_skipped(client: AsyncClient, completion):
    template = await _parsed_template(client)

    resp = await client.post(
        "/api/storage/events/finalize",
        json={"name": f"templates/{template['id']}/lease.docx", "bucket": "templates"},
    )

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "skipped"
    assert len(completion.prompts) == 1


@pytest.mark.asyncio
async def test_finalize_event_for_other_path_is_ignored(client: AsyncClient):
    resp = await client.post("/api/storage/events/finalize", json={"name": "avatars/u1.png"})
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"


@pytest.mark.asyncio
async def test_ai_failure_marks_template_error_and_reparse_recovers(client: AsyncClient, completion):
    completion.responses = ["not json"]
    registration = await _register(client)
    await _put_bytes(client, registration["upload_url"], make_docx())

    failed = (await client.get(f"/api/templates/{registration['template_id']}")).json()
    assert failed["status"] == "error"
    assert failed["error_message"]

    completion.responses = ['{"fields": [{"name": "fullName", "type": "text", "label": "Full Name", "required": true}]}']
    resp = await client.post(f"/api/templates/{registration['template_id']}/reparse")
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "parsed"
    assert resp.json()["field_count"] == 1


@pytest.mark.asyncio
async def test_upload_registration_errors(client: AsyncClient):
    resp = await client.post(
        "/api/templates/upload",
        json={"file_name": "notes.txt", "file_type": "txt", "template_name": "Notes"},
    )
    assert resp.status_code == 415
    assert resp.json()["error_type"] == "UnsupportedFormatError"

    resp = await client.post("/api/templates/upload", json={"file_type": "pdf", "template_name": "Lease"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_upload_with_bad_signature_is_forbidden(client: AsyncClient):
    registration = await _register(client)
    parts = urlsplit(registration["upload_url"])
    resp = await client.put(
        f"{parts.path}?expires=9999999999&signature=forged",
        content=make_docx(),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_empty_upload_is_rejected(client: AsyncClient):
    registration = await _register(client)
    resp = await _put_bytes(client, registration["upload_url"], b"")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_second_upload_to_same_url_is_refused(client: AsyncClient, completion):
    registration = await _register(client)
    first = await _put_bytes(client, registration["upload_url"], make_docx())
    assert first.status_code == 201
    parsed = (await client.get(f"/api/templates/{registration['template_id']}")).json()

    second = await _put_bytes(client, registration["upload_url"], make_docx(["Totally different {{nothing}}"]))

    assert second.status_code == 409
    assert second.json()["error_type"] == "InvalidStateError"
    after = (await client.get(f"/api/templates/{registration['template_id']}")).json()
    assert after["status"] == "parsed"
    assert after["etag"] == parsed["etag"]
    assert len(completion.prompts) == 1


@pytest.mark.asyncio
async def test_upload_to_unregistered_path_is_404(client: AsyncClient, storage):
    url = storage.create_upload_url("templates/nobody/lease.docx", datetime.now(timezone.utc) + timedelta(minutes=5))
    resp = await _put_bytes(client, url, make_docx())
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_unknown_template_is_404(client: AsyncClient):
    resp = await client.get("/api/templates/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error_type"] == "NotFoundError"


@pytest.mark.asyncio
async def test_reparse_of_uploaded_template_conflicts(client: AsyncClient):
    registration = await _register(client)
    resp = await client.post(f"/api/templates/{registration['template_id']}/reparse")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_field_edit_with_lock_and_etag(client: AsyncClient):
    template = await _parsed_template(client)
    tid = template["id"]
    fields = template["extracted_fields"]
    fields[0]["label"] = "Tenant Name"

    lock = await client.post(f"/api/templates/{tid}/lock", headers=AUTH_HEADERS)
    assert lock.status_code == 200
    assert lock.json()["holder_id"] == "admin-1"

    blocked = await client.put(
        f"/api/templates/{tid}/fields",
        json={"fields": fields, "etag": template["etag"]},
        headers=AUTH_HEADERS_USER2,
    )
    assert blocked.status_code == 409
    assert blocked.json()["holder_id"] == "admin-1"

    edited = await client.put(
        f"/api/templates/{tid}/fields",
        json={"fields": fields, "etag": template["etag"], "reason": "relabel"},
        headers=AUTH_HEADERS,
    )
    assert edited.status_code == 200
    assert edited.json()["version"] == 2

    stale = await client.put(
        f"/api/templates/{tid}/fields",
        json={"fields": fields, "etag": template["etag"]},
        headers=AUTH_HEADERS,
    )
    assert stale.status_code == 409
    assert stale.json()["error_type"] == "ConcurrencyConflictError"

    released = await client.delete(f"/api/templates/{tid}/lock", headers=AUTH_HEADERS)
    assert released.status_code == 204

    versions = await client.get(f"/api/templates/{tid}/versions")
    assert [v["version"] for v in versions.json()] == [2, 1]

    rolled = await client.post(
        f"/api/templates/{tid}/versions/1/rollback",
        json={"etag": edited.json()["etag"]},
        headers=AUTH_HEADERS,
    )
    assert rolled.status_code == 200
    assert rolled.json()["version"] == 3
    assert rolled.json()["extracted_fields"][0]["label"] == "Full Name"

    audit = await client.get(f"/api/templates/{tid}/audit")
    assert audit.status_code == 200
    assert [e["event_type"] for e in audit.json()] == [
        "template.fields_updated",
        "template.version_rolled_back",
    ]
    assert audit.json()[0]["actor_id"] == "admin-1"
    assert audit.json()[0]["reason"] == "relabel"
    assert audit.json()[0]["diff"]["changed"] == ["fullName"]


@pytest.mark.asyncio
async def test_blank_user_header_is_unauthorized(client: AsyncClient):
    template = await _parsed_template(client)
    resp = await client.post(f"/api/templates/{template['id']}/lock", headers={"X-User-Id": "  "})
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_and_download(client: AsyncClient):
    template = await _parsed_template(client)

    resp = await client.post(
        "/api/documents/generate",
        json={
            "template_ids": [template["id"]],
            "client_data": {"fullName": "Jane Doe", "email": "jane@example.com"},
        },
    )

    assert resp.status_code == 200
    [result] = resp.json()
    assert result["status"] == "generated"
    assert result["unmatched_fields"] == ["propertyAddress"]
    assert result["file_url"].endswith(f"/api/documents/{result['artifact_id']}/download")

    meta = await client.get(f"/api/documents/{result['artifact_id']}")
    assert meta.json()["status"] == "generated"

    download = await client.get(f"/api/documents/{result['artifact_id']}/download")
    assert download.status_code == 200
    assert "lease-filled.docx" in download.headers["content-disposition"]
    assert "Tenant: Jane Doe" in docx_text(download.content)


@pytest.mark.asyncio
async def test_generate_unknown_template_is_404(client: AsyncClient):
    resp = await client.post("/api/documents/generate", json={"template_ids": ["missing"], "client_data": {}})
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Services and overrides
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_service_flow_with_override(client: AsyncClient):
    template = await _parsed_template(client)

    created = await client.post(
        "/api/services/",
        json={"name": "Lease signing", "template_ids": [template["id"]]},
        headers=AUTH_HEADERS,
    )
    assert created.status_code == 201
    service = created.json()
    assert service["status"] == "draft"
    assert service["owner_id"] == "admin-1"
    sid = service["id"]

    early = await client.post(f"/api/services/{sid}/generate")
    assert early.status_code == 409

    assert (await client.post(f"/api/services/{sid}/intake-sent")).json()["status"] == "intake_sent"
    intake = await client.post(
        f"/api/services/{sid}/intake",
        json={"client_data": {"full_name": "Jane Doe", "email": "jane@example.com", "petName": "Rex"}},
    )
    assert intake.json()["status"] == "intake_submitted"

    override = await client.post(
        f"/api/services/{sid}/overrides",
        json={"override_type": "add_field", "payload": {"name": "petName", "label": "Pet Name"}},
        headers={"X-User-Id": "client-1"},
    )
    assert override.status_code == 201
    assert override.json()["status"] == "pending"
    oid = override.json()["id"]

    pending = await client.get(f"/api/services/{sid}/overrides", params={"status": "pending"})
    assert [o["id"] for o in pending.json()] == [oid]

    approved = await client.post(f"/api/overrides/{oid}/approve", json={"notes": "ok"}, headers=AUTH_HEADERS)
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"

    again = await client.post(f"/api/overrides/{oid}/reject", headers=AUTH_HEADERS)
    assert again.status_code == 409

    audit = await client.get(f"/api/services/{sid}/audit")
    assert [(e["event_type"], e["actor_id"]) for e in audit.json()] == [
        ("override.created", "client-1"),
        ("override.approved", "admin-1"),
    ]
    assert (await client.get("/api/services/missing/audit")).status_code == 404

    generated = await client.post(f"/api/services/{sid}/generate")
    assert generated.status_code == 200
    [result] = generated.json()
    assert result["status"] == "generated"
    assert result["unmatched_fields"] == ["propertyAddress"]

    ready = await client.get(f"/api/services/{sid}")
    assert ready.json()["status"] == "documents_ready"
    done = await client.post(f"/api/services/{sid}/complete")
    assert done.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_override_for_unknown_service_is_404(client: AsyncClient):
    resp = await client.post(
        "/api/services/missing/overrides",
        json={"override_type": "remove_field", "payload": {"name": "email"}},
        headers=AUTH_HEADERS,
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_invalid_override_payload_is_400(client: AsyncClient):
    template = await _parsed_template(client)
    service = (
        await client.post(
            "/api/services/",
            json={"name": "Lease", "template_ids": [template["id"]]},
            headers=AUTH_HEADERS,
        )
    ).json()
    resp = await client.post(
        f"/api/services/{service['id']}/overrides",
        json={"override_type": "custom_clause", "payload": {"text": ""}},
        headers=AUTH_HEADERS,
    )
    assert resp.status_code == 400
