"""Tests for the upload, file and job routes."""
import asyncio

import pytest
from sqlalchemy import func, select

from portal_uploads.config import settings
from portal_uploads.models import FileRecord, StorageAccount, UploadSession
from portal_uploads.services.file_storage import file_storage


def init_body(**overrides):
    body = {
        "portalId": "portal-1",
        "fileName": "report.pdf",
        "fileSize": 10,
        "mimeType": "application/pdf",
        "totalChunks": 3,
        "clientName": "Ada",
        "clientEmail": "ada@example.com",
    }
    body.update(overrides)
    return body


async def send_chunk(client, upload_id, index, data, total=3):
    return await client.post(
        "/api/upload/chunked/chunk",
        data={"uploadId": upload_id, "chunkIndex": str(index), "totalChunks": str(total)},
        files={"chunk": (f"part{index}", data, "application/octet-stream")},
    )


@pytest.fixture
async def upload_id(client, make_portal):
    await make_portal()
    resp = await client.post("/api/upload/chunked/init", json=init_body())
    assert resp.status_code == 200
    return resp.json()["uploadId"]


async def test_chunked_upload_round_trip(client, upload_id, storage_dir):
    parts = [b"abcd", b"efgh", b"ij"]
    # Out of order and with one duplicate retry
    for index in (2, 0, 1, 1):
        resp = await send_chunk(client, upload_id, index, parts[index])
        assert resp.status_code == 200
        assert resp.json()["chunkIndex"] == index
    assert resp.json()["received"] == 3

    status = (await client.get(f"/api/upload/chunked/{upload_id}")).json()
    assert status["receivedChunks"] == [0, 1, 2]
    assert status["receivedBytes"] == 10
    assert status["progress"] == 100.0

    resp = await client.post("/api/upload/chunked/complete", json={"uploadId": upload_id, "portalId": "portal-1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["fileName"] == "report.pdf"
    assert body["webViewLink"].endswith(f"/api/files/{body['fileId']}/download")
    assert body["storageProvider"] == "google_drive"

    download = await client.get(f"/api/files/{body['fileId']}/download")
    assert download.content == b"abcdefghij"
    meta = (await client.get(f"/api/files/{body['fileId']}")).json()
    assert meta["sizeBytes"] == 10
    assert meta["clientName"] == "Ada"
    assert not (storage_dir / "chunks" / upload_id).exists()

    again = await client.post("/api/upload/chunked/complete", json={"uploadId": upload_id})
    assert again.status_code == 400
    assert again.json() == {"error": "Upload session is not active"}


async def test_complete_names_missing_chunk(client, upload_id):
    await send_chunk(client, upload_id, 0, b"abcd")
    await send_chunk(client, upload_id, 2, b"ij")
    resp = await client.post("/api/upload/chunked/complete", json={"uploadId": upload_id})
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Missing chunk 1")


async def test_complete_checks_total_size(client, upload_id):
    for index, data in enumerate([b"abcd", b"efgh", b"i"]):
        await send_chunk(client, upload_id, index, data)
    resp = await client.post("/api/upload/chunked/complete", json={"uploadId": upload_id})
    assert resp.status_code == 400
    assert "Size mismatch" in resp.json()["error"]


async def test_concurrent_completes_finalize_once(client, upload_id, session_factory):
    """Two completes racing on one session: one succeeds, the other is rejected."""
    for index, data in enumerate([b"abcd", b"efgh", b"ij"]):
        await send_chunk(client, upload_id, index, data)

    body = {"uploadId": upload_id, "portalId": "portal-1"}
    responses = await asyncio.gather(
        client.post("/api/upload/chunked/complete", json=body),
        client.post("/api/upload/chunked/complete", json=body),
    )
    assert sorted(r.status_code for r in responses) == [200, 400]
    rejected = next(r for r in responses if r.status_code == 400)
    assert rejected.json() == {"error": "Upload session is not active"}

    async with session_factory() as db:
        count = (await db.execute(select(func.count()).select_from(FileRecord))).scalar_one()
        session = await db.get(UploadSession, upload_id)
    assert count == 1
    assert session.status == "completed"


async def test_failed_assembly_allows_retry(client, upload_id, monkeypatch, session_factory):
    """A storage error during assembly releases the session for another complete."""
    for index, data in enumerate([b"abcd", b"efgh", b"ij"]):
        await send_chunk(client, upload_id, index, data)

    original_assemble = file_storage.assemble

    async def broken_assemble(*args):
        raise OSError("disk full")

    monkeypatch.setattr(file_storage, "assemble", broken_assemble)
    resp = await client.post("/api/upload/chunked/complete", json={"uploadId": upload_id})
    assert resp.status_code == 500
    async with session_factory() as db:
        assert (await db.get(UploadSession, upload_id)).status == "in_progress"

    monkeypatch.setattr(file_storage, "assemble", original_assemble)
    resp = await client.post("/api/upload/chunked/complete", json={"uploadId": upload_id})
    assert resp.status_code == 200


async def test_uploads_need_a_usable_storage_account(client, make_portal, session_factory):
    """An owner whose only account for the portal's provider is disconnected cannot receive files."""
    await make_portal()
    async with session_factory() as db:
        db.add(StorageAccount(
            user_id="portal-owner", provider="google_drive", provider_account_id="g-old",
            display_name="Old Drive", status="DISCONNECTED", is_active=False,
        ))
        await db.commit()

    resp = await client.post("/api/upload/chunked/init", json=init_body())
    assert resp.status_code == 400
    assert resp.json() == {"error": "No active google_drive storage account available"}

    async with session_factory() as db:
        db.add(StorageAccount(
            user_id="portal-owner", provider="google_drive", provider_account_id="g-new",
            display_name="New Drive",
        ))
        await db.commit()

    resp = await client.post("/api/upload/chunked/init", json=init_body())
    assert resp.status_code == 200


async def test_chunk_validation(client, upload_id, monkeypatch):
    resp = await send_chunk(client, "no-such-upload", 0, b"x")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Upload session not found"}

    resp = await send_chunk(client, upload_id, 3, b"x")
    assert resp.status_code == 400

    resp = await send_chunk(client, upload_id, 0, b"x", total=4)
    assert resp.status_code == 400

    monkeypatch.setattr(settings, "UPLOAD_MAX_CHUNK_BYTES", 3)
    resp = await send_chunk(client, upload_id, 0, b"abcd")
    assert resp.status_code == 413


async def test_init_validation(client, make_portal):
    await make_portal(
        "strict",
        max_file_size=100,
        allowed_file_types=["image/*", "application/pdf"],
        require_client_name=True,
    )
    await make_portal("closed", is_active=False)

    async def init(**overrides):
        return await client.post("/api/upload/chunked/init", json=init_body(portalId="strict", **overrides))

    assert (await init(portalId="missing")).status_code == 404
    assert (await init(portalId="closed")).json() == {"error": "Portal is not active"}
    assert (await init(fileName="")).json() == {"error": "Missing required fields"}
    assert (await init(clientName=None)).json() == {"error": "Client name is required"}
    assert (await init(fileSize=101)).json()["error"].startswith("File too large")
    assert (await init(mimeType="text/plain")).status_code == 400
    assert (await init(mimeType="image/png")).status_code == 200
    assert (await init(totalChunks=0)).status_code == 400
    assert (await init(totalChunks=settings.UPLOAD_MAX_CHUNKS + 1)).status_code == 400


async def test_single_request_upload(client, make_portal):
    await make_portal()
    resp = await client.post(
        "/api/upload",
        data={"portalId": "portal-1", "clientName": "Ada"},
        files={"file": ("notes.txt", b"hello world", "text/plain")},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["uploadId"]
    download = await client.get(f"/api/files/{body['fileId']}/download")
    assert download.content == b"hello world"


async def test_single_request_upload_rejects_disallowed_type(client, make_portal):
    await make_portal(allowed_file_types=["application/pdf"])
    resp = await client.post(
        "/api/upload",
        data={"portalId": "portal-1"},
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "This file type is not allowed for this portal"}


async def test_unknown_file(client):
    resp = await client.get("/api/files/nope")
    assert resp.status_code == 404
    assert resp.json() == {"error": "File not found"}


async def test_jobs_submit_and_cancel(client):
    resp = await client.post("/api/jobs", json={"jobType": "nope"})
    assert resp.status_code == 400

    resp = await client.post("/api/jobs", json={"jobType": "storage-maintenance", "params": {"user_id": "u"}})
    assert resp.status_code == 201
    job = resp.json()
    assert job["status"] == "queued"

    resp = await client.post(f"/api/jobs/{job['id']}/cancel")
    assert resp.json() == {"id": job["id"], "status": "cancelled"}
    listed = (await client.get("/api/jobs", params={"status": "cancelled"})).json()
    assert [j["id"] for j in listed] == [job["id"]]
