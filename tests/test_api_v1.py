from __future__ import annotations

import hashlib
import io
import time
import zipfile

import jwt
import pytest
from fastapi.testclient import TestClient

from app.api.v1 import routes_admin
from app.core.config import get_settings
from app.core.jobs import get_job_backend
from app.ingest.thumbnails import THUMBNAIL_KINDS
from app.main import create_app
from tests.conftest import JWT_SECRET, build_token, make_jpeg

TERMINAL_JOB_STATUSES = {"succeeded", "failed", "dead_lettered"}
BUSY_QUEUE_STATES = {"pending", "active"}


def _wait_for_job(client: TestClient, location: str, headers: dict, timeout_s: float = 15.0) -> dict:
    deadline = time.monotonic() + timeout_s
    while True:
        job = client.get(location, headers=headers)
        assert job.status_code == 200, job.text
        body = job.json()
        if body["status"] in TERMINAL_JOB_STATUSES and body["queue_state"] not in BUSY_QUEUE_STATES:
            return body
        assert time.monotonic() < deadline, f"job still {body['status']}"
        time.sleep(0.05)


def _upload(
    client: TestClient, headers: dict, data: bytes, filename: str = "IMG_0001.jpg", *, wait: bool = True
) -> tuple[str, dict]:
    init = client.post(
        "/v1/assets/uploads",
        json={"filename": filename, "content_type": "image/jpeg", "size": len(data)},
        headers=headers,
    )
    assert init.status_code == 201, init.text
    asset_id = init.json()["asset_id"]
    put = client.put(f"/v1/assets/{asset_id}/content", content=data, headers=headers)
    assert put.status_code == 202, put.text
    if wait:
        _wait_for_job(client, put.headers["location"], headers)
    return asset_id, put


@pytest.fixture()
def small_limit_client(monkeypatch, configure_environment):
    monkeypatch.setenv("PICTOR_MAX_UPLOAD_SIZE_BYTES", "1024")
    get_settings.cache_clear()
    get_job_backend.cache_clear()
    with TestClient(create_app()) as client:
        yield client


def test_v1_health_ok(client):
    resp = client.get("/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_authentication_required(client):
    resp = client.get("/v1/assets/storage-usage")
    assert resp.status_code == 401
    assert resp.json()["detail"] == "missing_authorization"

    resp = client.get("/v1/assets/storage-usage", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401

    resp = client.get("/v1/assets/storage-usage", headers={"Authorization": f"Bearer {build_token(None)}"})
    assert resp.status_code == 403
    assert resp.json()["detail"] == "user_required"


def test_admin_env_check_requires_scope(client, user_headers, admin_headers, monkeypatch):
    resp = client.get("/v1/admin/env-check", headers=user_headers)
    assert resp.status_code == 403
    assert resp.json()["detail"] == "admin_scope_required"

    monkeypatch.setattr(routes_admin, "check_tools", lambda: {"ffprobe": True, "rclone": False})
    resp = client.get("/v1/admin/env-check", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json() == {"ffprobe": True, "rclone": False}


def test_upload_process_and_download(client, user_headers, jpeg_bytes):
    asset_id, put = _upload(client, user_headers, jpeg_bytes)
    body = put.json()
    assert body["asset_id"] == asset_id
    assert put.headers["location"] == f"/v1/jobs/{body['job_id']}"
    assert body["location"] == put.headers["location"]

    job = client.get(put.headers["location"], headers=user_headers)
    assert job.status_code == 200
    job_json = job.json()
    assert job_json["type"] == "process_asset"
    assert job_json["status"] == "succeeded"
    assert job_json["queue_state"] == "done"
    assert job_json["error"] is None

    asset = client.get(f"/v1/assets/{asset_id}", headers=user_headers)
    assert asset.status_code == 200
    asset_json = asset.json()
    assert asset_json["status"] == "active"
    assert asset_json["checksum"] == hashlib.sha256(jpeg_bytes).hexdigest()
    assert asset_json["metadata"]["width"] == 640
    assert {thumb["kind"] for thumb in asset_json["thumbnails"]} == set(THUMBNAIL_KINDS)

    original = client.get(f"/v1/assets/{asset_id}/download", headers=user_headers)
    assert original.status_code == 200
    assert original.content == jpeg_bytes
    assert original.headers["cache-control"] == "private, max-age=3600"
    assert original.headers["content-type"] == "image/jpeg"
    assert 'filename="IMG_0001.jpg"' in original.headers["content-disposition"]

    thumb = client.get(f"/v1/assets/{asset_id}/download", params={"thumbnail": "thumb"}, headers=user_headers)
    assert thumb.status_code == 200
    assert thumb.headers["cache-control"] == "public, max-age=86400"
    assert thumb.content[:2] == b"\xff\xd8"

    bad_kind = client.get(f"/v1/assets/{asset_id}/download", params={"thumbnail": "poster"}, headers=user_headers)
    assert bad_kind.status_code == 400
    assert bad_kind.json()["detail"] == "invalid_thumbnail_kind"


def test_assets_are_private(client, user_headers, other_user_headers, jpeg_bytes):
    asset_id, put = _upload(client, user_headers, jpeg_bytes)

    assert client.get(f"/v1/assets/{asset_id}", headers=other_user_headers).status_code == 404
    assert client.get(f"/v1/assets/{asset_id}/download", headers=other_user_headers).status_code == 404
    assert client.delete(f"/v1/assets/{asset_id}", headers=other_user_headers).status_code == 404
    assert client.get(put.headers["location"], headers=other_user_headers).status_code == 404


def test_upload_validation_errors(client, user_headers):
    too_big = client.post(
        "/v1/assets/uploads",
        json={"filename": "a.jpg", "content_type": "image/jpeg", "size": 10**12},
        headers=user_headers,
    )
    assert too_big.status_code == 413
    assert too_big.json()["detail"] == "upload_too_large"

    bad_ext = client.post(
        "/v1/assets/uploads",
        json={"filename": "notes.txt", "content_type": "text/plain", "size": 10},
        headers=user_headers,
    )
    assert bad_ext.status_code == 400
    assert bad_ext.json()["detail"] == "extension_not_allowed"

    bad_checksum = client.post(
        "/v1/assets/uploads",
        json={"filename": "a.jpg", "size": 10, "checksum": "xyz"},
        headers=user_headers,
    )
    assert bad_checksum.status_code == 400
    assert bad_checksum.json()["detail"] == "invalid_checksum"

    missing = client.get("/v1/assets/does-not-exist", headers=user_headers)
    assert missing.status_code == 404
    assert missing.json()["detail"] == "asset_not_found"


def test_completion_conflicts(client, user_headers, jpeg_bytes):
    asset_id, _ = _upload(client, user_headers, jpeg_bytes)
    again = client.put(f"/v1/assets/{asset_id}/content", content=jpeg_bytes, headers=user_headers)
    assert again.status_code == 409
    assert again.json()["detail"] == "asset_not_uploading"

    init = client.post(
        "/v1/assets/uploads",
        json={"filename": "b.jpg", "content_type": "image/jpeg", "size": 10},
        headers=user_headers,
    )
    pending_id = init.json()["asset_id"]
    complete = client.post(f"/v1/assets/{pending_id}/complete", headers=user_headers)
    assert complete.status_code == 400
    assert complete.json()["detail"] == "upload_missing"

    not_ready = client.get(f"/v1/assets/{pending_id}/download", headers=user_headers)
    assert not_ready.status_code == 409
    assert not_ready.json()["detail"] == "asset_not_ready"


def test_streamed_upload_over_limit(small_limit_client, user_headers):
    init = small_limit_client.post(
        "/v1/assets/uploads",
        json={"filename": "a.jpg", "content_type": "image/jpeg", "size": 512},
        headers=user_headers,
    )
    assert init.status_code == 201, init.text
    asset_id = init.json()["asset_id"]
    resp = small_limit_client.put(f"/v1/assets/{asset_id}/content", content=b"x" * 4096, headers=user_headers)
    assert resp.status_code == 413
    assert resp.json()["detail"] == "upload_too_large"
    assert small_limit_client.get(f"/v1/assets/{asset_id}", headers=user_headers).json()["status"] == "uploading"


def test_trash_restore_and_permanent_delete(client, user_headers, jpeg_bytes):
    asset_id, _ = _upload(client, user_headers, jpeg_bytes)

    trashed = client.delete(f"/v1/assets/{asset_id}", headers=user_headers)
    assert trashed.status_code == 200
    assert trashed.json()["status"] == "trashed"
    cleanup_id = trashed.json()["cleanup_job_id"]

    cleanup = client.get(f"/v1/jobs/{cleanup_id}", headers=user_headers).json()
    assert cleanup["type"] == "cleanup"
    assert cleanup["priority"] == "low"
    assert cleanup["status"] == "scheduled"
    assert cleanup["queue_state"] == "scheduled"
    assert cleanup["scheduled_for"] is not None

    assert client.delete(f"/v1/assets/{asset_id}", headers=user_headers).status_code == 409

    restored = client.post(f"/v1/assets/{asset_id}/restore", headers=user_headers)
    assert restored.status_code == 200
    assert restored.json()["status"] == "active"
    assert client.post(f"/v1/assets/{asset_id}/restore", headers=user_headers).status_code == 409

    deleted = client.delete(f"/v1/assets/{asset_id}/permanent", headers=user_headers)
    assert deleted.status_code == 200
    deleted_json = deleted.json()
    assert deleted_json["status"] == "deleted"
    assert len(deleted_json["removed_objects"]) == 1 + len(THUMBNAIL_KINDS)
    assert deleted_json["errors"] == []
    assert client.get(f"/v1/assets/{asset_id}", headers=user_headers).status_code == 404


def test_duplicates_and_bulk_check(client, user_headers, other_user_headers, jpeg_bytes):
    first, _ = _upload(client, user_headers, jpeg_bytes, filename="a.jpg")
    second, _ = _upload(client, user_headers, jpeg_bytes, filename="b.jpg")
    _upload(client, user_headers, make_jpeg(320, 240, color=(0, 0, 255)), filename="c.jpg")
    _upload(client, other_user_headers, jpeg_bytes, filename="theirs.jpg")
    digest = hashlib.sha256(jpeg_bytes).hexdigest()

    groups = client.get("/v1/duplicates", headers=user_headers)
    assert groups.status_code == 200
    groups_json = groups.json()
    assert len(groups_json) == 1
    assert groups_json[0]["duplicate_id"] == digest
    assert {member["asset_id"] for member in groups_json[0]["assets"]} == {first, second}

    assert client.get("/v1/duplicates", headers=other_user_headers).json() == []

    by_checksum = client.get(f"/v1/duplicates/checksum/{digest.upper()}", headers=user_headers)
    assert {member["asset_id"] for member in by_checksum.json()} == {first, second}
    assert client.get("/v1/duplicates/checksum/zzzz", headers=user_headers).status_code == 400

    by_size = client.get(f"/v1/duplicates/size/{len(jpeg_bytes)}", headers=user_headers)
    assert {member["asset_id"] for member in by_size.json()} == {first, second}
    assert client.get("/v1/duplicates/size/-5", headers=user_headers).status_code == 400

    bulk = client.post(
        "/v1/assets/bulk-upload-check",
        json={"assets": [{"id": "x", "checksum": digest}, {"id": "y", "checksum": "00" * 32}]},
        headers=user_headers,
    )
    assert bulk.status_code == 200
    results = {item["id"]: item for item in bulk.json()["results"]}
    assert results["x"]["action"] == "reject"
    assert results["x"]["reason"] == "duplicate"
    assert results["x"]["asset_id"] in {first, second}
    assert results["y"] == {"id": "y", "action": "accept", "reason": None, "asset_id": None}

    usage = client.get("/v1/assets/storage-usage", headers=user_headers)
    assert usage.status_code == 200
    assert usage.json()["object_count"] == 3 * (1 + len(THUMBNAIL_KINDS))


def test_admin_queue_controls(client, admin_headers, user_headers):
    assert client.get("/v1/admin/queues", headers=user_headers).status_code == 403

    stats = client.get("/v1/admin/queues", headers=admin_headers)
    assert stats.status_code == 200
    assert [item["priority"] for item in stats.json()] == ["critical", "high", "normal", "low"]
    assert [item["name"] for item in stats.json()][0] == "pictor-critical"

    paused = client.post("/v1/admin/queues/pictor-normal/pause", headers=admin_headers)
    assert paused.status_code == 200
    assert paused.json()["paused"] is True

    cleared = client.delete("/v1/admin/queues/normal/jobs", headers=admin_headers)
    assert cleared.json()["cleared"] == 0

    resumed = client.post("/v1/admin/queues/normal/resume", headers=admin_headers)
    assert resumed.json()["paused"] is False

    unknown = client.post("/v1/admin/queues/pictor-urgent/pause", headers=admin_headers)
    assert unknown.status_code == 404
    assert unknown.json()["detail"] == "queue_not_found"


def test_paused_queue_leaves_asset_processing(client, admin_headers, user_headers, jpeg_bytes):
    client.post("/v1/admin/queues/normal/pause", headers=admin_headers)
    asset_id, put = _upload(client, user_headers, jpeg_bytes, wait=False)

    job = client.get(put.headers["location"], headers=user_headers).json()
    assert job["status"] == "queued"
    assert job["queue_state"] == "pending"
    assert client.get(f"/v1/assets/{asset_id}", headers=user_headers).json()["status"] == "processing"

    client.post("/v1/admin/queues/normal/resume", headers=admin_headers)
    assert _wait_for_job(client, put.headers["location"], user_headers)["status"] == "succeeded"
    assert client.get(f"/v1/assets/{asset_id}", headers=user_headers).json()["status"] == "active"


def test_dev_token_disabled_outside_development(client):
    resp = client.post("/v1/admin/dev-token", json={"user_id": "user-1"})
    assert resp.status_code == 403
    assert resp.json()["detail"] == "dev_token_disabled"


def test_scopes_may_be_space_separated(client):
    token = jwt.encode({"sub": "admin-2", "scopes": "read admin"}, JWT_SECRET, algorithm="HS256")
    resp = client.get("/v1/admin/queues", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200


def test_ranged_download(client, user_headers, jpeg_bytes):
    asset_id, _ = _upload(client, user_headers, jpeg_bytes)
    url = f"/v1/assets/{asset_id}/download"

    full = client.get(url, headers=user_headers)
    assert full.status_code == 200
    assert full.headers["accept-ranges"] == "bytes"

    partial = client.get(url, headers={**user_headers, "Range": "bytes=2-11"})
    assert partial.status_code == 206
    assert partial.content == jpeg_bytes[2:12]
    assert partial.headers["content-range"] == f"bytes 2-11/{len(jpeg_bytes)}"
    assert partial.headers["content-length"] == "10"

    suffix = client.get(url, headers={**user_headers, "Range": "bytes=-3"})
    assert suffix.status_code == 206
    assert suffix.content == jpeg_bytes[-3:]

    ignored = client.get(url, headers={**user_headers, "Range": "bytes=0-1,4-5"})
    assert ignored.status_code == 200
    assert ignored.content == jpeg_bytes

    beyond = client.get(url, headers={**user_headers, "Range": f"bytes={len(jpeg_bytes) + 10}-"})
    assert beyond.status_code == 416
    assert beyond.json()["detail"] == "range_not_satisfiable"
    assert beyond.headers["content-range"] == f"bytes */{len(jpeg_bytes)}"


def test_archive_download(client, user_headers, other_user_headers, jpeg_bytes):
    first, _ = _upload(client, user_headers, jpeg_bytes, filename="a.jpg")
    second, _ = _upload(client, user_headers, make_jpeg(64, 48), filename="b.jpg")
    theirs, _ = _upload(client, other_user_headers, jpeg_bytes, filename="theirs.jpg")
    requested = {"asset_ids": [first, second, theirs]}

    info = client.post("/v1/assets/archive/info", json=requested, headers=user_headers)
    assert info.status_code == 200
    assert info.json()["asset_ids"] == [first, second]
    assert info.json()["total_size"] == len(jpeg_bytes) + len(make_jpeg(64, 48))

    resp = client.post("/v1/assets/archive", json=requested, headers=user_headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/zip"
    assert resp.headers["content-disposition"].startswith('attachment; filename="pictor-')
    assert resp.headers["x-asset-count"] == "2"
    with zipfile.ZipFile(io.BytesIO(resp.content)) as bundle:
        names = bundle.namelist()
        assert [name.rsplit("/", 1)[-1] for name in names] == ["a.jpg", "b.jpg"]
        assert bundle.read(names[0]) == jpeg_bytes

    empty = client.post("/v1/assets/archive", json={"asset_ids": []}, headers=user_headers)
    assert empty.status_code == 422
    nothing = client.post("/v1/assets/archive", json={"asset_ids": [theirs]}, headers=user_headers)
    assert nothing.status_code == 404
    assert nothing.json()["detail"] == "no_archivable_assets"
