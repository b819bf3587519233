from __future__ import annotations

import json
import subprocess
from datetime import timedelta
from types import SimpleNamespace

import pytest

from app.core.errors import ObjectNotFoundError, OperationNotSupportedError, StorageError
from app.storage import rclone as rclone_module
from app.storage.rclone import RcloneBackend


class FakeRclone:
    """Records rclone invocations and replays canned results."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.timeouts: list[float] = []
        self.results: list[SimpleNamespace] = []

    def queue(self, stdout: bytes = b"", returncode: int = 0, stderr: bytes = b""):
        self.results.append(SimpleNamespace(stdout=stdout, stderr=stderr, returncode=returncode))

    def __call__(self, command, **kwargs):
        self.calls.append(list(command))
        self.timeouts.append(kwargs.get("timeout"))
        result = self.results.pop(0) if self.results else SimpleNamespace(stdout=b"", stderr=b"", returncode=0)
        target = kwargs.get("stdout")
        if hasattr(target, "write"):
            target.write(result.stdout)
            return SimpleNamespace(stdout=None, stderr=result.stderr, returncode=result.returncode)
        return result


@pytest.fixture()
def fake_rclone(monkeypatch) -> FakeRclone:
    fake = FakeRclone()
    monkeypatch.setattr(rclone_module.subprocess, "run", fake)
    return fake


@pytest.mark.parametrize(
    "remote,path,expected",
    [
        ("gdrive", "", "gdrive:"),
        ("gdrive:", "/", "gdrive:"),
        ("gdrive", "photos/", "gdrive:photos"),
        ("gdrive", "/photos", "gdrive:photos"),
    ],
)
def test_remote_root_normalisation(remote, path, expected):
    assert RcloneBackend(remote, path=path).remote == expected


def test_remote_path_joins_without_double_separator():
    assert RcloneBackend("gdrive").remote_path("/u1/a.jpg") == "gdrive:u1/a.jpg"
    assert RcloneBackend("gdrive", path="photos").remote_path("u1/a.jpg") == "gdrive:photos/u1/a.jpg"


def test_remote_is_required():
    with pytest.raises(StorageError):
        RcloneBackend("")


def test_build_command_includes_config_and_flags():
    backend = RcloneBackend("gdrive", config_file="/etc/rclone.conf", flags=("--fast-list",))
    assert backend.build_command("lsf", "gdrive:") == [
        "rclone",
        "--config",
        "/etc/rclone.conf",
        "--fast-list",
        "lsf",
        "gdrive:",
    ]


def test_upload_bytes_copies_temp_file(fake_rclone):
    backend = RcloneBackend("gdrive")
    backend.upload_bytes("u1/a.jpg", b"data", "image/jpeg")
    command = fake_rclone.calls[-1]
    assert command[1] == "copyto"
    assert command[-1] == "gdrive:u1/a.jpg"


def test_download_checks_existence(fake_rclone):
    backend = RcloneBackend("gdrive", timeout_s=5, transfer_timeout_s=600)
    fake_rclone.queue(stdout=b"a.jpg\n")
    fake_rclone.queue(stdout=b"payload")
    with backend.download("u1/a.jpg") as stream:
        assert stream.read() == b"payload"
    assert [call[1] for call in fake_rclone.calls] == ["lsf", "cat"]
    # the object body goes through a temp file under the transfer timeout
    assert fake_rclone.timeouts == [5, 600]


def test_failed_download_is_storage_error(fake_rclone):
    backend = RcloneBackend("gdrive")
    fake_rclone.queue(stdout=b"a.jpg\n")
    fake_rclone.queue(returncode=1, stderr=b"connection reset")
    with pytest.raises(StorageError):
        backend.download("u1/a.jpg")


def test_upload_uses_transfer_timeout(fake_rclone):
    RcloneBackend("gdrive", transfer_timeout_s=900).upload_bytes("u1/a.jpg", b"data", None)
    assert fake_rclone.timeouts == [900]


def test_presign_and_public_urls_are_unsupported(monkeypatch):
    def _fail(command, **kwargs):
        raise AssertionError(f"unexpected rclone call: {command}")

    monkeypatch.setattr(rclone_module.subprocess, "run", _fail)
    backend = RcloneBackend("gdrive")
    assert backend.supports_presigned_urls() is False
    with pytest.raises(OperationNotSupportedError):
        backend.get_presigned_upload_url("u1/a.jpg", "image/jpeg", timedelta(minutes=5))
    with pytest.raises(OperationNotSupportedError):
        backend.get_presigned_download_url("u1/a.jpg", timedelta(minutes=5))
    with pytest.raises(OperationNotSupportedError):
        backend.get_public_url("u1/a.jpg")


def test_download_missing_object(fake_rclone):
    backend = RcloneBackend("gdrive")
    fake_rclone.queue(stdout=b"")
    with pytest.raises(ObjectNotFoundError):
        backend.download("u1/missing.jpg")


def test_not_found_stderr_maps_to_not_found(fake_rclone):
    backend = RcloneBackend("gdrive")
    fake_rclone.queue(returncode=3, stderr=b"ERROR : object not found")
    with pytest.raises(ObjectNotFoundError):
        backend.delete("u1/missing.jpg")


def test_other_failures_are_storage_errors(fake_rclone):
    backend = RcloneBackend("gdrive")
    fake_rclone.queue(returncode=1, stderr=b"permission denied")
    with pytest.raises(StorageError) as exc_info:
        backend.copy("a.jpg", "b.jpg")
    assert not isinstance(exc_info.value, ObjectNotFoundError)
    assert "permission denied" in str(exc_info.value)


def test_timeout_is_storage_error(monkeypatch):
    def _timeout(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs.get("timeout"))

    monkeypatch.setattr(rclone_module.subprocess, "run", _timeout)
    with pytest.raises(StorageError):
        RcloneBackend("gdrive", timeout_s=1).exists("a.jpg")


def test_list_and_metadata_parse_lsjson(fake_rclone):
    backend = RcloneBackend("gdrive")
    listing = [
        {"Path": "2024/05/a1/a.jpg", "Name": "a.jpg", "Size": 10, "ModTime": "2024-05-01T10:00:00.123456789Z", "IsDir": False},
        {"Path": "2024/05/a1/thumbnails", "Name": "thumbnails", "Size": -1, "IsDir": True},
    ]
    fake_rclone.queue(stdout=json.dumps(listing).encode())
    objects = backend.list("u1/")
    assert [obj.path for obj in objects] == ["u1/2024/05/a1/a.jpg", "u1/2024/05/a1/thumbnails"]
    assert objects[0].modified_at is not None
    assert objects[1].size == 0 and objects[1].is_dir

    meta_entry = [{"Path": "a.jpg", "Size": 10, "MimeType": "image/jpeg", "Hashes": {"sha256": "ab" * 32}}]
    fake_rclone.queue(stdout=json.dumps(meta_entry).encode())
    meta = backend.get_metadata("u1/a.jpg")
    assert meta.size == 10
    assert meta.checksum == "ab" * 32
    assert "--hash" in fake_rclone.calls[-1]


def test_metadata_for_missing_object(fake_rclone):
    fake_rclone.queue(stdout=b"[]")
    with pytest.raises(ObjectNotFoundError):
        RcloneBackend("gdrive").get_metadata("u1/missing.jpg")
