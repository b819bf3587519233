from __future__ import annotations

import io
import json
import os
import shutil
import subprocess
import tempfile
from datetime import datetime
from typing import Any, BinaryIO, Sequence

from app.core.errors import ObjectNotFoundError, StorageError
from app.core.logging import get_logger

from .base import ObjectMetadata, StorageBackend, StoredObject

_NOT_FOUND_MARKERS = ("not found", "doesn't exist", "does not exist")


def _parse_mod_time(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        # rclone emits nanosecond precision, which fromisoformat rejects
        head, dot, tail = raw.partition(".")
        if dot:
            digits = "".join(ch for ch in tail if ch.isdigit())
            zone = tail[len(digits) :]
            raw = f"{head}.{digits[:6]}{zone}"
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


class RcloneBackend(StorageBackend):
    """Storage on any rclone remote, driven through the ``rclone`` binary."""

    name = "rclone"

    def __init__(
        self,
        remote: str,
        *,
        path: str = "",
        config_file: str | None = None,
        flags: Sequence[str] = (),
        timeout_s: float = 30.0,
        transfer_timeout_s: float = 3600.0,
        binary: str = "rclone",
    ):
        if not remote:
            raise StorageError("create rclone backend", "", self.name, "remote name is required")
        self.config_file = config_file
        self.flags = tuple(flags)
        self.timeout_s = timeout_s
        self.transfer_timeout_s = transfer_timeout_s
        self.binary = binary
        remote = remote.rstrip(":")
        if path and path != "/":
            self.remote = f"{remote}:{path.strip('/')}"
        else:
            self.remote = f"{remote}:"
        self.logger = get_logger(component="storage", backend=self.name)

    def remote_path(self, path: str) -> str:
        path = path.lstrip("/")
        if not path:
            return self.remote
        if self.remote.endswith(":"):
            return self.remote + path
        return f"{self.remote}/{path}"

    def build_command(self, *args: str) -> list[str]:
        command = [self.binary]
        if self.config_file:
            command += ["--config", self.config_file]
        command += list(self.flags)
        command += list(args)
        return command

    def _run(
        self,
        op: str,
        path: str,
        *args: str,
        stdout: BinaryIO | None = None,
        timeout_s: float | None = None,
    ) -> bytes:
        """Run one rclone command; ``stdout`` receives the output instead of memory when given."""
        command = self.build_command(*args)
        timeout = timeout_s or self.timeout_s
        self.logger.debug("rclone_run", op=op, command=command)
        try:
            proc = subprocess.run(
                command,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise StorageError(op, path, self.name, f"rclone timed out after {timeout}s") from exc
        except OSError as exc:
            raise StorageError(op, path, self.name, exc) from exc

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            if any(marker in stderr.lower() for marker in _NOT_FOUND_MARKERS):
                raise ObjectNotFoundError(op, path, self.name, stderr or "object not found")
            raise StorageError(op, path, self.name, f"rclone exited {proc.returncode}: {stderr}")
        return proc.stdout or b""

    def check_connection(self) -> None:
        self._run("test connection", "", "lsd", self.remote, "--max-depth", "1")

    def upload(self, path: str, stream: BinaryIO, size: int, content_type: str | None) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix="rclone-upload-")
        try:
            with os.fdopen(fd, "wb") as handle:
                shutil.copyfileobj(stream, handle)
            self._run("upload", path, "copyto", tmp_name, self.remote_path(path), timeout_s=self.transfer_timeout_s)
        except OSError as exc:
            raise StorageError("upload", path, self.name, exc) from exc
        finally:
            os.unlink(tmp_name)

    def upload_bytes(self, path: str, data: bytes, content_type: str | None) -> None:
        self.upload(path, io.BytesIO(data), len(data), content_type)

    def download(self, path: str) -> BinaryIO:
        # cat on a missing object exits 0 on some remotes, so check existence first
        if not self.exists(path):
            raise ObjectNotFoundError("download", path, self.name, "object not found")
        spool = tempfile.TemporaryFile(prefix="rclone-download-")
        try:
            self._run("download", path, "cat", self.remote_path(path), stdout=spool, timeout_s=self.transfer_timeout_s)
        except Exception:
            spool.close()
            raise
        spool.seek(0)
        return spool

    def delete(self, path: str) -> None:
        self._run("delete", path, "deletefile", self.remote_path(path))

    def exists(self, path: str) -> bool:
        try:
            output = self._run("exists", path, "lsf", self.remote_path(path))
        except ObjectNotFoundError:
            return False
        return bool(output.strip())

    def get_size(self, path: str) -> int:
        return self.get_metadata(path).size

    def copy(self, src: str, dst: str) -> None:
        self._run("copy", src, "copyto", self.remote_path(src), self.remote_path(dst))

    def move(self, src: str, dst: str) -> None:
        self._run("move", src, "moveto", self.remote_path(src), self.remote_path(dst))

    def _lsjson(self, op: str, path: str, *extra: str) -> list[dict[str, Any]]:
        output = self._run(op, path, "lsjson", *extra, self.remote_path(path))
        try:
            entries = json.loads(output or b"[]")
        except json.JSONDecodeError as exc:
            raise StorageError(op, path, self.name, f"failed to parse rclone output: {exc}") from exc
        if not isinstance(entries, list):
            raise StorageError(op, path, self.name, "unexpected rclone output")
        return entries

    def list(self, prefix: str, recursive: bool = True) -> list[StoredObject]:
        extra = ("--recursive",) if recursive else ()
        try:
            entries = self._lsjson("list", prefix, *extra)
        except ObjectNotFoundError:
            return []
        base = prefix.strip("/")
        objects: list[StoredObject] = []
        for entry in entries:
            relative = entry.get("Path") or entry.get("Name") or ""
            objects.append(
                StoredObject(
                    path=f"{base}/{relative}" if base else relative,
                    size=max(int(entry.get("Size") or 0), 0),
                    modified_at=_parse_mod_time(entry.get("ModTime")),
                    is_dir=bool(entry.get("IsDir")),
                    content_type=entry.get("MimeType"),
                )
            )
        return objects

    def get_metadata(self, path: str) -> ObjectMetadata:
        entries = self._lsjson("get metadata", path, "--hash")
        if not entries:
            raise ObjectNotFoundError("get metadata", path, self.name, "file not found")
        entry = entries[0]
        hashes = {str(k): str(v) for k, v in (entry.get("Hashes") or {}).items()}
        return ObjectMetadata(
            path=path,
            size=max(int(entry.get("Size") or 0), 0),
            modified_at=_parse_mod_time(entry.get("ModTime")),
            content_type=entry.get("MimeType"),
            checksum=hashes.get("sha256") or hashes.get("md5"),
            extra=hashes,
        )


__all__ = ["RcloneBackend"]
