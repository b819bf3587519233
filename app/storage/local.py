from __future__ import annotations

import errno
import mimetypes
import os
import posixpath
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from app.core.errors import ObjectNotFoundError, StorageError

from .base import UNKNOWN_SIZE, ObjectMetadata, StorageBackend, StoredObject

_CHUNK_SIZE = 1024 * 1024


def parse_mode(raw: str, default: int) -> int:
    if not raw:
        return default
    try:
        return int(raw, 8)
    except ValueError as exc:
        raise StorageError("parse mode", raw, "local", exc) from exc


class LocalBackend(StorageBackend):
    """Filesystem-backed storage rooted at a single directory."""

    name = "local"

    def __init__(self, root_path: str | Path, *, file_mode: str = "0644", dir_mode: str = "0755"):
        self.root = Path(root_path).expanduser().resolve()
        self.file_mode = parse_mode(file_mode, 0o644)
        self.dir_mode = parse_mode(dir_mode, 0o755)
        try:
            self.root.mkdir(parents=True, exist_ok=True, mode=self.dir_mode)
        except OSError as exc:
            raise StorageError("create root", str(self.root), self.name, exc) from exc

    def _resolve(self, path: str) -> Path:
        cleaned = posixpath.normpath("/" + path.replace("\\", "/")).lstrip("/")
        if cleaned in {"", "."}:
            return self.root
        target = (self.root / cleaned).resolve()
        if target != self.root and self.root not in target.parents:
            raise StorageError("resolve", path, self.name, "path escapes storage root")
        return target

    def _relative(self, target: Path) -> str:
        return target.relative_to(self.root).as_posix()

    def _ensure_parent(self, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True, mode=self.dir_mode)

    def upload(self, path: str, stream: BinaryIO, size: int, content_type: str | None) -> None:
        target = self._resolve(path)
        try:
            self._ensure_parent(target)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as handle:
                    remaining = size if size != UNKNOWN_SIZE else None
                    while remaining is None or remaining > 0:
                        want = _CHUNK_SIZE if remaining is None else min(_CHUNK_SIZE, remaining)
                        chunk = stream.read(want)
                        if not chunk:
                            break
                        handle.write(chunk)
                        if remaining is not None:
                            remaining -= len(chunk)
                os.chmod(tmp_name, self.file_mode)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageError("upload", path, self.name, exc) from exc

    def upload_bytes(self, path: str, data: bytes, content_type: str | None) -> None:
        target = self._resolve(path)
        try:
            self._ensure_parent(target)
            target.write_bytes(data)
            os.chmod(target, self.file_mode)
        except OSError as exc:
            raise StorageError("upload bytes", path, self.name, exc) from exc

    def download(self, path: str) -> BinaryIO:
        target = self._resolve(path)
        try:
            return target.open("rb")
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise ObjectNotFoundError("download", path, self.name, "file not found") from exc
        except OSError as exc:
            raise StorageError("download", path, self.name, exc) from exc

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError as exc:
            raise ObjectNotFoundError("delete", path, self.name, "file not found") from exc
        except OSError as exc:
            raise StorageError("delete", path, self.name, exc) from exc

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def get_size(self, path: str) -> int:
        target = self._resolve(path)
        try:
            return target.stat().st_size
        except FileNotFoundError as exc:
            raise ObjectNotFoundError("get size", path, self.name, "file not found") from exc
        except OSError as exc:
            raise StorageError("get size", path, self.name, exc) from exc

    def copy(self, src: str, dst: str) -> None:
        source = self._resolve(src)
        target = self._resolve(dst)
        if not source.is_file():
            raise ObjectNotFoundError("copy", src, self.name, "source file not found")
        try:
            self._ensure_parent(target)
            shutil.copyfile(source, target)
            os.chmod(target, self.file_mode)
        except OSError as exc:
            raise StorageError("copy", src, self.name, exc) from exc

    def move(self, src: str, dst: str) -> None:
        source = self._resolve(src)
        target = self._resolve(dst)
        if not source.is_file():
            raise ObjectNotFoundError("move", src, self.name, "source file not found")
        try:
            self._ensure_parent(target)
            os.replace(source, target)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise StorageError("move", src, self.name, exc) from exc
            self.copy(src, dst)
            self.delete(src)

    def list(self, prefix: str, recursive: bool = True) -> list[StoredObject]:
        base = self._resolve(prefix)
        if not base.exists():
            return []
        if base.is_file():
            return [self._describe(base)]
        entries = base.rglob("*") if recursive else base.iterdir()
        objects: list[StoredObject] = []
        for entry in sorted(entries):
            if entry.name.startswith(".upload-"):
                continue
            if entry.is_dir():
                if recursive:
                    continue
                objects.append(StoredObject(path=self._relative(entry), size=0, is_dir=True))
                continue
            objects.append(self._describe(entry))
        return objects

    def _describe(self, entry: Path) -> StoredObject:
        stat = entry.stat()
        content_type, _ = mimetypes.guess_type(entry.name)
        return StoredObject(
            path=self._relative(entry),
            size=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            content_type=content_type,
        )

    def get_metadata(self, path: str) -> ObjectMetadata:
        target = self._resolve(path)
        try:
            stat = target.stat()
        except FileNotFoundError as exc:
            raise ObjectNotFoundError("get metadata", path, self.name, "file not found") from exc
        except OSError as exc:
            raise StorageError("get metadata", path, self.name, exc) from exc
        content_type, _ = mimetypes.guess_type(target.name)
        return ObjectMetadata(
            path=path,
            size=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            content_type=content_type or "application/octet-stream",
        )


__all__ = ["LocalBackend", "parse_mode"]
