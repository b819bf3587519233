from __future__ import annotations

import io
import zipfile
from datetime import datetime

import pytest

from app.core.errors import ObjectNotFoundError, RangeNotSatisfiableError
from app.services.downloads import (
    ArchiveEntry,
    archive_path_for,
    parse_byte_range,
    skip_to,
    unique_archive_paths,
    write_archive,
)


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, None),
        ("", None),
        ("bytes=0-99", (0, 99)),
        ("bytes=10-", (10, 999)),
        ("bytes=-100", (900, 999)),
        ("bytes=-5000", (0, 999)),
        ("bytes=990-2000", (990, 999)),
        ("BYTES = 5-6", (5, 6)),
        ("items=0-10", None),
        ("bytes=0-10,20-30", None),
        ("bytes=abc-def", None),
        ("bytes=50-10", None),
        ("bytes=-", None),
    ],
)
def test_parse_byte_range(header, expected):
    assert parse_byte_range(header, 1000) == expected


@pytest.mark.parametrize("header,size", [("bytes=1000-", 1000), ("bytes=-0", 1000), ("bytes=0-", 0)])
def test_unsatisfiable_ranges(header, size):
    with pytest.raises(RangeNotSatisfiableError) as exc_info:
        parse_byte_range(header, size)
    assert exc_info.value.size == size
    assert exc_info.value.code == "range_not_satisfiable"


class _ForwardOnly(io.RawIOBase):
    def __init__(self, data: bytes):
        self._inner = io.BytesIO(data)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def read(self, size: int = -1) -> bytes:
        return self._inner.read(size)


def test_skip_to_seeks_or_reads_forward():
    seekable = io.BytesIO(b"0123456789")
    skip_to(seekable, 4)
    assert seekable.read() == b"456789"

    forward = _ForwardOnly(b"0123456789")
    skip_to(forward, 7)
    assert forward.read() == b"789"


def test_archive_paths_are_dated_and_unique():
    created = datetime(2024, 3, 9, 12, 0, 0)
    assert archive_path_for("IMG_1.jpg", "a1", created) == "2024/03/09/IMG_1.jpg"
    assert archive_path_for("dir\\nested/IMG_2.jpg", "a2", created) == "2024/03/09/IMG_2.jpg"
    assert archive_path_for("..", "a3", created) == "2024/03/09/a3"
    assert unique_archive_paths(["x/a.jpg", "x/a.jpg", "x/b.jpg", "x/a.jpg"]) == [
        "x/a.jpg",
        "x/a_1.jpg",
        "x/b.jpg",
        "x/a_2.jpg",
    ]


def test_write_archive_skips_missing_objects():
    objects = {"u1/a.jpg": b"first", "u1/b.jpg": b"second"}

    def open_object(path: str):
        if path not in objects:
            raise ObjectNotFoundError("download", path, "memory", "missing")
        return io.BytesIO(objects[path])

    created = datetime(2023, 1, 2, 3, 4, 5)
    entries = [
        ArchiveEntry("a", "2023/01/02/a.jpg", "u1/a.jpg", 5, created),
        ArchiveEntry("gone", "2023/01/02/gone.jpg", "u1/gone.jpg", 4, created),
        ArchiveEntry("b", "2023/01/02/b.jpg", "u1/b.jpg", 6, datetime(1970, 1, 1)),
    ]
    with write_archive(entries, open_object) as spool:
        with zipfile.ZipFile(spool) as archive:
            assert archive.namelist() == ["2023/01/02/a.jpg", "2023/01/02/b.jpg"]
            assert archive.read("2023/01/02/a.jpg") == b"first"
            assert archive.getinfo("2023/01/02/a.jpg").date_time == (2023, 1, 2, 3, 4, 4)
            assert archive.getinfo("2023/01/02/b.jpg").date_time[0] == 1980
