from __future__ import annotations


class PictorError(Exception):
    """Base class for errors raised by the ingestion core."""

    code = "internal_error"

    def __init__(self, code: str | None = None, message: str | None = None):
        if code:
            self.code = code
        super().__init__(message or self.code)


class ValidationError(PictorError):
    code = "invalid_request"


class UploadTooLargeError(ValidationError):
    code = "upload_too_large"


class NotFoundError(PictorError):
    code = "not_found"


class ConflictError(PictorError):
    code = "conflict"


class ThumbnailError(PictorError):
    code = "thumbnail_failed"


class RangeNotSatisfiableError(PictorError):
    """A ``Range`` request starts beyond the end of the object."""

    code = "range_not_satisfiable"

    def __init__(self, size: int):
        self.size = size
        super().__init__(self.code, f"requested range not satisfiable for {size} bytes")


class StorageError(PictorError):
    """A storage backend operation failed.

    Carries the failing operation, the object path and the backend name so log
    lines and HTTP errors can be traced back to the exact call.
    """

    code = "storage_error"

    def __init__(self, op: str, path: str = "", backend: str = "", cause: BaseException | str | None = None):
        self.op = op
        self.path = path
        self.backend = backend
        self.cause = cause
        super().__init__(self.code, self._format())

    def _format(self) -> str:
        detail = str(self.cause) if self.cause is not None else "failed"
        if self.path:
            return f"{self.op} {self.path} ({self.backend}): {detail}"
        return f"{self.op} ({self.backend}): {detail}"


class ObjectNotFoundError(StorageError, NotFoundError):
    code = "object_not_found"


class OperationNotSupportedError(StorageError):
    code = "operation_not_supported"


__all__ = [
    "PictorError",
    "ValidationError",
    "UploadTooLargeError",
    "NotFoundError",
    "ConflictError",
    "ThumbnailError",
    "RangeNotSatisfiableError",
    "StorageError",
    "ObjectNotFoundError",
    "OperationNotSupportedError",
]
