from __future__ import annotations

from app.storage import StorageBackend, build_storage_backend

from .config import Settings


def get_storage(settings: Settings) -> StorageBackend:
    """Build the storage backend selected by ``PICTOR_STORAGE_BACKEND``.

    The variant is chosen once here; callers only ever see the shared
    ``StorageBackend`` contract.
    """
    return build_storage_backend(settings.storage_config())


__all__ = ["get_storage"]
