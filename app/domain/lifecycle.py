from __future__ import annotations

from typing import Dict, FrozenSet

from app.core.errors import ConflictError
from app.db.models import AssetStatus

TRANSITIONS: Dict[AssetStatus, FrozenSet[AssetStatus]] = {
    AssetStatus.uploading: frozenset({AssetStatus.processing, AssetStatus.deleted}),
    AssetStatus.processing: frozenset({AssetStatus.active, AssetStatus.failed}),
    AssetStatus.active: frozenset({AssetStatus.trashed, AssetStatus.deleted}),
    AssetStatus.trashed: frozenset({AssetStatus.active, AssetStatus.deleted}),
    AssetStatus.failed: frozenset({AssetStatus.deleted}),
    AssetStatus.deleted: frozenset(),
}


def can_transition(current: AssetStatus, target: AssetStatus) -> bool:
    return AssetStatus(target) in TRANSITIONS.get(AssetStatus(current), frozenset())


def ensure_transition(current: AssetStatus, target: AssetStatus) -> None:
    """Raise ``ConflictError`` unless ``current -> target`` is a legal lifecycle step."""
    if not can_transition(current, target):
        raise ConflictError(
            "invalid_state_transition",
            f"cannot move asset from {AssetStatus(current).value} to {AssetStatus(target).value}",
        )


def is_terminal(status: AssetStatus) -> bool:
    return not TRANSITIONS.get(AssetStatus(status))


__all__ = ["TRANSITIONS", "can_transition", "ensure_transition", "is_terminal"]
