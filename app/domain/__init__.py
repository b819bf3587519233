"""Asset lifecycle rules shared by the services and the API."""

from app.domain.lifecycle import TRANSITIONS, can_transition, ensure_transition, is_terminal

__all__ = [
    "TRANSITIONS",
    "can_transition",
    "ensure_transition",
    "is_terminal",
]
