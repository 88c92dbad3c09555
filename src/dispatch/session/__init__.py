"""Session coordination: stage machine, registry, prompts and the coordinator."""

from src.dispatch.session.coordinator import (
    ACKNOWLEDGMENT_MESSAGE,
    STOPPED_MESSAGE,
    SessionCoordinator,
)
from src.dispatch.session.models import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    SessionRun,
    SessionStage,
    is_terminal_stage,
    is_valid_transition,
)
from src.dispatch.session.prompt import build_message, strip_mentions
from src.dispatch.session.registry import SessionRegistry

__all__ = [
    "ACKNOWLEDGMENT_MESSAGE",
    "InvalidTransitionError",
    "STOPPED_MESSAGE",
    "SessionCoordinator",
    "SessionRegistry",
    "SessionRun",
    "SessionStage",
    "VALID_TRANSITIONS",
    "build_message",
    "is_terminal_stage",
    "is_valid_transition",
    "strip_mentions",
]
