"""Tracker webhook handling for the dispatch service.

This module verifies and parses agent-session webhooks:
- created - An agent session was opened on an issue
- prompted - The user sent another message, or a stop signal
"""

from .handler import (
    SIGNATURE_HEADER,
    WebhookHandler,
    WebhookSignatureError,
    compute_signature,
    create_webhook_handler,
)
from .models import InboundEvent, PriorMessage, TriggerKind, WorkItem

__all__ = [
    "InboundEvent",
    "PriorMessage",
    "SIGNATURE_HEADER",
    "TriggerKind",
    "WebhookHandler",
    "WebhookSignatureError",
    "WorkItem",
    "compute_signature",
    "create_webhook_handler",
]
