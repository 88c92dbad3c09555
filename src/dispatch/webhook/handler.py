"""Tracker webhook handler for agent-session events.

This module provides the WebhookHandler class for verifying and parsing
agent-session webhooks into InboundEvent objects. Parsing is kept fast and
side-effect free so the HTTP endpoint can acknowledge the webhook before any
session work begins.

Agent-session payload structure:
{
  "type": "AgentSessionEvent",
  "action": "created" | "prompted",
  "agentSession": {
    "id": "session-uuid",
    "issue": {"id": "...", "identifier": "ENG-123", "title": "...",
              "description": "..."},
    "comment": {"body": "@agent please fix this"}
  },
  "agentActivity": {"content": {"type": "prompt", "body": "..."},
                    "signal": "stop"},
  "previousComments": [{"body": "...", "userId": "..."}],
  "promptContext": "<issue>...</issue>"
}
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

from .models import InboundEvent, PriorMessage, TriggerKind, WorkItem

logger = logging.getLogger(__name__)

AGENT_SESSION_EVENT_TYPE = "AgentSessionEvent"
SIGNATURE_HEADER = "linear-signature"

_ACTION_TO_TRIGGER = {
    "created": TriggerKind.CREATED,
    "prompted": TriggerKind.CONTINUED,
}


class WebhookSignatureError(Exception):
    """Raised when a webhook signature is missing or does not match."""

    pass


class WebhookHandler:
    """Verifies and parses agent-session webhooks.

    Attributes:
        secret: Shared webhook secret. When None, signatures are not checked.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """Check the HMAC-SHA256 signature of a raw request body.

        Args:
            body: The raw request body exactly as received.
            signature: Hex digest from the signature header.

        Raises:
            WebhookSignatureError: If a secret is configured and the
                signature is missing or wrong.
        """
        if not self.secret:
            return

        if not signature:
            raise WebhookSignatureError("Missing webhook signature")

        expected = compute_signature(self.secret, body)
        if not hmac.compare_digest(expected, signature.strip()):
            raise WebhookSignatureError("Invalid webhook signature")

    def parse_agent_session_event(
        self, payload: Any
    ) -> Optional[InboundEvent]:
        """Parse an agent-session webhook payload.

        Returns None for payloads of other types and for malformed
        agent-session payloads (no session id or no issue). Such events are
        dropped before any session context exists, so nothing is reported
        back to the tracker.

        Args:
            payload: The decoded JSON payload.

        Returns:
            InboundEvent if parsing succeeds, None otherwise.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        if payload.get("type") != AGENT_SESSION_EVENT_TYPE:
            logger.debug("Ignoring webhook type: %s", payload.get("type"))
            return None

        action = payload.get("action")
        trigger_kind = _ACTION_TO_TRIGGER.get(action) if isinstance(action, str) else None
        if trigger_kind is None:
            logger.debug("Ignoring agent session action: %s", action)
            return None

        session = payload.get("agentSession")
        if not isinstance(session, dict):
            logger.warning("Missing or invalid 'agentSession' field in payload")
            return None

        session_id = session.get("id")
        if not isinstance(session_id, str) or not session_id.strip():
            logger.warning("Agent session event without a session id")
            return None

        work_item = self._parse_work_item(session.get("issue"))
        if work_item is None:
            return None

        activity = payload.get("agentActivity")
        if not isinstance(activity, dict):
            activity = {}

        if activity.get("signal") == "stop":
            trigger_kind = TriggerKind.STOP_SIGNAL

        try:
            event = InboundEvent(
                session_id=session_id.strip(),
                work_item=work_item,
                trigger_kind=trigger_kind,
                trigger_message=self._extract_trigger_message(session, activity),
                prior_messages=tuple(
                    self._extract_prior_messages(payload.get("previousComments"))
                ),
                freeform_context=_as_text(payload.get("promptContext")),
            )
        except ValueError as exc:
            logger.warning("Rejected agent session payload: %s", exc)
            return None

        logger.info(
            "Parsed agent session event: trigger=%s, session=%s, issue=%s",
            event.trigger_kind.value,
            event.session_id,
            event.work_item.identifier,
        )
        return event

    def _parse_work_item(self, issue_data: Any) -> Optional[WorkItem]:
        """Build the WorkItem from the session's issue object."""
        if not isinstance(issue_data, dict):
            logger.warning("Agent session event without an issue")
            return None

        issue_id = issue_data.get("id")
        if not isinstance(issue_id, str) or not issue_id.strip():
            logger.warning("Agent session issue without an id")
            return None

        identifier = issue_data.get("identifier")
        if not isinstance(identifier, str) or not identifier.strip():
            identifier = issue_id

        description = issue_data.get("description")
        if not isinstance(description, str) or not description.strip():
            description = None

        return WorkItem(
            id=issue_id.strip(),
            identifier=identifier.strip(),
            title=_as_text(issue_data.get("title")).strip(),
            description=description,
        )

    def _extract_trigger_message(
        self, session: Dict[str, Any], activity: Dict[str, Any]
    ) -> Optional[str]:
        """Pick the user message that triggered the event.

        A prompted event carries it in the activity content; a created event
        carries the mentioning comment on the session.
        """
        content = activity.get("content")
        if isinstance(content, dict):
            body = content.get("body")
            if isinstance(body, str) and body.strip():
                return body

        comment = session.get("comment")
        if isinstance(comment, dict):
            body = comment.get("body")
            if isinstance(body, str) and body.strip():
                return body

        return None

    def _extract_prior_messages(self, comments: Any) -> List[PriorMessage]:
        """Convert previousComments entries, skipping malformed ones."""
        if not isinstance(comments, list):
            return []

        messages = []
        for comment in comments:
            if not isinstance(comment, dict):
                continue
            messages.append(
                PriorMessage(
                    author=_as_text(comment.get("userId")),
                    body=_as_text(comment.get("body")),
                )
            )
        return messages


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of a request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def create_webhook_handler(secret: Optional[str] = None) -> WebhookHandler:
    """Factory function to create a WebhookHandler instance.

    Args:
        secret: The webhook secret, or None to skip signature checks.

    Returns:
        A configured WebhookHandler instance.
    """
    return WebhookHandler(secret=secret)
