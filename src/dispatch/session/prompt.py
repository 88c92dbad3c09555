"""Outbound message construction for agent runs."""

import re
from typing import List

from src.dispatch.webhook.models import InboundEvent

MENTION_PATTERN = re.compile(r"@\S+\s*")


def strip_mentions(text: str) -> str:
    """Remove @mentions from a message.

    Example:
        >>> strip_mentions("@dispatch please fix the login bug")
        'please fix the login bug'
    """
    return MENTION_PATTERN.sub("", text).strip()


def build_message(event: InboundEvent) -> str:
    """Build the prompt handed to the agent.

    Layout, with every block after the first optional:

        Issue: <identifier> - <title>

        Description:
        <description>

        User request:
        <trigger message without mentions>

        Context:
        <free-form context>

    Prior thread messages are rendered under "Previous messages:" only when
    the tracker supplied no free-form context, which already carries the
    thread history.
    """
    work_item = event.work_item
    sections: List[str] = [f"Issue: {work_item.identifier} - {work_item.title}"]

    if work_item.description:
        sections.append(f"Description:\n{work_item.description}")

    if event.trigger_message:
        user_request = strip_mentions(event.trigger_message)
        if user_request:
            sections.append(f"User request:\n{user_request}")

    if event.freeform_context:
        sections.append(f"Context:\n{event.freeform_context}")
    elif event.prior_messages:
        lines = [
            f"{message.author or 'unknown'}: {message.body}"
            for message in event.prior_messages
        ]
        sections.append("Previous messages:\n" + "\n".join(lines))

    return "\n\n".join(sections) + "\n"
