#!/usr/bin/env python3
"""
Outbound channel delivery.

ChannelExecutor is the only way the engine reaches a lead. The shadow
executor records every message in the store instead of sending it, which
is the default for local runs and reviews.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from jinja2 import StrictUndefined, Template, TemplateError

from autopilot.errors import ProcessingError
from autopilot.models import SendStatus, to_iso, utc_now
from autopilot.store import PersistentStore


logger = logging.getLogger("channels")

SHADOW_OUTBOX = "shadow_outbox"


@dataclass
class SendResult:
    status: SendStatus
    external_id: Optional[str] = None
    detail: str = ""

    @property
    def delivered(self) -> bool:
        return self.status == SendStatus.SENT


@dataclass
class OutboundMessage:
    template: str
    body: str
    subject: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


class ChannelExecutor(ABC):

    @abstractmethod
    async def send(self, channel: str, recipient: str, message: OutboundMessage) -> SendResult:
        ...


class ShadowChannelExecutor(ChannelExecutor):
    """Writes messages to the shadow outbox collection. Nothing leaves the process."""

    def __init__(self, store: PersistentStore):
        self.store = store

    async def send(self, channel: str, recipient: str, message: OutboundMessage) -> SendResult:
        external_id = f"shadow_{uuid.uuid4().hex[:12]}"
        await self.store.add(SHADOW_OUTBOX, {
            "channel": channel,
            "recipient": recipient,
            "template": message.template,
            "subject": message.subject,
            "body": message.body,
            "metadata": message.metadata,
            "queued_at": to_iso(utc_now()),
        }, doc_id=external_id)
        logger.info("Shadow send on %s to %s (template=%s)", channel, recipient, message.template)
        return SendResult(status=SendStatus.SENT, external_id=external_id)


# =============================================================================
# TEMPLATES
# =============================================================================

MESSAGE_TEMPLATES: Dict[str, Dict[str, str]] = {
    "introduction": {
        "subject": "Quick idea for {{ lead.company }}",
        "body": (
            "Hi {{ lead.first_name }},\n\n"
            "I noticed {{ lead.company }} is growing its {{ lead.industry }} presence. "
            "Would a short call this week be useful?"
        ),
    },
    "personalized_introduction": {
        "subject": "{{ lead.first_name }}, an idea for {{ lead.company }}",
        "body": (
            "Hi {{ lead.first_name }},\n\n"
            "I have been following {{ lead.company }} and put together a few thoughts "
            "specific to your team. Worth a quick conversation?"
        ),
    },
    "automated_introduction": {
        "subject": "Welcome, {{ lead.first_name }}",
        "body": "Hi {{ lead.first_name }}, thanks for connecting. Here is a short overview of how we help {{ lead.industry }} teams.",
    },
    "follow_up": {
        "subject": "Following up, {{ lead.first_name }}",
        "body": "Hi {{ lead.first_name }}, just bringing my last note back to the top of your inbox.",
    },
    "final_outreach": {
        "subject": "Closing the loop",
        "body": "Hi {{ lead.first_name }}, I won't keep reaching out. Reply any time if timing changes.",
    },
    "default_introduction": {
        "subject": "Hello from our team",
        "body": "Hi {{ lead.first_name }}, thanks for your interest. Here is a quick overview of what we do.",
    },
    "default_follow_up": {
        "subject": "Any questions?",
        "body": "Hi {{ lead.first_name }}, happy to answer any questions about what I sent over.",
    },
    "escalation": {
        "subject": "",
        "body": "Hi {{ lead.first_name }}, reaching out on {{ channel }} in case {{ previous_channel }} is not the best way to reach you.",
    },
}


def render_template(template_str: str, variables: Dict[str, Any]) -> str:
    """Render a Jinja2 template. Missing variables are an error, not blanks."""
    try:
        return Template(template_str, undefined=StrictUndefined).render(**variables)
    except TemplateError as exc:
        raise ProcessingError(f"Template rendering failed: {exc}", retryable=False, cause=exc) from exc


def template_variables(lead_profile: Dict[str, Any], **extra) -> Dict[str, Any]:
    name = lead_profile.get("name", "") or ""
    lead = {
        "first_name": lead_profile.get("first_name") or (name.split()[0] if name else "there"),
        "last_name": lead_profile.get("last_name", ""),
        "name": name,
        "company": lead_profile.get("company", "your company"),
        "industry": lead_profile.get("industry", "your industry"),
        "title": lead_profile.get("title", ""),
    }
    return {"lead": lead, **extra}


def build_message(template_name: str, lead_profile: Dict[str, Any], **extra) -> OutboundMessage:
    template = MESSAGE_TEMPLATES.get(template_name)
    if template is None:
        raise ProcessingError(f"Unknown message template: {template_name}", retryable=False)
    variables = template_variables(lead_profile, **extra)
    return OutboundMessage(
        template=template_name,
        subject=render_template(template["subject"], variables),
        body=render_template(template["body"], variables),
    )
