"""Webhook alert sender — posts a rich embed to a team chat webhook.

The message body is written in chat markdown (``*bold*``, ``_italic_``);
it is converted to the embed dialect (``**bold**``, ``*italic*``) before
posting.
"""

import re
from datetime import UTC, datetime

import httpx
import structlog

from outbound.channel.port import (
    ERROR_BODY_LIMIT,
    ChannelSender,
    failed_result,
    failure_for_status,
    sent_result,
)
from outbound.config import get_settings
from outbound.queue.backoff import FailureKind
from outbound.queue.message import Priority

logger = structlog.get_logger(__name__)

PRIORITY_COLORS = {
    Priority.CRITICAL.value: 0xFF0000,
    Priority.HIGH.value: 0xFFA500,
    Priority.NORMAL.value: 0x00FF00,
}

FOOTER_TEXT = "Outbound notifications"

# Metadata keys rendered as inline embed fields, in this order
EMBED_FIELDS = (
    ("order_number", "Order"),
    ("phase", "Phase"),
    ("count", "Count"),
    ("total_value", "Value"),
)


def convert_markdown(text: str) -> str:
    text = re.sub(r"(?<!\*)\*([^*\n]+)\*(?!\*)", r"**\1**", text or "")
    text = re.sub(r"_([^_\n]+)_", r"*\1*", text)
    return re.sub(r"━+", "───────────────", text)


def build_embed(message, now=None) -> dict:
    metadata = message.get_metadata()
    title = message.subject or message.message_type.replace("_", " ").capitalize()
    if message.priority == Priority.CRITICAL.value:
        title = f"EMERGENCY: {title}"

    fields = []
    for key, label in EMBED_FIELDS:
        value = metadata.get(key)
        if value in (None, ""):
            continue
        if key == "order_number":
            value = f"#{value}"
        fields.append({"name": label, "value": str(value), "inline": True})

    return {
        "title": title[:256],
        "description": convert_markdown(message.content)[:4096],
        "color": PRIORITY_COLORS.get(message.priority, PRIORITY_COLORS[Priority.NORMAL.value]),
        "fields": fields,
        "footer": {"text": FOOTER_TEXT},
        "timestamp": (now or datetime.now(UTC)).isoformat(),
    }


class WebhookAlertSender(ChannelSender):
    def __init__(self, client: httpx.Client | None = None):
        self.client = client or httpx.Client(timeout=get_settings().request_timeout_seconds)

    def send(self, message, instance) -> dict:
        if not instance.api_url:
            return failed_result("Webhook URL is not configured", FailureKind.NO_INSTANCE)

        payload = {"embeds": [build_embed(message)]}
        if message.media_url:
            payload["embeds"][0]["image"] = {"url": message.media_url}

        try:
            response = self.client.post(instance.api_url, params={"wait": "true"}, json=payload)
        except httpx.TimeoutException as exc:
            return failed_result(f"Timeout posting webhook: {exc}", FailureKind.TRANSIENT)
        except httpx.HTTPError as exc:
            return failed_result(f"Webhook unreachable: {exc}", FailureKind.TRANSIENT)

        if response.is_success:
            transport_id = None
            if response.content:
                try:
                    transport_id = response.json().get("id")
                except (ValueError, AttributeError):
                    transport_id = None
            return sent_result(str(transport_id) if transport_id else None)

        body = response.text[:ERROR_BODY_LIMIT]
        logger.info(
            "Webhook rejected alert",
            destination=message.recipient_key,
            status_code=response.status_code,
            body=body,
        )
        if response.status_code in (401, 403, 404):
            # Revoked or deleted webhook
            return failed_result(f"{response.status_code} - {body}", FailureKind.NO_INSTANCE, response.status_code)
        return failed_result(
            f"{response.status_code} - {body}",
            failure_for_status(response.status_code),
            response.status_code,
        )
