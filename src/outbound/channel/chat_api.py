"""Chat API sender — messages to phone numbers through a chat gateway instance.

Endpoints (relative to the instance base URL)::

    POST /rest/sendMessage/{instance_key}/text
    POST /rest/sendMessage/{instance_key}/image
    POST /rest/sendMessage/{instance_key}/document

The gateway accepts the token under different header names depending on
its version, so each request walks ``apikey`` → ``Authorization: Bearer``
→ ``Apikey`` until one is not rejected with 401/403.

A recipient is tried in its short form first; a 400/404 falls back to the
long mobile form before the send is given up.
"""

import httpx
import structlog

from outbound.channel.instance import ChannelDirectory
from outbound.channel.port import (
    ERROR_BODY_LIMIT,
    ChannelSender,
    failed_result,
    failure_for_status,
    sent_result,
)
from outbound.config import get_settings
from outbound.queue.backoff import FailureKind
from outbound.recipient.normalizer import phone_variants

logger = structlog.get_logger(__name__)

AUTH_HEADER_STYLES = ("apikey", "Bearer", "Apikey")


def _auth_headers(style, token):
    headers = {"Content-Type": "application/json"}
    if style == "Bearer":
        headers["Authorization"] = f"Bearer {token}"
    else:
        headers[style] = token
    return headers


def _transport_id(response):
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    key = data.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    for name in ("messageId", "id"):
        if data.get(name):
            return str(data[name])
    return None


class ChatApiSender(ChannelSender):
    def __init__(self, client: httpx.Client | None = None, directory: ChannelDirectory | None = None):
        self.client = client or httpx.Client(timeout=get_settings().request_timeout_seconds)
        self.directory = directory or ChannelDirectory()

    def send(self, message, instance) -> dict:
        token = self.directory.token_for(instance)
        if not token:
            return failed_result("No valid API token for chat instance", FailureKind.NO_INSTANCE)

        base_url = instance.base_url or get_settings().chat_api_url.rstrip("/")
        if not base_url:
            return failed_result("Chat API URL is not configured", FailureKind.NO_INSTANCE)
        prefix = f"{base_url}/rest/sendMessage/{instance.instance_key}"

        result = self._send_to_variants(
            f"{prefix}/text",
            token,
            message.recipient_key,
            lambda to: {"messageData": {"to": to, "text": message.content, "linkPreview": False}},
        )

        if result["status"] == "sent" and message.has_media:
            media = self._send_media(prefix, token, message)
            if media["status"] != "sent":
                # The text went out; a lost attachment does not fail the message
                logger.warning(
                    "Media attachment failed after text was sent",
                    message_id=str(message.id),
                    error=media.get("error"),
                )

        return result

    def _send_media(self, prefix, token, message):
        mimetype = message.media_mimetype or "image/png"
        kind = "image" if mimetype.startswith("image/") else "document"
        if message.media_base64:
            payload_source = f"data:{mimetype};base64,{message.media_base64}"
        else:
            payload_source = message.media_url

        def body(to):
            data = {"to": to, kind: payload_source, "caption": message.media_caption or ""}
            if kind == "document":
                data["fileName"] = message.media_filename or "attachment"
                data["mimetype"] = mimetype
            return {"messageData": data}

        return self._send_to_variants(f"{prefix}/{kind}", token, message.recipient_key, body)

    def _send_to_variants(self, url, token, recipient_key, build_body):
        variants = phone_variants(recipient_key)

        for index, phone in enumerate(variants):
            is_last = index == len(variants) - 1
            response, error = self._post(url, token, build_body(phone))

            if response is None:
                return failed_result(error or "All auth header styles failed", FailureKind.TRANSIENT)

            if response.is_success:
                logger.debug("Chat message accepted", to=phone, status_code=response.status_code)
                return sent_result(_transport_id(response))

            body = response.text[:ERROR_BODY_LIMIT]
            logger.info(
                "Chat gateway rejected message",
                to=phone,
                status_code=response.status_code,
                body=body,
            )

            if response.status_code in (400, 404) and not is_last:
                continue

            if response.status_code in (401, 403):
                # Credentials are an instance problem, not the message's
                return failed_result(
                    f"Authentication failed with all header styles ({response.status_code})",
                    FailureKind.NO_INSTANCE,
                    response.status_code,
                )

            failure = failure_for_status(response.status_code)
            if "not connected" in body.lower() or "disconnected" in body.lower():
                failure = FailureKind.TRANSIENT
            return failed_result(f"{response.status_code} - {body}", failure, response.status_code)

        return failed_result("No phone variant accepted", FailureKind.PERMANENT)

    def _post(self, url, token, body):
        """Returns ``(response, error)``; ``response`` is the last non-auth answer."""
        last_error = None
        response = None
        for style in AUTH_HEADER_STYLES:
            try:
                response = self.client.post(url, json=body, headers=_auth_headers(style, token))
            except httpx.TimeoutException as exc:
                last_error = f"Timeout calling chat gateway: {exc}"
                continue
            except httpx.HTTPError as exc:
                last_error = f"Chat gateway unreachable: {exc}"
                continue

            if response.status_code in (401, 403):
                logger.debug("Auth header style rejected", style=style, status_code=response.status_code)
                continue
            return response, None

        return response, last_error
