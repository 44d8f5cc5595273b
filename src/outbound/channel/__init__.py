"""Channel sender registry — one sender per channel.

Uses fake senders by default; the HTTP senders are selected with
``OUTBOUND_USE_FAKE_SENDERS=0``. Tests may swap a sender in with
``set_sender``.
"""

from outbound.config import get_settings
from outbound.queue.message import Channel

_senders: dict[str, object] = {}


def _build_sender(channel: str):
    if get_settings().use_fake_senders:
        from outbound.channel.fake import FakeChannelSender

        return FakeChannelSender(channel)

    if channel == Channel.CHAT_API.value:
        from outbound.channel.chat_api import ChatApiSender

        return ChatApiSender()
    if channel == Channel.WEBHOOK.value:
        from outbound.channel.webhook import WebhookAlertSender

        return WebhookAlertSender()
    if channel == Channel.EMAIL.value:
        from outbound.channel.email import EmailSender

        return EmailSender()
    raise ValueError(f"Unknown channel: {channel}")


def get_sender(channel: str):
    """Return the configured sender for ``channel`` (singleton per channel)."""
    if channel not in _senders:
        if channel not in {c.value for c in Channel}:
            raise ValueError(f"Unknown channel: {channel}")
        _senders[channel] = _build_sender(channel)
    return _senders[channel]


def set_sender(channel: str, sender) -> None:
    _senders[channel] = sender


def reset_senders():
    """Reset all sender singletons (useful for testing)."""
    _senders.clear()
