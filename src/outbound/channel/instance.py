"""ChannelInstance aggregate — a configured transport endpoint.

The chat transport is reached through an *instance* (a logged-in session on
the provider side, addressed by ``instance_key``). Webhook channels hold one
instance per destination. Email has a single instance.

Lookup order for a channel (``ChannelDirectory.active_for``):
    1. an active instance whose status is ``connected``
    2. otherwise the active instance connected most recently
Instances whose token is a placeholder are never returned.
"""

from datetime import UTC, datetime
from enum import Enum

import structlog
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Identifier, String
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from outbound.domain import outbound
from outbound.errors import NoActiveChannelInstance
from outbound.queue.message import Channel, as_utc
from outbound.recipient.normalizer import normalize_destination

logger = structlog.get_logger(__name__)

PLACEHOLDER_TOKENS = ("SEU_TOKEN", "API_KEY", "YOUR_TOKEN", "TOKEN_AQUI", "PLACEHOLDER", "XXX", "EXEMPLO")


class InstanceStatus(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def is_placeholder_token(token) -> bool:
    if not token or not token.strip():
        return True
    upper = token.upper()
    return any(p in upper for p in PLACEHOLDER_TOKENS)


def normalize_base_url(url) -> str:
    """``host/path/`` -> ``https://host/path``."""
    url = (url or "").strip()
    if url and not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/")


@outbound.aggregate
class ChannelInstance:
    channel: String(choices=Channel, required=True)
    instance_key: String(required=True, max_length=200)
    api_url: String(max_length=2000)
    api_token: String(max_length=500)
    destination: String(max_length=100)  # Webhook destination slug
    is_active: Boolean(default=True)
    status: String(choices=InstanceStatus, default=InstanceStatus.DISCONNECTED.value)
    connected_at: DateTime()
    updated_at: DateTime()

    @property
    def base_url(self):
        return normalize_base_url(self.api_url)

    @property
    def is_connected(self):
        return self.status == InstanceStatus.CONNECTED.value

    def connect(self, at=None):
        self.status = InstanceStatus.CONNECTED.value
        self.connected_at = as_utc(at) or datetime.now(UTC)
        self.updated_at = self.connected_at

    def disconnect(self):
        self.status = InstanceStatus.DISCONNECTED.value
        self.updated_at = datetime.now(UTC)

    def deactivate(self):
        self.is_active = False
        self.status = InstanceStatus.DISCONNECTED.value
        self.updated_at = datetime.now(UTC)


class ChannelDirectory:
    """Resolves the transport instance a message should go out through."""

    def token_for(self, instance) -> str:
        """The instance token, or the configured fallback token."""
        if not is_placeholder_token(instance.api_token):
            return instance.api_token
        from outbound.config import get_settings

        fallback = get_settings().chat_api_token
        return "" if is_placeholder_token(fallback) else fallback

    def active_for(self, channel, destination=None):
        repo = current_domain.repository_for(ChannelInstance)
        filters = {"channel": channel, "is_active": True}
        if destination and channel == Channel.WEBHOOK.value:
            filters["destination"] = destination
        candidates = repo._dao.query.filter(**filters).all().items

        usable = [i for i in candidates if i.channel == Channel.WEBHOOK.value or self.token_for(i)]
        if len(usable) < len(candidates):
            logger.warning(
                "Ignoring channel instances without a usable token",
                channel=channel,
                ignored=len(candidates) - len(usable),
            )

        connected = [i for i in usable if i.is_connected]
        if connected:
            return connected[0]

        usable.sort(key=lambda i: as_utc(i.connected_at) or datetime.min.replace(tzinfo=UTC), reverse=True)
        return usable[0] if usable else None

    def require(self, channel, destination=None):
        instance = self.active_for(channel, destination)
        if instance is None:
            raise NoActiveChannelInstance(channel, destination)
        return instance


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@outbound.command(part_of="ChannelInstance")
class RegisterChannelInstance:
    channel: String(required=True)
    instance_key: String(required=True, max_length=200)
    api_url: String(max_length=2000)
    api_token: String(max_length=500)
    destination: String(max_length=100)
    connected: Boolean(default=True)


@outbound.command(part_of="ChannelInstance")
class DeactivateChannelInstance:
    instance_id: Identifier(required=True)


@outbound.command_handler(part_of=ChannelInstance)
class ChannelInstanceCommandHandler:
    @handle(RegisterChannelInstance)
    def register(self, command: RegisterChannelInstance):
        destination = None
        if command.channel == Channel.WEBHOOK.value:
            if not command.destination:
                raise ValidationError({"destination": ["Webhook instances need a destination"]})
            destination = normalize_destination(command.destination)

        repo = current_domain.repository_for(ChannelInstance)
        existing = repo._dao.query.filter(channel=command.channel, instance_key=command.instance_key).all().items
        instance = existing[0] if existing else ChannelInstance(channel=command.channel, instance_key=command.instance_key)

        instance.api_url = command.api_url
        instance.api_token = command.api_token
        instance.destination = destination
        instance.is_active = True
        if command.connected:
            instance.connect()
        else:
            instance.disconnect()

        repo.add(instance)
        logger.info(
            "Channel instance registered",
            channel=command.channel,
            instance_key=command.instance_key,
            status=instance.status,
        )
        return str(instance.id)

    @handle(DeactivateChannelInstance)
    def deactivate(self, command: DeactivateChannelInstance):
        repo = current_domain.repository_for(ChannelInstance)
        instance = repo.get(command.instance_id)
        instance.deactivate()
        repo.add(instance)
