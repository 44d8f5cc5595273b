"""Digest Aggregator — many low-priority messages, one send.

Pending digest-eligible messages that are due are grouped by destination
(``recipient_key`` + ``channel``). Each group becomes one summary message,
sectioned by ``message_type``: a count, up to three previews and a
"+N more" line. The summary goes through the Rate Limiter like any other
send and is persisted as a sent ``QueuedMessage`` of type ``digest``; the
constituents are marked as consumed by it.

If the summary cannot be sent, the constituents stay pending and are
picked up by the next run.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

import structlog
from protean.fields import DateTime
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from outbound.channel import get_sender
from outbound.channel.instance import ChannelDirectory
from outbound.config import get_settings
from outbound.domain import outbound
from outbound.errors import NoActiveChannelInstance
from outbound.queue.message import (
    DIGEST_MESSAGE_TYPE,
    Channel,
    Priority,
    QueuedMessage,
    as_utc,
)
from outbound.queue.dispatcher import MAX_INLINE_WAITS
from outbound.ratelimit.limiter import RateLimiter

logger = structlog.get_logger(__name__)

PREVIEW_LENGTH = 50

PRIORITY_LABELS = {
    Priority.CRITICAL.value: "Critical",
    Priority.HIGH.value: "High",
    Priority.NORMAL.value: "Normal",
}


def preview_of(message) -> str:
    text = message.subject
    if not text:
        lines = (message.content or "").strip().splitlines()
        text = lines[0] if lines else ""
    return text if len(text) <= PREVIEW_LENGTH else text[: PREVIEW_LENGTH - 1] + "…"


@dataclass
class DigestSection:
    message_type: str
    count: int
    previews: list
    more: int

    @property
    def label(self):
        return self.message_type.replace("_", " ").capitalize()

    def render(self) -> str:
        lines = [f"*{self.label} ({self.count})*"]
        lines.extend(f"• {p}" for p in self.previews)
        if self.more:
            lines.append(f"_+{self.more} more_")
        return "\n".join(lines)


@dataclass
class DigestBatch:
    recipient_key: str
    channel: str
    messages: list = field(default_factory=list)

    @property
    def highest_priority(self):
        return min(m.priority for m in self.messages)

    def sections(self, preview_items=None) -> list[DigestSection]:
        limit = preview_items or get_settings().digest_preview_items
        grouped = {}
        for message in self.messages:
            grouped.setdefault(message.message_type, []).append(message)

        return [
            DigestSection(
                message_type=message_type,
                count=len(items),
                previews=[preview_of(m) for m in items[:limit]],
                more=max(len(items) - limit, 0),
            )
            for message_type, items in grouped.items()
        ]

    def render(self, preview_items=None) -> str:
        header = (
            f"*Notification summary ({len(self.messages)})*\n"
            f"Highest priority: {PRIORITY_LABELS.get(self.highest_priority, 'Normal')}"
        )
        body = "\n\n".join(s.render() for s in self.sections(preview_items))
        return f"{header}\n\n{body}"

    def build_message(self, now) -> QueuedMessage:
        sections = self.sections()
        return QueuedMessage.create(
            recipient_key=self.recipient_key,
            channel=self.channel,
            message_type=DIGEST_MESSAGE_TYPE,
            subject=f"Notification summary ({len(self.messages)})",
            content=self.render(),
            priority=self.highest_priority,
            metadata={
                "item_count": len(self.messages),
                "sections": {s.message_type: s.count for s in sections},
                "item_ids": ",".join(str(m.id) for m in self.messages),
            },
            created_at=now,
        )


def group_digest_items(items) -> list[DigestBatch]:
    """Group by destination, keeping dispatch order inside each group."""
    batches = {}
    for message in items:
        key = (message.recipient_key, message.channel)
        if key not in batches:
            batches[key] = DigestBatch(recipient_key=message.recipient_key, channel=message.channel)
        batches[key].messages.append(message)
    return list(batches.values())


@dataclass
class DigestReport:
    digests_sent: int = 0
    items_consumed: int = 0
    deferred: int = 0
    failed: int = 0
    results: list = field(default_factory=list)

    def as_dict(self):
        return asdict(self)


class DigestAggregator:
    def __init__(self, senders=None, directory=None, limiter=None, clock=None, sleep=None):
        self.senders = dict(senders or {})
        self.directory = directory or ChannelDirectory()
        self.limiter = limiter or RateLimiter()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.sleep = sleep or time.sleep
        self.max_inline_wait = get_settings().max_inline_wait_seconds

    def sender_for(self, channel):
        return self.senders.get(channel) or get_sender(channel)

    def flush(self, as_of=None) -> DigestReport:
        as_of = as_utc(as_of)
        started = as_utc(self.clock())

        def now():
            current = as_utc(self.clock())
            return as_of + (current - started) if as_of else current

        repo = current_domain.repository_for(QueuedMessage)
        batches = group_digest_items(repo.pending_digest_items(now()))
        report = DigestReport()
        windows = {}

        for batch in batches:
            channel = batch.channel
            if channel not in windows:
                windows[channel] = self.limiter.window_for(channel, now())

            decision = self._wait_for_slot(channel, now, windows[channel])
            if not decision.allowed:
                logger.info(
                    "Digest deferred by rate limiter",
                    recipient_key=batch.recipient_key,
                    channel=channel,
                    retry_after=str(decision.retry_after),
                    reason=decision.reason,
                )
                report.deferred += 1
                report.results.append({"recipient_key": batch.recipient_key, "outcome": "deferred"})
                continue

            destination = batch.recipient_key if channel == Channel.WEBHOOK.value else None
            try:
                instance = self.directory.require(channel, destination)
            except NoActiveChannelInstance as exc:
                logger.warning("Digest deferred, no channel instance", channel=channel, error=str(exc))
                report.deferred += 1
                report.results.append({"recipient_key": batch.recipient_key, "outcome": "deferred"})
                continue

            at = now()
            digest = batch.build_message(at)
            try:
                result = self.sender_for(channel).send(digest, instance)
            except Exception as exc:
                result = {"status": "failed", "error": str(exc)}

            if result.get("status") != "sent":
                logger.warning(
                    "Digest send failed, items stay pending",
                    recipient_key=batch.recipient_key,
                    channel=channel,
                    error=result.get("error"),
                )
                report.failed += 1
                report.results.append(
                    {"recipient_key": batch.recipient_key, "outcome": "failed", "error": result.get("error")}
                )
                continue

            at = now()
            digest.mark_sent(at, result.get("message_id"))
            repo.add(digest)
            for message in batch.messages:
                message.consume_into_digest(digest.id, at)
                repo.add(message)
            windows[channel].record(at)

            report.digests_sent += 1
            report.items_consumed += len(batch.messages)
            report.results.append(
                {
                    "recipient_key": batch.recipient_key,
                    "outcome": "sent",
                    "digest_id": str(digest.id),
                    "items": len(batch.messages),
                }
            )
            logger.info(
                "Digest sent",
                digest_id=str(digest.id),
                recipient_key=batch.recipient_key,
                channel=channel,
                items=len(batch.messages),
            )

        return report

    def _wait_for_slot(self, channel, now, window):
        """Sleep out short min-delay blocks so every due destination gets its digest."""
        decision = self.limiter.can_send_now(channel, now(), window)
        waits = 0
        while (
            not decision.allowed
            and decision.retry_after.total_seconds() <= self.max_inline_wait
            and waits < MAX_INLINE_WAITS
        ):
            waits += 1
            self.sleep(max(decision.retry_after.total_seconds(), 0))
            decision = self.limiter.can_send_now(channel, now(), window)
        return decision


@outbound.command(part_of="QueuedMessage")
class FlushDigests:
    """Send the due digests."""

    as_of: DateTime()


@outbound.command_handler(part_of=QueuedMessage)
class FlushDigestsHandler:
    @handle(FlushDigests)
    def flush_digests(self, command: FlushDigests):
        return DigestAggregator().flush(command.as_of).as_dict()
