"""Dispatcher — drains the queue into the channel senders.

One drain loop run:

1. Select eligible rows (PENDING, due, attempts left, not held for a
   digest, not claimed) in dispatch order: priority first, FIFO inside a
   priority band.
2. For each row, ask the Rate Limiter. A short wait is slept out in-process;
   a longer one reschedules the row (attempts untouched) and blocks its
   channel for the rest of the run.
3. Claim the row, call the channel sender, then write the outcome back
   only if the claim is still ours.

``batch_size`` caps the rows handled per run. Once a channel (or webhook
destination) turns out to have no active instance, its remaining rows are
skipped without using up the batch, so a dead channel never starves the
others.

Sends are sequential within a channel, so ``min_delay_between_sends_ms``
is honoured between any two sends the loop makes.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

import structlog
from protean.exceptions import ObjectNotFoundError
from protean.fields import DateTime, Integer
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from outbound.audit.log import LogStatus, record_queue_outcome
from outbound.channel import get_sender
from outbound.channel.instance import ChannelDirectory
from outbound.channel.port import failed_result
from outbound.config import get_settings
from outbound.domain import outbound
from outbound.errors import NoActiveChannelInstance
from outbound.queue.backoff import FailureKind, RetryPolicy, classify_failure
from outbound.queue.message import Channel, MessageStatus, QueuedMessage, as_utc
from outbound.ratelimit.limiter import RateLimiter
from outbound.utils.logging import add_context, clear_context

logger = structlog.get_logger(__name__)

# Consecutive inline waits for one row before it is rescheduled instead
MAX_INLINE_WAITS = 5


@dataclass
class DrainReport:
    run_id: str
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    rescheduled: int = 0
    skipped: int = 0
    results: list = field(default_factory=list)

    def note(self, message_id, outcome, **details):
        self.results.append({"id": str(message_id), "outcome": outcome, **details})

    def as_dict(self):
        return asdict(self)


def _system_clock():
    return datetime.now(UTC)


class QueueDispatcher:
    def __init__(
        self,
        senders=None,
        directory=None,
        limiter=None,
        policy=None,
        clock=None,
        sleep=None,
        batch_size=None,
    ):
        settings = get_settings()
        self.senders = dict(senders or {})
        self.directory = directory or ChannelDirectory()
        self.limiter = limiter or RateLimiter()
        self.policy = policy or RetryPolicy()
        self.clock = clock or _system_clock
        self.sleep = sleep or time.sleep
        self.batch_size = batch_size or settings.batch_size
        self.max_inline_wait = settings.max_inline_wait_seconds
        self.claim_ttl = settings.claim_ttl_seconds

    def sender_for(self, channel):
        return self.senders.get(channel) or get_sender(channel)

    # -------------------------------------------------------------------
    # Drain loop
    # -------------------------------------------------------------------
    def drain(self, as_of=None) -> DrainReport:
        report = DrainReport(run_id=uuid4().hex[:12])
        add_context(run_id=report.run_id)
        try:
            self._drain(report, as_utc(as_of))
        finally:
            clear_context()
        return report

    def _drain(self, report, as_of):
        started = as_utc(self.clock())

        def now():
            current = as_utc(self.clock())
            return as_of + (current - started) if as_of else current

        repo = current_domain.repository_for(QueuedMessage)
        rows = repo.due_for_dispatch(now(), claim_ttl_seconds=self.claim_ttl)
        logger.info("Drain loop started", due=len(rows))

        windows = {}
        blocked = {}  # channel -> (until, reason)
        unavailable = set()  # (channel, destination) without an instance

        for row in rows:
            if report.processed >= self.batch_size:
                break
            channel = row.channel
            target = (channel, self._destination(row))

            # Rows of a channel with no instance do not take a slot in the batch
            if target in unavailable:
                report.skipped += 1
                report.note(row.id, "skipped", reason="no active channel instance")
                continue

            report.processed += 1

            if channel in blocked:
                until, reason = blocked[channel]
                self._reschedule(repo, row, until, reason, report)
                continue

            if channel not in windows:
                windows[channel] = self.limiter.window_for(channel, now())
            window = windows[channel]

            decision = self.limiter.can_send_now(channel, now(), window)
            waits = 0
            while (
                not decision.allowed
                and decision.retry_after.total_seconds() <= self.max_inline_wait
                and waits < MAX_INLINE_WAITS
            ):
                waits += 1
                logger.debug(
                    "Waiting inline for rate limiter",
                    channel=channel,
                    seconds=decision.retry_after.total_seconds(),
                    reason=decision.reason,
                )
                self.sleep(max(decision.retry_after.total_seconds(), 0))
                decision = self.limiter.can_send_now(channel, now(), window)

            if not decision.allowed:
                until = now() + decision.retry_after
                blocked[channel] = (until, decision.reason)
                logger.info(
                    "Channel rate limited for this run",
                    channel=channel,
                    retry_after=str(decision.retry_after),
                    reason=decision.reason,
                )
                self._reschedule(repo, row, until, decision.reason, report)
                continue

            try:
                instance = self.directory.require(channel, target[1])
            except NoActiveChannelInstance as exc:
                unavailable.add(target)
                self._note_unavailable(repo, row, str(exc), report)
                continue

            outcome = self._deliver(repo, row, instance, now, report)
            if outcome == "sent":
                window.record(now())
            elif outcome == FailureKind.NO_INSTANCE.value:
                unavailable.add(target)

        logger.info(
            "Drain loop finished",
            processed=report.processed,
            sent=report.sent,
            retried=report.retried,
            failed=report.failed,
            rescheduled=report.rescheduled,
            skipped=report.skipped,
        )

    @staticmethod
    def _destination(row):
        return row.recipient_key if row.channel == Channel.WEBHOOK.value else None

    # -------------------------------------------------------------------
    # Row handling
    # -------------------------------------------------------------------
    def _reschedule(self, repo, row, until, reason, report):
        row.reschedule(until, reason)
        repo.add(row)
        report.rescheduled += 1
        report.note(row.id, "rescheduled", scheduled_for=until.isoformat(), reason=reason)

    def _note_unavailable(self, repo, row, error, report):
        logger.warning("No active channel instance", message_id=str(row.id), channel=row.channel, error=error)
        row.note_infrastructure_error(error)
        repo.add(row)
        report.skipped += 1
        report.note(row.id, "skipped", reason=error)

    def _claim(self, repo, row, token, at):
        """Re-read the row and reserve it; ``None`` if another loop got there first."""
        try:
            fresh = repo.get(row.id)
        except ObjectNotFoundError:
            return None
        if (
            MessageStatus(fresh.status) != MessageStatus.PENDING
            or fresh.attempts != row.attempts
            or fresh.is_claimed(at, self.claim_ttl)
        ):
            return None
        fresh.claim(token, at)
        repo.add(fresh)
        return fresh

    def _deliver(self, repo, row, instance, now, report):
        token = uuid4().hex
        claimed = self._claim(repo, row, token, now())
        if claimed is None:
            logger.info("Message claimed elsewhere, skipping", message_id=str(row.id))
            report.skipped += 1
            report.note(row.id, "skipped", reason="claimed elsewhere")
            return "skipped"

        try:
            result = self.sender_for(claimed.channel).send(claimed, instance)
        except Exception as exc:
            logger.error("Sender raised", message_id=str(claimed.id), channel=claimed.channel, error=str(exc))
            result = failed_result(str(exc) or exc.__class__.__name__, classify_failure(exc))

        current = repo.get(claimed.id)
        if current.claimed_by != token:
            logger.warning("Claim lost before write-back", message_id=str(claimed.id))
            report.skipped += 1
            report.note(claimed.id, "skipped", reason="claim lost")
            return "skipped"

        at = now()
        if result.get("status") == "sent":
            current.mark_sent(at, result.get("message_id"))
            repo.add(current)
            report.sent += 1
            report.note(current.id, "sent", transport_message_id=result.get("message_id"))
            record_queue_outcome(current.id, LogStatus.SENT.value)
            logger.info("Message sent", message_id=str(current.id), channel=current.channel)
            return "sent"

        error = result.get("error") or "Unknown delivery error"
        kind = classify_failure(result)

        if kind == FailureKind.NO_INSTANCE:
            self._note_unavailable(repo, current, error, report)
            return kind.value

        if kind == FailureKind.TRANSIENT and current.attempts + 1 < current.max_attempts:
            retry_at = self.policy.next_attempt_at(current.attempts + 1, at)
            current.record_failed_attempt(error, retry_at)
            repo.add(current)
            report.retried += 1
            report.note(current.id, "retry", error=error, retry_at=retry_at.isoformat())
            logger.info(
                "Delivery failed, retry scheduled",
                message_id=str(current.id),
                channel=current.channel,
                attempts=current.attempts,
                retry_at=retry_at.isoformat(),
                error=error,
            )
            return kind.value

        current.mark_failed(error, permanent=kind == FailureKind.PERMANENT)
        repo.add(current)
        report.failed += 1
        report.note(current.id, "failed", error=error)
        record_queue_outcome(current.id, LogStatus.FAILED.value, error)
        logger.warning(
            "Message failed",
            message_id=str(current.id),
            channel=current.channel,
            attempts=current.attempts,
            permanent=kind == FailureKind.PERMANENT,
            error=error,
        )
        return kind.value


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------
@outbound.command(part_of="QueuedMessage")
class ProcessMessageQueue:
    """Run one drain loop over the due messages."""

    as_of: DateTime()  # Optional: process as of this time (defaults to now)
    batch_size: Integer(min_value=1)


@outbound.command_handler(part_of=QueuedMessage)
class ProcessMessageQueueHandler:
    @handle(ProcessMessageQueue)
    def process_queue(self, command: ProcessMessageQueue):
        dispatcher = QueueDispatcher(batch_size=command.batch_size)
        return dispatcher.drain(command.as_of).as_dict()
