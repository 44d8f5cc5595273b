"""Outbound bounded context — persistent notification delivery pipeline.

Accepts messages destined for external channels (chat API, team-alert
webhooks, email), enforces per-channel rate limits and send windows,
retries failures with backoff, tracks delivery status from transport
callbacks, and rolls up low-priority bursts into periodic digests.
"""

from protean.domain import Domain

from outbound.utils.logging import configure_logging, get_logger

# Configure logging for the application
configure_logging()

logger = get_logger(__name__)

# Domain Composition Root
outbound = Domain(name="outbound")
