"""
Audit sinks for vault operations.

The storage service emits an ``AuditEvent`` for every upload, download,
delete and failure. Sinks are fire-and-forget from the caller's point of
view: the service swallows and logs any exception a sink raises.

Security Note:
    Events carry blob references, sizes and durations only. Never put
    passwords, keys or vault content in event metadata.
"""
import logging
from collections import Counter, deque
from typing import Optional, Protocol

from .models import AuditEvent, now_ms

logger = logging.getLogger("vaultstore.audit")

RETENTION_MS = 30 * 24 * 60 * 60 * 1000  # 30 days


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the ``vaultstore.audit`` logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger

    async def record(self, event: AuditEvent) -> None:
        level = logging.INFO if event.success else logging.WARNING
        self.logger.log(
            level,
            "audit action=%s resource=%s:%s success=%s error=%s metadata=%s",
            event.action,
            event.resource_type,
            event.resource_id,
            event.success,
            event.error_message,
            event.metadata,
        )


class MemoryAuditLog:
    """Bounded in-memory audit log with simple queries.

    Keeps at most ``max_logs`` events and drops events older than
    ``retention`` milliseconds on every write.
    """

    def __init__(self, max_logs: int = 1000, retention: int = RETENTION_MS):
        self.max_logs = max_logs
        self.retention = retention
        self.events: deque[AuditEvent] = deque(maxlen=max_logs)

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)
        self._cleanup()

    def _cleanup(self) -> None:
        cutoff = now_ms() - self.retention
        while self.events and self.events[0].timestamp < cutoff:
            self.events.popleft()

    def actions(self) -> list[str]:
        return [event.action for event in self.events]

    def resource_logs(self, resource_id: str) -> list[AuditEvent]:
        return [e for e in self.events if e.resource_id == resource_id]

    def action_stats(
        self, start: Optional[int] = None, end: Optional[int] = None
    ) -> dict:
        """Aggregate counts, error rate and mean duration over a time window.

        Args:
            start: Inclusive lower bound (epoch ms).
            end: Inclusive upper bound (epoch ms).
        """
        events = [
            e for e in self.events
            if (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
        ]
        total = len(events)
        failed = sum(1 for e in events if not e.success)
        durations = [
            e.metadata["duration"] for e in events if "duration" in e.metadata
        ]
        return {
            "total_actions": total,
            "successful_actions": total - failed,
            "failed_actions": failed,
            "actions_by_type": dict(Counter(e.action for e in events)),
            "actions_by_resource": dict(Counter(e.resource_type for e in events)),
            "error_rate": failed / total * 100 if total else 0.0,
            "average_duration": sum(durations) / len(durations) if durations else 0.0,
        }
