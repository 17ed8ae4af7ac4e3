"""
Fire-and-forget audit logging.

Lifecycle and administrative actions report through an AuditSink. The
production sink hands the entry to the rq worker; a failure to enqueue is
logged and dropped so auditing never fails the action being audited.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(self, type: str, action: str, subject: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None, actor_id: Optional[str] = None) -> None: ...


class NullAuditSink:
    def record(self, type, action, subject=None, details=None, actor_id=None) -> None:
        return None


class QueueAuditSink:
    def __init__(self, queue=None):
        self._queue = queue

    @property
    def queue(self):
        if self._queue is None:
            from examprep.jobs.queue import queue
            self._queue = queue
        return self._queue

    def record(self, type, action, subject=None, details=None, actor_id=None) -> None:
        try:
            self.queue.enqueue("examprep.jobs.audit_job.write_activity_log",
                               type, action, subject, details or {}, actor_id)
        except Exception:
            logger.warning("Dropping audit entry %s/%s for %s", type, action, subject, exc_info=True)


class RecordingAuditSink:
    """Keeps entries in memory; used by tests and local tooling."""

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    def record(self, type, action, subject=None, details=None, actor_id=None) -> None:
        self.entries.append({"type": type, "action": action, "subject": subject,
                             "details": details or {}, "actor_id": actor_id})

    def actions(self) -> List[str]:
        return [e["action"] for e in self.entries]
