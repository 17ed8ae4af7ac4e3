"""
Hourly sweep archiving practice exams past their plan's retention window.

Basic-plan exams live for BASIC_EXAM_RETENTION_HOURS, paid plans for
PAID_EXAM_RETENTION_DAYS. Archived exams release their download slots.
Quota counters are not touched here; they roll over lazily on read.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from examprep.core.config import settings
from examprep.core.database import SessionLocal, as_utc, utcnow
from examprep.jobs.queue import queue
from examprep.models.orm import Download, Exam, TierQuota
from examprep.services.tiers import DEFAULT_TIER

logger = logging.getLogger(__name__)


def retention_for(tier: Optional[str]) -> timedelta:
    if (tier or DEFAULT_TIER) == DEFAULT_TIER:
        return timedelta(hours=settings.BASIC_EXAM_RETENTION_HOURS)
    return timedelta(days=settings.PAID_EXAM_RETENTION_DAYS)


def sweep_expired_exams(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    rows = db.execute(
        select(Exam, TierQuota.tier)
        .join(TierQuota, TierQuota.user_id == Exam.created_by, isouter=True)
        .where(Exam.is_practice.is_(True), Exam.status != "archived")
    ).all()
    expired = [exam for exam, tier in rows if now - as_utc(exam.created_at) >= retention_for(tier)]
    if not expired:
        return 0
    for exam in expired:
        exam.status = "archived"
        exam.archived_at = now
    db.execute(delete(Download).where(Download.exam_id.in_([e.id for e in expired])))
    db.commit()
    logger.info("Archived %d expired practice exams", len(expired))
    return len(expired)


def next_run_at(now: Optional[datetime] = None) -> datetime:
    """Next interval boundary on the wall clock (top of the hour by default)."""
    interval = settings.CLEANUP_INTERVAL_SECONDS
    ts = int((now or utcnow()).timestamp())
    return datetime.fromtimestamp((ts // interval + 1) * interval, tz=timezone.utc)


def schedule_cleanup(queue, now: Optional[datetime] = None):
    """Schedule the sweep for the next boundary unless a run is already waiting there.

    The job id is derived from the run time, so every worker start and every
    finished run converge on the same scheduled job.
    """
    run_at = next_run_at(now)
    job_id = f"examprep-cleanup-{int(run_at.timestamp())}"
    if job_id in queue.scheduled_job_registry.get_job_ids():
        logger.debug("Cleanup already scheduled for %s", run_at.isoformat())
        return None
    return queue.enqueue_at(run_at, cleanup_job, job_id=job_id)


def cleanup_job() -> int:
    db = SessionLocal()
    try:
        archived = sweep_expired_exams(db)
    finally:
        db.close()
        schedule_cleanup(queue)
    return archived
