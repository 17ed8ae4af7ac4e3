"""
Per-user tier quotas.

Counters live in one tier_quotas row per user and are rolled lazily when
read: the daily window is 24 hours from the last reset, the monthly window
is the calendar month starting on the 1st at 00:00 UTC. Downloads are
concurrent slots held until removed, not a rate.

check_generation_limit and increment_daily_quota are separate calls, so
concurrent requests from one user can overshoot a cap by a few exams. The
quota is a fairness control, not a billing record.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from examprep.core.database import as_utc, utcnow
from examprep.core.errors import ErrorKind
from examprep.models.orm import Download, Exam, TierQuota
from examprep.services.tiers import DEFAULT_TIER, TIER_LIMITS, TierLimits, limits_for

logger = logging.getLogger(__name__)

DAILY_WINDOW = timedelta(hours=24)


@dataclass
class LimitCheck:
    allowed: bool
    reason: Optional[str] = None
    limit: Optional[int] = None
    current_usage: Optional[int] = None
    reset_in_seconds: Optional[int] = None
    kind: Optional[ErrorKind] = None


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_month_start(now: datetime) -> datetime:
    start = month_start(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


class TierQuotaLedger:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # -- records -----------------------------------------------------------

    def _roll(self, record: TierQuota, now: datetime) -> bool:
        changed = False
        if now - as_utc(record.daily_reset_at) >= DAILY_WINDOW:
            record.daily_quota_used = 0
            record.daily_reset_at = now
            changed = True
        current_month = month_start(now)
        if as_utc(record.month_start) != current_month:
            record.monthly_generation_count = 0
            record.month_start = current_month
            changed = True
        return changed

    def _record(self, user_id: str) -> TierQuota:
        """Load (or open) the user's row with expired windows already rolled."""
        now = self.clock()
        record = self.db.get(TierQuota, user_id)
        if record is None:
            record = TierQuota(user_id=user_id, tier=DEFAULT_TIER, daily_quota_used=0, daily_reset_at=now,
                               month_start=month_start(now), monthly_generation_count=0)
            self.db.add(record)
            self.db.commit()
        elif self._roll(record, now):
            self.db.commit()
        return record

    def tier_for(self, user_id: str) -> str:
        record = self.db.get(TierQuota, user_id)
        return record.tier if record is not None else DEFAULT_TIER

    def limits_for(self, user_id: str) -> TierLimits:
        return limits_for(self.tier_for(user_id))

    def set_tier(self, user_id: str, tier: str) -> TierQuota:
        tier = tier.lower()
        if tier not in TIER_LIMITS:
            raise ValueError(f"Unknown tier {tier}")
        record = self._record(user_id)
        record.tier = tier
        self.db.commit()
        logger.info("User %s moved to %s tier", user_id, tier)
        return record

    def _active_exam_count(self, user_id: str) -> int:
        return int(self.db.scalar(select(func.count(Exam.id))
                                  .where(Exam.created_by == user_id, Exam.status != "archived")) or 0)

    def _download_count(self, user_id: str) -> int:
        return int(self.db.scalar(select(func.count(Download.id)).where(Download.user_id == user_id)) or 0)

    # -- generation ------------------------------------------------------------

    def check_generation_limit(self, user_id: str) -> LimitCheck:
        record = self._record(user_id)
        limits = limits_for(record.tier)
        now = self.clock()

        monthly_cap = limits.monthly_generations
        if monthly_cap is not None and record.monthly_generation_count >= monthly_cap:
            logger.info("Monthly cap hit: user=%s tier=%s limit=%s", user_id, record.tier, monthly_cap)
            return LimitCheck(
                allowed=False,
                reason=f"You have reached your monthly limit of {monthly_cap} exams on the {record.tier} plan.",
                limit=monthly_cap, current_usage=record.monthly_generation_count,
                reset_in_seconds=int((next_month_start(now) - now).total_seconds()),
                kind=ErrorKind.QUOTA_EXCEEDED)

        if record.daily_quota_used >= limits.daily_generations:
            remaining = DAILY_WINDOW - (now - as_utc(record.daily_reset_at))
            logger.info("Daily cap hit: user=%s tier=%s limit=%s", user_id, record.tier, limits.daily_generations)
            return LimitCheck(
                allowed=False,
                reason=f"You have reached your daily generation limit of {limits.daily_generations} exams.",
                limit=limits.daily_generations, current_usage=record.daily_quota_used,
                reset_in_seconds=max(0, int(remaining.total_seconds())),
                kind=ErrorKind.QUOTA_EXCEEDED)

        active = self._active_exam_count(user_id)
        if active >= limits.max_active_exams:
            logger.info("Active exam cap hit: user=%s tier=%s limit=%s", user_id, record.tier, limits.max_active_exams)
            return LimitCheck(
                allowed=False,
                reason=(f"You have reached your limit of {limits.max_active_exams} active exams for the "
                        f"{record.tier} plan. Please complete or delete existing exams."),
                limit=limits.max_active_exams, current_usage=active,
                kind=ErrorKind.QUOTA_EXCEEDED)

        return LimitCheck(allowed=True, limit=monthly_cap, current_usage=record.monthly_generation_count)

    def increment_daily_quota(self, user_id: str) -> TierQuota:
        record = self._record(user_id)
        record.daily_quota_used += 1
        record.monthly_generation_count += 1
        self.db.commit()
        return record

    # -- downloads -------------------------------------------------------------

    def check_download_limit(self, user_id: str) -> LimitCheck:
        limits = self.limits_for(user_id)
        if not limits.can_download:
            return LimitCheck(
                allowed=False,
                reason="Downloads are not available on the Basic plan. Please upgrade to Standard or Premium.",
                limit=0, kind=ErrorKind.QUOTA_EXCEEDED)
        current = self._download_count(user_id)
        if current >= limits.max_downloads:
            return LimitCheck(
                allowed=False,
                reason=(f"You have reached your limit of {limits.max_downloads} downloaded exams. "
                        "Delete an existing download to make space."),
                limit=limits.max_downloads, current_usage=current, kind=ErrorKind.QUOTA_EXCEEDED)
        return LimitCheck(allowed=True, limit=limits.max_downloads, current_usage=current)

    def record_download(self, user_id: str, exam_id: str) -> bool:
        """Take a slot for this exam; False when the user already holds one for it."""
        existing = self.db.scalar(select(Download.id).where(Download.user_id == user_id, Download.exam_id == exam_id))
        if existing is not None:
            return False
        self.db.add(Download(user_id=user_id, exam_id=exam_id, downloaded_at=self.clock()))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def remove_download(self, user_id: str, exam_id: str) -> bool:
        result = self.db.execute(delete(Download).where(Download.user_id == user_id, Download.exam_id == exam_id))
        self.db.commit()
        return bool(result.rowcount)

    # -- reporting -------------------------------------------------------------

    def get_usage(self, user_id: str) -> Dict[str, Any]:
        record = self._record(user_id)
        limits = limits_for(record.tier)
        now = self.clock()
        active = self._active_exam_count(user_id)
        downloads = self._download_count(user_id)
        monthly_cap = limits.monthly_generations
        return {
            "plan": record.tier,
            "daily": {
                "count": record.daily_quota_used,
                "limit": limits.daily_generations,
                "remaining": max(0, limits.daily_generations - record.daily_quota_used),
                "reset_in_seconds": max(0, int((DAILY_WINDOW - (now - as_utc(record.daily_reset_at))).total_seconds())),
            },
            "monthly": {
                "count": record.monthly_generation_count,
                "limit": monthly_cap,
                "remaining": None if monthly_cap is None else max(0, monthly_cap - record.monthly_generation_count),
                "resets_at": next_month_start(now).isoformat(),
            },
            "active_exams": {
                "count": active,
                "limit": limits.max_active_exams,
                "remaining": max(0, limits.max_active_exams - active),
            },
            "downloads": {
                "count": downloads,
                "limit": limits.max_downloads,
                "remaining": max(0, limits.max_downloads - downloads),
            },
            "max_questions_per_exam": limits.max_questions_per_exam,
        }
