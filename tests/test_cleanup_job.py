from datetime import timedelta
from sqlalchemy import func, select
from examprep.jobs.cleanup_job import cleanup_job, retention_for, schedule_cleanup, sweep_expired_exams
from examprep.models.orm import Download, Exam
from conftest import CLOCK_START

class RecordingRegistry:
    def __init__(self):
        self.ids = []
    def get_job_ids(self):
        return list(self.ids)

class RecordingQueue:
    def __init__(self):
        self.calls = []
        self.scheduled_job_registry = RecordingRegistry()
    def enqueue_at(self, when, func, job_id=None):
        self.calls.append((when, func, job_id))
        self.scheduled_job_registry.ids.append(job_id)
        return job_id

def test_retention_windows():
    assert retention_for("basic") == timedelta(hours=24)
    assert retention_for(None) == timedelta(hours=24)
    assert retention_for("standard") == timedelta(days=30)
    assert retention_for("premium") == timedelta(days=30)

def test_sweep_archives_by_plan_and_frees_downloads(db, seed):
    body = seed.body()
    seed.quota("paid", tier="standard")
    stale_basic = seed.exam(body, "free", created_at=CLOCK_START - timedelta(hours=25))
    fresh_basic = seed.exam(body, "free", created_at=CLOCK_START - timedelta(hours=2))
    paid_recent = seed.exam(body, "paid", created_at=CLOCK_START - timedelta(days=3))
    paid_old = seed.exam(body, "paid", created_at=CLOCK_START - timedelta(days=31))
    db.add(Download(user_id="paid", exam_id=paid_old.id))
    db.commit()

    assert sweep_expired_exams(db, now=CLOCK_START) == 2
    db.expire_all()
    status = {e.id: e.status for e in db.execute(select(Exam)).scalars()}
    assert status[stale_basic.id] == "archived" and status[paid_old.id] == "archived"
    assert status[fresh_basic.id] == "published" and status[paid_recent.id] == "published"
    assert db.scalar(select(func.count(Download.id))) == 0
    assert sweep_expired_exams(db, now=CLOCK_START) == 0

def test_schedule_cleanup_targets_next_hour_boundary():
    queue = RecordingQueue()
    schedule_cleanup(queue, now=CLOCK_START)
    when, func, _ = queue.calls[0]
    assert when == CLOCK_START.replace(hour=10, minute=0)
    assert func is cleanup_job

def test_repeated_scheduling_keeps_a_single_pending_run():
    queue = RecordingQueue()
    first = schedule_cleanup(queue, now=CLOCK_START)
    # a worker restart and a second worker in the same hour
    assert schedule_cleanup(queue, now=CLOCK_START + timedelta(minutes=5)) is None
    assert schedule_cleanup(queue, now=CLOCK_START + timedelta(minutes=29)) is None
    assert len(queue.calls) == 1

    # the run at 10:00 schedules 11:00, which a racing chain then reuses
    second = schedule_cleanup(queue, now=CLOCK_START + timedelta(minutes=30, seconds=2))
    assert second != first
    assert schedule_cleanup(queue, now=CLOCK_START + timedelta(minutes=31)) is None
    assert len(queue.scheduled_job_registry.get_job_ids()) == 2

def test_audit_job_writes_activity_row(db, monkeypatch):
    from examprep.jobs import audit_job
    from examprep.models.orm import ActivityLog
    from conftest import TestingSession
    monkeypatch.setattr(audit_job, "SessionLocal", TestingSession)

    entry_id = audit_job.write_activity_log("question", "status_changed", "q-1", {"to": "live"}, "editor-1")
    row = db.get(ActivityLog, entry_id)
    assert row.action == "status_changed"
    assert row.details == {"to": "live"}
    assert row.actor_id == "editor-1"
