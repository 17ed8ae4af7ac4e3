import os
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from examprep.models.orm import (Base, Category, Exam, ExamBody, ExamRule, ExamType, MarkingGuide,
                                 Question, QuestionOption, Subject, TierQuota)
from examprep.services.audit import RecordingAuditSink

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True)
TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


CLOCK_START = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class Seeder:
    """Builds a small bank: exam bodies, tracks, subjects, questions, rules."""

    def __init__(self, db):
        self.db = db
        self._n = 0

    def _add(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def body(self, name="WAEC"):
        return self._add(ExamBody(name=name))

    def exam_type(self, body, name="Standard", duration_minutes=None):
        return self._add(ExamType(exam_body_id=body.id, name=name, duration_minutes=duration_minutes))

    def track(self, body, name="Science"):
        return self._add(Category(exam_body_id=body.id, name=name))

    def subject(self, body, track=None, name=None, code=None):
        self._n += 1
        return self._add(Subject(name=name or f"Subject {self._n}", code=code,
                                 exam_body_id=body.id if body else None,
                                 category_id=track.id if track else None))

    def question(self, body, subject, status="live", difficulty="medium", type="multiple_choice",
                 text=None, options=2, correct=1, created_at=None, **extra):
        self._n += 1
        marks = extra.pop("marks", 1)
        tags = extra.pop("tags", [])
        q = Question(text=text or f"Question {self._n}", type=type, difficulty=difficulty, marks=marks,
                     exam_body_id=body.id, subject_id=subject.id, status=status, tags=tags,
                     created_at=created_at or datetime.now(timezone.utc), **extra)
        for i in range(options):
            q.options.append(QuestionOption(option_id=chr(ord("A") + i), text=f"Option {i}",
                                            is_correct=i < correct, order=i))
        return self._add(q)

    def questions(self, body, subject, n, **kwargs):
        return [self.question(body, subject, **kwargs) for _ in range(n)]

    def guide(self, question, criteria="Shows working", marks=2):
        return self._add(MarkingGuide(question_id=question.id, criteria=criteria, marks=marks))

    def rule(self, exam_type, rules, track=None, priority=0, name=None, is_active=True, created_at=None):
        self._n += 1
        kwargs = {"created_at": created_at} if created_at else {}
        return self._add(ExamRule(exam_body_id=exam_type.exam_body_id, exam_type_id=exam_type.id,
                                  track_id=track.id if track else None, name=name or f"Rule {self._n}",
                                  rules=rules, priority=priority, is_active=is_active, **kwargs))

    def exam(self, body, user_id, question_ids=(), status="published", created_at=None):
        return self._add(Exam(title="Seeded exam", exam_body_id=body.id, question_ids=list(question_ids),
                              duration_minutes=60, total_questions=len(question_ids), total_marks=len(question_ids),
                              status=status, created_by=user_id,
                              created_at=created_at or datetime.now(timezone.utc)))

    def quota(self, user_id, tier="basic", **fields):
        fields.setdefault("month_start", CLOCK_START.replace(day=1, hour=0, minute=0))
        fields.setdefault("daily_reset_at", CLOCK_START)
        return self._add(TierQuota(user_id=user_id, tier=tier, **fields))


@pytest.fixture
def db():
    Base.metadata.create_all(engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def clock():
    return FakeClock(CLOCK_START)


@pytest.fixture
def client(db, audit):
    from fastapi.testclient import TestClient
    from examprep.core.cache import AdminEmailCache
    from examprep.core.database import get_db
    from examprep.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.state.audit_sink = audit
    app.state.admin_emails = AdminEmailCache(lambda: [" Boss@Example.com "], ttl=60)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def login(client, user_id, roles, email=None):
    r = client.post("/v1/auth/mock-login", json={"user_id": user_id, "roles": roles, "email": email})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['access_token']}"}
