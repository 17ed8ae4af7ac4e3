"""
Exam composition.

An exam is a stratified random sample of live questions: the requested
total is split as evenly as possible across the resolved subjects, each
subject is sampled on the database side, any shortfall is backfilled from
the rest of the scope, and the combined list is shuffled once before it is
frozen on the Exam row.
"""
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from examprep.core.config import settings
from examprep.core.database import utcnow
from examprep.core.errors import ErrorKind
from examprep.models.orm import Exam, ExamBody, ExamType, Question, Subject
from examprep.services.audit import AuditSink, NullAuditSink
from examprep.services.question_filter import QuestionCriteria, count_questions, sample_question_ids
from examprep.services.quota_ledger import TierQuotaLedger
from examprep.services.rules_engine import EffectiveRules, resolve_exam_rules
from examprep.services.subject_resolver import ordered_subject_ids
from examprep.services.tiers import limits_for

logger = logging.getLogger(__name__)

DEFAULT_QUESTION_COUNT = 50


@dataclass
class CompositionRequest:
    exam_body_id: str
    created_by: str
    question_count: Optional[int] = None
    track_id: Optional[str] = None
    subject_ids: Optional[List[str]] = None
    exam_type_id: Optional[str] = None
    overrides: Optional[Dict[str, Any]] = None
    tier: Optional[str] = None
    title: Optional[str] = None
    is_practice: bool = True


@dataclass
class CompositionResult:
    success: bool
    message: str
    exam: Optional[Exam] = None
    question_ids: List[str] = field(default_factory=list)
    requested: int = 0
    realized: int = 0
    available: Optional[int] = None
    distribution: Dict[str, int] = field(default_factory=dict)
    rules: Optional[EffectiveRules] = None
    kind: Optional[ErrorKind] = None
    limit: Optional[int] = None
    current_usage: Optional[int] = None

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.realized)


def stratify(total: int, subject_count: int) -> List[int]:
    """Even per-subject targets: the first total % n subjects take one extra."""
    if subject_count <= 0 or total <= 0:
        return [0] * max(subject_count, 0)
    base, remainder = divmod(total, subject_count)
    return [base + (1 if i < remainder else 0) for i in range(subject_count)]


def archive_exam(db: Session, exam_id: str) -> bool:
    exam = db.get(Exam, exam_id)
    if exam is None or exam.status == "archived":
        return False
    exam.status = "archived"
    exam.archived_at = utcnow()
    db.commit()
    return True


class ExamComposer:
    def __init__(self, db: Session, ledger: Optional[TierQuotaLedger] = None,
                 audit: Optional[AuditSink] = None, shuffle: Callable[[list], None] = random.shuffle):
        self.db = db
        self.ledger = ledger
        self.audit = audit or NullAuditSink()
        self.shuffle = shuffle

    def _subjects(self, request: CompositionRequest) -> List[str]:
        if request.subject_ids:
            return list(dict.fromkeys(request.subject_ids))
        if request.track_id:
            return ordered_subject_ids(self.db, request.track_id)
        try:
            stmt = (select(Subject.id).where(Subject.exam_body_id == request.exam_body_id)
                    .order_by(Subject.name, Subject.id))
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError:
            logger.exception("Failed to load subjects for exam body %s", request.exam_body_id)
            self.db.rollback()
            return []

    def _duration(self, rules: EffectiveRules, exam_type_id: Optional[str]) -> int:
        if rules.duration:
            return int(rules.duration)
        if exam_type_id:
            exam_type = self.db.get(ExamType, exam_type_id)
            if exam_type is not None and exam_type.duration_minutes:
                return exam_type.duration_minutes
        return settings.DEFAULT_EXAM_DURATION_MINUTES

    def compose(self, request: CompositionRequest) -> CompositionResult:
        rules = EffectiveRules()
        if request.exam_type_id:
            rules = resolve_exam_rules(self.db, request.exam_type_id, request.track_id, request.overrides)
        requested = int(request.question_count or rules.question_count or DEFAULT_QUESTION_COUNT)
        if requested < 1:
            return CompositionResult(False, "Question count must be at least 1", requested=requested,
                                     rules=rules, kind=ErrorKind.INVALID_REQUEST)

        if request.tier is not None:
            cap = limits_for(request.tier).max_questions_per_exam
            if requested > cap:
                return CompositionResult(
                    False,
                    f"The {request.tier} plan allows at most {cap} questions per exam. "
                    "Upgrade for larger exams.",
                    requested=requested, rules=rules, kind=ErrorKind.QUOTA_EXCEEDED, limit=cap)

        body = self.db.get(ExamBody, request.exam_body_id)
        if body is None:
            return CompositionResult(False, "Exam body not found", requested=requested, rules=rules,
                                     kind=ErrorKind.NOT_FOUND)

        subjects = self._subjects(request)
        if not subjects:
            scope = "track" if request.track_id else "exam body"
            return CompositionResult(False, f"No subjects available for this {scope}", requested=requested,
                                     rules=rules, kind=ErrorKind.NOT_FOUND)

        scope = QuestionCriteria(exam_body_id=body.id, subject_ids=subjects, status=["live"])
        available = count_questions(self.db, scope)
        if available == 0:
            return CompositionResult(False, "No questions available for this selection", requested=requested,
                                     available=0, rules=rules, kind=ErrorKind.NOT_FOUND)

        selected: List[str] = []
        for subject_id, target in zip(subjects, stratify(requested, len(subjects))):
            if target == 0:
                continue
            per_subject = scope.model_copy(update={"subject_ids": [subject_id]})
            selected.extend(sample_question_ids(self.db, per_subject, target))

        if len(selected) < requested:
            needed = requested - len(selected)
            backfill = scope.model_copy(update={"exclude_ids": list(selected) or None})
            extra = sample_question_ids(self.db, backfill, needed)
            logger.info("Backfilled %d of %d missing questions for exam body %s", len(extra), needed, body.id)
            selected.extend(extra)

        if not selected:
            return CompositionResult(False, f"Only {available} questions available, none could be drawn",
                                     requested=requested, available=available, rules=rules,
                                     kind=ErrorKind.INSUFFICIENT_POOL)

        self.shuffle(selected)
        exam = self._persist(request, body, subjects, selected, rules)
        realized = len(selected)
        message = "Exam generated"
        kind = None
        if realized < requested:
            message = f"Only {realized} of {requested} requested questions are available"
            kind = ErrorKind.INSUFFICIENT_POOL
        return CompositionResult(True, message, exam=exam, question_ids=list(selected), requested=requested,
                                 realized=realized, available=available, distribution=dict(exam.question_distribution),
                                 rules=rules, kind=kind)

    def _persist(self, request: CompositionRequest, body: ExamBody, subjects: List[str],
                 selected: List[str], rules: EffectiveRules) -> Exam:
        rows = self.db.execute(select(Question.id, Question.subject_id, Question.marks)
                               .where(Question.id.in_(selected))).all()
        distribution: Dict[str, int] = {sid: 0 for sid in subjects}
        total_marks = 0
        for _, subject_id, marks in rows:
            distribution[subject_id] = distribution.get(subject_id, 0) + 1
            total_marks += marks or 1
        names = dict(self.db.execute(select(Subject.id, Subject.name).where(Subject.id.in_(subjects))).all())

        now = utcnow()
        exam = Exam(
            title=request.title or f"{body.name} Practice Test - {len(selected)} Questions",
            exam_body_id=body.id,
            category_id=request.track_id,
            exam_type_id=request.exam_type_id,
            selected_subjects=[{"id": sid, "name": names.get(sid)} for sid in subjects],
            question_ids=list(selected),
            question_distribution=distribution,
            applied_rules=[r.__dict__.copy() for r in rules.applied_rules],
            duration_minutes=self._duration(rules, request.exam_type_id),
            total_questions=len(selected),
            total_marks=total_marks,
            status="published",
            is_practice=request.is_practice,
            is_randomized=bool(rules.get("randomization", True)),
            created_by=request.created_by,
            created_at=now,
        )
        self.db.add(exam)
        self.db.execute(update(Question).where(Question.id.in_(selected))
                        .values(usage_count=Question.usage_count + 1, last_used_at=now))
        self.db.commit()
        logger.info("Exam %s composed for %s: %d questions over %d subjects",
                    exam.id, request.created_by, len(selected), len(subjects))
        return exam

    def generate(self, request: CompositionRequest) -> CompositionResult:
        """Quota check, composition, then quota increment when an exam was built."""
        if self.ledger is None:
            raise RuntimeError("generate() needs a TierQuotaLedger")
        check = self.ledger.check_generation_limit(request.created_by)
        if not check.allowed:
            return CompositionResult(False, check.reason or "Generation limit reached",
                                     requested=request.question_count or 0, kind=ErrorKind.QUOTA_EXCEEDED,
                                     limit=check.limit, current_usage=check.current_usage)
        request.tier = self.ledger.tier_for(request.created_by)
        result = self.compose(request)
        if result.success:
            self.ledger.increment_daily_quota(request.created_by)
            self.audit.record("exam", "generated", result.exam.id,
                              {"questions": result.realized, "requested": result.requested,
                               "tier": request.tier}, request.created_by)
        return result
