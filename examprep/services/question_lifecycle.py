"""
Editorial lifecycle for questions.

    draft -> reviewed -> approved -> live -> archived -> draft

with the side edges listed in TRANSITIONS. Entering approved, live or
archived snapshots the pre-transition state into question_versions first;
the snapshot and the status change are committed as two separate writes.
Expected rejections come back as LifecycleResult(success=False); storage
errors on the write path are raised to the caller.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from examprep.core.database import utcnow
from examprep.core.errors import ErrorKind
from examprep.models.orm import (Exam, MarkingGuide, Question, QuestionOption, QuestionTag,
                                 QuestionVersion, QUESTION_STATUSES)
from examprep.services.audit import AuditSink, NullAuditSink

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, List[str]] = {
    "draft": ["reviewed", "archived"],
    "reviewed": ["draft", "approved", "archived"],
    "approved": ["live", "reviewed"],
    "live": ["archived"],
    "archived": ["draft"],
}

SNAPSHOT_ON_ENTER = {"approved", "live", "archived"}


@dataclass
class LifecycleResult:
    success: bool
    message: str
    kind: Optional[ErrorKind] = None


@dataclass
class BulkTransitionResult:
    succeeded: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)


@dataclass
class SubjectDeleteResult:
    deleted: int = 0
    skipped: List[str] = field(default_factory=list)


def is_valid_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, [])


def get_valid_transitions(current: str) -> List[str]:
    return list(TRANSITIONS.get(current, []))


def _option_problem(question_type: str, options: List[tuple]) -> Optional[str]:
    if question_type != "multiple_choice":
        return None
    if len(options) < 2:
        return "Multiple-choice question needs at least 2 options"
    if len({option_id for option_id, _ in options}) != len(options):
        return "Option ids must be unique"
    if sum(1 for _, correct in options if correct) != 1:
        return "Multiple-choice question needs exactly one correct option"
    return None


def check_live_invariant(question: Question) -> Optional[str]:
    """Problem preventing a multiple-choice question from going live, or None."""
    return _option_problem(question.type, [(o.option_id, o.is_correct) for o in question.options])


def _snapshot(question: Question) -> dict:
    return {
        "text": question.text,
        "type": question.type,
        "difficulty": question.difficulty,
        "marks": question.marks,
        "status": question.status,
        "exam_body_id": question.exam_body_id,
        "exam_type_id": question.exam_type_id,
        "subject_id": question.subject_id,
        "syllabus_id": question.syllabus_id,
        "topic_id": question.topic_id,
        "subtopic_id": question.subtopic_id,
        "options": [{"id": o.option_id, "text": o.text, "is_correct": o.is_correct} for o in question.options],
        "marking_guides": [{"criteria": g.criteria, "description": g.description, "marks": g.marks}
                           for g in question.marking_guides],
    }


def create_question_version(db: Session, question_id: str, changed_by: str,
                            reason: Optional[str] = None) -> Optional[QuestionVersion]:
    question = db.get(Question, question_id)
    if question is None:
        return None
    next_v = (db.scalar(select(func.coalesce(func.max(QuestionVersion.version), 0))
                        .where(QuestionVersion.question_id == question_id)) or 0) + 1
    version = QuestionVersion(question_id=question_id, version=next_v, change_reason=reason,
                              changed_by=changed_by, **_snapshot(question))
    db.add(version)
    db.commit()
    return version


def transition_status(db: Session, question_id: str, new_status: str, user_id: str,
                      reason: Optional[str] = None, audit: Optional[AuditSink] = None) -> LifecycleResult:
    audit = audit or NullAuditSink()
    if new_status not in QUESTION_STATUSES:
        return LifecycleResult(False, f"Unknown status {new_status}", ErrorKind.INVALID_TRANSITION)
    question = db.get(Question, question_id)
    if question is None:
        return LifecycleResult(False, "Question not found", ErrorKind.NOT_FOUND)
    current = question.status
    if not is_valid_transition(current, new_status):
        return LifecycleResult(False, f"Invalid status transition from {current} to {new_status}",
                               ErrorKind.INVALID_TRANSITION)
    if new_status == "live":
        problem = check_live_invariant(question)
        if problem:
            return LifecycleResult(False, problem, ErrorKind.INVALID_TRANSITION)

    if new_status in SNAPSHOT_ON_ENTER:
        note = f"Status changed to {new_status}" + (f": {reason}" if reason else "")
        create_question_version(db, question_id, user_id, note)

    now = utcnow()
    question.status = new_status
    question.updated_at = now
    if new_status == "reviewed":
        question.reviewed_by, question.reviewed_at = user_id, now
    elif new_status == "approved":
        question.approved_by, question.approved_at = user_id, now
    elif new_status == "archived":
        question.archived_by, question.archived_at = user_id, now
        question.archive_reason = reason
    db.commit()
    logger.info("Question %s moved %s -> %s by %s", question_id, current, new_status, user_id)
    audit.record("question", "status_changed", question_id,
                 {"from": current, "to": new_status, "reason": reason}, user_id)
    return LifecycleResult(True, f"Question status updated to {new_status}")


def bulk_transition(db: Session, question_ids: List[str], new_status: str, user_id: str,
                    reason: Optional[str] = None, audit: Optional[AuditSink] = None) -> BulkTransitionResult:
    """Best effort: each id is applied on its own and earlier successes stay committed."""
    result = BulkTransitionResult()
    for question_id in question_ids:
        try:
            outcome = transition_status(db, question_id, new_status, user_id, reason, audit)
        except SQLAlchemyError:
            logger.exception("Bulk transition failed for question %s", question_id)
            db.rollback()
            result.failed.append({"id": question_id, "reason": "Failed to update question status"})
            continue
        if outcome.success:
            result.succeeded.append(question_id)
        else:
            result.failed.append({"id": question_id, "reason": outcome.message})
    return result


def restore_version(db: Session, question_id: str, version_number: int, restored_by: str,
                    audit: Optional[AuditSink] = None) -> LifecycleResult:
    """Roll content and options back to a stored version. Marking guides are left untouched."""
    audit = audit or NullAuditSink()
    question = db.get(Question, question_id)
    if question is None:
        return LifecycleResult(False, "Question not found", ErrorKind.NOT_FOUND)
    target = db.scalar(select(QuestionVersion).where(QuestionVersion.question_id == question_id,
                                                     QuestionVersion.version == version_number))
    if target is None:
        return LifecycleResult(False, "Version not found", ErrorKind.NOT_FOUND)
    if question.status == "live":
        restored = [(opt["id"], bool(opt.get("is_correct"))) for opt in target.options or []]
        problem = _option_problem(target.type, restored)
        if problem:
            return LifecycleResult(False, f"Cannot restore version {version_number} on a live question: {problem}",
                                   ErrorKind.INVALID_TRANSITION)

    create_question_version(db, question_id, restored_by, f"Restored to version {version_number}")

    question.text = target.text
    question.type = target.type
    question.difficulty = target.difficulty or "medium"
    question.marks = target.marks or 1
    question.syllabus_id = target.syllabus_id
    question.topic_id = target.topic_id
    question.subtopic_id = target.subtopic_id
    question.updated_at = utcnow()
    question.options.clear()
    db.flush()
    for idx, opt in enumerate(target.options or []):
        question.options.append(QuestionOption(option_id=opt["id"], text=opt["text"],
                                               is_correct=bool(opt.get("is_correct")), order=idx))
    db.commit()
    audit.record("question", "version_restored", question_id, {"version": version_number}, restored_by)
    return LifecycleResult(True, f"Question restored to version {version_number}")


def get_question_versions(db: Session, question_id: str) -> List[QuestionVersion]:
    try:
        stmt = (select(QuestionVersion).where(QuestionVersion.question_id == question_id)
                .order_by(QuestionVersion.version.desc()))
        return list(db.execute(stmt).scalars().all())
    except SQLAlchemyError:
        logger.exception("Failed to load versions for question %s", question_id)
        db.rollback()
        return []


def get_questions_pending_review(db: Session, exam_body_id: Optional[str] = None) -> List[Question]:
    try:
        stmt = select(Question).where(Question.status == "reviewed")
        if exam_body_id:
            stmt = stmt.where(Question.exam_body_id == exam_body_id)
        return list(db.execute(stmt.order_by(Question.updated_at.asc(), Question.id)).scalars().all())
    except SQLAlchemyError:
        logger.exception("Failed to load questions pending review")
        db.rollback()
        return []


def delete_questions_by_subject(db: Session, subject_id: str, actor_id: Optional[str] = None,
                                audit: Optional[AuditSink] = None) -> SubjectDeleteResult:
    """Hard-delete a subject's questions in one transaction, keeping any an exam still references."""
    audit = audit or NullAuditSink()
    ids = set(db.execute(select(Question.id).where(Question.subject_id == subject_id)).scalars().all())
    if not ids:
        return SubjectDeleteResult()
    referenced = set()
    for question_ids in db.execute(select(Exam.question_ids)).scalars():
        referenced.update(question_ids or [])
    skipped = sorted(ids & referenced)
    doomed = sorted(ids - referenced)
    if doomed:
        try:
            db.execute(delete(QuestionOption).where(QuestionOption.question_id.in_(doomed)))
            db.execute(delete(MarkingGuide).where(MarkingGuide.question_id.in_(doomed)))
            db.execute(delete(QuestionTag).where(QuestionTag.question_id.in_(doomed)))
            db.execute(delete(Question).where(Question.id.in_(doomed)))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
    audit.record("subject", "questions_deleted", subject_id,
                 {"deleted": len(doomed), "skipped": skipped}, actor_id)
    return SubjectDeleteResult(deleted=len(doomed), skipped=skipped)
