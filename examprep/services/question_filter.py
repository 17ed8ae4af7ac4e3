"""
Hierarchical question filtering.

Criteria narrow the bank along exam body -> track/subjects -> syllabus ->
topic -> subtopic plus attribute filters. Status defaults to live so public
queries never see editorial content unless asked for it explicitly. Random
ordering is delegated to the database's random() so large pools are sampled
server side.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import String, case, cast, exists, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from examprep.models.orm import Question, QuestionTag
from examprep.services.subject_resolver import resolve_subject_ids

logger = logging.getLogger(__name__)

DEFAULT_STATUS = ["live"]
DIFFICULTY_RANK = {"easy": 1, "medium": 2, "hard": 3}
LIKE_ESCAPE = "\\"

Difficulty = Literal["easy", "medium", "hard"]
QuestionType = Literal["multiple_choice", "true_false", "short_answer", "essay"]
Status = Literal["draft", "reviewed", "approved", "live", "archived"]


class QuestionCriteria(BaseModel):
    exam_body_id: Optional[str] = None
    exam_type_id: Optional[str] = None
    track_id: Optional[str] = None
    subject_ids: Optional[List[str]] = None
    syllabus_id: Optional[str] = None
    topic_id: Optional[str] = None
    subtopic_id: Optional[str] = None
    difficulty: Optional[List[Difficulty]] = None
    type: Optional[List[QuestionType]] = None
    status: Optional[List[Status]] = None
    year: Optional[int] = None
    source: Optional[str] = None
    tags: Optional[List[str]] = None
    search_text: Optional[str] = None
    exclude_ids: Optional[List[str]] = None
    limit: int = Field(default=50, ge=0, le=1000)
    offset: int = Field(default=0, ge=0)
    order_by: Literal["created_at", "difficulty", "usage_count", "random"] = "created_at"
    order_direction: Literal["asc", "desc"] = "desc"

    @model_validator(mode="after")
    def _track_xor_subjects(self):
        if self.track_id and self.subject_ids:
            raise ValueError("track_id and subject_ids are mutually exclusive")
        return self


@dataclass
class FilterResult:
    questions: List[Question] = field(default_factory=list)
    total_count: int = 0
    applied_filters: Dict[str, Any] = field(default_factory=dict)


def _contains(text: str) -> str:
    """ILIKE pattern matching text literally anywhere in the value."""
    for ch in (LIKE_ESCAPE, "%", "_"):
        text = text.replace(ch, LIKE_ESCAPE + ch)
    return f"%{text}%"


def _conditions(db: Session, criteria: QuestionCriteria) -> Tuple[Optional[list], Dict[str, Any]]:
    """Build WHERE clauses; returns (None, applied) when the query can match nothing."""
    conds: list = []
    applied: Dict[str, Any] = {}

    if criteria.exam_body_id:
        conds.append(Question.exam_body_id == criteria.exam_body_id)
        applied["exam_body_id"] = criteria.exam_body_id
    if criteria.exam_type_id:
        conds.append(Question.exam_type_id == criteria.exam_type_id)
        applied["exam_type_id"] = criteria.exam_type_id

    if criteria.track_id:
        subject_ids = resolve_subject_ids(db, criteria.track_id)
        applied["track_id"] = criteria.track_id
        applied["resolved_subject_ids"] = sorted(subject_ids)
        if not subject_ids:
            return None, applied
        conds.append(Question.subject_id.in_(subject_ids))
    elif criteria.subject_ids:
        conds.append(Question.subject_id.in_(criteria.subject_ids))
        applied["subject_ids"] = list(criteria.subject_ids)

    for name in ("syllabus_id", "topic_id", "subtopic_id"):
        value = getattr(criteria, name)
        if value:
            conds.append(getattr(Question, name) == value)
            applied[name] = value

    if criteria.difficulty:
        conds.append(Question.difficulty.in_(criteria.difficulty))
        applied["difficulty"] = list(criteria.difficulty)
    if criteria.type:
        conds.append(Question.type.in_(criteria.type))
        applied["type"] = list(criteria.type)

    statuses = list(criteria.status) if criteria.status else list(DEFAULT_STATUS)
    conds.append(Question.status.in_(statuses))
    applied["status"] = statuses

    if criteria.year is not None:
        conds.append(Question.year == criteria.year)
        applied["year"] = criteria.year
    if criteria.source:
        conds.append(Question.source.ilike(_contains(criteria.source), escape=LIKE_ESCAPE))
        applied["source"] = criteria.source
    if criteria.tags:
        conds.append(or_(*[
            exists().where(QuestionTag.question_id == Question.id,
                           QuestionTag.tag.ilike(_contains(t), escape=LIKE_ESCAPE))
            for t in criteria.tags
        ]))
        applied["tags"] = list(criteria.tags)
    if criteria.search_text:
        pattern = _contains(criteria.search_text)
        conds.append(or_(
            Question.text.ilike(pattern, escape=LIKE_ESCAPE),
            cast(Question.year, String).ilike(pattern, escape=LIKE_ESCAPE),
            Question.source.ilike(pattern, escape=LIKE_ESCAPE),
        ))
        applied["search_text"] = criteria.search_text
    if criteria.exclude_ids:
        conds.append(Question.id.not_in(criteria.exclude_ids))
        applied["exclude_ids"] = len(criteria.exclude_ids)
    return conds, applied


def _ordering(criteria: QuestionCriteria) -> list:
    if criteria.order_by == "random":
        return [func.random()]
    if criteria.order_by == "difficulty":
        key = case(DIFFICULTY_RANK, value=Question.difficulty, else_=0)
    elif criteria.order_by == "usage_count":
        key = Question.usage_count
    else:
        key = Question.created_at
    primary = key.desc() if criteria.order_direction == "desc" else key.asc()
    return [primary, Question.id.asc()]


def filter_questions(db: Session, criteria: QuestionCriteria) -> FilterResult:
    conds, applied = _conditions(db, criteria)
    applied.update(limit=criteria.limit, offset=criteria.offset,
                   order_by=criteria.order_by, order_direction=criteria.order_direction)
    if conds is None:
        return FilterResult(questions=[], total_count=0, applied_filters=applied)
    try:
        total = db.scalar(select(func.count(Question.id)).where(*conds)) or 0
        stmt = select(Question).where(*conds).order_by(*_ordering(criteria))
        stmt = stmt.offset(criteria.offset).limit(criteria.limit)
        questions = list(db.execute(stmt).scalars().all())
        return FilterResult(questions=questions, total_count=int(total), applied_filters=applied)
    except SQLAlchemyError:
        logger.exception("Question filter failed: %s", applied)
        db.rollback()
        return FilterResult(questions=[], total_count=0, applied_filters=applied)


def count_questions(db: Session, criteria: QuestionCriteria) -> int:
    conds, _ = _conditions(db, criteria)
    if conds is None:
        return 0
    try:
        return int(db.scalar(select(func.count(Question.id)).where(*conds)) or 0)
    except SQLAlchemyError:
        logger.exception("Question count failed")
        db.rollback()
        return 0


def sample_question_ids(db: Session, criteria: QuestionCriteria, n: int) -> List[str]:
    """Draw up to n ids at random from the pool the criteria describe."""
    if n <= 0:
        return []
    draw = criteria.model_copy(update={"order_by": "random", "limit": n, "offset": 0})
    return [q.id for q in filter_questions(db, draw).questions]


def validate_question_access(db: Session, question_id: str, criteria: QuestionCriteria) -> bool:
    """True when the question is visible under the given criteria."""
    conds, _ = _conditions(db, criteria)
    if conds is None:
        return False
    try:
        found = db.scalar(select(Question.id).where(Question.id == question_id, *conds).limit(1))
        return found is not None
    except SQLAlchemyError:
        logger.exception("Access check failed for question %s", question_id)
        db.rollback()
        return False


def question_counts_by_subject(db: Session, track_id: str) -> Dict[str, Dict[str, Any]]:
    """Per-subject totals for a track: all questions, approved-or-live, and by difficulty."""
    subject_ids = resolve_subject_ids(db, track_id)
    if not subject_ids:
        return {}
    counts: Dict[str, Dict[str, Any]] = {
        sid: {"total": 0, "available": 0, "by_difficulty": {"easy": 0, "medium": 0, "hard": 0}}
        for sid in subject_ids
    }
    try:
        rows = db.execute(
            select(Question.subject_id, Question.status, Question.difficulty, func.count(Question.id))
            .where(Question.subject_id.in_(subject_ids))
            .group_by(Question.subject_id, Question.status, Question.difficulty)
        ).all()
    except SQLAlchemyError:
        logger.exception("Failed to count questions for track %s", track_id)
        db.rollback()
        return {}
    for subject_id, status, difficulty, n in rows:
        entry = counts[subject_id]
        entry["total"] += n
        if status in ("approved", "live"):
            entry["available"] += n
        if difficulty in entry["by_difficulty"]:
            entry["by_difficulty"][difficulty] += n
    return counts
