"""
Question authoring: new questions always start life as drafts.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from examprep.models.orm import MarkingGuide, Question, QuestionOption

logger = logging.getLogger(__name__)


def create_question(db: Session, payload: Dict[str, Any], created_by: str) -> Question:
    options: List[Dict[str, Any]] = payload.pop("options", None) or []
    guides: List[Dict[str, Any]] = payload.pop("marking_guides", None) or []
    tags = payload.pop("tags", None) or []
    payload.pop("status", None)
    question = Question(**payload, status="draft", created_by=created_by, tags=tags)
    for idx, opt in enumerate(options):
        question.options.append(QuestionOption(
            option_id=opt.get("option_id") or chr(ord("A") + idx),
            text=opt["text"], is_correct=bool(opt.get("is_correct")), order=idx))
    for idx, guide in enumerate(guides):
        question.marking_guides.append(MarkingGuide(
            criteria=guide["criteria"], description=guide.get("description"),
            marks=guide.get("marks", 1), order=idx))
    db.add(question)
    db.commit()
    logger.info("Question %s created by %s in subject %s", question.id, created_by, question.subject_id)
    return question


def get_question(db: Session, question_id: str) -> Optional[Question]:
    return db.get(Question, question_id)


def serialize_question(q: Question, include_answers: bool = False) -> Dict[str, Any]:
    options = []
    for o in q.options:
        item = {"id": o.option_id, "text": o.text}
        if include_answers:
            item["is_correct"] = o.is_correct
        options.append(item)
    return {
        "id": q.id, "text": q.text, "type": q.type, "difficulty": q.difficulty, "marks": q.marks,
        "status": q.status, "exam_body_id": q.exam_body_id, "subject_id": q.subject_id,
        "category_id": q.category_id, "exam_type_id": q.exam_type_id, "syllabus_id": q.syllabus_id,
        "topic_id": q.topic_id, "subtopic_id": q.subtopic_id, "year": q.year, "source": q.source,
        "tags": list(q.tags), "usage_count": q.usage_count, "options": options,
    }
