from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, constr
from typing import List, Optional, Literal
from sqlalchemy.orm import Session
from examprep.core.database import get_db
from examprep.core.auth import require_roles, TokenData
from examprep.core.errors import ErrorKind, http_error
from examprep.api.deps import get_audit_sink
from examprep.services.audit import AuditSink
from examprep.services import question_lifecycle as lifecycle
from examprep.services.question_bank import create_question, get_question, serialize_question
from examprep.services.question_filter import QuestionCriteria, filter_questions

router = APIRouter()
EDITORS = ("editor", "admin")

class OptionIn(BaseModel):
    option_id: Optional[constr(min_length=1, max_length=8)] = None
    text: str
    is_correct: bool = False

class MarkingGuideIn(BaseModel):
    criteria: str
    description: Optional[str] = None
    marks: int = 1

class QuestionCreate(BaseModel):
    text: constr(min_length=1)
    type: Literal["multiple_choice", "true_false", "short_answer", "essay"] = "multiple_choice"
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    marks: int = Field(default=1, ge=0)
    exam_body_id: str
    subject_id: str
    category_id: Optional[str] = None
    exam_type_id: Optional[str] = None
    syllabus_id: Optional[str] = None
    topic_id: Optional[str] = None
    subtopic_id: Optional[str] = None
    year: Optional[int] = None
    source: Optional[str] = None
    tags: List[str] = []
    options: List[OptionIn] = []
    marking_guides: List[MarkingGuideIn] = []

class TransitionIn(BaseModel):
    new_status: Literal["draft", "reviewed", "approved", "live", "archived"]
    reason: Optional[str] = None

class BulkTransitionIn(TransitionIn):
    question_ids: List[str] = Field(min_length=1)

class RestoreIn(BaseModel):
    version: int = Field(ge=1)

def _raise_for(result: lifecycle.LifecycleResult):
    if not result.success:
        raise http_error(result.kind or ErrorKind.INVALID_TRANSITION, result.message)

@router.post("", status_code=201)
def create(payload: QuestionCreate, user: TokenData = Depends(require_roles(*EDITORS)), db: Session = Depends(get_db)):
    q = create_question(db, payload.model_dump(), created_by=user.sub)
    return serialize_question(q, include_answers=True)

@router.post("/search")
def search(criteria: QuestionCriteria, user: TokenData = Depends(require_roles("student", *EDITORS)), db: Session = Depends(get_db)):
    editor = bool(set(user.roles) & set(EDITORS))
    if not editor and criteria.status and set(criteria.status) != {"live"}:
        raise HTTPException(403, "Only editors can query non-live questions")
    result = filter_questions(db, criteria)
    return {
        "questions": [serialize_question(q, include_answers=editor) for q in result.questions],
        "total_count": result.total_count,
        "applied_filters": result.applied_filters,
    }

@router.get("/pending-review", dependencies=[Depends(require_roles(*EDITORS))])
def pending_review(exam_body_id: Optional[str] = None, db: Session = Depends(get_db)):
    return [serialize_question(q, include_answers=True) for q in lifecycle.get_questions_pending_review(db, exam_body_id)]

@router.get("/transitions/{status}")
def valid_transitions(status: str):
    return {"status": status, "next": lifecycle.get_valid_transitions(status)}

@router.post("/bulk-transition")
def bulk_transition(payload: BulkTransitionIn, user: TokenData = Depends(require_roles(*EDITORS)),
                    db: Session = Depends(get_db), audit: AuditSink = Depends(get_audit_sink)):
    result = lifecycle.bulk_transition(db, payload.question_ids, payload.new_status, user.sub, payload.reason, audit)
    return {"success_count": result.success_count, "succeeded": result.succeeded, "failed": result.failed}

@router.delete("/by-subject/{subject_id}")
def delete_by_subject(subject_id: str, user: TokenData = Depends(require_roles("admin")),
                      db: Session = Depends(get_db), audit: AuditSink = Depends(get_audit_sink)):
    result = lifecycle.delete_questions_by_subject(db, subject_id, user.sub, audit)
    return {"deleted": result.deleted, "skipped": result.skipped}

@router.get("/{question_id}", dependencies=[Depends(require_roles(*EDITORS))])
def read(question_id: str, db: Session = Depends(get_db)):
    q = get_question(db, question_id)
    if not q:
        raise http_error(ErrorKind.NOT_FOUND, "Question not found")
    return serialize_question(q, include_answers=True)

@router.post("/{question_id}/transition")
def transition(question_id: str, payload: TransitionIn, user: TokenData = Depends(require_roles(*EDITORS)),
               db: Session = Depends(get_db), audit: AuditSink = Depends(get_audit_sink)):
    result = lifecycle.transition_status(db, question_id, payload.new_status, user.sub, payload.reason, audit)
    _raise_for(result)
    return {"success": True, "message": result.message}

@router.get("/{question_id}/versions", dependencies=[Depends(require_roles(*EDITORS))])
def versions(question_id: str, db: Session = Depends(get_db)):
    return [{"version": v.version, "text": v.text, "type": v.type, "difficulty": v.difficulty, "marks": v.marks,
             "status": v.status, "options": v.options, "marking_guides": v.marking_guides,
             "change_reason": v.change_reason, "changed_by": v.changed_by, "created_at": v.created_at}
            for v in lifecycle.get_question_versions(db, question_id)]

@router.post("/{question_id}/restore")
def restore(question_id: str, payload: RestoreIn, user: TokenData = Depends(require_roles(*EDITORS)),
            db: Session = Depends(get_db), audit: AuditSink = Depends(get_audit_sink)):
    result = lifecycle.restore_version(db, question_id, payload.version, user.sub, audit)
    _raise_for(result)
    return {"success": True, "message": result.message}
