from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Literal, Optional
from sqlalchemy.orm import Session
from examprep.core.database import get_db
from examprep.core.auth import require_roles, TokenData
from examprep.core.errors import ErrorKind, http_error
from examprep.api.deps import get_audit_sink, get_ledger
from examprep.models.orm import Exam
from examprep.services.audit import AuditSink
from examprep.services.exam_composer import CompositionRequest, ExamComposer, archive_exam
from examprep.services.quota_ledger import TierQuotaLedger

router = APIRouter()
ANY_ROLE = require_roles("student", "editor", "admin")

class GenerateExam(BaseModel):
    exam_body_id: str
    question_count: Optional[int] = Field(default=None, ge=1, le=500)
    track_id: Optional[str] = None
    subject_ids: Optional[List[str]] = None
    exam_type_id: Optional[str] = None
    overrides: Optional[Dict[str, Any]] = None
    title: Optional[str] = None

    @model_validator(mode="after")
    def _track_xor_subjects(self):
        if self.track_id and self.subject_ids:
            raise ValueError("track_id and subject_ids are mutually exclusive")
        return self

class TierUpdate(BaseModel):
    tier: Literal["basic", "standard", "premium"]

def exam_out(exam: Exam) -> dict:
    return {"id": exam.id, "title": exam.title, "exam_body_id": exam.exam_body_id, "category_id": exam.category_id,
            "exam_type_id": exam.exam_type_id, "selected_subjects": exam.selected_subjects,
            "question_ids": exam.question_ids, "question_distribution": exam.question_distribution,
            "applied_rules": exam.applied_rules, "duration_minutes": exam.duration_minutes,
            "total_questions": exam.total_questions, "total_marks": exam.total_marks, "status": exam.status,
            "is_practice": exam.is_practice, "is_randomized": exam.is_randomized, "created_by": exam.created_by}

def _own_exam(db: Session, exam_id: str, user: TokenData) -> Exam:
    exam = db.get(Exam, exam_id)
    if exam is None:
        raise http_error(ErrorKind.NOT_FOUND, "Exam not found")
    if exam.created_by != user.sub and "admin" not in user.roles:
        raise HTTPException(403, "Not your exam")
    return exam

@router.post("/generate", status_code=201)
def generate(payload: GenerateExam, user: TokenData = Depends(ANY_ROLE), db: Session = Depends(get_db),
             ledger: TierQuotaLedger = Depends(get_ledger), audit: AuditSink = Depends(get_audit_sink)):
    request = CompositionRequest(created_by=user.sub, **payload.model_dump())
    result = ExamComposer(db, ledger=ledger, audit=audit).generate(request)
    if not result.success:
        raise http_error(result.kind or ErrorKind.INVALID_REQUEST, result.message,
                         limit=result.limit, current_usage=result.current_usage, available=result.available,
                         requires_upgrade=True if result.kind == ErrorKind.QUOTA_EXCEEDED else None)
    return {**exam_out(result.exam), "requested": result.requested, "realized": result.realized,
            "shortfall": result.shortfall, "message": result.message}

@router.get("/quota/{kind}")
def quota(kind: Literal["generation", "download", "usage"], user: TokenData = Depends(ANY_ROLE),
          ledger: TierQuotaLedger = Depends(get_ledger)):
    if kind == "usage":
        return ledger.get_usage(user.sub)
    check = ledger.check_generation_limit(user.sub) if kind == "generation" else ledger.check_download_limit(user.sub)
    return asdict(check)

@router.put("/tiers/{user_id}", dependencies=[Depends(require_roles("admin"))])
def set_tier(user_id: str, payload: TierUpdate, ledger: TierQuotaLedger = Depends(get_ledger)):
    record = ledger.set_tier(user_id, payload.tier)
    return {"user_id": record.user_id, "tier": record.tier}

@router.get("/{exam_id}")
def read(exam_id: str, user: TokenData = Depends(ANY_ROLE), db: Session = Depends(get_db)):
    return exam_out(_own_exam(db, exam_id, user))

@router.post("/{exam_id}/download")
def download(exam_id: str, user: TokenData = Depends(ANY_ROLE), db: Session = Depends(get_db),
             ledger: TierQuotaLedger = Depends(get_ledger)):
    _own_exam(db, exam_id, user)
    check = ledger.check_download_limit(user.sub)
    if not check.allowed:
        raise http_error(ErrorKind.QUOTA_EXCEEDED, check.reason, limit=check.limit,
                         current_usage=check.current_usage, requires_upgrade=True)
    created = ledger.record_download(user.sub, exam_id)
    return {"exam_id": exam_id, "recorded": created}

@router.delete("/{exam_id}/download")
def remove_download(exam_id: str, user: TokenData = Depends(ANY_ROLE), ledger: TierQuotaLedger = Depends(get_ledger)):
    return {"exam_id": exam_id, "removed": ledger.remove_download(user.sub, exam_id)}

@router.post("/{exam_id}/archive")
def archive(exam_id: str, user: TokenData = Depends(ANY_ROLE), db: Session = Depends(get_db),
            audit: AuditSink = Depends(get_audit_sink)):
    _own_exam(db, exam_id, user)
    archived = archive_exam(db, exam_id)
    if archived:
        audit.record("exam", "archived", exam_id, {}, user.sub)
    return {"exam_id": exam_id, "archived": archived}
