from dataclasses import asdict
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import List
from sqlalchemy.orm import Session
from examprep.core.database import get_db
from examprep.core.auth import require_roles
from examprep.core.errors import ErrorKind, http_error
from examprep.services import subject_resolver
from examprep.services.question_filter import question_counts_by_subject

router = APIRouter()
ANY_ROLE = require_roles("student", "editor", "admin")

class SubjectSelection(BaseModel):
    subject_ids: List[str]

@router.get("/by-exam-body/{exam_body_id}", dependencies=[Depends(ANY_ROLE)])
def tracks_for_exam_body(exam_body_id: str, db: Session = Depends(get_db)):
    return [asdict(t) for t in subject_resolver.tracks_with_subject_counts(db, exam_body_id)]

@router.get("/for-subject/{subject_id}", dependencies=[Depends(ANY_ROLE)])
def tracks_for_subject(subject_id: str, db: Session = Depends(get_db)):
    return [asdict(t) for t in subject_resolver.tracks_for_subject(db, subject_id)]

@router.get("/{track_id}", dependencies=[Depends(ANY_ROLE)])
def resolve_track(track_id: str, db: Session = Depends(get_db)):
    resolution = subject_resolver.resolve_track(db, track_id)
    if resolution is None:
        raise http_error(ErrorKind.NOT_FOUND, "Track not found")
    return asdict(resolution)

@router.get("/{track_id}/subjects", dependencies=[Depends(ANY_ROLE)])
def track_subjects(track_id: str, db: Session = Depends(get_db)):
    return [asdict(s) for s in subject_resolver.subjects_for_track(db, track_id)]

@router.get("/{track_id}/question-counts", dependencies=[Depends(require_roles("editor", "admin"))])
def track_question_counts(track_id: str, db: Session = Depends(get_db)):
    return question_counts_by_subject(db, track_id)

@router.post("/{track_id}/validate-subjects", dependencies=[Depends(ANY_ROLE)])
def validate_subjects(track_id: str, payload: SubjectSelection, db: Session = Depends(get_db)):
    return asdict(subject_resolver.validate_subjects_for_track(db, track_id, payload.subject_ids))
