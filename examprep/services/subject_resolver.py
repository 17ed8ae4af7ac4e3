"""
Track -> subject resolution.

A track (category) owns no subjects directly: a subject is available to a
track when its category_id points at the track AND it belongs to the same
exam body as the track. Every lookup here is a read path and degrades to an
empty value on storage errors; callers must treat empty as "no eligible
content".
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from examprep.models.orm import Category, ExamBody, Subject

logger = logging.getLogger(__name__)


@dataclass
class ResolvedSubject:
    id: str
    name: str
    code: Optional[str]
    description: Optional[str]
    is_required: bool = False
    order: int = 0


@dataclass
class TrackSummary:
    id: str
    name: str
    exam_body_id: str
    exam_body_name: Optional[str] = None
    subject_count: int = 0


@dataclass
class TrackResolution:
    track: TrackSummary
    subjects: List[ResolvedSubject] = field(default_factory=list)
    total_subjects: int = 0
    required_subjects: int = 0


@dataclass
class SubjectValidation:
    is_valid: bool
    valid_subjects: List[str] = field(default_factory=list)
    invalid_subjects: List[str] = field(default_factory=list)
    missing_required_subjects: List[str] = field(default_factory=list)


def _track_subjects_stmt(track: Category):
    return (
        select(Subject)
        .where(Subject.category_id == track.id, Subject.exam_body_id == track.exam_body_id)
        .order_by(Subject.name, Subject.id)
    )


def subjects_for_track(db: Session, track_id: str) -> List[ResolvedSubject]:
    """Subjects available to a track, ordered by name."""
    try:
        track = db.get(Category, track_id)
        if track is None:
            return []
        rows = db.execute(_track_subjects_stmt(track)).scalars().all()
        return [
            ResolvedSubject(id=s.id, name=s.name, code=s.code, description=s.description, order=idx)
            for idx, s in enumerate(rows)
        ]
    except SQLAlchemyError:
        logger.exception("Failed to load subjects for track %s", track_id)
        db.rollback()
        return []


def resolve_subject_ids(db: Session, track_id: str) -> Set[str]:
    return {s.id for s in subjects_for_track(db, track_id)}


def ordered_subject_ids(db: Session, track_id: str) -> List[str]:
    """Same set as resolve_subject_ids, in the resolver's stable order."""
    return [s.id for s in subjects_for_track(db, track_id)]


def resolve_track(db: Session, track_id: str) -> Optional[TrackResolution]:
    """Track summary plus its subjects; None when the track does not exist."""
    try:
        row = db.execute(
            select(Category, ExamBody.name)
            .join(ExamBody, ExamBody.id == Category.exam_body_id, isouter=True)
            .where(Category.id == track_id)
        ).first()
    except SQLAlchemyError:
        logger.exception("Failed to resolve track %s", track_id)
        db.rollback()
        return None
    if row is None:
        return None
    track, body_name = row
    subjects = subjects_for_track(db, track_id)
    summary = TrackSummary(id=track.id, name=track.name, exam_body_id=track.exam_body_id,
                           exam_body_name=body_name, subject_count=len(subjects))
    return TrackResolution(
        track=summary,
        subjects=subjects,
        total_subjects=len(subjects),
        required_subjects=sum(1 for s in subjects if s.is_required),
    )


def tracks_for_subject(db: Session, subject_id: str) -> List[TrackSummary]:
    try:
        subject = db.get(Subject, subject_id)
        if subject is None or subject.category_id is None:
            return []
        stmt = select(Category).where(Category.id == subject.category_id)
        if subject.exam_body_id is not None:
            stmt = stmt.where(Category.exam_body_id == subject.exam_body_id)
        return [TrackSummary(id=c.id, name=c.name, exam_body_id=c.exam_body_id)
                for c in db.execute(stmt).scalars().all()]
    except SQLAlchemyError:
        logger.exception("Failed to load tracks for subject %s", subject_id)
        db.rollback()
        return []


def tracks_with_subject_counts(db: Session, exam_body_id: str) -> List[TrackSummary]:
    """All tracks of an exam body with the number of subjects each exposes."""
    try:
        counts = (
            select(Subject.category_id.label("category_id"), func.count(Subject.id).label("n"))
            .where(Subject.exam_body_id == exam_body_id)
            .group_by(Subject.category_id)
            .subquery()
        )
        rows = db.execute(
            select(Category, func.coalesce(counts.c.n, 0))
            .join(counts, counts.c.category_id == Category.id, isouter=True)
            .where(Category.exam_body_id == exam_body_id)
            .order_by(Category.name)
        ).all()
        return [TrackSummary(id=c.id, name=c.name, exam_body_id=c.exam_body_id, subject_count=int(n))
                for c, n in rows]
    except SQLAlchemyError:
        logger.exception("Failed to list tracks for exam body %s", exam_body_id)
        db.rollback()
        return []


def validate_subjects_for_track(db: Session, track_id: str, subject_ids: List[str]) -> SubjectValidation:
    available: Dict[str, ResolvedSubject] = {s.id: s for s in subjects_for_track(db, track_id)}
    valid = [sid for sid in subject_ids if sid in available]
    invalid = [sid for sid in subject_ids if sid not in available]
    chosen = set(subject_ids)
    missing = [s.id for s in available.values() if s.is_required and s.id not in chosen]
    return SubjectValidation(
        is_valid=not invalid and not missing,
        valid_subjects=valid,
        invalid_subjects=invalid,
        missing_required_subjects=missing,
    )
