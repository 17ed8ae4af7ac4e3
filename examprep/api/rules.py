from dataclasses import asdict
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from examprep.core.database import get_db
from examprep.core.auth import require_roles
from examprep.core.errors import ErrorKind, http_error
from examprep.services import rules_engine

router = APIRouter()
ANY_ROLE = require_roles("student", "editor", "admin")

class RulesQuery(BaseModel):
    exam_type_id: str
    track_id: Optional[str] = None
    overrides: Optional[Dict[str, Any]] = None

class ValidateQuery(RulesQuery):
    question_ids: List[str]

class EvaluateQuery(RulesQuery):
    score: float = Field(ge=0)
    total_questions: int = Field(ge=0)

def _rule_out(rule) -> dict:
    return {"id": rule.id, "name": rule.name, "description": rule.description, "track_id": rule.track_id,
            "priority": rule.priority, "rules": rule.rules, "is_active": rule.is_active}

@router.post("/resolve", dependencies=[Depends(ANY_ROLE)])
def resolve(payload: RulesQuery, db: Session = Depends(get_db)):
    return rules_engine.resolve_exam_rules(db, payload.exam_type_id, payload.track_id, payload.overrides).to_dict()

@router.post("/validate", dependencies=[Depends(ANY_ROLE)])
def validate(payload: ValidateQuery, db: Session = Depends(get_db)):
    report = rules_engine.validate_exam_configuration(db, payload.exam_type_id, payload.question_ids,
                                                      payload.track_id, payload.overrides)
    return asdict(report)

@router.post("/template", dependencies=[Depends(ANY_ROLE)])
def template(payload: RulesQuery, db: Session = Depends(get_db)):
    t = rules_engine.generate_exam_template(db, payload.exam_type_id, payload.track_id, payload.overrides)
    return {"duration_minutes": t.duration_minutes, "total_questions": t.total_questions,
            "question_distribution": t.question_distribution, "rules": t.rules.to_dict()}

@router.post("/evaluate", dependencies=[Depends(ANY_ROLE)])
def evaluate(payload: EvaluateQuery, db: Session = Depends(get_db)):
    rules = rules_engine.resolve_exam_rules(db, payload.exam_type_id, payload.track_id, payload.overrides)
    return asdict(rules_engine.evaluate_exam_results(rules, payload.score, payload.total_questions))

@router.get("/exam-type/{exam_type_id}", dependencies=[Depends(require_roles("editor", "admin"))])
def exam_type_rules(exam_type_id: str, db: Session = Depends(get_db)):
    return [_rule_out(r) for r in rules_engine.get_exam_type_rules(db, exam_type_id)]

@router.post("/exam-type/{exam_type_id}/defaults", status_code=201, dependencies=[Depends(require_roles("admin"))])
def create_defaults(exam_type_id: str, db: Session = Depends(get_db)):
    rule = rules_engine.create_default_exam_rules(db, exam_type_id)
    if rule is None:
        raise http_error(ErrorKind.NOT_FOUND, "Exam type not found")
    return _rule_out(rule)
