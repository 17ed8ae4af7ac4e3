"""
Exam rules engine.

Rules are JSON rule sets stored per exam type, optionally narrowed to a
track. Resolution is a three-tier shallow merge: exam-type rules, then
track rules (each tier in ascending priority so the highest priority is
applied last), then caller overrides. Nested values such as
difficulty_distribution are replaced wholesale, never merged key by key.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from examprep.core.config import settings
from examprep.models.orm import ExamRule, ExamType, Question

logger = logging.getLogger(__name__)

FALLBACK_RULES: Dict[str, Any] = {
    "duration": 180,
    "question_count": 50,
    "passing_score": 50,
    "randomization": True,
}

DEFAULT_RULE_SET: Dict[str, Any] = {
    "duration": 180,
    "question_count": 50,
    "randomization": True,
    "show_results": True,
    "allow_review": True,
    "passing_score": 50,
    "difficulty_distribution": {"easy": 30, "medium": 50, "hard": 20},
}

OVERRIDE_PRIORITY = 999

GRADE_BANDS = ((90, "A+"), (80, "A"), (70, "B"), (60, "C"), (50, "D"))


@dataclass
class AppliedRule:
    id: str
    name: str
    priority: int
    source: str  # exam_type | track | custom


@dataclass
class EffectiveRules:
    values: Dict[str, Any] = field(default_factory=dict)
    applied_rules: List[AppliedRule] = field(default_factory=list)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.values.get(key)
        return default if value is None else value

    @property
    def duration(self) -> Optional[int]: return self.values.get("duration")
    @property
    def question_count(self) -> Optional[int]: return self.values.get("question_count")
    @property
    def passing_score(self) -> Optional[float]: return self.values.get("passing_score")
    @property
    def randomization(self) -> Optional[bool]: return self.values.get("randomization")
    @property
    def difficulty_distribution(self) -> Optional[Dict[str, float]]: return self.values.get("difficulty_distribution")
    @property
    def question_distribution(self) -> Optional[Dict[str, int]]: return self.values.get("question_distribution")

    def to_dict(self) -> Dict[str, Any]:
        return {**self.values, "applied_rules": [r.__dict__.copy() for r in self.applied_rules]}


@dataclass
class ConfigurationReport:
    is_valid: bool
    violations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ExamEvaluation:
    passed: bool
    grade: str
    percentage: float
    feedback: List[str] = field(default_factory=list)


@dataclass
class ExamTemplate:
    duration_minutes: int
    total_questions: int
    question_distribution: Dict[str, int]
    rules: EffectiveRules


def _active_rules(db: Session, exam_type_id: str, track_id: Optional[str]) -> List[ExamRule]:
    stmt = select(ExamRule).where(ExamRule.exam_type_id == exam_type_id, ExamRule.is_active.is_(True))
    stmt = stmt.where(ExamRule.track_id.is_(None) if track_id is None else ExamRule.track_id == track_id)
    stmt = stmt.order_by(ExamRule.priority.asc(), ExamRule.created_at.asc(), ExamRule.id.asc())
    return list(db.execute(stmt).scalars().all())


def _apply_rule(merged: Dict[str, Any], rule_set: Optional[Dict[str, Any]]) -> None:
    for key, value in (rule_set or {}).items():
        if value is not None:
            merged[key] = value


def resolve_exam_rules(db: Session, exam_type_id: str, track_id: Optional[str] = None,
                       overrides: Optional[Dict[str, Any]] = None) -> EffectiveRules:
    try:
        merged: Dict[str, Any] = {}
        applied: List[AppliedRule] = []
        for rule in _active_rules(db, exam_type_id, None):
            _apply_rule(merged, rule.rules)
            applied.append(AppliedRule(rule.id, rule.name, rule.priority, "exam_type"))
        if track_id:
            for rule in _active_rules(db, exam_type_id, track_id):
                _apply_rule(merged, rule.rules)
                applied.append(AppliedRule(rule.id, rule.name, rule.priority, "track"))
        if overrides:
            merged.update(overrides)
            applied.append(AppliedRule("custom", "Custom Overrides", OVERRIDE_PRIORITY, "custom"))
        return EffectiveRules(values=merged, applied_rules=applied)
    except Exception:
        logger.exception("Failed to resolve rules for exam type %s (track %s)", exam_type_id, track_id)
        db.rollback()
        return EffectiveRules(values=dict(FALLBACK_RULES), applied_rules=[])


def get_exam_type_rules(db: Session, exam_type_id: str) -> List[ExamRule]:
    """Every active rule of an exam type, highest priority first."""
    try:
        stmt = (select(ExamRule)
                .where(ExamRule.exam_type_id == exam_type_id, ExamRule.is_active.is_(True))
                .order_by(ExamRule.priority.desc(), ExamRule.created_at.asc()))
        return list(db.execute(stmt).scalars().all())
    except Exception:
        logger.exception("Failed to list rules for exam type %s", exam_type_id)
        db.rollback()
        return []


def _distribution_warnings(db: Session, rules: EffectiveRules, question_ids: List[str]) -> List[str]:
    warnings: List[str] = []
    if not question_ids or not (rules.question_distribution or rules.difficulty_distribution):
        return warnings
    rows = db.execute(
        select(Question.subject_id, Question.difficulty).where(Question.id.in_(question_ids))
    ).all()
    if rules.question_distribution:
        per_subject = Counter(subject_id for subject_id, _ in rows)
        for subject_id, expected in rules.question_distribution.items():
            actual = per_subject.get(subject_id, 0)
            if actual != expected:
                warnings.append(f"Subject {subject_id} has {actual} questions, distribution expects {expected}")
    if rules.difficulty_distribution and rows:
        per_level = Counter(difficulty for _, difficulty in rows)
        tolerance = settings.DIFFICULTY_TOLERANCE_PCT
        for level, expected_pct in rules.difficulty_distribution.items():
            actual_pct = 100.0 * per_level.get(level, 0) / len(rows)
            if abs(actual_pct - float(expected_pct)) > tolerance:
                warnings.append(f"Difficulty '{level}' is {actual_pct:.1f}% of the exam, expected {expected_pct}%")
    return warnings


def validate_exam_configuration(db: Session, exam_type_id: str, question_ids: List[str],
                                track_id: Optional[str] = None,
                                overrides: Optional[Dict[str, Any]] = None) -> ConfigurationReport:
    """Count mismatches are violations; distribution drift is only a warning."""
    try:
        rules = resolve_exam_rules(db, exam_type_id, track_id, overrides)
        violations: List[str] = []
        if rules.question_count and len(question_ids) != rules.question_count:
            violations.append(
                f"Question count {len(question_ids)} does not match required {rules.question_count}")
        warnings = _distribution_warnings(db, rules, question_ids)
        return ConfigurationReport(is_valid=not violations, violations=violations, warnings=warnings)
    except Exception:
        logger.exception("Failed to validate exam configuration for exam type %s", exam_type_id)
        db.rollback()
        return ConfigurationReport(is_valid=False, violations=["Failed to validate exam configuration"])


def generate_exam_template(db: Session, exam_type_id: str, track_id: Optional[str] = None,
                           overrides: Optional[Dict[str, Any]] = None) -> ExamTemplate:
    rules = resolve_exam_rules(db, exam_type_id, track_id, overrides)
    return ExamTemplate(
        duration_minutes=int(rules.get("duration", FALLBACK_RULES["duration"])),
        total_questions=int(rules.get("question_count", FALLBACK_RULES["question_count"])),
        question_distribution=dict(rules.question_distribution or {}),
        rules=rules,
    )


def create_default_exam_rules(db: Session, exam_type_id: str) -> Optional[ExamRule]:
    """Seed the priority-0 exam-type-wide rule. Returns None for an unknown exam type."""
    exam_type = db.get(ExamType, exam_type_id)
    if exam_type is None:
        return None
    rule = ExamRule(
        exam_body_id=exam_type.exam_body_id,
        exam_type_id=exam_type_id,
        track_id=None,
        name="Default Exam Configuration",
        description="Standard exam settings",
        rules=dict(DEFAULT_RULE_SET),
        priority=0,
        is_active=True,
    )
    db.add(rule)
    db.commit()
    return rule


def evaluate_exam_results(rules: EffectiveRules, score: float, total_questions: int) -> ExamEvaluation:
    passing = rules.get("passing_score", 50)
    percentage = (score / total_questions) * 100 if total_questions > 0 else 0.0
    passed = percentage >= passing
    if passed:
        feedback = [f"Passed with {percentage:.1f}% ({score}/{total_questions})"]
    else:
        feedback = [f"Failed with {percentage:.1f}% ({score}/{total_questions}). Required: {passing}%"]
    grade = next((g for floor, g in GRADE_BANDS if percentage >= floor), "F")
    return ExamEvaluation(passed=passed, grade=grade, percentage=round(percentage, 2), feedback=feedback)
