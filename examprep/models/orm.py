from datetime import datetime
from uuid import uuid4
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.ext.associationproxy import AssociationProxy, association_proxy
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy import Integer, String, Text, Boolean, ForeignKey, JSON, DateTime, UniqueConstraint
from examprep.core.database import utcnow

def new_id() -> str:
    return str(uuid4())

QUESTION_STATUSES = ("draft", "reviewed", "approved", "live", "archived")
QUESTION_TYPES = ("multiple_choice", "true_false", "short_answer", "essay")
DIFFICULTIES = ("easy", "medium", "hard")

class Base(DeclarativeBase): pass

class ExamBody(Base):
    __tablename__ = "exam_bodies"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

class ExamType(Base):
    __tablename__ = "exam_types"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    exam_body_id: Mapped[str] = mapped_column(String, ForeignKey("exam_bodies.id"))
    name: Mapped[str] = mapped_column(String)
    code: Mapped[str | None] = mapped_column(String, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

class Category(Base):
    """A track: a named grouping of subjects under one exam body."""
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("exam_body_id", "name", name="uq_category_body_name"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    exam_body_id: Mapped[str] = mapped_column(String, ForeignKey("exam_bodies.id"))
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

class Subject(Base):
    __tablename__ = "subjects"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    code: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_id: Mapped[str | None] = mapped_column(String, ForeignKey("categories.id"), nullable=True, index=True)
    exam_body_id: Mapped[str | None] = mapped_column(String, ForeignKey("exam_bodies.id"), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

class Syllabus(Base):
    __tablename__ = "syllabi"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    exam_body_id: Mapped[str] = mapped_column(String, ForeignKey("exam_bodies.id"))
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"))
    title: Mapped[str] = mapped_column(String)

class Topic(Base):
    __tablename__ = "topics"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"))
    syllabus_id: Mapped[str | None] = mapped_column(String, ForeignKey("syllabi.id"), nullable=True)
    name: Mapped[str] = mapped_column(String)

class Subtopic(Base):
    __tablename__ = "subtopics"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    topic_id: Mapped[str] = mapped_column(String, ForeignKey("topics.id"))
    name: Mapped[str] = mapped_column(String)

class Question(Base):
    __tablename__ = "questions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    text: Mapped[str] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String, default="multiple_choice")
    difficulty: Mapped[str] = mapped_column(String, default="medium")
    marks: Mapped[int] = mapped_column(Integer, default=1)
    exam_body_id: Mapped[str] = mapped_column(String, ForeignKey("exam_bodies.id"), index=True)
    category_id: Mapped[str | None] = mapped_column(String, ForeignKey("categories.id"), nullable=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    exam_type_id: Mapped[str | None] = mapped_column(String, ForeignKey("exam_types.id"), nullable=True)
    syllabus_id: Mapped[str | None] = mapped_column(String, ForeignKey("syllabi.id"), nullable=True)
    topic_id: Mapped[str | None] = mapped_column(String, ForeignKey("topics.id"), nullable=True)
    subtopic_id: Mapped[str | None] = mapped_column(String, ForeignKey("subtopics.id"), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="draft", index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_by: Mapped[str | None] = mapped_column(String, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archive_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    options: Mapped[list["QuestionOption"]] = relationship(
        back_populates="question", order_by="QuestionOption.order", cascade="all, delete-orphan")
    marking_guides: Mapped[list["MarkingGuide"]] = relationship(
        order_by="MarkingGuide.order", cascade="all, delete-orphan")
    tag_rows: Mapped[list["QuestionTag"]] = relationship(
        order_by="QuestionTag.position", collection_class=ordering_list("position"),
        cascade="all, delete-orphan")
    tags: AssociationProxy[list[str]] = association_proxy(
        "tag_rows", "tag", creator=lambda tag: QuestionTag(tag=tag))

# one row per tag so filters match a single tag, never the serialised list
class QuestionTag(Base):
    __tablename__ = "question_tags"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    question_id: Mapped[str] = mapped_column(String, ForeignKey("questions.id"), index=True)
    tag: Mapped[str] = mapped_column(String, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

class QuestionOption(Base):
    __tablename__ = "question_options"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    question_id: Mapped[str] = mapped_column(String, ForeignKey("questions.id"), index=True)
    option_id: Mapped[str] = mapped_column(String)
    text: Mapped[str] = mapped_column(Text)
    order: Mapped[int] = mapped_column(Integer, default=0)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)

    question: Mapped[Question] = relationship(back_populates="options")

class MarkingGuide(Base):
    __tablename__ = "marking_guides"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    question_id: Mapped[str] = mapped_column(String, ForeignKey("questions.id"), index=True)
    criteria: Mapped[str] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    marks: Mapped[int] = mapped_column(Integer, default=1)
    order: Mapped[int] = mapped_column(Integer, default=0)

class QuestionVersion(Base):
    __tablename__ = "question_versions"
    __table_args__ = (UniqueConstraint("question_id", "version", name="uq_question_version"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # no FK: history outlives the question row it describes
    question_id: Mapped[str] = mapped_column(String, index=True)
    version: Mapped[int] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String)
    difficulty: Mapped[str | None] = mapped_column(String, nullable=True)
    marks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    exam_body_id: Mapped[str | None] = mapped_column(String, nullable=True)
    exam_type_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String, nullable=True)
    syllabus_id: Mapped[str | None] = mapped_column(String, nullable=True)
    topic_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subtopic_id: Mapped[str | None] = mapped_column(String, nullable=True)
    options: Mapped[list] = mapped_column(JSON, default=list)
    marking_guides: Mapped[list] = mapped_column(JSON, default=list)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class ExamRule(Base):
    __tablename__ = "exam_rules"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    exam_body_id: Mapped[str | None] = mapped_column(String, ForeignKey("exam_bodies.id"), nullable=True)
    exam_type_id: Mapped[str] = mapped_column(String, ForeignKey("exam_types.id"), index=True)
    track_id: Mapped[str | None] = mapped_column(String, ForeignKey("categories.id"), nullable=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    rules: Mapped[dict] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class Exam(Base):
    __tablename__ = "exams"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String)
    exam_body_id: Mapped[str] = mapped_column(String, ForeignKey("exam_bodies.id"))
    category_id: Mapped[str | None] = mapped_column(String, ForeignKey("categories.id"), nullable=True)
    exam_type_id: Mapped[str | None] = mapped_column(String, ForeignKey("exam_types.id"), nullable=True)
    selected_subjects: Mapped[list] = mapped_column(JSON, default=list)
    question_ids: Mapped[list] = mapped_column(JSON, default=list)
    question_distribution: Mapped[dict] = mapped_column(JSON, default=dict)
    applied_rules: Mapped[list] = mapped_column(JSON, default=list)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    total_questions: Mapped[int] = mapped_column(Integer)
    total_marks: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="published", index=True)
    is_practice: Mapped[bool] = mapped_column(Boolean, default=True)
    is_randomized: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str] = mapped_column(String, index=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class TierQuota(Base):
    __tablename__ = "tier_quotas"
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    tier: Mapped[str] = mapped_column(String, default="basic")
    daily_quota_used: Mapped[int] = mapped_column(Integer, default=0)
    daily_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    month_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    monthly_generation_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class Download(Base):
    __tablename__ = "downloads"
    __table_args__ = (UniqueConstraint("user_id", "exam_id", name="uq_download_user_exam"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    exam_id: Mapped[str] = mapped_column(String, ForeignKey("exams.id"))
    downloaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    subject: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
