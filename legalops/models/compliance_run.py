"""
Compliance run models - survey campaigns, their questions, recipients and answers
"""
from sqlalchemy import (
    Column, Integer, String, Text, Date, DateTime, Boolean, ForeignKey, JSON,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum
from legalops.database import Base


class RunFrequency(str, Enum):
    ONCE = "once"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    BIMONTHLY = "bimonthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class RunStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    PAUSED = "paused"


class QuestionType(str, Enum):
    YES_NO = "yesno"
    SCORE = "score"
    MULTIPLE_CHOICE = "multiple"
    TEXT = "text"


class ComplianceRun(Base):
    """A survey campaign, either one-off or the template of a recurring series"""
    __tablename__ = "compliance_runs"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    frequency = Column(SQLEnum(RunFrequency, native_enum=False), nullable=False)
    start_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    anchor_day = Column(Integer, nullable=True)  # weekday 1-7 for weekly, day of month otherwise
    is_recurring = Column(Boolean, nullable=False, default=False, index=True)
    last_run_date = Column(Date, nullable=True)
    next_run_date = Column(Date, nullable=True, index=True)
    status = Column(SQLEnum(RunStatus, native_enum=False), nullable=False, default=RunStatus.DRAFT)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Set on instances cloned from a recurring run
    parent_run_id = Column(Integer, ForeignKey("compliance_runs.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    owner = relationship("User")
    departments = relationship("ComplianceRunDepartment", back_populates="run", cascade="all, delete-orphan")
    questions = relationship(
        "ComplianceQuestion",
        back_populates="run",
        order_by="ComplianceQuestion.position",
        cascade="all, delete-orphan",
    )
    recipients = relationship("ComplianceRecipient", back_populates="run", cascade="all, delete-orphan")


class ComplianceRunDepartment(Base):
    __tablename__ = "compliance_run_departments"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("compliance_runs.id"), nullable=False, index=True)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False)

    run = relationship("ComplianceRun", back_populates="departments")

    __table_args__ = (
        UniqueConstraint("run_id", "department_id", name="uq_run_department"),
    )


class ComplianceQuestion(Base):
    __tablename__ = "compliance_questions"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("compliance_runs.id"), nullable=False, index=True)
    question_text = Column(Text, nullable=False)
    question_type = Column(SQLEnum(QuestionType, native_enum=False), nullable=False)
    is_required = Column(Boolean, nullable=False, default=True)
    options = Column(JSON, nullable=True)  # multiple-choice only
    max_score = Column(Integer, nullable=True)  # score only
    position = Column(Integer, nullable=False)  # 1-based, fixed within the run
    created_at = Column(DateTime, default=datetime.utcnow)

    run = relationship("ComplianceRun", back_populates="questions")

    __table_args__ = (
        UniqueConstraint("run_id", "position", name="uq_question_position"),
    )


class ComplianceRecipient(Base):
    """One participation record per (run, person); the token is single use"""
    __tablename__ = "compliance_recipients"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("compliance_runs.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=True)

    # Snapshot taken at fan-out time
    email = Column(String, nullable=False)
    name = Column(String, nullable=False)
    department_name = Column(String, nullable=True)

    token = Column(String, unique=True, index=True, nullable=False)
    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(DateTime, nullable=True)
    survey_completed = Column(Boolean, nullable=False, default=False)
    survey_completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    run = relationship("ComplianceRun", back_populates="recipients")


class ComplianceResponse(Base):
    __tablename__ = "compliance_responses"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("compliance_runs.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("compliance_recipients.id"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("compliance_questions.id"), nullable=False)
    answer = Column(Text, nullable=True)
    score = Column(Integer, nullable=True)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("recipient_id", "question_id", name="uq_response_recipient_question"),
    )
