"""
Standalone obligation models - tracked duties, their reminder timeline and confirmations
"""
from sqlalchemy import (
    Column, Integer, String, Text, Date, DateTime, ForeignKey, UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum
from legalops.database import Base


class ObligationType(str, Enum):
    TAX_RETURN = "tax_return"
    LICENSE_RENEWAL = "license_renewal"
    CERTIFICATION = "certification"
    REGISTRATION = "registration"
    PERMIT = "permit"
    INSURANCE = "insurance"
    AUDIT = "audit"
    REPORT = "report"
    OTHER = "other"


class ObligationFrequency(str, Enum):
    ONCE = "once"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"
    BIENNIALLY = "biennially"
    CUSTOM = "custom"


class ObligationStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReminderStage(str, Enum):
    TWO_WEEKS = "two_weeks"
    ONE_WEEK = "one_week"
    DUE_DATE = "due_date"
    OVERDUE = "overdue"


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ConfirmationType(str, Enum):
    SUBMITTED = "submitted"
    RENEWED = "renewed"
    EXTENDED = "extended"
    COMPLETED = "completed"


class Obligation(Base):
    """A recurring duty (tax return, licence renewal...) tracked outside any survey"""
    __tablename__ = "obligations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    obligation_type = Column(SQLEnum(ObligationType, native_enum=False), nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    due_day = Column(Integer, nullable=True)  # 1-31
    expiry_date = Column(Date, nullable=True)
    renewal_date = Column(Date, nullable=True)
    # Advisory only, obligations never recur on their own
    frequency = Column(SQLEnum(ObligationFrequency, native_enum=False), nullable=False, default=ObligationFrequency.ONCE)
    status = Column(SQLEnum(ObligationStatus, native_enum=False), nullable=False, default=ObligationStatus.ACTIVE, index=True)
    priority = Column(SQLEnum(Priority, native_enum=False), nullable=False, default=Priority.MEDIUM)
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=True)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    assignee = relationship("User", foreign_keys=[assigned_to])
    department = relationship("Department")


class ReminderRecipient(Base):
    """Addressee of obligation reminders; name/email are a snapshot"""
    __tablename__ = "reminder_recipients"

    id = Column(Integer, primary_key=True, index=True)
    obligation_id = Column(Integer, ForeignKey("obligations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    external_contact_id = Column(Integer, ForeignKey("external_contacts.id"), nullable=True)
    email = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    role = Column(String, nullable=True)  # primary, secondary, cc
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("obligation_id", "user_id", "external_contact_id", name="uq_reminder_recipient"),
    )


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True, index=True)
    obligation_id = Column(Integer, ForeignKey("obligations.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("reminder_recipients.id"), nullable=False)
    stage = Column(SQLEnum(ReminderStage, native_enum=False), nullable=False)
    scheduled_date = Column(Date, nullable=False, index=True)
    status = Column(SQLEnum(ReminderStatus, native_enum=False), nullable=False, default=ReminderStatus.PENDING, index=True)
    token = Column(String, unique=True, index=True, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    confirmed_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    recipient = relationship("ReminderRecipient")

    __table_args__ = (
        UniqueConstraint("obligation_id", "recipient_id", "stage", name="uq_reminder_stage"),
    )


class Confirmation(Base):
    """Immutable audit entry written when a reminder token is redeemed"""
    __tablename__ = "confirmations"

    id = Column(Integer, primary_key=True, index=True)
    obligation_id = Column(Integer, ForeignKey("obligations.id"), nullable=False, index=True)
    reminder_id = Column(Integer, ForeignKey("reminders.id"), nullable=False)
    confirmed_by = Column(String, nullable=False)
    confirmed_email = Column(String, nullable=False)
    confirmation_type = Column(SQLEnum(ConfirmationType, native_enum=False), nullable=False)
    notes = Column(Text, nullable=True)
    confirmed_at = Column(DateTime, default=datetime.utcnow, index=True)
