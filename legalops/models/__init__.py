from legalops.models.organization import User, Department, ExternalContact
from legalops.models.compliance_run import (
    ComplianceRun, ComplianceRunDepartment, ComplianceQuestion,
    ComplianceRecipient, ComplianceResponse,
)
from legalops.models.obligation import Obligation, ReminderRecipient, Reminder, Confirmation
from legalops.models.job import JobRecord

__all__ = [
    "User",
    "Department",
    "ExternalContact",
    "ComplianceRun",
    "ComplianceRunDepartment",
    "ComplianceQuestion",
    "ComplianceRecipient",
    "ComplianceResponse",
    "Obligation",
    "ReminderRecipient",
    "Reminder",
    "Confirmation",
    "JobRecord",
]
