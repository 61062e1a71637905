"""
Obligation API endpoints - obligations, reminder recipients, reminders and confirmations
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from datetime import date, datetime
from pydantic import BaseModel

from legalops.api.deps import get_compliance
from legalops.models.obligation import (
    ObligationType, ObligationFrequency, ObligationStatus, Priority,
    ReminderStage, ReminderStatus, ConfirmationType,
)
from legalops.services.engine import ComplianceEngine

router = APIRouter()


# --- Pydantic Schemas ---

class ObligationCreate(BaseModel):
    name: str
    obligation_type: ObligationType
    due_date: date
    created_by: int
    description: Optional[str] = None
    due_day: Optional[int] = None
    expiry_date: Optional[date] = None
    renewal_date: Optional[date] = None
    frequency: ObligationFrequency = ObligationFrequency.ONCE
    status: ObligationStatus = ObligationStatus.ACTIVE
    priority: Priority = Priority.MEDIUM
    assigned_to: Optional[int] = None
    department_id: Optional[int] = None


class ObligationUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    obligation_type: Optional[ObligationType] = None
    due_date: Optional[date] = None
    due_day: Optional[int] = None
    expiry_date: Optional[date] = None
    renewal_date: Optional[date] = None
    frequency: Optional[ObligationFrequency] = None
    status: Optional[ObligationStatus] = None
    priority: Optional[Priority] = None
    assigned_to: Optional[int] = None
    department_id: Optional[int] = None


class ObligationResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    obligation_type: ObligationType
    due_date: date
    due_day: Optional[int]
    expiry_date: Optional[date]
    renewal_date: Optional[date]
    frequency: ObligationFrequency
    status: ObligationStatus
    priority: Priority
    assigned_to: Optional[int]
    department_id: Optional[int]
    created_by: int
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class RecipientCreate(BaseModel):
    user_id: Optional[int] = None
    external_contact_id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None


class ReminderRecipientResponse(BaseModel):
    id: int
    obligation_id: int
    user_id: Optional[int]
    external_contact_id: Optional[int]
    email: str
    name: str
    role: Optional[str]

    class Config:
        from_attributes = True


class ReminderResponse(BaseModel):
    id: int
    obligation_id: int
    recipient_id: int
    stage: ReminderStage
    scheduled_date: date
    status: ReminderStatus
    sent_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    confirmed_by: Optional[str]

    class Config:
        from_attributes = True


class ScheduleResult(BaseModel):
    obligation_id: int
    reminders_created: int
    reminders: List[ReminderResponse]


class ConfirmationContext(BaseModel):
    obligation: ObligationResponse
    stage: ReminderStage
    reminder_status: ReminderStatus
    recipient_name: Optional[str]
    recipient_email: Optional[str]
    already_confirmed: bool


class ConfirmRequest(BaseModel):
    confirmed_by: str
    confirmed_email: str
    confirmation_type: ConfirmationType
    notes: Optional[str] = None


class ConfirmationResponse(BaseModel):
    id: int
    obligation_id: int
    reminder_id: int
    confirmed_by: str
    confirmed_email: str
    confirmation_type: ConfirmationType
    notes: Optional[str]
    confirmed_at: Optional[datetime]

    class Config:
        from_attributes = True


# --- Obligation Endpoints ---

@router.post("/obligations", response_model=ObligationResponse, status_code=201)
async def create_obligation(
    data: ObligationCreate,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    return await compliance.obligations.create(**data.model_dump())


@router.get("/obligations", response_model=List[ObligationResponse])
async def list_obligations(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    obligation_type: Optional[str] = None,
    assigned_to: Optional[int] = None,
    department_id: Optional[int] = None,
    due_from: Optional[date] = None,
    due_to: Optional[date] = None,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    """List obligations ordered by due date, optionally filtered"""
    return await compliance.obligations.list_obligations(
        status=status,
        priority=priority,
        obligation_type=obligation_type,
        assigned_to=assigned_to,
        department_id=department_id,
        due_from=due_from,
        due_to=due_to,
    )


@router.get("/obligations/overdue", response_model=List[ObligationResponse])
async def list_overdue_obligations(compliance: ComplianceEngine = Depends(get_compliance)):
    """Open obligations whose due date has passed"""
    return await compliance.obligations.list_overdue()


@router.get("/obligations/upcoming", response_model=List[ObligationResponse])
async def list_upcoming_obligations(
    days: Optional[int] = Query(None, ge=0, le=365),
    compliance: ComplianceEngine = Depends(get_compliance),
):
    """Open obligations due within the next `days` days"""
    return await compliance.obligations.list_upcoming(days=days)


@router.delete("/obligations/recipients/{recipient_id}")
async def remove_recipient(
    recipient_id: int,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    await compliance.reminders.remove_recipient(recipient_id)
    return {"success": True}


@router.get("/obligations/{obligation_id}", response_model=ObligationResponse)
async def get_obligation(obligation_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    return await compliance.obligations.get(obligation_id)


@router.put("/obligations/{obligation_id}", response_model=ObligationResponse)
async def update_obligation(
    obligation_id: int,
    data: ObligationUpdate,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    changes = data.model_dump(exclude_unset=True)
    return await compliance.obligations.update(obligation_id, **changes)


@router.delete("/obligations/{obligation_id}")
async def delete_obligation(obligation_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    await compliance.obligations.delete(obligation_id)
    return {"success": True}


# --- Reminder Recipients ---

@router.get("/obligations/{obligation_id}/recipients", response_model=List[ReminderRecipientResponse])
async def list_recipients(obligation_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    return await compliance.reminders.list_recipients(obligation_id)


@router.post(
    "/obligations/{obligation_id}/recipients",
    response_model=ReminderRecipientResponse,
    status_code=201,
)
async def add_recipient(
    obligation_id: int,
    data: RecipientCreate,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    return await compliance.reminders.add_recipient(obligation_id, **data.model_dump())


# --- Reminders ---

@router.get("/obligations/{obligation_id}/reminders", response_model=List[ReminderResponse])
async def list_reminders(obligation_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    return await compliance.reminders.list_reminders(obligation_id)


@router.post("/obligations/{obligation_id}/reminders/schedule", response_model=ScheduleResult)
async def schedule_reminders(obligation_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    """Create the two-week, one-week and due-date reminders for every recipient"""
    created = await compliance.reminders.schedule_reminders(obligation_id)
    return ScheduleResult(
        obligation_id=obligation_id,
        reminders_created=len(created),
        reminders=[ReminderResponse.model_validate(r) for r in created],
    )


@router.get("/reminders/pending", response_model=List[ReminderResponse])
async def pending_reminders(
    on: Optional[date] = None,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    """Reminders still waiting to go out on the given day (default today)"""
    return await compliance.reminders.select_due_today(on)


# --- Public Confirmation Endpoints (token is the credential) ---

@router.get("/confirm/{token}", response_model=ConfirmationContext)
async def get_confirmation(token: str, compliance: ComplianceEngine = Depends(get_compliance)):
    context = await compliance.confirmations.get_confirmation_context(token)
    reminder = context["reminder"]
    recipient = context["recipient"]
    return ConfirmationContext(
        obligation=ObligationResponse.model_validate(context["obligation"]),
        stage=reminder.stage,
        reminder_status=reminder.status,
        recipient_name=recipient.name if recipient else None,
        recipient_email=recipient.email if recipient else None,
        already_confirmed=reminder.status == ReminderStatus.CONFIRMED,
    )


@router.post("/confirm/{token}", response_model=ConfirmationResponse)
async def confirm_reminder(
    token: str,
    data: ConfirmRequest,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    return await compliance.confirmations.confirm_reminder(
        token,
        confirmed_by=data.confirmed_by,
        confirmed_email=data.confirmed_email,
        confirmation_type=data.confirmation_type,
        notes=data.notes,
    )
