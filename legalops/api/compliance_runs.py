"""
Compliance run API endpoints - survey campaigns and the public survey link
"""
from fastapi import APIRouter, Depends
from typing import List, Optional
from datetime import date, datetime
from pydantic import BaseModel

from legalops.api.deps import get_compliance
from legalops.models.compliance_run import ComplianceRun, RunFrequency, RunStatus, QuestionType
from legalops.services.engine import ComplianceEngine

router = APIRouter()


# --- Pydantic Schemas ---

class QuestionCreate(BaseModel):
    question_text: str
    question_type: QuestionType
    is_required: bool = True
    options: Optional[List[str]] = None
    max_score: Optional[int] = None


class RunCreate(BaseModel):
    title: str
    description: str
    frequency: RunFrequency
    start_date: date
    due_date: date
    created_by: int
    anchor_day: Optional[int] = None
    department_ids: List[int] = []
    questions: List[QuestionCreate] = []


class RunResponse(BaseModel):
    id: int
    title: str
    description: str
    frequency: RunFrequency
    start_date: date
    due_date: date
    anchor_day: Optional[int]
    is_recurring: bool
    last_run_date: Optional[date]
    next_run_date: Optional[date]
    status: RunStatus
    created_by: int
    parent_run_id: Optional[int]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class RunListItem(RunResponse):
    total_recipients: int = 0
    completed_surveys: int = 0


class QuestionResponse(BaseModel):
    id: int
    question_text: str
    question_type: QuestionType
    is_required: bool
    options: Optional[List[str]]
    max_score: Optional[int]
    position: int

    class Config:
        from_attributes = True


class RecipientResponse(BaseModel):
    id: int
    user_id: int
    department_id: Optional[int]
    email: str
    name: str
    department_name: Optional[str]
    email_sent: bool
    email_sent_at: Optional[datetime]
    survey_completed: bool
    survey_completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class RunStatistics(BaseModel):
    total_recipients: int
    completed_surveys: int
    pending_surveys: int
    completion_rate: float


class RunDetailResponse(BaseModel):
    run: RunResponse
    department_ids: List[int]
    questions: List[QuestionResponse]
    recipients: List[RecipientResponse]
    statistics: RunStatistics


class ActivationResponse(BaseModel):
    run: RunResponse
    recipients: int
    invitations_sent: int
    invitations_failed: int


class SurveyResponse(BaseModel):
    run_id: int
    title: str
    description: str
    due_date: date
    status: RunStatus
    recipient_name: str
    department_name: Optional[str]
    survey_completed: bool
    questions: List[QuestionResponse]


class SurveyAnswer(BaseModel):
    question_id: int
    answer: Optional[str] = None
    score: Optional[int] = None
    comment: Optional[str] = None


class SurveySubmit(BaseModel):
    responses: List[SurveyAnswer]


class SurveySubmitResult(BaseModel):
    success: bool = True
    responses_recorded: int
    run_completed: bool


# --- Run Endpoints ---

@router.post("/runs", response_model=RunResponse, status_code=201)
async def create_run(
    data: RunCreate,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    """Create a draft compliance run with its questions and target departments"""
    run = await compliance.runs.create_run(
        title=data.title,
        description=data.description,
        frequency=data.frequency,
        start_date=data.start_date,
        due_date=data.due_date,
        created_by=data.created_by,
        anchor_day=data.anchor_day,
        department_ids=data.department_ids,
        questions=[q.model_dump() for q in data.questions],
    )
    return run


@router.get("/runs", response_model=List[RunListItem])
async def list_runs(compliance: ComplianceEngine = Depends(get_compliance)):
    """All runs, newest first, with completion counts"""
    rows = await compliance.runs.list_runs()
    return [
        RunListItem(
            **RunResponse.model_validate(row["run"]).model_dump(),
            total_recipients=row["total_recipients"],
            completed_surveys=row["completed_surveys"],
        )
        for row in rows
    ]


@router.get("/runs/{run_id}", response_model=RunDetailResponse)
async def get_run(run_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    """Run details with questions, recipients and statistics"""
    details = await compliance.runs.get_run_details(run_id)
    return RunDetailResponse(
        run=RunResponse.model_validate(details["run"]),
        department_ids=details["department_ids"],
        questions=[QuestionResponse.model_validate(q) for q in details["questions"]],
        recipients=[RecipientResponse.model_validate(r) for r in details["recipients"]],
        statistics=RunStatistics(**details["statistics"]),
    )


@router.post("/runs/{run_id}/activate", response_model=ActivationResponse)
async def activate_run(run_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    """Send the run to its audience (or retry undelivered invitations)"""
    result = await compliance.runs.activate_run(run_id)
    return ActivationResponse(
        run=RunResponse.model_validate(result.run),
        recipients=len(result.recipients),
        invitations_sent=result.invitations.get("sent", 0),
        invitations_failed=result.invitations.get("failed", 0),
    )


@router.post("/runs/{run_id}/pause", response_model=RunResponse)
async def pause_run(run_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    return await compliance.runs.pause_run(run_id)


@router.post("/runs/{run_id}/resume", response_model=RunResponse)
async def resume_run(run_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    return await compliance.runs.resume_run(run_id)


@router.post("/runs/{run_id}/expire", response_model=RunResponse)
async def expire_run(run_id: int, compliance: ComplianceEngine = Depends(get_compliance)):
    return await compliance.runs.expire_run(run_id)


# --- Public Survey Endpoints (token is the credential) ---

@router.get("/survey/{token}", response_model=SurveyResponse)
async def get_survey(token: str, compliance: ComplianceEngine = Depends(get_compliance)):
    survey = await compliance.confirmations.get_survey(token)
    run: ComplianceRun = survey["run"]
    recipient = survey["recipient"]
    return SurveyResponse(
        run_id=run.id,
        title=run.title,
        description=run.description,
        due_date=run.due_date,
        status=run.status,
        recipient_name=recipient.name,
        department_name=recipient.department_name,
        survey_completed=recipient.survey_completed,
        questions=[QuestionResponse.model_validate(q) for q in survey["questions"]],
    )


@router.post("/survey/{token}/submit", response_model=SurveySubmitResult)
async def submit_survey(
    token: str,
    data: SurveySubmit,
    compliance: ComplianceEngine = Depends(get_compliance),
):
    result = await compliance.confirmations.submit_survey(
        token, [r.model_dump() for r in data.responses]
    )
    return SurveySubmitResult(
        responses_recorded=result["responses_recorded"],
        run_completed=result["run_completed"],
    )
