"""
Compliance run lifecycle.

    draft --activate--> active --(all recipients done)--> completed
                        active --(due date passed)-----> expired
                        active <--pause / resume--> paused

Recurring runs stay active and spawn a single-occurrence clone each time
their next_run_date comes round.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Optional

from legalops.exceptions import (
    ComplianceError, ValidationError, InvalidTransitionError, NotFoundError, NoAudienceError,
)
from legalops.models.compliance_run import (
    ComplianceRun, ComplianceRunDepartment, ComplianceQuestion, ComplianceRecipient,
    RunFrequency, RunStatus, QuestionType,
)
from legalops.services.fanout import RecipientFanoutEngine
from legalops.services.recurrence import next_occurrence, default_anchor_day, validate_anchor_day
from legalops.services.store import ObligationStore
from legalops.services.tokens import TokenIssuer
from legalops.utils.logger import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS = {
    RunStatus.DRAFT: {RunStatus.ACTIVE},
    RunStatus.ACTIVE: {RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.EXPIRED},
    RunStatus.PAUSED: {RunStatus.ACTIVE, RunStatus.EXPIRED},
    RunStatus.COMPLETED: set(),
    RunStatus.EXPIRED: set(),
}


@dataclass
class ActivationResult:
    run: ComplianceRun
    recipients: list[ComplianceRecipient]
    invitations: dict = field(default_factory=dict)


def _parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD)")
    raise ValidationError(f"Missing required field: {field_name}")


def _parse_enum(enum_cls, value: Any, field_name: str):
    if value is None or value == "":
        raise ValidationError(f"Missing required field: {field_name}")
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field_name} '{value}'. Must be one of: {allowed}")


def _build_question(raw: dict, position: int) -> ComplianceQuestion:
    text = (raw.get("question_text") or "").strip()
    if not text:
        raise ValidationError(f"Question {position} is missing question_text")
    question_type = _parse_enum(QuestionType, raw.get("question_type"), f"question {position} type")

    options = raw.get("options")
    max_score = raw.get("max_score")
    if question_type == QuestionType.MULTIPLE_CHOICE:
        if not options:
            raise ValidationError(f"Question {position} needs options for multiple choice")
        options = [str(o) for o in options]
    else:
        options = None

    if question_type == QuestionType.SCORE:
        try:
            max_score = int(max_score)
        except (TypeError, ValueError):
            raise ValidationError(f"Question {position} needs a numeric max_score")
        if max_score < 1:
            raise ValidationError(f"Question {position} needs a max_score of at least 1")
    else:
        max_score = None

    return ComplianceQuestion(
        question_text=text,
        question_type=question_type,
        is_required=bool(raw.get("is_required", True)),
        options=options,
        max_score=max_score,
        position=position,
    )


class RunLifecycleManager:

    def __init__(self, store: ObligationStore, fanout: RecipientFanoutEngine):
        self.store = store
        self.fanout = fanout

    # --- Creation ---

    async def create_run(
        self,
        *,
        title: Optional[str],
        description: Optional[str],
        frequency: Any,
        start_date: Any,
        due_date: Any,
        created_by: Optional[int],
        questions: Optional[Iterable[dict]] = (),
        department_ids: Optional[Iterable[int]] = (),
        anchor_day: Optional[int] = None,
    ) -> ComplianceRun:
        """Persist a draft run with its questions and target departments"""
        if not title or not title.strip():
            raise ValidationError("Missing required field: title")
        if not description or not description.strip():
            raise ValidationError("Missing required field: description")
        if created_by is None:
            raise ValidationError("Missing required field: created_by")
        if not isinstance(questions, (list, tuple)):
            raise ValidationError("questions must be a list")
        if not isinstance(department_ids, (list, tuple)):
            raise ValidationError("department_ids must be a list")

        freq = _parse_enum(RunFrequency, frequency, "frequency")
        start = _parse_date(start_date, "start_date")
        due = _parse_date(due_date, "due_date")
        if due < start:
            raise ValidationError("due_date cannot be before start_date")
        anchor_error = validate_anchor_day(freq, anchor_day)
        if anchor_error:
            raise ValidationError(anchor_error)

        built_questions = [_build_question(q, i) for i, q in enumerate(questions, start=1)]

        if not await self.store.get_user(created_by):
            raise NotFoundError("User", created_by)
        unique_departments = list(dict.fromkeys(department_ids))
        for department_id in unique_departments:
            if not await self.store.get_department(department_id):
                raise NotFoundError("Department", department_id)

        async with self.store.unit_of_work():
            run = ComplianceRun(
                title=title.strip(),
                description=description.strip(),
                frequency=freq,
                start_date=start,
                due_date=due,
                anchor_day=anchor_day,
                is_recurring=freq != RunFrequency.ONCE,
                status=RunStatus.DRAFT,
                created_by=created_by,
            )
            self.store.add(run)
            await self.store.flush()

            for department_id in unique_departments:
                self.store.add(ComplianceRunDepartment(run_id=run.id, department_id=department_id))
            for question in built_questions:
                question.run_id = run.id
                self.store.add(question)

        logger.info(
            f"Created compliance run {run.id} '{run.title}' ({freq.value}, "
            f"{len(built_questions)} questions, {len(unique_departments)} departments)"
        )
        return run

    # --- Transitions ---

    def _transition(self, run: ComplianceRun, target: RunStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[run.status]:
            raise InvalidTransitionError("compliance run", run.status, target)
        run.status = target
        if target != RunStatus.ACTIVE:
            run.next_run_date = None

    def _anchor(self, run: ComplianceRun) -> int:
        return run.anchor_day or default_anchor_day(run.frequency, run.due_date)

    async def activate_run(self, run_id: int) -> ActivationResult:
        """
        Fan a draft run out to its audience. Re-activating an active run only
        retries invitations that were never delivered.
        """
        run = await self.store.require_run(run_id)

        if run.status == RunStatus.ACTIVE:
            recipients = await self.store.get_recipients(run.id)
            pending = [r for r in recipients if not r.email_sent]
            invitations = await self.fanout.dispatch_invitations(run, pending)
            return ActivationResult(run=run, recipients=recipients, invitations=invitations)

        if run.status != RunStatus.DRAFT:
            raise InvalidTransitionError("compliance run", run.status, RunStatus.ACTIVE)

        async with self.store.unit_of_work():
            audience = await self.fanout.resolve_audience(run)
            if not audience:
                raise NoAudienceError(
                    "No department heads found for the selected departments. "
                    "Please ensure all departments have heads assigned."
                )
            recipients = await self.fanout.issue_recipients(run, audience)
            self._transition(run, RunStatus.ACTIVE)
            if run.is_recurring:
                run.next_run_date = next_occurrence(run.frequency, self._anchor(run), run.start_date)

        logger.info(f"Activated compliance run {run.id} with {len(recipients)} recipients")

        # Committed above; delivery problems never undo the activation
        invitations = await self.fanout.dispatch_invitations(run, recipients)
        return ActivationResult(run=run, recipients=recipients, invitations=invitations)

    async def pause_run(self, run_id: int) -> ComplianceRun:
        run = await self.store.require_run(run_id)
        async with self.store.unit_of_work():
            self._transition(run, RunStatus.PAUSED)
        logger.info(f"Paused compliance run {run.id}")
        return run

    async def resume_run(self, run_id: int, today: Optional[date] = None) -> ComplianceRun:
        run = await self.store.require_run(run_id)
        if run.status != RunStatus.PAUSED:
            raise InvalidTransitionError("compliance run", run.status, RunStatus.ACTIVE)
        today = today or date.today()
        async with self.store.unit_of_work():
            self._transition(run, RunStatus.ACTIVE)
            if run.is_recurring:
                run.next_run_date = next_occurrence(run.frequency, self._anchor(run), today)
        logger.info(f"Resumed compliance run {run.id}")
        return run

    async def expire_run(self, run_id: int) -> ComplianceRun:
        run = await self.store.require_run(run_id)
        async with self.store.unit_of_work():
            self._transition(run, RunStatus.EXPIRED)
        logger.info(f"Expired compliance run {run.id}")
        return run

    async def complete_if_finished(self, run: ComplianceRun) -> bool:
        """
        Close a single-occurrence run once every recipient has answered.
        Runs inside the caller's unit of work; recurring runs keep going.
        """
        if run.is_recurring or run.status != RunStatus.ACTIVE:
            return False
        if await self.store.count_open_recipients(run.id) > 0:
            return False
        self._transition(run, RunStatus.COMPLETED)
        logger.info(f"Compliance run {run.id} completed, all recipients responded")
        return True

    async def expire_overdue_runs(self, today: Optional[date] = None) -> int:
        today = today or date.today()
        runs = await self.store.list_expirable_runs(today)
        if not runs:
            return 0
        async with self.store.unit_of_work():
            for run in runs:
                self._transition(run, RunStatus.EXPIRED)
        logger.info(f"Expired {len(runs)} compliance runs past their due date")
        return len(runs)

    # --- Recurrence ---

    async def recur(self, run: ComplianceRun, today: Optional[date] = None) -> ComplianceRun:
        """
        Clone a recurring run into a new single-occurrence run and move the
        parent's schedule forward, atomically.
        """
        if not run.is_recurring or run.status != RunStatus.ACTIVE:
            raise ValidationError(f"Compliance run {run.id} is not an active recurring run")

        today = today or date.today()
        next_date = next_occurrence(run.frequency, self._anchor(run), today)

        async with self.store.unit_of_work():
            clone = ComplianceRun(
                title=f"{run.title} - {today.isoformat()}",
                description=run.description,
                frequency=run.frequency,
                start_date=today,
                due_date=next_date,
                anchor_day=run.anchor_day,
                is_recurring=False,
                status=RunStatus.ACTIVE,
                created_by=run.created_by,
                parent_run_id=run.id,
            )
            self.store.add(clone)
            await self.store.flush()

            for department_id in await self.store.get_run_department_ids(run.id):
                self.store.add(ComplianceRunDepartment(run_id=clone.id, department_id=department_id))

            for question in await self.store.get_questions(run.id):
                self.store.add(ComplianceQuestion(
                    run_id=clone.id,
                    question_text=question.question_text,
                    question_type=question.question_type,
                    is_required=question.is_required,
                    options=list(question.options) if question.options else None,
                    max_score=question.max_score,
                    position=question.position,
                ))

            issuer = TokenIssuer(self.store)
            recipients = []
            for source in await self.store.get_recipients(run.id):
                recipient = ComplianceRecipient(
                    run_id=clone.id,
                    user_id=source.user_id,
                    department_id=source.department_id,
                    email=source.email,
                    name=source.name,
                    department_name=source.department_name,
                    token=await issuer.issue(),
                    email_sent=False,
                    survey_completed=False,
                )
                self.store.add(recipient)
                recipients.append(recipient)

            run.last_run_date = today
            run.next_run_date = next_date

        logger.info(
            f"Recurring run {run.id} spawned run {clone.id} due {next_date.isoformat()}; "
            f"next run {run.next_run_date.isoformat()}"
        )

        await self.fanout.dispatch_invitations(clone, recipients)
        return clone

    async def process_due_recurrences(self, today: Optional[date] = None) -> dict:
        """Recur every active recurring run whose next_run_date has arrived"""
        today = today or date.today()
        due_runs = await self.store.list_due_recurring_runs(today)
        stats = {"due": len(due_runs), "recurred": 0, "failed": 0}
        due_ids = [run.id for run in due_runs]

        for run_id in due_ids:
            run = await self.store.require_run(run_id)
            try:
                await self.recur(run, today)
                stats["recurred"] += 1
            except ComplianceError as e:
                stats["failed"] += 1
                logger.error(f"Could not recur compliance run {run_id}: {e}")
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Unexpected error recurring compliance run {run_id}: {e}", exc_info=True)

        logger.info(f"Processed {stats['due']} recurring runs ({stats['failed']} failed)")
        return stats

    # --- Queries ---

    async def list_runs(self) -> list[dict]:
        rows = await self.store.list_runs_with_counts()
        return [
            {"run": run, "total_recipients": total, "completed_surveys": int(completed)}
            for run, total, completed in rows
        ]

    async def get_run_details(self, run_id: int) -> dict:
        run = await self.store.require_run(run_id)
        questions = await self.store.get_questions(run.id)
        recipients = await self.store.get_recipients(run.id)

        total = len(recipients)
        completed = sum(1 for r in recipients if r.survey_completed)
        return {
            "run": run,
            "department_ids": await self.store.get_run_department_ids(run.id),
            "questions": questions,
            "recipients": recipients,
            "statistics": {
                "total_recipients": total,
                "completed_surveys": completed,
                "pending_surveys": total - completed,
                "completion_rate": (completed / total) * 100 if total > 0 else 0,
            },
        }
