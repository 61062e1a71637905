"""
Token redemption for survey submissions and obligation reminder confirmations.

Both paths apply their writes in one unit of work: either every row lands
or none does.
"""
from datetime import datetime
from typing import Any, Iterable, Optional

from legalops.exceptions import (
    AlreadyCompletedError, InvalidQuestionError, InvalidTokenError, ValidationError,
)
from legalops.models.compliance_run import ComplianceQuestion, ComplianceResponse, QuestionType
from legalops.models.obligation import (
    Confirmation, ConfirmationType, ObligationStatus, ReminderStatus,
)
from legalops.services.run_lifecycle import RunLifecycleManager
from legalops.services.store import ObligationStore
from legalops.utils.logger import get_logger, mask_token

logger = get_logger(__name__)

YES_NO_ANSWERS = {"yes", "no"}


def _check_answer(question: ComplianceQuestion, answer: dict) -> None:
    """Reject answers that do not fit the question's type"""
    value = answer.get("answer")
    score = answer.get("score")

    if question.question_type == QuestionType.SCORE:
        if score is None:
            if question.is_required:
                raise ValidationError(f"Question {question.id} requires a score")
            return
        try:
            score = int(score)
        except (TypeError, ValueError):
            raise ValidationError(f"Score for question {question.id} must be a whole number")
        if not 0 <= score <= question.max_score:
            raise ValidationError(
                f"Score for question {question.id} must be between 0 and {question.max_score}"
            )
        return

    if value is None or str(value).strip() == "":
        if question.is_required:
            raise ValidationError(f"Question {question.id} requires an answer")
        return

    if question.question_type == QuestionType.YES_NO and str(value).lower() not in YES_NO_ANSWERS:
        raise ValidationError(f"Question {question.id} must be answered yes or no")
    if question.question_type == QuestionType.MULTIPLE_CHOICE and value not in (question.options or []):
        raise ValidationError(f"'{value}' is not an option for question {question.id}")


class ConfirmationHandler:

    def __init__(self, store: ObligationStore, lifecycle: RunLifecycleManager):
        self.store = store
        self.lifecycle = lifecycle

    # --- Survey path ---

    async def get_survey(self, token: str) -> dict:
        """Run, ordered questions and recipient behind a survey link"""
        recipient = await self.store.get_recipient_by_token(token)
        if not recipient:
            raise InvalidTokenError("Invalid survey token")
        run = await self.store.require_run(recipient.run_id)
        questions = await self.store.get_questions(run.id)
        return {"run": run, "questions": questions, "recipient": recipient}

    async def submit_survey(self, token: str, responses: Iterable[dict]) -> dict:
        """
        Record one response per answered question and mark the recipient
        complete. A token can be redeemed once.
        """
        recipient = await self.store.get_recipient_by_token(token)
        if not recipient:
            raise InvalidTokenError("Invalid survey token")
        if recipient.survey_completed:
            raise AlreadyCompletedError()

        responses = list(responses)
        questions = {q.id: q for q in await self.store.get_questions(recipient.run_id)}

        unknown = {r.get("question_id") for r in responses if r.get("question_id") not in questions}
        if unknown:
            raise InvalidQuestionError(unknown)

        answered: dict[int, dict] = {}
        for response in responses:
            question_id = response["question_id"]
            if question_id in answered:
                raise ValidationError(f"Question {question_id} was answered more than once")
            answered[question_id] = response

        missing = [
            q.id for q in questions.values()
            if q.is_required and q.id not in answered
        ]
        if missing:
            raise ValidationError(
                "Missing answers for required questions: " + ", ".join(str(m) for m in missing)
            )
        for question_id, response in answered.items():
            _check_answer(questions[question_id], response)

        run = await self.store.require_run(recipient.run_id)
        async with self.store.unit_of_work():
            for question_id, response in answered.items():
                score = response.get("score")
                self.store.add(ComplianceResponse(
                    run_id=recipient.run_id,
                    recipient_id=recipient.id,
                    question_id=question_id,
                    answer=response.get("answer"),
                    score=int(score) if score is not None else None,
                    comment=response.get("comment"),
                ))
            recipient.survey_completed = True
            recipient.survey_completed_at = datetime.utcnow()
            run_completed = await self.lifecycle.complete_if_finished(run)

        logger.info(
            f"Survey submitted for run {recipient.run_id} by recipient {recipient.id} "
            f"({len(answered)} responses)"
        )
        return {
            "recipient": recipient,
            "responses_recorded": len(answered),
            "run_completed": run_completed,
        }

    # --- Obligation reminder path ---

    async def get_confirmation_context(self, token: str) -> dict:
        """Reminder, obligation and recipient behind a confirmation link"""
        reminder = await self.store.get_reminder_by_token(token)
        if not reminder:
            raise InvalidTokenError("Invalid confirmation token")
        obligation = await self.store.require_obligation(reminder.obligation_id)
        recipient = await self.store.get_reminder_recipient(reminder.recipient_id)
        return {"reminder": reminder, "obligation": obligation, "recipient": recipient}

    async def confirm_reminder(
        self,
        token: str,
        confirmed_by: Optional[str],
        confirmed_email: Optional[str],
        confirmation_type: Any,
        notes: Optional[str] = None,
    ) -> Confirmation:
        """
        Redeem a sent reminder. Writes the confirmation record, closes the
        reminder and, for a `completed` confirmation, the obligation too.
        """
        if not confirmed_by or not confirmed_by.strip():
            raise ValidationError("Missing required field: confirmed_by")
        if not confirmed_email or "@" not in confirmed_email:
            raise ValidationError("A valid confirmed_email is required")
        try:
            kind = ConfirmationType(confirmation_type)
        except ValueError:
            allowed = ", ".join(t.value for t in ConfirmationType)
            raise ValidationError(f"Invalid confirmation_type '{confirmation_type}'. Must be one of: {allowed}")

        reminder = await self.store.get_reminder_by_token(token)
        if not reminder or reminder.status != ReminderStatus.SENT:
            raise InvalidTokenError("Invalid or expired confirmation token")

        async with self.store.unit_of_work():
            now = datetime.utcnow()
            confirmation = Confirmation(
                obligation_id=reminder.obligation_id,
                reminder_id=reminder.id,
                confirmed_by=confirmed_by.strip(),
                confirmed_email=confirmed_email,
                confirmation_type=kind,
                notes=notes,
                confirmed_at=now,
            )
            self.store.add(confirmation)

            reminder.status = ReminderStatus.CONFIRMED
            reminder.confirmed_at = now
            reminder.confirmed_by = confirmed_by.strip()

            if kind == ConfirmationType.COMPLETED:
                obligation = await self.store.require_obligation(reminder.obligation_id)
                obligation.status = ObligationStatus.COMPLETED

        logger.info(
            f"Reminder {reminder.id} (token {mask_token(token)}) confirmed as "
            f"{kind.value} by {confirmed_by}"
        )
        return confirmation
