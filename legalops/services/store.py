"""
Record store for compliance runs and obligations.

Thin query layer over an AsyncSession. Services hold one store per request
(or per driver tick) and group multi-row writes with `unit_of_work()`.
"""
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import select, func, delete, case
from sqlalchemy.ext.asyncio import AsyncSession

from legalops.exceptions import NotFoundError
from legalops.models.organization import User, Department, ExternalContact
from legalops.models.compliance_run import (
    ComplianceRun, ComplianceRunDepartment, ComplianceQuestion,
    ComplianceRecipient, ComplianceResponse, RunStatus,
)
from legalops.models.obligation import (
    Obligation, ReminderRecipient, Reminder, Confirmation, ReminderStatus,
)


class ObligationStore:

    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def unit_of_work(self):
        """Commit everything written inside the block, or nothing"""
        try:
            yield self.session
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    def add(self, obj) -> None:
        self.session.add(obj)

    def add_all(self, objs) -> None:
        self.session.add_all(objs)

    async def flush(self) -> None:
        await self.session.flush()

    async def commit(self) -> None:
        await self.session.commit()

    # --- Identity ---

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_department(self, department_id: int) -> Optional[Department]:
        return await self.session.get(Department, department_id)

    async def get_external_contact(self, contact_id: int) -> Optional[ExternalContact]:
        return await self.session.get(ExternalContact, contact_id)

    # --- Runs ---

    async def get_run(self, run_id: int) -> Optional[ComplianceRun]:
        result = await self.session.execute(
            select(ComplianceRun).where(ComplianceRun.id == run_id)
        )
        return result.scalar_one_or_none()

    async def require_run(self, run_id: int) -> ComplianceRun:
        run = await self.get_run(run_id)
        if not run:
            raise NotFoundError("Compliance run", run_id)
        return run

    async def list_runs_with_counts(self) -> list[tuple[ComplianceRun, int, int]]:
        """Runs newest first with (total_recipients, completed_surveys)"""
        total = func.count(ComplianceRecipient.id)
        completed = func.coalesce(
            func.sum(case((ComplianceRecipient.survey_completed.is_(True), 1), else_=0)), 0
        )
        result = await self.session.execute(
            select(ComplianceRun, total, completed)
            .outerjoin(ComplianceRecipient, ComplianceRecipient.run_id == ComplianceRun.id)
            .group_by(ComplianceRun.id)
            .order_by(ComplianceRun.created_at.desc(), ComplianceRun.id.desc())
        )
        return [(row[0], row[1], row[2]) for row in result.all()]

    async def get_run_department_ids(self, run_id: int) -> list[int]:
        result = await self.session.execute(
            select(ComplianceRunDepartment.department_id)
            .where(ComplianceRunDepartment.run_id == run_id)
            .order_by(ComplianceRunDepartment.id)
        )
        return list(result.scalars().all())

    async def get_questions(self, run_id: int) -> list[ComplianceQuestion]:
        result = await self.session.execute(
            select(ComplianceQuestion)
            .where(ComplianceQuestion.run_id == run_id)
            .order_by(ComplianceQuestion.position)
        )
        return list(result.scalars().all())

    async def get_recipients(self, run_id: int) -> list[ComplianceRecipient]:
        result = await self.session.execute(
            select(ComplianceRecipient)
            .where(ComplianceRecipient.run_id == run_id)
            .order_by(ComplianceRecipient.id)
        )
        return list(result.scalars().all())

    async def get_recipient_by_token(self, token: str) -> Optional[ComplianceRecipient]:
        result = await self.session.execute(
            select(ComplianceRecipient).where(ComplianceRecipient.token == token)
        )
        return result.scalar_one_or_none()

    async def count_open_recipients(self, run_id: int) -> int:
        result = await self.session.execute(
            select(func.count(ComplianceRecipient.id)).where(
                ComplianceRecipient.run_id == run_id,
                ComplianceRecipient.survey_completed.is_(False),
            )
        )
        return result.scalar() or 0

    async def count_responses(self, recipient_id: int) -> int:
        result = await self.session.execute(
            select(func.count(ComplianceResponse.id))
            .where(ComplianceResponse.recipient_id == recipient_id)
        )
        return result.scalar() or 0

    async def list_due_recurring_runs(self, today: date) -> list[ComplianceRun]:
        result = await self.session.execute(
            select(ComplianceRun).where(
                ComplianceRun.is_recurring.is_(True),
                ComplianceRun.status == RunStatus.ACTIVE,
                ComplianceRun.next_run_date <= today,
            ).order_by(ComplianceRun.next_run_date, ComplianceRun.id)
        )
        return list(result.scalars().all())

    async def list_expirable_runs(self, today: date) -> list[ComplianceRun]:
        result = await self.session.execute(
            select(ComplianceRun).where(
                ComplianceRun.is_recurring.is_(False),
                ComplianceRun.status == RunStatus.ACTIVE,
                ComplianceRun.due_date < today,
            ).order_by(ComplianceRun.id)
        )
        return list(result.scalars().all())

    async def token_exists(self, token: str) -> bool:
        """Tokens share one namespace across survey recipients and reminders"""
        recipient = await self.session.execute(
            select(ComplianceRecipient.id).where(ComplianceRecipient.token == token)
        )
        if recipient.first() is not None:
            return True
        reminder = await self.session.execute(
            select(Reminder.id).where(Reminder.token == token)
        )
        return reminder.first() is not None

    # --- Obligations ---

    async def get_obligation(self, obligation_id: int) -> Optional[Obligation]:
        return await self.session.get(Obligation, obligation_id)

    async def require_obligation(self, obligation_id: int) -> Obligation:
        obligation = await self.get_obligation(obligation_id)
        if not obligation:
            raise NotFoundError("Obligation", obligation_id)
        return obligation

    async def list_obligations(self, conditions: Sequence = ()) -> list[Obligation]:
        query = select(Obligation)
        if conditions:
            query = query.where(*conditions)
        query = query.order_by(Obligation.due_date.asc(), Obligation.id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def delete_obligation(self, obligation: Obligation) -> None:
        """Remove an obligation together with everything it owns"""
        await self.session.execute(
            delete(Confirmation).where(Confirmation.obligation_id == obligation.id)
        )
        await self.session.execute(
            delete(Reminder).where(Reminder.obligation_id == obligation.id)
        )
        await self.session.execute(
            delete(ReminderRecipient).where(ReminderRecipient.obligation_id == obligation.id)
        )
        await self.session.delete(obligation)

    # --- Reminder recipients ---

    async def get_reminder_recipient(self, recipient_id: int) -> Optional[ReminderRecipient]:
        return await self.session.get(ReminderRecipient, recipient_id)

    async def list_reminder_recipients(self, obligation_id: int) -> list[ReminderRecipient]:
        result = await self.session.execute(
            select(ReminderRecipient)
            .where(ReminderRecipient.obligation_id == obligation_id)
            .order_by(ReminderRecipient.created_at, ReminderRecipient.id)
        )
        return list(result.scalars().all())

    async def find_reminder_recipient(
        self,
        obligation_id: int,
        user_id: Optional[int],
        external_contact_id: Optional[int],
        email: str,
    ) -> Optional[ReminderRecipient]:
        query = select(ReminderRecipient).where(ReminderRecipient.obligation_id == obligation_id)
        if user_id is not None:
            query = query.where(ReminderRecipient.user_id == user_id)
        elif external_contact_id is not None:
            query = query.where(ReminderRecipient.external_contact_id == external_contact_id)
        else:
            query = query.where(
                ReminderRecipient.user_id.is_(None),
                ReminderRecipient.external_contact_id.is_(None),
                func.lower(ReminderRecipient.email) == email.lower(),
            )
        result = await self.session.execute(query)
        return result.scalars().first()

    async def delete_reminder_recipient(self, recipient: ReminderRecipient) -> None:
        reminder_ids = select(Reminder.id).where(Reminder.recipient_id == recipient.id)
        await self.session.execute(
            delete(Confirmation).where(Confirmation.reminder_id.in_(reminder_ids))
        )
        await self.session.execute(
            delete(Reminder).where(Reminder.recipient_id == recipient.id)
        )
        await self.session.delete(recipient)

    # --- Reminders ---

    async def get_reminder(self, reminder_id: int) -> Optional[Reminder]:
        return await self.session.get(Reminder, reminder_id)

    async def get_reminder_by_token(self, token: str) -> Optional[Reminder]:
        result = await self.session.execute(
            select(Reminder).where(Reminder.token == token)
        )
        return result.scalar_one_or_none()

    async def list_reminders(self, obligation_id: int) -> list[Reminder]:
        result = await self.session.execute(
            select(Reminder)
            .where(Reminder.obligation_id == obligation_id)
            .order_by(Reminder.scheduled_date, Reminder.recipient_id, Reminder.id)
        )
        return list(result.scalars().all())

    async def existing_reminder_stages(self, obligation_id: int) -> set[tuple[int, str]]:
        result = await self.session.execute(
            select(Reminder.recipient_id, Reminder.stage)
            .where(Reminder.obligation_id == obligation_id)
        )
        return {(recipient_id, stage) for recipient_id, stage in result.all()}

    async def list_pending_reminders_on(self, day: date) -> list[Reminder]:
        result = await self.session.execute(
            select(Reminder).where(
                Reminder.scheduled_date == day,
                Reminder.status == ReminderStatus.PENDING,
            ).order_by(Reminder.scheduled_date, Reminder.created_at, Reminder.id)
        )
        return list(result.scalars().all())

    async def list_confirmations(self, obligation_id: int) -> list[Confirmation]:
        result = await self.session.execute(
            select(Confirmation)
            .where(Confirmation.obligation_id == obligation_id)
            .order_by(Confirmation.confirmed_at, Confirmation.id)
        )
        return list(result.scalars().all())
