"""
Obligation reminder timeline.

Each reminder recipient gets one reminder per stage (two weeks before, one
week before and on the due date), each with its own confirmation token.
The daily driver selects the pending reminders scheduled for today and
dispatches them; a reminder leaves `pending` exactly once, so a second
selection on the same day never re-notifies anybody.

The `overdue` stage is a valid stage value but is never scheduled here.
"""
from datetime import date, datetime, timedelta
from typing import Optional

from legalops.config import get_settings
from legalops.exceptions import DispatchError, InvalidTransitionError, NotFoundError, ValidationError
from legalops.models.obligation import (
    Obligation, ReminderRecipient, Reminder, ReminderStage, ReminderStatus,
)
from legalops.services.fanout import deliver
from legalops.services.notifier import Notifier, TemplateKind, confirmation_link
from legalops.services.store import ObligationStore
from legalops.services.tokens import TokenIssuer
from legalops.utils.logger import get_logger, mask_token

logger = get_logger(__name__)

SCHEDULED_STAGES = (ReminderStage.TWO_WEEKS, ReminderStage.ONE_WEEK, ReminderStage.DUE_DATE)


def reminder_dates(due_date: date, offsets: Optional[dict] = None) -> dict[ReminderStage, date]:
    """Scheduled date per stage for an obligation due on `due_date`"""
    offsets = offsets or get_settings().REMINDER_OFFSETS_DAYS
    return {
        stage: due_date - timedelta(days=offsets[stage.value])
        for stage in SCHEDULED_STAGES
    }


def realign_pending(reminders: list[Reminder], due_date: date, offsets: Optional[dict] = None) -> int:
    """
    Move pending reminders onto the stage dates for `due_date`. Reminders
    that already left `pending` keep the date they went out on.
    """
    dates = reminder_dates(due_date, offsets)
    moved = 0
    for reminder in reminders:
        if reminder.status != ReminderStatus.PENDING or reminder.stage not in dates:
            continue
        if reminder.scheduled_date != dates[reminder.stage]:
            reminder.scheduled_date = dates[reminder.stage]
            moved += 1
    return moved


class ReminderScheduler:

    def __init__(
        self,
        store: ObligationStore,
        notifier: Notifier,
        base_url: Optional[str] = None,
        offsets: Optional[dict] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.base_url = base_url
        self.offsets = offsets

    # --- Recipients ---

    async def add_recipient(
        self,
        obligation_id: int,
        *,
        user_id: Optional[int] = None,
        external_contact_id: Optional[int] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
        role: Optional[str] = None,
    ) -> ReminderRecipient:
        """
        Register who is reminded about an obligation. Name and email are
        copied from the referenced user or external contact unless given.
        """
        await self.store.require_obligation(obligation_id)

        if user_id is not None and external_contact_id is not None:
            raise ValidationError("A recipient is either an internal user or an external contact, not both")

        if user_id is not None:
            user = await self.store.get_user(user_id)
            if not user:
                raise NotFoundError("User", user_id)
            email = email or user.email
            name = name or user.full_name
        elif external_contact_id is not None:
            contact = await self.store.get_external_contact(external_contact_id)
            if not contact:
                raise NotFoundError("External contact", external_contact_id)
            email = email or contact.email
            name = name or contact.name

        if not email or "@" not in email:
            raise ValidationError("A valid recipient email is required")
        if not name:
            raise ValidationError("Recipient name is required")

        existing = await self.store.find_reminder_recipient(
            obligation_id, user_id, external_contact_id, email
        )
        if existing:
            raise ValidationError(f"{email} is already a recipient of obligation {obligation_id}")

        async with self.store.unit_of_work():
            recipient = ReminderRecipient(
                obligation_id=obligation_id,
                user_id=user_id,
                external_contact_id=external_contact_id,
                email=email,
                name=name,
                role=role,
            )
            self.store.add(recipient)

        logger.info(f"Added reminder recipient {recipient.id} ({email}) to obligation {obligation_id}")
        return recipient

    async def list_recipients(self, obligation_id: int) -> list[ReminderRecipient]:
        await self.store.require_obligation(obligation_id)
        return await self.store.list_reminder_recipients(obligation_id)

    async def remove_recipient(self, recipient_id: int) -> None:
        recipient = await self.store.get_reminder_recipient(recipient_id)
        if not recipient:
            raise NotFoundError("Reminder recipient", recipient_id)
        async with self.store.unit_of_work():
            await self.store.delete_reminder_recipient(recipient)
        logger.info(f"Removed reminder recipient {recipient_id}")

    # --- Scheduling ---

    async def schedule_reminders(self, obligation_id: int) -> list[Reminder]:
        """
        Create the pending reminders for every recipient of an obligation.
        Stages already scheduled for a recipient are not duplicated; the
        ones still pending are moved to the obligation's current due date.
        """
        obligation = await self.store.require_obligation(obligation_id)
        recipients = await self.store.list_reminder_recipients(obligation_id)
        if not recipients:
            logger.info(f"No recipients found for obligation {obligation_id}, nothing scheduled")
            return []

        dates = reminder_dates(obligation.due_date, self.offsets)
        existing = await self.store.existing_reminder_stages(obligation_id)
        created: list[Reminder] = []

        async with self.store.unit_of_work():
            moved = realign_pending(await self.store.list_reminders(obligation_id), obligation.due_date, self.offsets)
            if moved:
                logger.info(f"Moved {moved} pending reminders of obligation {obligation_id}")
            issuer = TokenIssuer(self.store)
            for recipient in recipients:
                for stage in SCHEDULED_STAGES:
                    if (recipient.id, stage) in existing:
                        continue
                    reminder = Reminder(
                        obligation_id=obligation.id,
                        recipient_id=recipient.id,
                        stage=stage,
                        scheduled_date=dates[stage],
                        status=ReminderStatus.PENDING,
                        token=await issuer.issue(),
                    )
                    self.store.add(reminder)
                    created.append(reminder)

        logger.info(f"Scheduled {len(created)} reminders for obligation {obligation_id}")
        return created

    async def list_reminders(self, obligation_id: int) -> list[Reminder]:
        await self.store.require_obligation(obligation_id)
        return await self.store.list_reminders(obligation_id)

    async def select_due_today(self, today: Optional[date] = None) -> list[Reminder]:
        """Pending reminders scheduled for today; sent/confirmed/failed are excluded"""
        return await self.store.list_pending_reminders_on(today or date.today())

    # --- Dispatch ---

    async def _build_payload(self, reminder: Reminder) -> tuple[ReminderRecipient, dict]:
        obligation: Optional[Obligation] = await self.store.get_obligation(reminder.obligation_id)
        recipient = await self.store.get_reminder_recipient(reminder.recipient_id)
        if not obligation or not recipient:
            raise DispatchError(f"Reminder {reminder.id} has no obligation or recipient to notify")
        payload = {
            "reminder_id": reminder.id,
            "obligation_id": obligation.id,
            "title": obligation.name,
            "description": obligation.description,
            "due_date": obligation.due_date.isoformat(),
            "frequency": obligation.frequency.value,
            "stage": reminder.stage.value,
            "recipient_name": recipient.name,
            "link": confirmation_link(reminder.token, self.base_url),
        }
        return recipient, payload

    async def dispatch(self, reminder: Reminder) -> bool:
        """
        Send one reminder. Success marks it sent; any failure marks it failed,
        which is terminal until someone dispatches it again by hand.
        """
        if reminder.status not in (ReminderStatus.PENDING, ReminderStatus.FAILED):
            raise InvalidTransitionError("reminder", reminder.status, ReminderStatus.SENT)

        try:
            recipient, payload = await self._build_payload(reminder)
            await deliver(self.notifier, recipient.email, TemplateKind.OBLIGATION_REMINDER, payload)
        except DispatchError as e:
            reminder.status = ReminderStatus.FAILED
            await self.store.commit()
            logger.warning(
                f"Reminder {reminder.id} (token {mask_token(reminder.token)}) failed: {e}"
            )
            return False

        reminder.status = ReminderStatus.SENT
        reminder.sent_at = datetime.utcnow()
        await self.store.commit()
        logger.info(f"Sent {reminder.stage.value} reminder {reminder.id} for obligation {reminder.obligation_id}")
        return True

    async def dispatch_due_today(self, today: Optional[date] = None) -> dict:
        reminders = await self.select_due_today(today)
        stats = {"selected": len(reminders), "sent": 0, "failed": 0}
        for reminder in reminders:
            if await self.dispatch(reminder):
                stats["sent"] += 1
            else:
                stats["failed"] += 1
        logger.info(
            f"Reminder dispatch: {stats['selected']} due, {stats['sent']} sent, {stats['failed']} failed"
        )
        return stats
