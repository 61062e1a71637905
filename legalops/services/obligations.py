"""
Standalone obligation records - CRUD plus overdue / upcoming queries
"""
from datetime import date, timedelta
from typing import Any, Optional

from legalops.config import get_settings
from legalops.exceptions import NotFoundError, ValidationError
from legalops.models.obligation import (
    Obligation, ObligationType, ObligationFrequency, ObligationStatus, Priority,
)
from legalops.services.reminder_scheduler import realign_pending
from legalops.services.store import ObligationStore
from legalops.utils.logger import get_logger

logger = get_logger(__name__)

OPEN_STATUSES = (ObligationStatus.ACTIVE, ObligationStatus.PENDING)

_ENUM_FIELDS = {
    "obligation_type": ObligationType,
    "frequency": ObligationFrequency,
    "status": ObligationStatus,
    "priority": Priority,
}
_REQUIRED = {"name", "obligation_type", "due_date", "frequency", "status", "priority"}
_UPDATABLE = {
    "name", "description", "obligation_type", "due_date", "due_day", "expiry_date",
    "renewal_date", "frequency", "status", "priority", "assigned_to", "department_id",
}


def _coerce(field_name: str, value: Any) -> Any:
    if value is None:
        return None
    if field_name in _ENUM_FIELDS:
        enum_cls = _ENUM_FIELDS[field_name]
        try:
            return enum_cls(value)
        except ValueError:
            allowed = ", ".join(m.value for m in enum_cls)
            raise ValidationError(f"Invalid {field_name} '{value}'. Must be one of: {allowed}")
    if field_name in ("due_date", "expiry_date", "renewal_date") and isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD)")
    if field_name == "due_day":
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValidationError("due_day must be a whole number")
        if not 1 <= value <= 31:
            raise ValidationError("due_day must be between 1 and 31")
    return value


class ObligationService:

    def __init__(self, store: ObligationStore, offsets: Optional[dict] = None):
        self.store = store
        self.offsets = offsets

    async def create(
        self,
        *,
        name: Optional[str],
        obligation_type: Any,
        due_date: Any,
        created_by: Optional[int],
        description: Optional[str] = None,
        due_day: Optional[int] = None,
        expiry_date: Any = None,
        renewal_date: Any = None,
        frequency: Any = ObligationFrequency.ONCE,
        status: Any = ObligationStatus.ACTIVE,
        priority: Any = Priority.MEDIUM,
        assigned_to: Optional[int] = None,
        department_id: Optional[int] = None,
    ) -> Obligation:
        if not name or not name.strip():
            raise ValidationError("Missing required field: name")
        if obligation_type is None:
            raise ValidationError("Missing required field: obligation_type")
        if due_date is None:
            raise ValidationError("Missing required field: due_date")
        if created_by is None:
            raise ValidationError("Missing required field: created_by")
        if not await self.store.get_user(created_by):
            raise NotFoundError("User", created_by)

        obligation = Obligation(
            name=name.strip(),
            description=description,
            obligation_type=_coerce("obligation_type", obligation_type),
            due_date=_coerce("due_date", due_date),
            due_day=_coerce("due_day", due_day),
            expiry_date=_coerce("expiry_date", expiry_date),
            renewal_date=_coerce("renewal_date", renewal_date),
            frequency=_coerce("frequency", frequency),
            status=_coerce("status", status),
            priority=_coerce("priority", priority),
            assigned_to=assigned_to,
            department_id=department_id,
            created_by=created_by,
        )
        async with self.store.unit_of_work():
            self.store.add(obligation)

        logger.info(f"Created obligation {obligation.id} '{obligation.name}' due {obligation.due_date}")
        return obligation

    async def get(self, obligation_id: int) -> Obligation:
        return await self.store.require_obligation(obligation_id)

    async def list_obligations(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        obligation_type: Optional[str] = None,
        assigned_to: Optional[int] = None,
        department_id: Optional[int] = None,
        due_from: Optional[date] = None,
        due_to: Optional[date] = None,
    ) -> list[Obligation]:
        conditions = []
        if status:
            conditions.append(Obligation.status == _coerce("status", status))
        if priority:
            conditions.append(Obligation.priority == _coerce("priority", priority))
        if obligation_type:
            conditions.append(Obligation.obligation_type == _coerce("obligation_type", obligation_type))
        if assigned_to:
            conditions.append(Obligation.assigned_to == assigned_to)
        if department_id:
            conditions.append(Obligation.department_id == department_id)
        if due_from:
            conditions.append(Obligation.due_date >= due_from)
        if due_to:
            conditions.append(Obligation.due_date <= due_to)
        return await self.store.list_obligations(conditions)

    async def update(self, obligation_id: int, **changes) -> Obligation:
        obligation = await self.store.require_obligation(obligation_id)
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise ValidationError("No fields to update")
        cleared = sorted(k for k in _REQUIRED if k in changes and changes[k] is None)
        if cleared:
            raise ValidationError(f"Required fields cannot be cleared: {', '.join(cleared)}")
        if "name" in changes and not changes["name"].strip():
            raise ValidationError("name cannot be empty")

        coerced = {key: _coerce(key, value) for key, value in changes.items()}
        if "name" in coerced:
            coerced["name"] = coerced["name"].strip()
        old_due = obligation.due_date

        async with self.store.unit_of_work():
            for key, value in coerced.items():
                setattr(obligation, key, value)
            moved = 0
            if obligation.due_date != old_due:
                reminders = await self.store.list_reminders(obligation.id)
                moved = realign_pending(reminders, obligation.due_date, self.offsets)

        logger.info(f"Updated obligation {obligation_id}: {', '.join(sorted(changes))}")
        if moved:
            logger.info(f"Moved {moved} pending reminders of obligation {obligation_id} to due date {obligation.due_date}")
        return obligation

    async def delete(self, obligation_id: int) -> None:
        obligation = await self.store.require_obligation(obligation_id)
        async with self.store.unit_of_work():
            await self.store.delete_obligation(obligation)
        logger.info(f"Deleted obligation {obligation_id}")

    async def list_overdue(self, today: Optional[date] = None) -> list[Obligation]:
        today = today or date.today()
        return await self.store.list_obligations([
            Obligation.due_date < today,
            Obligation.status.in_(OPEN_STATUSES),
        ])

    async def list_upcoming(self, days: Optional[int] = None, today: Optional[date] = None) -> list[Obligation]:
        today = today or date.today()
        days = get_settings().UPCOMING_WINDOW_DAYS if days is None else days
        return await self.store.list_obligations([
            Obligation.due_date >= today,
            Obligation.due_date <= today + timedelta(days=days),
            Obligation.status.in_(OPEN_STATUSES),
        ])
