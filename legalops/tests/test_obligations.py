"""
Obligation records - CRUD, filtering and due-date queries
"""
from datetime import date, timedelta

import pytest
from sqlalchemy import select, func

from legalops.exceptions import NotFoundError, ValidationError
from legalops.models.obligation import (
    Obligation, ObligationStatus, ObligationType, Priority, Reminder, ReminderRecipient, ReminderStatus,
)


async def _create(compliance, seed_data, **overrides):
    data = {
        "name": "Business licence renewal",
        "obligation_type": "license_renewal",
        "due_date": date(2024, 9, 1),
        "created_by": seed_data["owner_id"],
    }
    data.update(overrides)
    return await compliance.obligations.create(**data)


async def test_create_with_defaults(compliance, seed_data):
    obligation = await _create(compliance, seed_data, description="City of Springfield")
    assert obligation.id is not None
    assert obligation.obligation_type == ObligationType.LICENSE_RENEWAL
    assert obligation.status == ObligationStatus.ACTIVE
    assert obligation.priority == Priority.MEDIUM
    assert obligation.description == "City of Springfield"


async def test_create_parses_iso_dates(compliance, seed_data):
    obligation = await _create(compliance, seed_data, due_date="2024-10-15", expiry_date="2025-10-15")
    assert obligation.due_date == date(2024, 10, 15)
    assert obligation.expiry_date == date(2025, 10, 15)


async def test_create_requires_name(compliance, seed_data):
    with pytest.raises(ValidationError, match="name"):
        await _create(compliance, seed_data, name="")


async def test_create_rejects_unknown_type(compliance, seed_data):
    with pytest.raises(ValidationError, match="obligation_type"):
        await _create(compliance, seed_data, obligation_type="parking_ticket")


async def test_create_rejects_bad_due_day(compliance, seed_data):
    with pytest.raises(ValidationError):
        await _create(compliance, seed_data, due_day=32)


async def test_create_unknown_creator(compliance, seed_data):
    with pytest.raises(NotFoundError):
        await _create(compliance, seed_data, created_by=9999)


async def test_list_filters_and_orders_by_due_date(compliance, seed_data):
    late = await _create(compliance, seed_data, name="Late", due_date=date(2024, 12, 1), priority="high")
    early = await _create(compliance, seed_data, name="Early", due_date=date(2024, 2, 1))
    await _create(compliance, seed_data, name="Audit", obligation_type="audit", due_date=date(2024, 6, 1))

    everything = await compliance.obligations.list_obligations()
    assert [o.name for o in everything] == ["Early", "Audit", "Late"]

    high = await compliance.obligations.list_obligations(priority="high")
    assert [o.id for o in high] == [late.id]

    audits = await compliance.obligations.list_obligations(obligation_type="audit")
    assert [o.name for o in audits] == ["Audit"]

    window = await compliance.obligations.list_obligations(due_from=date(2024, 1, 1), due_to=date(2024, 3, 1))
    assert [o.id for o in window] == [early.id]


async def test_list_rejects_unknown_status(compliance, seed_data):
    with pytest.raises(ValidationError):
        await compliance.obligations.list_obligations(status="forgotten")


async def test_update(compliance, seed_data):
    obligation = await _create(compliance, seed_data)
    updated = await compliance.obligations.update(
        obligation.id, status="pending", priority="low", due_date="2024-09-15",
    )
    assert updated.status == ObligationStatus.PENDING
    assert updated.priority == Priority.LOW
    assert updated.due_date == date(2024, 9, 15)


async def test_update_rejects_unknown_fields(compliance, seed_data):
    obligation = await _create(compliance, seed_data)
    with pytest.raises(ValidationError, match="Unknown fields"):
        await compliance.obligations.update(obligation.id, colour="red")


@pytest.mark.parametrize("field", ["due_date", "obligation_type", "frequency", "status", "priority", "name"])
async def test_update_rejects_clearing_required_fields(compliance, seed_data, db_session, field):
    obligation = await _create(compliance, seed_data)
    obligation_id = obligation.id
    with pytest.raises(ValidationError, match=field):
        await compliance.obligations.update(obligation_id, **{field: None})

    due = await db_session.execute(select(Obligation.due_date).where(Obligation.id == obligation_id))
    assert due.scalar_one() == date(2024, 9, 1)


async def test_update_rejects_non_numeric_due_day(compliance, seed_data):
    obligation = await _create(compliance, seed_data)
    with pytest.raises(ValidationError, match="whole number"):
        await compliance.obligations.update(obligation.id, due_day="first")


async def test_update_due_date_moves_pending_reminders(compliance, seed_data, db_session):
    obligation = await _create(compliance, seed_data, due_date=date(2024, 3, 15))
    await compliance.reminders.add_recipient(obligation.id, user_id=seed_data["finance_head_id"])
    await compliance.reminders.schedule_reminders(obligation.id)
    await compliance.reminders.dispatch_due_today(date(2024, 3, 1))

    await compliance.obligations.update(obligation.id, due_date=date(2024, 6, 30))

    rows = await db_session.execute(
        select(Reminder.stage, Reminder.status, Reminder.scheduled_date)
        .where(Reminder.obligation_id == obligation.id)
    )
    dates = {stage.value: (status, scheduled) for stage, status, scheduled in rows.all()}
    assert dates == {
        "two_weeks": (ReminderStatus.SENT, date(2024, 3, 1)),
        "one_week": (ReminderStatus.PENDING, date(2024, 6, 23)),
        "due_date": (ReminderStatus.PENDING, date(2024, 6, 30)),
    }


async def test_update_rejects_empty_change(compliance, seed_data):
    obligation = await _create(compliance, seed_data)
    with pytest.raises(ValidationError):
        await compliance.obligations.update(obligation.id)


async def test_delete_removes_owned_rows(compliance, seed_data, db_session):
    obligation = await _create(compliance, seed_data)
    obligation_id = obligation.id
    await compliance.reminders.add_recipient(obligation_id, user_id=seed_data["finance_head_id"])
    await compliance.reminders.schedule_reminders(obligation_id)

    await compliance.obligations.delete(obligation_id)

    with pytest.raises(NotFoundError):
        await compliance.obligations.get(obligation_id)
    for model in (Reminder, ReminderRecipient):
        count = await db_session.execute(
            select(func.count(model.id)).where(model.obligation_id == obligation_id)
        )
        assert count.scalar() == 0


async def test_overdue_and_upcoming(compliance, seed_data):
    today = date(2024, 5, 1)
    await _create(compliance, seed_data, name="Missed", due_date=today - timedelta(days=3))
    await _create(compliance, seed_data, name="Done late", due_date=today - timedelta(days=5), status="completed")
    await _create(compliance, seed_data, name="Soon", due_date=today + timedelta(days=10))
    await _create(compliance, seed_data, name="Later", due_date=today + timedelta(days=45))
    await _create(compliance, seed_data, name="Today", due_date=today, status="pending")

    overdue = await compliance.obligations.list_overdue(today=today)
    assert [o.name for o in overdue] == ["Missed"]

    upcoming = await compliance.obligations.list_upcoming(today=today)
    assert [o.name for o in upcoming] == ["Today", "Soon"]

    wide = await compliance.obligations.list_upcoming(days=60, today=today)
    assert [o.name for o in wide] == ["Today", "Soon", "Later"]


async def test_obligations_never_recur(compliance, seed_data, db_session):
    await _create(compliance, seed_data, frequency="annually", due_date=date(2023, 1, 1))
    await compliance.runs.process_due_recurrences(today=date(2024, 1, 1))
    count = await db_session.execute(select(func.count(Obligation.id)))
    assert count.scalar() == 1
