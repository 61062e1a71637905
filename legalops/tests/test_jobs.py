"""
Job tracking and the daily compliance tick
"""
from datetime import date

import pytest
from sqlalchemy import select

from legalops.exceptions import NotFoundError
from legalops.jobs.daily import JOB_TYPE, run_daily_tick
from legalops.models.compliance_run import ComplianceRun, RunStatus
from legalops.models.job import JobRecord, JobStatus
from legalops.models.obligation import Reminder, ReminderStatus


async def test_job_tracker_records_success(compliance):
    job = await compliance.jobs.start("nightly")
    assert job.status == JobStatus.RUNNING

    done = await compliance.jobs.succeed(job.id, {"sent": 3})
    assert done.status == JobStatus.SUCCEEDED
    assert done.result == {"sent": 3}
    assert done.finished_at is not None

    latest = await compliance.jobs.latest("nightly")
    assert latest.id == job.id


async def test_job_tracker_records_failure(compliance):
    job = await compliance.jobs.start("nightly")
    failed = await compliance.jobs.fail(job.id, "mail relay down")
    assert failed.status == JobStatus.FAILED
    assert failed.error == "mail relay down"


async def test_job_tracker_unknown_job(compliance):
    with pytest.raises(NotFoundError):
        await compliance.jobs.get(12345)
    assert await compliance.jobs.latest("never-ran") is None


async def test_daily_tick_runs_every_step(session_factory, db_session, compliance, run_payload, seed_data, notifier):
    # single run past its due date
    single = await compliance.runs.create_run(**run_payload)
    await compliance.runs.activate_run(single.id)

    # weekly recurring run due on Monday 8 January
    run_payload.update(title="Weekly access review", frequency="weekly", anchor_day=1)
    weekly = await compliance.runs.create_run(**run_payload)
    await compliance.runs.activate_run(weekly.id)

    # obligation with a reminder due today
    obligation = await compliance.obligations.create(
        name="Payroll tax filing",
        obligation_type="tax_return",
        due_date=date(2024, 2, 1),
        created_by=seed_data["owner_id"],
    )
    await compliance.reminders.add_recipient(obligation.id, user_id=seed_data["finance_head_id"])
    await compliance.reminders.schedule_reminders(obligation.id)

    single_id, weekly_id, obligation_id = single.id, weekly.id, obligation.id
    await db_session.commit()
    notifier.attempts.clear()

    result = await run_daily_tick(session_factory=session_factory, today=date(2024, 2, 1), notifier=notifier)

    assert result["date"] == "2024-02-01"
    assert result["recurrences"]["recurred"] == 1
    assert result["expired_runs"] == 1
    assert result["reminders"] == {"selected": 1, "sent": 1, "failed": 0}

    async with session_factory() as session:
        single_status = await session.execute(
            select(ComplianceRun.status).where(ComplianceRun.id == single_id)
        )
        assert single_status.scalar_one() == RunStatus.EXPIRED

        clones = await session.execute(
            select(ComplianceRun).where(ComplianceRun.parent_run_id == weekly_id)
        )
        assert len(clones.scalars().all()) == 1

        reminder = await session.execute(
            select(Reminder.status).where(
                Reminder.obligation_id == obligation_id,
                Reminder.scheduled_date == date(2024, 2, 1),
            )
        )
        assert reminder.scalar_one() == ReminderStatus.SENT

        job = await session.execute(select(JobRecord).where(JobRecord.job_type == JOB_TYPE))
        record = job.scalar_one()
        assert record.status == JobStatus.SUCCEEDED
        assert record.result["expired_runs"] == 1


async def test_daily_tick_marks_job_failed(session_factory, seed_data, monkeypatch):
    from legalops.services.reminder_scheduler import ReminderScheduler

    async def broken(self, today=None):
        raise RuntimeError("reminder table locked")

    monkeypatch.setattr(ReminderScheduler, "dispatch_due_today", broken)

    with pytest.raises(RuntimeError):
        await run_daily_tick(session_factory=session_factory, today=date(2024, 2, 1))

    async with session_factory() as session:
        job = await session.execute(select(JobRecord).where(JobRecord.job_type == JOB_TYPE))
        record = job.scalar_one()
        assert record.status == JobStatus.FAILED
        assert "reminder table locked" in record.error
