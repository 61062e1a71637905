"""
Daily compliance tick.

Spawns due recurring runs, expires runs past their due date and sends the
reminders scheduled for today. Run once a day from cron or any scheduler:

    python -m legalops.jobs

Two ticks running at the same moment are not mutually excluded and could
send the same reminder twice; run a single driver instance.
"""
import asyncio
from datetime import date
from typing import Optional

from legalops.database import AsyncSessionLocal, engine, create_tables
from legalops.services.engine import build_engine
from legalops.services.notifier import Notifier
from legalops.utils.logger import get_logger

logger = get_logger(__name__)

JOB_TYPE = "daily_compliance_tick"


async def run_daily_tick(
    session_factory=AsyncSessionLocal,
    today: Optional[date] = None,
    notifier: Optional[Notifier] = None,
) -> dict:
    today = today or date.today()
    logger.info(f"Starting compliance tick for {today.isoformat()}")

    async with session_factory() as session:
        compliance = build_engine(session, notifier=notifier)
        job = await compliance.jobs.start(JOB_TYPE)
        job_id = job.id
        result: dict = {"date": today.isoformat()}
        try:
            result["recurrences"] = await compliance.runs.process_due_recurrences(today)
            result["expired_runs"] = await compliance.runs.expire_overdue_runs(today)
            result["reminders"] = await compliance.reminders.dispatch_due_today(today)
        except Exception as e:
            logger.error(f"Compliance tick failed: {e}", exc_info=True)
            await session.rollback()
            await compliance.jobs.fail(job_id, str(e), result)
            raise

        await compliance.jobs.succeed(job_id, result)

    logger.info(f"Compliance tick completed: {result}")
    return result


async def main() -> None:
    await create_tables(engine)
    try:
        await run_daily_tick()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
