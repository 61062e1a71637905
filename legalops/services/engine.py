"""
Wires the compliance services around one database session
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from legalops.services.confirmation import ConfirmationHandler
from legalops.services.fanout import RecipientFanoutEngine
from legalops.services.identity import IdentityResolver, DatabaseIdentityResolver
from legalops.services.jobs import JobTracker
from legalops.services.notifier import Notifier, get_notifier
from legalops.services.obligations import ObligationService
from legalops.services.reminder_scheduler import ReminderScheduler
from legalops.services.run_lifecycle import RunLifecycleManager
from legalops.services.store import ObligationStore


@dataclass
class ComplianceEngine:
    store: ObligationStore
    fanout: RecipientFanoutEngine
    runs: RunLifecycleManager
    reminders: ReminderScheduler
    confirmations: ConfirmationHandler
    obligations: ObligationService
    jobs: JobTracker


def build_engine(
    session: AsyncSession,
    notifier: Optional[Notifier] = None,
    identity: Optional[IdentityResolver] = None,
    base_url: Optional[str] = None,
) -> ComplianceEngine:
    store = ObligationStore(session)
    notifier = notifier or get_notifier()
    identity = identity or DatabaseIdentityResolver(session)

    fanout = RecipientFanoutEngine(store, identity, notifier, base_url=base_url)
    runs = RunLifecycleManager(store, fanout)
    return ComplianceEngine(
        store=store,
        fanout=fanout,
        runs=runs,
        reminders=ReminderScheduler(store, notifier, base_url=base_url),
        confirmations=ConfirmationHandler(store, runs),
        obligations=ObligationService(store),
        jobs=JobTracker(store),
    )
