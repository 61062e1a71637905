"""
Shared API dependencies
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from legalops.database import get_db
from legalops.services.engine import ComplianceEngine, build_engine
from legalops.services.notifier import Notifier, get_notifier


async def get_compliance(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ComplianceEngine:
    return build_engine(db, notifier=notifier)
