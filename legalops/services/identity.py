"""
Audience resolution - who receives a compliance run
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from legalops.models.organization import User, Department


@dataclass(frozen=True)
class PersonRef:
    user_id: int
    email: str
    display_name: str
    department_id: Optional[int] = None
    department_name: Optional[str] = None


class IdentityResolver(ABC):

    @abstractmethod
    async def department_heads(self, department_id: int) -> list[PersonRef]:
        """Active heads of a department; empty when none is assigned"""
        pass


class DatabaseIdentityResolver(IdentityResolver):
    """Resolves department heads from the departments table"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def department_heads(self, department_id: int) -> list[PersonRef]:
        result = await self.session.execute(
            select(User, Department)
            .join(Department, Department.head_user_id == User.id)
            .where(Department.id == department_id, User.is_active.is_(True))
        )
        return [
            PersonRef(
                user_id=user.id,
                email=user.email,
                display_name=user.full_name,
                department_id=department.id,
                department_name=department.name,
            )
            for user, department in result.all()
        ]
