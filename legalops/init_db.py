"""Initialize database tables and an optional demo organization"""
import asyncio
import sys

from sqlalchemy import select

from legalops.database import engine, AsyncSessionLocal, create_tables
from legalops.models import User, Department


DEMO_USERS = [
    ("legal@legalops.local", "Legal Team"),
    ("finance.head@legalops.local", "Finance Head"),
    ("ops.head@legalops.local", "Operations Head"),
]
DEMO_DEPARTMENTS = [
    ("Finance", "finance.head@legalops.local"),
    ("Operations", "ops.head@legalops.local"),
]


async def seed_demo():
    async with AsyncSessionLocal() as session:
        existing = await session.execute(select(User))
        if existing.scalars().first():
            print("Users already present, skipping demo seed.")
            return

        users = {}
        for email, full_name in DEMO_USERS:
            user = User(email=email, full_name=full_name, is_active=True)
            session.add(user)
            users[email] = user
        await session.flush()

        for name, head_email in DEMO_DEPARTMENTS:
            session.add(Department(name=name, head_user_id=users[head_email].id))

        await session.commit()
        print(f"Seeded {len(DEMO_USERS)} users and {len(DEMO_DEPARTMENTS)} departments.")


async def init(with_demo: bool = False):
    await create_tables(engine)
    print("Database tables created successfully.")
    if with_demo:
        await seed_demo()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init(with_demo="--demo" in sys.argv))
