from __future__ import annotations

import argparse
import asyncio

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from backend.src.db.models import AuthSession, User
from backend.src.db.session import get_engine


async def _run(email: str, suspend: bool) -> None:
    engine = get_engine()
    async with AsyncSession(engine) as session:
        user = (await session.exec(select(User).where(User.email == email))).first()
        if user is None:
            raise SystemExit(f"User not found: {email}")
        sessions = (await session.exec(select(AuthSession).where(AuthSession.user_id == user.id))).all()
        for row in sessions:
            await session.delete(row)
        if suspend:
            user.status = "suspended"
            session.add(user)
        await session.commit()
    print(f"revoked {len(sessions)} session(s)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Revoke every session of a user.")
    parser.add_argument("email")
    parser.add_argument("--suspend", action="store_true", help="also mark the user suspended")
    args = parser.parse_args()
    asyncio.run(_run(args.email, args.suspend))


if __name__ == "__main__":
    main()
