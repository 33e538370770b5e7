from __future__ import annotations

import argparse
import asyncio

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from backend.src.db.models import User
from backend.src.db.session import get_engine
from backend.src.services.auth import issue_session


async def _run(email: str, name: str | None, duration_seconds: int | None) -> None:
    engine = get_engine()
    async with AsyncSession(engine) as session:
        user = (await session.exec(select(User).where(User.email == email))).first()
        if user is None:
            user = User(email=email, name=name)
            session.add(user)
            await session.flush()
        elif user.status != "active":
            raise SystemExit(f"User {email} is {user.status}; refusing to create a session")

        token = await issue_session(session, user.id, duration_seconds)
        await session.commit()

    # Print the plaintext token ONCE. Only its HMAC is stored.
    print(token)


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a session for a user (prints the token once).")
    parser.add_argument("email")
    parser.add_argument("--name", default=None)
    parser.add_argument("--duration-seconds", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(_run(args.email, args.name, args.duration_seconds))


if __name__ == "__main__":
    main()
