#!/usr/bin/env python3
"""
Create (or look up) a user and print a JWT for calling the integration API.
Run from backend/: python -m scripts.create_user someone@example.com "Some Name"
"""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


async def main():
    from adsync.database import async_session
    from adsync.services.auth_service import create_access_token, get_or_create_user

    if len(sys.argv) < 2:
        print("Usage: python -m scripts.create_user EMAIL [NAME]")
        sys.exit(1)
    email = sys.argv[1]
    name = sys.argv[2] if len(sys.argv) > 2 else None

    async with async_session() as db:
        user = await get_or_create_user(db, email, name)
        await db.commit()
        print(f"User: {user.email} ({user.id})")
        print(f"Token: {create_access_token(str(user.id), user.email)}")


if __name__ == "__main__":
    asyncio.run(main())
