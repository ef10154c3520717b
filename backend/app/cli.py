"""Management CLI for shipping operations.

Usage:
    python -m app.cli backfill-shapes           # Give shapeless open pallets a shape
    python -m app.cli create-user EMAIL NAME [ROLE]
    python -m app.cli issue-token EMAIL         # Print an access token (development)
"""

import asyncio
import sys

from sqlalchemy import select

from app.auth.jwt import create_access_token
from app.auth.permissions import resolve_permissions
from app.database import async_session
from app.models.user import User, UserRole
from app.services.pallet_store import PalletStore


async def backfill_shapes():
    async with async_session() as db:
        numbers = await PalletStore(db).backfill_shapes()
    print(f"Backfilled {len(numbers)} open pallet(s) with shapes.")
    for number in numbers:
        print(f"  {number}")


async def create_user(email: str, full_name: str, role: str = "operator"):
    async with async_session() as db:
        user = User(email=email, full_name=full_name, role=UserRole(role))
        db.add(user)
        await db.commit()
        print(f"Created {role} {email} ({user.id})")


async def issue_token(email: str):
    async with async_session() as db:
        user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if not user:
        print(f"No user {email}")
        sys.exit(1)
    permissions = resolve_permissions(user.role.value, user.custom_permissions)
    print(create_access_token(user.id, user.role.value, permissions))


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    args = sys.argv[2:]
    if cmd == "backfill-shapes":
        asyncio.run(backfill_shapes())
    elif cmd == "create-user" and len(args) >= 2:
        asyncio.run(create_user(*args[:3]))
    elif cmd == "issue-token" and args:
        asyncio.run(issue_token(args[0]))
    else:
        print("Usage: python -m app.cli [backfill-shapes|create-user EMAIL NAME [ROLE]|issue-token EMAIL]")
