"""Pallet number generation.

Format:  PALLET-{YYYYMMDD}-{serial}

  {YYYYMMDD}  today in the server timezone (see utils/timezone.py)
  {serial}    max existing serial for that day + 1, zero-padded to at
              least 3 digits (1000 follows 999, nothing is truncated)

Only numbers whose suffix is all digits count towards the max, and
soft-deleted pallets still count, so a number is never handed out twice.

`allocate_pallet_number` reads then decides; callers must hold the
allocation lock for `number_lock_key(ymd)` until the new pallet is
committed.
"""

import re
from datetime import datetime
from typing import Iterable
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.pallet import Pallet
from app.utils.timezone import get_server_timezone

PALLET_PREFIX = "PALLET"
SERIAL_WIDTH = 3


def pallet_day(now: datetime | None = None, tz: str | None = None) -> str:
    """YYYYMMDD of `now` in the server timezone.

    Naive datetimes are taken to be UTC.
    """
    zone = ZoneInfo(tz or get_server_timezone())
    if now is None:
        now = datetime.now(zone)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=ZoneInfo("UTC"))
    return now.astimezone(zone).strftime("%Y%m%d")


def day_prefix(ymd: str) -> str:
    return f"{PALLET_PREFIX}-{ymd}-"


def format_pallet_number(ymd: str, serial: int) -> str:
    return f"{day_prefix(ymd)}{serial:0{SERIAL_WIDTH}d}"


def next_serial(existing: Iterable[str], prefix: str) -> int:
    """Max all-digit serial among `existing` numbers with `prefix`, plus one."""
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    highest = 0
    for number in existing:
        match = pattern.match(number or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


async def allocate_pallet_number(
    db: AsyncSession,
    now: datetime | None = None,
    tz: str | None = None,
) -> str:
    """Return the next pallet number for the day `now` falls on.

    Returns:
        e.g. "PALLET-20250601-001"
    """
    ymd = pallet_day(now, tz)
    prefix = day_prefix(ymd)

    result = await db.execute(
        select(Pallet.pallet_number).where(Pallet.pallet_number.like(f"{prefix}%"))
    )
    return format_pallet_number(ymd, next_serial(result.scalars().all(), prefix))
