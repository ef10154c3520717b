"""Server timezone used to derive the pallet-number day.

The timezone is a per-deployment setting: each warehouse site maps to its
local zone, and `SERVER_TIMEZONE` overrides the mapping.  Clients never
choose it.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from app.config import settings

SITE_TIMEZONES = {
    "TSS": "America/Chicago",
    "FRK": "America/New_York",
}


def get_server_timezone() -> str:
    if settings.server_timezone:
        return settings.server_timezone
    return SITE_TIMEZONES.get(settings.location.strip().upper(), "UTC")


def server_now(tz: str | None = None) -> datetime:
    """Current time as an aware datetime in the server timezone."""
    return datetime.now(timezone.utc).astimezone(ZoneInfo(tz or get_server_timezone()))
