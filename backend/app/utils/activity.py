"""Lightweight helper for recording activity log entries.

Usage:
    log_activity(
        db, actor, action="released", entity_type="pallet",
        entity_id=pallet.id, entity_code=pallet.pallet_number,
        summary="Released pallet PALLET-20250601-004 (9 systems)",
    )

The row is added to the current session and committed with the
enclosing transaction; no extra flush is performed.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity_log import ActivityLog


@dataclass(frozen=True)
class Actor:
    """Who is performing a mutation, detached from any DB session."""
    user_id: str | None
    name: str

    @classmethod
    def from_user(cls, user) -> "Actor":
        if user is None:
            return SYSTEM_ACTOR
        return cls(user_id=user.id, name=user.full_name)


SYSTEM_ACTOR = Actor(user_id=None, name="system")


def log_activity(
    db: AsyncSession,
    actor: Actor,
    *,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    entity_code: str | None = None,
    summary: str | None = None,
    details: dict | None = None,
) -> None:
    """Append an activity log entry to the current DB session."""
    db.add(ActivityLog(
        user_id=actor.user_id,
        user_name=actor.name,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_code=entity_code,
        summary=summary,
        details=details,
    ))
