"""Aggregate model imports for Alembic auto-detection."""

from app.models.activity_log import ActivityLog  # noqa: F401
from app.models.pallet import Pallet, PalletSlot  # noqa: F401
from app.models.system import System  # noqa: F401
from app.models.user import User, UserRole  # noqa: F401
