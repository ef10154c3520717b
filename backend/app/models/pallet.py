"""Pallet: a physical shipping unit holding up to nine systems.

Each pallet gets a day-scoped number (PALLET-YYYYMMDD-NNN) and, while
open, one of ten cosmetic shapes that is unique among open pallets.
Systems sit in numbered slots (0..8) via the PalletSlot table.

Lifecycle:  open (unlocked ⇄ locked) → released
            open (unlocked, empty)  → deleted (soft)
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Index,
    Integer, String, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

SLOT_COUNT = 9


class Pallet(Base):
    __tablename__ = "pallets"
    __table_args__ = (
        # One open pallet per shape; released and deleted pallets do not count
        Index(
            "uq_pallets_open_shape", "shape",
            unique=True,
            postgresql_where=text(
                "status = 'open' AND is_deleted = false AND shape IS NOT NULL"
            ),
            sqlite_where=text(
                "status = 'open' AND is_deleted = 0 AND shape IS NOT NULL"
            ),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pallet_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, index=True
    )

    # ── Status ───────────────────────────────────────────────
    # open | released
    status: Mapped[str] = mapped_column(String(20), default="open", index=True)
    locked: Mapped[bool] = mapped_column(Boolean, default=False)

    # ── Shape (unique among open pallets, see utils/shapes.py) ──
    shape: Mapped[str | None] = mapped_column(String(30))

    # ── Metadata ─────────────────────────────────────────────
    created_by: Mapped[str | None] = mapped_column(String(36))
    released_by: Mapped[str | None] = mapped_column(String(36))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    released_at: Mapped[datetime | None] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # ── Relationships ────────────────────────────────────────
    pallet_slots = relationship(
        "PalletSlot", back_populates="pallet", lazy="selectin",
        order_by="PalletSlot.slot_index",
    )

    @property
    def active_slots(self) -> list["PalletSlot"]:
        return [ps for ps in self.pallet_slots if ps.removed_at is None]

    @property
    def is_empty(self) -> bool:
        return not self.active_slots

    def slot_layout(self) -> list["PalletSlot | None"]:
        """Nine entries, one per slot index, None where empty."""
        layout: list[PalletSlot | None] = [None] * SLOT_COUNT
        for ps in self.active_slots:
            layout[ps.slot_index] = ps
        return layout

    def free_slot(self) -> int | None:
        for idx, ps in enumerate(self.slot_layout()):
            if ps is None:
                return idx
        return None


class PalletSlot(Base):
    """Occupancy of one pallet slot by one system.

    Rows are never deleted: vacating a slot stamps `removed_at`, which keeps
    the move history.  Only rows with `removed_at IS NULL` are active.
    """
    __tablename__ = "pallet_slots"
    __table_args__ = (
        CheckConstraint("slot_index >= 0 AND slot_index < 9", name="ck_pallet_slots_index"),
        Index(
            "uq_pallet_slots_active_slot", "pallet_id", "slot_index",
            unique=True,
            postgresql_where=text("removed_at IS NULL"),
            sqlite_where=text("removed_at IS NULL"),
        ),
        Index(
            "uq_pallet_slots_active_system", "service_tag",
            unique=True,
            postgresql_where=text("removed_at IS NULL"),
            sqlite_where=text("removed_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pallet_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pallets.id"), nullable=False, index=True
    )
    slot_index: Mapped[int] = mapped_column(Integer, nullable=False)
    service_tag: Mapped[str] = mapped_column(
        String(50), ForeignKey("systems.service_tag"), nullable=False
    )
    added_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    removed_at: Mapped[datetime | None] = mapped_column(DateTime)

    # ── Relationships ────────────────────────────────────────
    pallet = relationship("Pallet", back_populates="pallet_slots")
    system = relationship("System", lazy="selectin")
