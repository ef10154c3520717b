"""Pydantic schemas for pallet and system operations."""

from datetime import datetime

from pydantic import BaseModel, Field

from app.utils.doa import DOA_MAX_LENGTH


# ── Requests ─────────────────────────────────────────────────

class MoveSystemRequest(BaseModel):
    """Payload for POST /api/pallets/move."""
    service_tag: str = Field(..., min_length=1, max_length=50)
    from_pallet_number: str
    to_pallet_number: str
    to_slot: int | None = None  # None = first free slot


class PlaceSystemRequest(BaseModel):
    """Payload for POST /api/pallets/{pallet_number}/systems."""
    service_tag: str = Field(..., min_length=1, max_length=50)
    slot: int | None = None


class SetLockRequest(BaseModel):
    """Payload for PATCH /api/pallets/{pallet_number}/lock."""
    locked: bool


class UpdateDOARequest(BaseModel):
    """Payload for PATCH /api/systems/{service_tag}/doa. Empty string clears."""
    # Longer input is trimmed and cut to 20 characters by the store
    doa_number: str | None = Field(None, max_length=200)


class SystemCreate(BaseModel):
    """Payload for POST /api/systems/."""
    service_tag: str = Field(..., min_length=1, max_length=50)
    ppid: str | None = None
    dpn: str | None = None
    config: str | None = None
    dell_customer: str | None = None
    issue: str | None = None
    location: str | None = None
    doa_number: str | None = Field(None, max_length=DOA_MAX_LENGTH)


# ── Responses ────────────────────────────────────────────────

class SlotOut(BaseModel):
    slot_index: int
    service_tag: str
    doa_number: str | None = None


class PalletOut(BaseModel):
    id: str
    pallet_number: str
    status: str
    locked: bool
    shape: str | None
    created_at: datetime
    released_at: datetime | None = None
    slots: list[SlotOut | None]

    @classmethod
    def from_pallet(cls, pallet) -> "PalletOut":
        slots = [
            SlotOut(
                slot_index=ps.slot_index,
                service_tag=ps.service_tag,
                doa_number=ps.system.doa_number if ps.system else None,
            ) if ps is not None else None
            for ps in pallet.slot_layout()
        ]
        return cls(
            id=pallet.id,
            pallet_number=pallet.pallet_number,
            status=pallet.status,
            locked=pallet.locked,
            shape=pallet.shape,
            created_at=pallet.created_at,
            released_at=pallet.released_at,
            slots=slots,
        )


class SystemOut(BaseModel):
    service_tag: str
    ppid: str | None
    dpn: str | None
    config: str | None
    dell_customer: str | None
    issue: str | None = None
    location: str | None = None
    doa_number: str | None
    pallet_number: str | None = None

    model_config = {"from_attributes": True}


class BackfillResult(BaseModel):
    updated: int
    pallet_numbers: list[str]
