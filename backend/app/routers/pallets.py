"""Pallet management router.

Endpoints:
    POST   /api/pallets/                          Create an empty pallet
    GET    /api/pallets/                          List pallets (with filters)
    POST   /api/pallets/move                      Move a system between pallets
    POST   /api/pallets/shapes/backfill           Give shapeless open pallets a shape
    GET    /api/pallets/{pallet_number}           Single pallet
    DELETE /api/pallets/{pallet_number}           Delete an empty pallet
    PATCH  /api/pallets/{pallet_number}/lock      Lock / unlock
    POST   /api/pallets/{pallet_number}/release   Release (ship) a pallet
    POST   /api/pallets/{pallet_number}/systems   Place a system on a pallet
    GET    /api/pallets/{pallet_number}/qr        SVG QR code
"""

import io
import json

import segno
from fastapi import APIRouter, Depends, Query, Response, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import get_actor, get_optional_user
from app.database import get_db
from app.models.user import User
from app.schemas.common import PaginatedResponse
from app.schemas.pallet import (
    BackfillResult,
    MoveSystemRequest,
    PalletOut,
    PlaceSystemRequest,
    SetLockRequest,
)
from app.services.pallet_store import PalletStore
from app.utils.activity import Actor

router = APIRouter()


# ── POST /api/pallets/ ───────────────────────────────────────

@router.post("/", response_model=PalletOut, status_code=201)
async def create_pallet(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.write")),
):
    """Create an empty, open, unlocked pallet with the next number of the day."""
    pallet = await PalletStore(db, actor).create()
    return PalletOut.from_pallet(pallet)


# ── GET /api/pallets/ ────────────────────────────────────────

@router.get("/", response_model=PaginatedResponse[PalletOut])
async def list_pallets(
    status: str | None = Query(None, pattern="^(open|released)$"),
    locked: bool | None = None,
    search: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _user: User | None = Depends(get_optional_user),
):
    items, total = await PalletStore(db).list_pallets(
        status=status, locked=locked, search=search, limit=limit, offset=offset,
    )
    return PaginatedResponse(
        items=[PalletOut.from_pallet(p) for p in items],
        total=total,
        limit=limit,
        offset=offset,
    )


# ── POST /api/pallets/move ───────────────────────────────────

@router.post("/move", status_code=http_status.HTTP_204_NO_CONTENT)
async def move_system_between_pallets(
    body: MoveSystemRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.write")),
):
    """Move a system; 409 if either pallet is locked, the destination is
    full, or the system is not on the source pallet."""
    await PalletStore(db, actor).move_system(
        body.service_tag,
        body.from_pallet_number,
        body.to_pallet_number,
        to_slot=body.to_slot,
    )


# ── POST /api/pallets/shapes/backfill ────────────────────────

@router.post("/shapes/backfill", response_model=BackfillResult)
async def backfill_shapes(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.admin")),
):
    numbers = await PalletStore(db, actor).backfill_shapes()
    return BackfillResult(updated=len(numbers), pallet_numbers=numbers)


# ── GET /api/pallets/{pallet_number} ─────────────────────────

@router.get("/{pallet_number}", response_model=PalletOut)
async def get_pallet(
    pallet_number: str,
    db: AsyncSession = Depends(get_db),
    _user: User | None = Depends(get_optional_user),
):
    return PalletOut.from_pallet(await PalletStore(db).get_pallet(pallet_number))


# ── DELETE /api/pallets/{pallet_number} ──────────────────────

@router.delete("/{pallet_number}", status_code=http_status.HTTP_204_NO_CONTENT)
async def delete_pallet(
    pallet_number: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.delete")),
):
    """Delete a pallet. Only allowed while it holds no systems."""
    await PalletStore(db, actor).delete_pallet(pallet_number)


# ── PATCH /api/pallets/{pallet_number}/lock ──────────────────

@router.patch("/{pallet_number}/lock", response_model=PalletOut)
async def set_pallet_lock(
    pallet_number: str,
    body: SetLockRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.write")),
):
    pallet = await PalletStore(db, actor).set_lock(pallet_number, body.locked)
    return PalletOut.from_pallet(pallet)


# ── POST /api/pallets/{pallet_number}/release ────────────────

@router.post("/{pallet_number}/release", response_model=PalletOut)
async def release_pallet(
    pallet_number: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.write")),
):
    """Release a pallet; 412 listing the service tags that lack a DOA number."""
    pallet = await PalletStore(db, actor).release(pallet_number)
    return PalletOut.from_pallet(pallet)


# ── POST /api/pallets/{pallet_number}/systems ────────────────

@router.post("/{pallet_number}/systems", response_model=PalletOut)
async def place_system(
    pallet_number: str,
    body: PlaceSystemRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.write")),
):
    pallet = await PalletStore(db, actor).place_system(
        body.service_tag, pallet_number, slot=body.slot,
    )
    return PalletOut.from_pallet(pallet)


# ── GET /api/pallets/{pallet_number}/qr ──────────────────────

@router.get("/{pallet_number}/qr")
async def get_pallet_qr(
    pallet_number: str,
    db: AsyncSession = Depends(get_db),
    _user: User | None = Depends(get_optional_user),
):
    """Return an SVG QR code encoding the pallet and its service tags."""
    pallet = await PalletStore(db).get_pallet(pallet_number)
    qr_data = json.dumps({
        "type": "pallet",
        "number": pallet.pallet_number,
        "status": pallet.status,
        "shape": pallet.shape,
        "systems": [ps.service_tag for ps in pallet.active_slots],
    }, separators=(",", ":"))

    qr = segno.make(qr_data)
    buf = io.BytesIO()
    qr.save(buf, kind="svg", scale=4)
    return Response(content=buf.getvalue(), media_type="image/svg+xml")
