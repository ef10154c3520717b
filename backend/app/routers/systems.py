"""System lookup and DOA annotation router.

Endpoints:
    POST  /api/systems/                       Register a system
    GET   /api/systems/{service_tag}          System detail (+ current pallet)
    PATCH /api/systems/{service_tag}/doa      Set or clear the DOA number
    DELETE /api/systems/{service_tag}/pallet  Take the system off its pallet
"""

from fastapi import APIRouter, Depends, status as http_status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import get_actor, get_optional_user
from app.database import get_db
from app.middleware.exceptions import ConflictError, ResourceNotFoundError
from app.models.pallet import Pallet, PalletSlot
from app.models.system import System
from app.models.user import User
from app.schemas.pallet import PalletOut, SystemCreate, SystemOut, UpdateDOARequest
from app.services.pallet_store import PalletStore, normalize_service_tag
from app.utils.activity import Actor
from app.utils.doa import normalize_doa

router = APIRouter()


async def _current_pallet_number(db: AsyncSession, service_tag: str) -> str | None:
    result = await db.execute(
        select(Pallet.pallet_number)
        .join(PalletSlot, PalletSlot.pallet_id == Pallet.id)
        .where(
            PalletSlot.service_tag == service_tag,
            PalletSlot.removed_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


# ── POST /api/systems/ ───────────────────────────────────────

@router.post("/", response_model=SystemOut, status_code=201)
async def register_system(
    body: SystemCreate,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(get_actor("system.write")),
):
    tag = normalize_service_tag(body.service_tag)
    if await db.get(System, tag):
        raise ConflictError(f"System {tag} already exists")

    system = System(**body.model_dump(exclude={"service_tag", "doa_number"}))
    system.service_tag = tag
    system.doa_number = normalize_doa(body.doa_number)
    db.add(system)
    await db.flush()
    return SystemOut.model_validate(system)


# ── GET /api/systems/{service_tag} ───────────────────────────

@router.get("/{service_tag}", response_model=SystemOut)
async def get_system(
    service_tag: str,
    db: AsyncSession = Depends(get_db),
    _user: User | None = Depends(get_optional_user),
):
    tag = normalize_service_tag(service_tag)
    system = await db.get(System, tag)
    if not system:
        raise ResourceNotFoundError("System", tag)

    out = SystemOut.model_validate(system)
    out.pallet_number = await _current_pallet_number(db, tag)
    return out


# ── PATCH /api/systems/{service_tag}/doa ─────────────────────

@router.patch("/{service_tag}/doa", status_code=http_status.HTTP_204_NO_CONTENT)
async def update_system_doa(
    service_tag: str,
    body: UpdateDOARequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.write")),
):
    await PalletStore(db, actor).set_system_doa(service_tag, body.doa_number)


# ── DELETE /api/systems/{service_tag}/pallet ─────────────────

@router.delete("/{service_tag}/pallet", response_model=PalletOut)
async def remove_system_from_pallet(
    service_tag: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor("pallet.write")),
):
    """Take a system off its open pallet; returns the pallet it left."""
    pallet = await PalletStore(db, actor).remove_system(service_tag)
    return PalletOut.from_pallet(pallet)
