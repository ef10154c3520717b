"""Pallet lifecycle store: the authority for pallet and slot state.

Every invariant about pallets is enforced here, whatever the caller
checked beforehand:

  * pallet numbers and shapes are allocated under the allocation lock
    (utils/allocation_lock.py) and never collide;
  * a service tag occupies at most one active slot, and a move vacates
    the source slot and fills the destination slot in one transaction;
  * a locked pallet's slots cannot change;
  * only empty pallets may be deleted;
  * a pallet is released only when every occupied slot has a DOA number,
    and a released pallet accepts no further moves, locks or deletes.

Errors are raised as ConflictError, PreconditionFailedError or
ResourceNotFoundError (middleware/exceptions.py).  Apart from one fresh
allocation after a pallet-number collision in `create`, the store never
retries a mutation on the caller's behalf.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.middleware.exceptions import (
    ConflictError,
    PreconditionFailedError,
    ResourceNotFoundError,
)
from app.models.pallet import SLOT_COUNT, Pallet, PalletSlot
from app.models.system import System
from app.utils.activity import SYSTEM_ACTOR, Actor, log_activity
from app.utils.allocation_lock import (
    SHAPE_LOCK_KEY,
    number_lock_key,
    with_allocation_lock,
)
from app.utils.doa import normalize_doa
from app.utils.numbering import allocate_pallet_number, pallet_day
from app.utils.shapes import allocate_open_pallet_shape, backfill_open_pallet_shapes
from app.utils.timezone import server_now

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 2


def normalize_service_tag(service_tag: str) -> str:
    return str(service_tag or "").strip().upper()


class PalletStore:
    """Pallet operations bound to one DB session and one acting user."""

    def __init__(self, db: AsyncSession, actor: Actor | None = None):
        self.db = db
        self.actor = actor or SYSTEM_ACTOR

    # ── Reads ────────────────────────────────────────────────

    async def _find(self, pallet_number: str, *, for_update: bool = False) -> Pallet:
        stmt = select(Pallet).where(
            Pallet.pallet_number == pallet_number,
            Pallet.is_deleted == False,  # noqa: E712
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        pallet = (await self.db.execute(stmt)).scalar_one_or_none()
        if not pallet:
            raise ResourceNotFoundError("Pallet", pallet_number)
        return pallet

    async def _find_open(self, pallet_number: str, *, for_update: bool = False) -> Pallet:
        pallet = await self._find(pallet_number, for_update=for_update)
        if pallet.status != "open":
            raise ResourceNotFoundError(
                "Pallet", pallet_number, reason=f"is '{pallet.status}', not open",
            )
        return pallet

    async def _lock_open_pallets(self, *pallet_numbers: str) -> dict[str, Pallet]:
        """Load and row-lock open pallets, always in ascending id order."""
        wanted = set(pallet_numbers)
        result = await self.db.execute(
            select(Pallet)
            .where(
                Pallet.pallet_number.in_(sorted(wanted)),
                Pallet.is_deleted == False,  # noqa: E712
            )
            .order_by(Pallet.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        found = {p.pallet_number: p for p in result.scalars().all()}
        for number in sorted(wanted):
            pallet = found.get(number)
            if not pallet:
                raise ResourceNotFoundError("Pallet", number)
            if pallet.status != "open":
                raise ResourceNotFoundError(
                    "Pallet", number, reason=f"is '{pallet.status}', not open",
                )
        return found

    async def _get_system(self, service_tag: str) -> System:
        system = await self.db.get(System, service_tag)
        if not system:
            raise ResourceNotFoundError("System", service_tag)
        return system

    async def _active_slot_of(self, service_tag: str) -> PalletSlot | None:
        result = await self.db.execute(
            select(PalletSlot).where(
                PalletSlot.service_tag == service_tag,
                PalletSlot.removed_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_pallet(self, pallet_number: str) -> Pallet:
        return await self._find(pallet_number)

    async def list_pallets(
        self,
        status: str | None = None,
        locked: bool | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Pallet], int]:
        base = select(Pallet).where(Pallet.is_deleted == False)  # noqa: E712
        if status:
            base = base.where(Pallet.status == status)
        if locked is not None:
            base = base.where(Pallet.locked == locked)
        if search:
            q = f"%{search.strip()}%"
            base = (
                base
                .outerjoin(
                    PalletSlot,
                    (PalletSlot.pallet_id == Pallet.id) & PalletSlot.removed_at.is_(None),
                )
                .where(or_(
                    Pallet.pallet_number.ilike(q),
                    PalletSlot.service_tag.ilike(q),
                ))
                .distinct()
            )

        total = (await self.db.execute(
            select(func.count()).select_from(base.subquery())
        )).scalar() or 0

        # Open pallets read oldest first (shipping page order); released newest first
        order = Pallet.created_at.asc() if status == "open" else Pallet.created_at.desc()
        items = (await self.db.execute(
            base.order_by(order, Pallet.pallet_number).limit(limit).offset(offset)
        )).scalars().all()
        return list(items), total

    # ── Creation ─────────────────────────────────────────────

    async def create(self, now: datetime | None = None) -> Pallet:
        """Create an empty, open, unlocked pallet.

        A pallet-number collision (another worker committed the same
        number first) re-runs the whole allocation once; a second
        collision is raised as a retryable ConflictError.
        """
        now = now or server_now()
        eager_shape = settings.shape_assignment == "eager"
        keys = [number_lock_key(pallet_day(now))]
        if eager_shape:
            keys.append(SHAPE_LOCK_KEY)

        async def _insert(db: AsyncSession) -> Pallet:
            number = await allocate_pallet_number(db, now)
            shape = await allocate_open_pallet_shape(db) if eager_shape else None
            pallet = Pallet(
                id=str(uuid.uuid4()),
                pallet_number=number,
                status="open",
                locked=False,
                shape=shape,
                created_by=self.actor.user_id,
                pallet_slots=[],
            )
            db.add(pallet)
            await db.flush()
            log_activity(
                db, self.actor,
                action="created",
                entity_type="pallet",
                entity_id=pallet.id,
                entity_code=number,
                summary=f"Created pallet {number}" + (f" ({shape})" if shape else ""),
            )
            return pallet

        for attempt in range(1, CREATE_ATTEMPTS + 1):
            try:
                pallet = await with_allocation_lock(self.db, keys, _insert)
                break
            except IntegrityError as exc:
                if attempt == CREATE_ATTEMPTS:
                    raise ConflictError(
                        "Pallet number was allocated concurrently; retry the request",
                        retryable=True,
                    ) from exc
                logger.warning("Pallet number collision on create; allocating again")

        if pallet.shape is None and eager_shape:
            logger.info("All pallet shapes in use; %s created without a shape", pallet.pallet_number)
        return pallet

    # ── Slot changes ─────────────────────────────────────────

    def _check_unlocked(self, *pallets: Pallet) -> None:
        for pallet in pallets:
            if pallet.locked:
                raise ConflictError(
                    f"Pallet {pallet.pallet_number} is locked; unlock it before changing its systems",
                )

    def _resolve_target_slot(self, pallet: Pallet, slot: int | None) -> int:
        if slot is None:
            free = pallet.free_slot()
            if free is None:
                raise ConflictError(f"Pallet {pallet.pallet_number} has no free slot")
            return free
        if not 0 <= slot < SLOT_COUNT:
            raise ConflictError(
                f"Slot {slot} does not exist (pallets have slots 0-{SLOT_COUNT - 1})",
            )
        if pallet.slot_layout()[slot] is not None:
            raise ConflictError(f"Slot {slot} of pallet {pallet.pallet_number} is occupied")
        return slot

    async def _occupy(self, pallet: Pallet, slot_index: int, system: System) -> PalletSlot:
        occupancy = PalletSlot(
            id=str(uuid.uuid4()),
            pallet=pallet,
            slot_index=slot_index,
            service_tag=system.service_tag,
            system=system,
        )
        self.db.add(occupancy)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise ConflictError(
                f"{system.service_tag} or slot {slot_index} of {pallet.pallet_number} "
                "was taken by a concurrent change; refresh and retry",
                retryable=True,
            ) from exc
        return occupancy

    async def _assign_shape_if_lazy(self, pallet: Pallet) -> None:
        if settings.shape_assignment != "lazy" or pallet.shape:
            return

        async def _assign(db: AsyncSession) -> None:
            pallet.shape = await allocate_open_pallet_shape(db)
            await db.flush()

        await with_allocation_lock(self.db, [SHAPE_LOCK_KEY], _assign)

    async def move_system(
        self,
        service_tag: str,
        from_pallet_number: str,
        to_pallet_number: str,
        to_slot: int | None = None,
    ) -> Pallet:
        """Move a system between (or within) open pallets; returns the destination."""
        tag = normalize_service_tag(service_tag)
        pallets = await self._lock_open_pallets(from_pallet_number, to_pallet_number)
        source = pallets[from_pallet_number]
        dest = pallets[to_pallet_number]
        self._check_unlocked(source, dest)

        current = next((ps for ps in source.active_slots if ps.service_tag == tag), None)
        if current is None:
            raise ConflictError(f"{tag} is not on pallet {from_pallet_number}")
        if source is dest and to_slot is None:
            raise ConflictError(f"{tag} is already on pallet {to_pallet_number}")

        slot_index = self._resolve_target_slot(dest, to_slot)

        current.removed_at = datetime.utcnow()
        await self.db.flush()
        await self._occupy(dest, slot_index, current.system)

        log_activity(
            self.db, self.actor,
            action="moved",
            entity_type="system",
            entity_id=tag,
            entity_code=tag,
            summary=f"Moved {tag} from {from_pallet_number} to {to_pallet_number}",
            details={
                "from_pallet_number": from_pallet_number,
                "from_slot": current.slot_index,
                "to_pallet_number": to_pallet_number,
                "to_slot": slot_index,
            },
        )
        await self._assign_shape_if_lazy(dest)
        return dest

    async def place_system(
        self,
        service_tag: str,
        pallet_number: str,
        slot: int | None = None,
    ) -> Pallet:
        """Put a system that is on no pallet into a slot of an open pallet."""
        tag = normalize_service_tag(service_tag)
        system = await self._get_system(tag)
        pallet = (await self._lock_open_pallets(pallet_number))[pallet_number]
        self._check_unlocked(pallet)

        existing = await self._active_slot_of(tag)
        if existing is not None:
            holder = await self.db.get(Pallet, existing.pallet_id)
            raise ConflictError(
                f"{tag} is already on pallet {holder.pallet_number}; move it instead",
            )

        slot_index = self._resolve_target_slot(pallet, slot)
        await self._occupy(pallet, slot_index, system)

        log_activity(
            self.db, self.actor,
            action="placed",
            entity_type="system",
            entity_id=tag,
            entity_code=tag,
            summary=f"Placed {tag} on {pallet_number} slot {slot_index}",
        )
        await self._assign_shape_if_lazy(pallet)
        return pallet

    async def remove_system(self, service_tag: str) -> Pallet:
        """Vacate the system's slot on its open pallet."""
        tag = normalize_service_tag(service_tag)
        occupancy = await self._active_slot_of(tag)
        if occupancy is None:
            raise ResourceNotFoundError("System", tag, reason="is not on any pallet")
        holder = await self.db.get(Pallet, occupancy.pallet_id)
        pallet = (await self._lock_open_pallets(holder.pallet_number))[holder.pallet_number]
        self._check_unlocked(pallet)

        occupancy.removed_at = datetime.utcnow()
        await self.db.flush()

        log_activity(
            self.db, self.actor,
            action="removed",
            entity_type="system",
            entity_id=tag,
            entity_code=tag,
            summary=f"Removed {tag} from {pallet.pallet_number}",
        )
        return pallet

    # ── Lifecycle transitions ────────────────────────────────

    async def delete_pallet(self, pallet_number: str) -> None:
        """Soft-delete an empty open pallet and free its shape."""
        pallet = await self._find_open(pallet_number, for_update=True)
        occupied = len(pallet.active_slots)
        if occupied:
            raise ConflictError(
                f"Cannot delete pallet {pallet_number} with {occupied} system(s) on it. "
                "Move its systems first.",
            )

        pallet.is_deleted = True
        pallet.deleted_at = datetime.utcnow()
        pallet.shape = None
        await self.db.flush()

        log_activity(
            self.db, self.actor,
            action="deleted",
            entity_type="pallet",
            entity_id=pallet.id,
            entity_code=pallet_number,
            summary=f"Deleted pallet {pallet_number}",
        )

    async def set_lock(self, pallet_number: str, desired: bool) -> Pallet:
        """Set the lock flag; setting the current value again is a no-op."""
        pallet = await self._find_open(pallet_number, for_update=True)
        if pallet.locked == desired:
            return pallet

        pallet.locked = desired
        await self.db.flush()

        log_activity(
            self.db, self.actor,
            action="locked" if desired else "unlocked",
            entity_type="pallet",
            entity_id=pallet.id,
            entity_code=pallet_number,
            summary=f"{'Locked' if desired else 'Unlocked'} pallet {pallet_number}",
        )
        return pallet

    async def release(self, pallet_number: str) -> Pallet:
        """Release (ship) a pallet once every system on it has a DOA number."""
        pallet = await self._find_open(pallet_number, for_update=True)

        missing = [
            ps.service_tag
            for ps in pallet.active_slots
            if not str(ps.system.doa_number or "").strip()
        ]
        if missing:
            raise PreconditionFailedError(pallet_number, missing)

        pallet.status = "released"
        pallet.released_at = datetime.utcnow()
        pallet.released_by = self.actor.user_id
        await self.db.flush()

        log_activity(
            self.db, self.actor,
            action="released",
            entity_type="pallet",
            entity_id=pallet.id,
            entity_code=pallet_number,
            summary=f"Released pallet {pallet_number} ({len(pallet.active_slots)} systems)",
        )
        return pallet

    async def set_system_doa(self, service_tag: str, doa_number: str | None) -> System:
        tag = normalize_service_tag(service_tag)
        system = await self._get_system(tag)
        system.doa_number = normalize_doa(doa_number)
        await self.db.flush()

        log_activity(
            self.db, self.actor,
            action="doa_updated",
            entity_type="system",
            entity_id=tag,
            entity_code=tag,
            summary=(
                f"Set DOA number of {tag} to {system.doa_number}"
                if system.doa_number else f"Cleared DOA number of {tag}"
            ),
        )
        return system

    # ── Repair ───────────────────────────────────────────────

    async def backfill_shapes(self) -> list[str]:
        """Assign shapes to shapeless open pallets; returns their numbers."""

        async def _backfill(db: AsyncSession) -> list[str]:
            updated = await backfill_open_pallet_shapes(db)
            for pallet in updated:
                log_activity(
                    db, self.actor,
                    action="shape_assigned",
                    entity_type="pallet",
                    entity_id=pallet.id,
                    entity_code=pallet.pallet_number,
                    summary=f"Assigned shape {pallet.shape} to {pallet.pallet_number}",
                )
            return [p.pallet_number for p in updated]

        return await with_allocation_lock(self.db, [SHAPE_LOCK_KEY], _backfill)
