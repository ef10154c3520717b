"""Pallet shapes: cosmetic tokens that tell open pallets apart on the floor.

Ten shapes exist.  Each open pallet holds at most one, and no two open
pallets hold the same one.  When all ten are in use further pallets stay
shapeless until a pallet is released or deleted; that is a normal state,
not an error.

The read of "shapes in use" and the write of the chosen shape must happen
under the `SHAPE_LOCK_KEY` allocation lock.
"""

import logging

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.pallet import Pallet

logger = logging.getLogger(__name__)

PALLET_SHAPES = (
    "star",
    "triangle_up",
    "triangle_right",
    "triangle_left",
    "triangle_down",
    "circle",
    "square",
    "diamond",
    "pentagon",
    "hexagon",
)


def allocate_shape(in_use: set[str]) -> str | None:
    """First shape, in enumeration order, not in `in_use`; None when exhausted."""
    taken = {str(s or "").strip() for s in in_use}
    for shape in PALLET_SHAPES:
        if shape not in taken:
            return shape
    return None


def _open_pallets():
    return select(Pallet).where(
        Pallet.status == "open",
        Pallet.is_deleted == False,  # noqa: E712
    )


async def open_pallet_shapes(db: AsyncSession) -> set[str]:
    result = await db.execute(
        select(Pallet.shape).where(
            Pallet.status == "open",
            Pallet.is_deleted == False,  # noqa: E712
            Pallet.shape.is_not(None),
        )
    )
    return {s.strip() for s in result.scalars().all() if s and s.strip()}


async def allocate_open_pallet_shape(db: AsyncSession) -> str | None:
    return allocate_shape(await open_pallet_shapes(db))


async def backfill_open_pallet_shapes(db: AsyncSession) -> list[Pallet]:
    """Give shapes to shapeless open pallets, oldest first, until exhausted.

    Safe to re-run: pallets that already hold a shape are left alone.
    Returns the pallets that received a shape (not yet committed).
    """
    result = await db.execute(
        _open_pallets()
        .where(or_(Pallet.shape.is_(None), func.trim(Pallet.shape) == ""))
        .order_by(Pallet.created_at.asc(), Pallet.pallet_number.asc())
        .with_for_update()
    )
    shapeless = list(result.scalars().all())

    in_use = await open_pallet_shapes(db)
    updated: list[Pallet] = []
    for pallet in shapeless:
        shape = allocate_shape(in_use)
        if shape is None:
            break
        pallet.shape = shape
        in_use.add(shape)
        updated.append(pallet)

    await db.flush()
    logger.info(
        "Shape backfill: %d of %d shapeless open pallet(s) updated",
        len(updated), len(shapeless),
    )
    return updated
