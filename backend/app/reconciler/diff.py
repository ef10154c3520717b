"""Pure diff between a committed baseline and an edited draft."""

from __future__ import annotations

from typing import Iterable

from app.reconciler.operations import (
    Delete, Move, Operation, Release, SetDOA, SetLock, StagedFlags,
)
from app.reconciler.snapshot import PalletSnapshot, by_id, owner_of


def compute_moves(
    baseline: Iterable[PalletSnapshot], draft: Iterable[PalletSnapshot],
) -> list[Move]:
    """One Move per system whose owning pallet differs between the two.

    Order follows the baseline: pallets as listed, then slot index.
    Re-ordering inside a pallet is not a move.
    """
    draft = tuple(draft)
    moves: list[Move] = []
    for pallet in baseline:
        for system in pallet.systems:
            owner = owner_of(draft, system.service_tag)
            if owner is not None and owner.id != pallet.id:
                moves.append(Move(system.service_tag, pallet.pallet_number, owner.pallet_number))
    return moves


def compute_doa_edits(
    baseline: Iterable[PalletSnapshot], draft: Iterable[PalletSnapshot],
) -> list[SetDOA]:
    committed = {s.service_tag: s.doa_number for p in baseline for s in p.systems}
    edits: list[SetDOA] = []
    for pallet in draft:
        for system in pallet.systems:
            if system.service_tag in committed and committed[system.service_tag] != system.doa_number:
                edits.append(SetDOA(system.service_tag, system.doa_number))
    return edits


def missing_doa_by_pallet(
    draft: Iterable[PalletSnapshot], release: Iterable[str],
) -> dict[str, list[str]]:
    """Service tags without a DOA on each pallet marked for release."""
    wanted = set(release)
    missing: dict[str, list[str]] = {}
    for pallet in draft:
        if pallet.id in wanted:
            tags = pallet.missing_doa()
            if tags:
                missing[pallet.pallet_number] = tags
    return missing


def diff(
    baseline: Iterable[PalletSnapshot],
    draft: Iterable[PalletSnapshot],
    staged: StagedFlags | None = None,
) -> list[Operation]:
    """Operations that bring the server from `baseline` to `draft`.

    Returned in submission order: moves, DOA edits, deletions of pallets
    that are flagged and empty in the draft, releases, then lock changes
    that differ from the committed lock state on pallets that stay open.
    """
    baseline = tuple(baseline)
    draft = tuple(draft)
    staged = staged or StagedFlags()
    committed = by_id(baseline)

    ops: list[Operation] = []
    ops.extend(compute_moves(baseline, draft))
    ops.extend(compute_doa_edits(baseline, draft))
    deleted = [p for p in draft if p.id in staged.delete and p.is_empty]
    released = [p for p in draft if p.id in staged.release]
    ops.extend(Delete(p.pallet_number) for p in deleted)
    ops.extend(Release(p.pallet_number) for p in released)
    # A pallet that leaves the open set in this batch takes no lock change
    closed = {p.id for p in deleted} | {p.id for p in released}
    for p in draft:
        if p.id not in staged.lock or p.id in closed:
            continue
        current = committed[p.id].locked if p.id in committed else p.locked
        if staged.lock[p.id] != current:
            ops.append(SetLock(p.pallet_number, staged.lock[p.id]))
    return ops
