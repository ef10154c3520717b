"""Local staging of pallet edits before a batch submit.

`StagedEdits` holds the committed baseline, a draft copy the operator
rearranges, and the lock/delete/release intents staged next to it.  Nothing
here talks to the server; `app.reconciler.submit` turns the staged state
into remote calls.
"""

from __future__ import annotations

from typing import Iterable

from app.reconciler.operations import StagedFlags
from app.reconciler.snapshot import PalletSnapshot, Snapshot, SLOT_COUNT, by_id


class StagingError(ValueError):
    """A staged edit was refused locally."""


class StagedEdits:
    def __init__(self, pallets: Iterable[PalletSnapshot] = ()):
        self.rebaseline(pallets)

    def rebaseline(self, pallets: Iterable[PalletSnapshot]) -> None:
        """Adopt freshly fetched pallets as committed state and drop all flags."""
        self.baseline: Snapshot = tuple(pallets)
        self.draft: list[PalletSnapshot] = list(self.baseline)
        self.lock_flags: dict[str, bool] = {}
        self.delete_flags: set[str] = set()
        self.release_flags: set[str] = set()

    # ── Lookups ──────────────────────────────────────────────

    def _draft_index(self, pallet_id: str) -> int:
        for idx, p in enumerate(self.draft):
            if p.id == pallet_id:
                return idx
        raise StagingError(f"Unknown pallet {pallet_id}")

    def pallet(self, pallet_id: str) -> PalletSnapshot:
        return self.draft[self._draft_index(pallet_id)]

    def committed(self, pallet_id: str) -> PalletSnapshot | None:
        return by_id(self.baseline).get(pallet_id)

    def effective_locked(self, pallet_id: str) -> bool:
        """Staged lock intent if any, else the committed lock state."""
        if pallet_id in self.lock_flags:
            return self.lock_flags[pallet_id]
        return self.pallet(pallet_id).locked

    def flags(self) -> StagedFlags:
        return StagedFlags(
            lock=dict(self.lock_flags),
            delete=frozenset(self.delete_flags),
            release=frozenset(self.release_flags),
        )

    # ── Edits ────────────────────────────────────────────────

    def stage_move(
        self, from_id: str, from_slot: int, to_id: str, to_slot: int,
    ) -> None:
        """Drag a system from one slot to another (possibly on the same pallet)."""
        for slot in (from_slot, to_slot):
            if not 0 <= slot < SLOT_COUNT:
                raise StagingError(f"Slot {slot} out of range")
        # Committed locks only: moves are submitted before lock changes
        if self.pallet(from_id).locked or self.pallet(to_id).locked:
            raise StagingError("Cannot move systems when either pallet is locked")

        source = self.pallet(from_id)
        system = source.slots[from_slot]
        if system is None:
            raise StagingError("Nothing to move in that slot")
        if from_id == to_id and from_slot == to_slot:
            return

        if from_id == to_id:
            if source.slots[to_slot] is not None:
                raise StagingError("Target slot is occupied")
            updated = source.with_slot(from_slot, None).with_slot(to_slot, system)
            self.draft[self._draft_index(from_id)] = updated
            return

        target = self.pallet(to_id)
        if target.slots[to_slot] is not None:
            raise StagingError("Target slot is occupied")
        self.draft[self._draft_index(from_id)] = source.with_slot(from_slot, None)
        self.draft[self._draft_index(to_id)] = target.with_slot(to_slot, system)
        # A pallet that gains a system can no longer be deleted
        self.delete_flags.discard(to_id)

    def toggle_lock(self, pallet_id: str, locked: bool | None = None) -> bool:
        """Stage a lock state and return the effective one.

        With no argument a pending flag is cleared, otherwise the opposite
        of the committed state is staged.
        """
        if locked is not None:
            self.lock_flags[pallet_id] = locked
        elif pallet_id in self.lock_flags:
            del self.lock_flags[pallet_id]
        else:
            self.lock_flags[pallet_id] = not self.pallet(pallet_id).locked
        return self.effective_locked(pallet_id)

    def add_pallet(self, pallet: PalletSnapshot) -> None:
        """Track a pallet created on the server without touching staged edits."""
        self.baseline = self.baseline + (pallet,)
        self.draft.append(pallet)

    def mark_delete(self, pallet_id: str, flag: bool = True) -> None:
        if flag and not self.pallet(pallet_id).is_empty:
            raise StagingError("Only empty pallets can be deleted")
        if flag:
            self.delete_flags.add(pallet_id)
        else:
            self.delete_flags.discard(pallet_id)

    def mark_release(self, pallet_id: str, flag: bool = True) -> None:
        if flag and self.pallet(pallet_id).is_empty:
            raise StagingError("Cannot release an empty pallet")
        if flag:
            self.release_flags.add(pallet_id)
        else:
            self.release_flags.discard(pallet_id)

    def set_local_doa(self, service_tag: str, doa_number: str | None) -> None:
        """Edit a DOA in the draft only.

        The owning pallet's release mark is cleared so the operator has to
        confirm the release again after changing its paperwork.
        """
        for idx, p in enumerate(self.draft):
            if p.slot_of(service_tag) is not None:
                self.draft[idx] = p.with_doa(service_tag, doa_number)
                self.release_flags.discard(p.id)
                return
        raise StagingError(f"{service_tag} is not on an open pallet")

    # ── Committed updates (after a confirmed remote call) ────

    def apply_committed_doa(self, service_tag: str, doa_number: str | None) -> None:
        self.baseline = tuple(p.with_doa(service_tag, doa_number) for p in self.baseline)
        self.draft = [p.with_doa(service_tag, doa_number) for p in self.draft]

    def apply_committed_lock(self, pallet_id: str, locked: bool) -> None:
        self.baseline = tuple(
            p.with_locked(locked) if p.id == pallet_id else p for p in self.baseline
        )
        self.draft = [p.with_locked(locked) if p.id == pallet_id else p for p in self.draft]
        self.lock_flags.pop(pallet_id, None)

    # ── Change detection ─────────────────────────────────────

    def pallet_changed(self, pallet_id: str) -> bool:
        current = self.pallet(pallet_id)
        original = self.committed(pallet_id)
        if original is None or current.occupied_tags() != original.occupied_tags():
            return True
        if pallet_id in self.lock_flags and self.lock_flags[pallet_id] != original.locked:
            return True
        committed_doa = {s.service_tag: s.doa_number for s in original.systems}
        if any(committed_doa.get(s.service_tag) != s.doa_number for s in current.systems):
            return True
        return pallet_id in self.delete_flags or pallet_id in self.release_flags

    def has_pending_changes(self) -> bool:
        if len(self.draft) != len(self.baseline):
            return True
        return any(self.pallet_changed(p.id) for p in self.draft)
