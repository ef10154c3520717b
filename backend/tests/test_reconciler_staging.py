"""Staged edits and the baseline/draft diff."""

import pytest

from app.reconciler.diff import diff, missing_doa_by_pallet
from app.reconciler.operations import (
    Delete, Move, Release, SetDOA, SetLock, StagedFlags,
)
from app.reconciler.snapshot import PalletSnapshot, SlotSystem, owner_of
from app.reconciler.staging import StagedEdits, StagingError


def pallet(pid: str, *systems, locked: bool = False) -> PalletSnapshot:
    """systems: service tags or (tag, doa) pairs, filling slots from 0."""
    slots = [None] * 9
    for idx, entry in enumerate(systems):
        tag, doa = entry if isinstance(entry, tuple) else (entry, None)
        slots[idx] = SlotSystem(tag, doa)
    return PalletSnapshot(
        id=pid, pallet_number=f"PALLET-20250601-{pid}", locked=locked, slots=tuple(slots),
    )


@pytest.fixture
def staged() -> StagedEdits:
    return StagedEdits([
        pallet("001", "ST1", "ST2"),
        pallet("002", "ST3"),
        pallet("003"),
    ])


@pytest.mark.unit
class TestSnapshot:

    def test_from_api(self):
        snap = PalletSnapshot.from_api({
            "id": "p1",
            "pallet_number": "PALLET-20250601-001",
            "status": "open",
            "locked": True,
            "shape": "star",
            "slots": [None, {"slot_index": 1, "service_tag": "ST1", "doa_number": "D"}] + [None] * 7,
        })
        assert snap.locked is True
        assert snap.slots[1] == SlotSystem("ST1", "D")
        assert snap.occupied_tags() == frozenset({"ST1"})
        assert len(snap.slots) == 9

    def test_owner_of(self, staged):
        assert owner_of(staged.draft, "ST3").id == "002"
        assert owner_of(staged.draft, "NOPE") is None


@pytest.mark.unit
class TestStaging:

    def test_no_changes_initially(self, staged):
        assert staged.has_pending_changes() is False

    def test_stage_move_between_pallets(self, staged):
        staged.stage_move("001", 0, "003", 4)

        assert staged.pallet("001").slots[0] is None
        assert staged.pallet("003").slots[4].service_tag == "ST1"
        assert staged.baseline[0].slots[0].service_tag == "ST1"
        assert staged.pallet_changed("001") and staged.pallet_changed("003")
        assert not staged.pallet_changed("002")

    def test_reorder_within_pallet_is_not_a_change(self, staged):
        staged.stage_move("001", 0, "001", 5)
        assert staged.pallet("001").slots[5].service_tag == "ST1"
        assert staged.has_pending_changes() is False

    def test_occupied_target_is_refused(self, staged):
        with pytest.raises(StagingError):
            staged.stage_move("001", 0, "002", 0)

    def test_committed_lock_blocks_moves(self):
        staged = StagedEdits([pallet("001", "ST1"), pallet("002", locked=True)])
        with pytest.raises(StagingError):
            staged.stage_move("001", 0, "002", 0)

    def test_toggle_lock_stages_then_clears(self, staged):
        assert staged.toggle_lock("002") is True
        assert staged.has_pending_changes() is True
        assert staged.toggle_lock("002") is False
        assert staged.lock_flags == {}
        assert staged.has_pending_changes() is False

    def test_lock_flag_equal_to_committed_is_not_a_change(self, staged):
        staged.toggle_lock("002", False)
        assert staged.has_pending_changes() is False

    def test_mark_delete_only_empty(self, staged):
        with pytest.raises(StagingError):
            staged.mark_delete("001")
        staged.mark_delete("003")
        assert staged.has_pending_changes() is True

    def test_moving_into_pallet_drops_its_delete_flag(self, staged):
        staged.mark_delete("003")
        staged.stage_move("002", 0, "003", 0)
        assert "003" not in staged.delete_flags

    def test_release_flag_counts_as_change(self, staged):
        staged.mark_release("002")
        assert staged.pallet_changed("002")

    def test_local_doa_edit_unmarks_release(self, staged):
        staged.mark_release("001")
        staged.set_local_doa("ST1", "DOA-1")
        assert "001" not in staged.release_flags
        assert staged.pallet("001").slots[0].doa_number == "DOA-1"

    def test_rebaseline_drops_flags(self, staged):
        staged.mark_release("001")
        staged.toggle_lock("002")
        staged.rebaseline([pallet("009")])
        assert staged.flags() == StagedFlags()
        assert staged.has_pending_changes() is False


@pytest.mark.unit
class TestDiff:

    def test_moves_in_baseline_order(self, staged):
        staged.stage_move("002", 0, "003", 0)
        staged.stage_move("001", 1, "003", 1)
        staged.stage_move("001", 0, "002", 0)

        ops = diff(staged.baseline, staged.draft, staged.flags())

        assert ops == [
            Move("ST1", "PALLET-20250601-001", "PALLET-20250601-002"),
            Move("ST2", "PALLET-20250601-001", "PALLET-20250601-003"),
            Move("ST3", "PALLET-20250601-002", "PALLET-20250601-003"),
        ]

    def test_full_batch_order(self, staged):
        staged.stage_move("002", 0, "001", 2)
        staged.mark_delete("002")
        staged.mark_release("001")
        staged.toggle_lock("003", True)

        ops = diff(staged.baseline, staged.draft, staged.flags())

        assert [type(op) for op in ops] == [Move, Delete, Release, SetLock]
        assert ops[-1] == SetLock("PALLET-20250601-003", True)

    def test_no_lock_change_for_pallets_leaving_the_open_set(self, staged):
        staged.toggle_lock("001", True)
        staged.mark_release("001")
        staged.toggle_lock("003", True)
        staged.mark_delete("003")
        staged.toggle_lock("002", True)

        ops = diff(staged.baseline, staged.draft, staged.flags())

        assert ops == [
            Delete("PALLET-20250601-003"),
            Release("PALLET-20250601-001"),
            SetLock("PALLET-20250601-002", True),
        ]

    def test_delete_flag_on_non_empty_draft_is_skipped(self, staged):
        flags = StagedFlags(delete=frozenset({"001"}))
        assert diff(staged.baseline, staged.draft, flags) == []

    def test_draft_doa_edits_become_operations(self, staged):
        staged.set_local_doa("ST3", "DOA-3")
        assert diff(staged.baseline, staged.draft, staged.flags()) == [SetDOA("ST3", "DOA-3")]

    def test_diff_is_pure(self, staged):
        staged.stage_move("001", 0, "003", 0)
        staged.toggle_lock("002")
        baseline, draft, flags = staged.baseline, tuple(staged.draft), staged.flags()

        first = diff(baseline, draft, flags)
        second = diff(baseline, draft, flags)

        assert first == second
        assert staged.baseline == baseline
        assert tuple(staged.draft) == draft

    def test_missing_doa_by_pallet(self):
        draft = [
            pallet("001", ("ST1", "D"), "ST2"),
            pallet("002", "ST3"),
        ]
        assert missing_doa_by_pallet(draft, {"001"}) == {"PALLET-20250601-001": ["ST2"]}
        assert missing_doa_by_pallet(draft, set()) == {}
