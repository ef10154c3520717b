"""Batch submission pipeline tests."""

import asyncio

import httpx
import pytest
from httpx import ASGITransport

from app.main import app
from app.reconciler.client import (
    MissingDOAError,
    PalletConflict,
    PalletNotFound,
    ShippingAPIError,
    ShippingClient,
)
from app.reconciler.diff import diff
from app.reconciler.operations import Delete, Move, Release, SetLock
from app.reconciler.snapshot import PalletSnapshot, SlotSystem
from app.reconciler.staging import StagedEdits
from app.reconciler.submit import (
    MISSING_DOA_MESSAGE,
    Reconciler,
    SubmissionInProgress,
)


def pallet(pid: str, *systems, locked: bool = False) -> PalletSnapshot:
    slots = [None] * 9
    for idx, entry in enumerate(systems):
        tag, doa = entry if isinstance(entry, tuple) else (entry, None)
        slots[idx] = SlotSystem(tag, doa)
    return PalletSnapshot(
        id=pid, pallet_number=f"P-{pid}", locked=locked, shape="star", slots=tuple(slots),
    )


class FakeClient:
    """Records calls; `fail` maps (call, first argument) to an exception.

    Like the server, it refuses any change to a pallet that an earlier
    call released or deleted.
    """

    def __init__(self, refreshed=(), fail=None):
        self.calls: list[tuple] = []
        self.refreshed = list(refreshed)
        self.fail = fail or {}
        self.systems: dict[str, dict] = {}
        self.closed: set[str] = set()

    async def _call(self, name: str, *args):
        self.calls.append((name, *args))
        exc = self.fail.get((name, args[0] if args else None))
        if exc is not None:
            raise exc

    async def _pallet_call(self, name: str, number: str, *args):
        await self._call(name, number, *args)
        if number in self.closed:
            raise PalletNotFound(f"Pallet {number} is not open", status_code=404)

    async def move_system_between_pallets(self, tag, src, dst):
        await self._call("move", tag, src, dst)
        if {src, dst} & self.closed:
            raise PalletNotFound("Pallet is not open", status_code=404)

    async def update_system_doa(self, tag, doa):
        await self._call("doa", tag, doa)

    async def delete_pallet(self, number):
        await self._pallet_call("delete", number)
        self.closed.add(number)

    async def release_pallet(self, number):
        await self._pallet_call("release", number)
        self.closed.add(number)
        return {}

    async def set_pallet_lock(self, number, locked):
        await self._pallet_call("lock", number, locked)
        return {}

    async def get_open_pallets(self):
        await self._call("refresh")
        return self.refreshed

    async def get_system(self, tag):
        if tag not in self.systems:
            raise ShippingAPIError("not found", status_code=404)
        return self.systems[tag]

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


def three_moves() -> StagedEdits:
    staged = StagedEdits([
        pallet("1", ("ST1", "D1"), ("ST2", "D2"), ("ST3", "D3")),
        pallet("2"),
        pallet("3"),
    ])
    staged.stage_move("1", 0, "2", 0)
    staged.stage_move("1", 1, "2", 1)
    staged.stage_move("1", 2, "2", 2)
    staged.mark_delete("3")
    staged.mark_release("2")
    staged.toggle_lock("1", True)
    return staged


@pytest.mark.asyncio
class TestPipeline:

    async def test_failing_move_stops_the_batch(self):
        client = FakeClient(fail={("move", "ST2"): PalletConflict("Pallet P-2 is full", status_code=409)})
        reconciler = Reconciler(client, three_moves())

        result = await reconciler.submit()

        assert result.applied == [Move("ST1", "P-1", "P-2")]
        assert result.failed == Move("ST2", "P-1", "P-2")
        assert "Pallet P-2 is full" in result.error
        assert client.names() == ["move", "move", "refresh"]

    async def test_successful_batch_runs_steps_in_order(self):
        client = FakeClient(refreshed=[pallet("9")])
        reconciler = Reconciler(client, three_moves())

        result = await reconciler.submit()

        assert result.ok
        assert client.names() == ["move", "move", "move", "delete", "release", "lock", "refresh"]
        assert [type(op) for op in result.applied] == [Move, Move, Move, Delete, Release, SetLock]
        assert result.refreshed
        assert [p.id for p in reconciler.staged.baseline] == ["9"]
        assert not reconciler.staged.has_pending_changes()
        assert result.summary == (
            "Submitted 3 move(s), Deleted 1 empty pallet(s), Released 1 pallet(s), "
            "Locks: 1 locked / 0 unlocked"
        )

    async def test_missing_doa_aborts_before_any_call(self):
        staged = StagedEdits([pallet("1", ("ST1", "D1"), "ST2")])
        staged.mark_release("1")
        client = FakeClient()

        result = await Reconciler(client, staged).submit()

        assert client.calls == []
        assert result.error == MISSING_DOA_MESSAGE
        assert result.missing_doa == {"P-1": ["ST2"]}
        assert "1" in staged.release_flags

    async def test_release_race_surfaces_missing_tags(self):
        staged = StagedEdits([
            pallet("1", ("ST1", "D1")), pallet("2", ("ST2", "D2")), pallet("3"), pallet("4"),
        ])
        staged.mark_delete("3")
        staged.mark_release("1")
        staged.mark_release("2")
        staged.toggle_lock("4", True)
        client = FakeClient(fail={
            ("release", "P-2"): MissingDOAError("missing DOA number for ST9", ["ST9"], status_code=412),
        })

        result = await Reconciler(client, staged).submit()

        assert result.missing_doa == {"P-2": ["ST9"]}
        assert result.error == MISSING_DOA_MESSAGE
        assert [type(op) for op in result.applied] == [Delete, Release]
        assert "lock" not in client.names()
        assert client.names()[-1] == "refresh"

    async def test_lock_and_release_on_one_pallet_only_releases(self):
        staged = StagedEdits([pallet("1", ("ST1", "D1"))])
        staged.toggle_lock("1", True)
        staged.mark_release("1")
        client = FakeClient()

        result = await Reconciler(client, staged).submit()

        assert result.ok, result.error
        assert client.names() == ["release", "refresh"]
        assert result.applied == [Release("P-1")]

    async def test_failed_delete_skips_releases_and_locks(self):
        staged = StagedEdits([pallet("1", ("ST1", "D1")), pallet("2"), pallet("3")])
        staged.mark_delete("2")
        staged.mark_release("1")
        staged.toggle_lock("3", True)
        client = FakeClient(fail={("delete", "P-2"): PalletConflict("Pallet is not empty", status_code=409)})

        result = await Reconciler(client, staged).submit()

        assert result.failed == Delete("P-2")
        assert result.applied == []
        assert "Pallet is not empty" in result.error
        assert client.names() == ["delete", "refresh"]

    async def test_second_lock_failure_keeps_the_first_applied(self):
        staged = StagedEdits([pallet("1"), pallet("2")])
        staged.toggle_lock("1", True)
        staged.toggle_lock("2", True)
        client = FakeClient(fail={
            ("lock", "P-2"): ShippingAPIError("timed out"),
            ("refresh", None): ShippingAPIError("offline"),
        })

        result = await Reconciler(client, staged).submit()

        assert result.applied == [SetLock("P-1", True)]
        assert result.failed == SetLock("P-2", True)
        assert staged.pallet("1").locked is True
        assert staged.committed("1").locked is True
        assert staged.lock_flags == {"2": True}
        assert diff(staged.baseline, staged.draft, staged.flags()) == [SetLock("P-2", True)]

    async def test_only_differing_locks_are_sent(self):
        staged = StagedEdits([pallet("1", locked=True), pallet("2"), pallet("3")])
        staged.toggle_lock("1", True)
        staged.toggle_lock("2", True)
        staged.toggle_lock("3", False)
        client = FakeClient()

        result = await Reconciler(client, staged).submit()

        assert client.calls == [("lock", "P-2", True), ("refresh",)]
        assert result.applied == [SetLock("P-2", True)]

    async def test_nothing_to_submit(self):
        client = FakeClient()
        result = await Reconciler(client, StagedEdits([pallet("1")])).submit()
        assert result.summary == "No changes"
        assert client.calls == []

    async def test_failed_refresh_is_reported(self):
        staged = StagedEdits([pallet("1")])
        staged.toggle_lock("1", True)
        client = FakeClient(fail={("refresh", None): ShippingAPIError("offline")})

        result = await Reconciler(client, staged).submit()

        assert result.ok
        assert not result.refreshed
        assert "offline" in result.refresh_error
        assert staged.baseline[0].locked is True

    async def test_second_submit_while_running(self):
        gate = asyncio.Event()

        class SlowClient(FakeClient):
            async def set_pallet_lock(self, number, locked):
                await gate.wait()
                return await super().set_pallet_lock(number, locked)

        staged = StagedEdits([pallet("1")])
        staged.toggle_lock("1", True)
        reconciler = Reconciler(SlowClient(), staged)

        first = asyncio.create_task(reconciler.submit())
        await asyncio.sleep(0)
        assert reconciler.submitting
        with pytest.raises(SubmissionInProgress):
            await reconciler.submit()

        gate.set()
        assert (await first).ok
        assert not reconciler.submitting


@pytest.mark.asyncio
class TestArtifacts:

    async def test_labels_and_manifests_follow_confirmed_mutations(self):
        client = FakeClient()
        client.systems["ST1"] = {"service_tag": "ST1", "dpn": "DPN-7", "ppid": "PP1", "config": "2"}

        result = await Reconciler(client, three_moves()).submit()

        labels = [a for a in result.artifacts if a.kind == "label"]
        manifests = [a for a in result.artifacts if a.kind == "manifest"]
        assert sorted(a.key for a in labels) == ["ST1", "ST2", "ST3"]
        assert [a.key for a in manifests] == ["P-2"]

        by_tag = {a.key: a.data for a in labels}
        assert by_tag["ST1"]["dpn"] == "DPN-7"
        assert by_tag["ST1"]["pallet_number"] == "P-2"
        assert by_tag["ST2"]["dpn"] == "UNKNOWN"
        assert "<svg" in by_tag["ST1"]["url_qr"]

        systems = {s["service_tag"]: s for s in manifests[0].data["systems"]}
        assert systems["ST1"]["ppid"] == "PP1"
        assert systems["ST2"]["ppid"] == "MISSING-PPID"
        assert manifests[0].data["dpn"] == "DPN-7"

    async def test_no_artifacts_for_failed_steps(self):
        client = FakeClient(fail={("move", "ST1"): PalletConflict("locked", status_code=409)})
        result = await Reconciler(client, three_moves()).submit()
        assert result.artifacts == []


@pytest.mark.asyncio
class TestImmediateEdits:

    async def test_save_doa_trims_before_cutting(self):
        staged = StagedEdits([pallet("1", "ST1")])
        staged.mark_release("1")
        client = FakeClient()

        await Reconciler(client, staged).save_doa("ST1", "   " + "D" * 25)

        assert client.calls == [("doa", "ST1", "D" * 20)]
        assert staged.baseline[0].slots[0].doa_number == "D" * 20
        assert staged.release_flags == set()

    async def test_unreadable_response_fails_the_step_and_still_refreshes(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            if request.method == "POST":
                return httpx.Response(200, text="<html>maintenance</html>")
            return httpx.Response(200, json={"items": [], "total": 0, "limit": 200, "offset": 0})

        staged = StagedEdits([pallet("1", ("ST1", "D1"))])
        staged.mark_release("1")
        shipping = ShippingClient(base_url="http://test", transport=httpx.MockTransport(handler))
        async with shipping:
            result = await Reconciler(shipping, staged).submit()

        assert result.failed == Release("P-1")
        assert "Unreadable response" in result.error
        assert result.refreshed
        assert seen == [("POST", "/api/pallets/P-1/release"), ("GET", "/api/pallets/")]


@pytest.mark.integration
@pytest.mark.asyncio
class TestAgainstApi:

    async def test_stage_and_submit(self, client, auth_headers, make_systems):
        await make_systems("INT1", "INT2", doa="DOA-INT")
        shipping = ShippingClient(
            base_url="http://test",
            token=auth_headers["Authorization"].removeprefix("Bearer "),
            transport=ASGITransport(app=app),
        )
        async with shipping:
            reconciler = Reconciler(shipping)
            first = await reconciler.create_pallet()
            second = await reconciler.create_pallet()
            spare = await reconciler.create_pallet()
            await shipping.place_system(first.pallet_number, "INT1")
            await shipping.place_system(first.pallet_number, "INT2")
            await reconciler.refresh()

            staged = reconciler.staged
            staged.stage_move(first.id, 1, second.id, 0)
            staged.mark_delete(spare.id)
            staged.mark_release(second.id)
            staged.toggle_lock(first.id, True)
            assert staged.has_pending_changes()

            result = await reconciler.submit()

            assert result.ok, result.error
            assert result.refreshed
            open_numbers = {p.pallet_number for p in staged.baseline}
            assert open_numbers == {first.pallet_number}
            assert staged.baseline[0].locked is True
            assert staged.baseline[0].occupied_tags() == {"INT1"}

            released = await shipping.get_pallet(second.pallet_number)
            assert released["status"] == "released"
            assert {a.kind for a in result.artifacts} == {"label", "manifest"}

    async def test_lock_staged_on_a_released_pallet(self, client, auth_headers, make_systems):
        await make_systems("INT3", doa="DOA-3")
        shipping = ShippingClient(
            base_url="http://test",
            token=auth_headers["Authorization"].removeprefix("Bearer "),
            transport=ASGITransport(app=app),
        )
        async with shipping:
            reconciler = Reconciler(shipping)
            created = await reconciler.create_pallet()
            await shipping.place_system(created.pallet_number, "INT3")
            await reconciler.refresh()

            reconciler.staged.toggle_lock(created.id, True)
            reconciler.staged.mark_release(created.id)
            result = await reconciler.submit()

            assert result.ok, result.error
            assert result.applied == [Release(created.pallet_number)]
            released = await shipping.get_pallet(created.pallet_number)
            assert released["status"] == "released"
