"""Bulk DOA upload and CSV report tests."""

import csv
import io
from datetime import datetime

import pytest

from app.reconciler.client import ShippingAPIError
from app.reconciler.doa_upload import (
    DOAUploadError,
    parse_doa_rows,
    plan_updates,
    upload_doa_numbers,
)
from app.reconciler.report import (
    REPORT_COLUMNS,
    EmptyReport,
    build_report,
    filter_pallets,
    report_filename,
)
from app.reconciler.snapshot import PalletSnapshot, SlotSystem
from app.reconciler.staging import StagedEdits


def pallet(pid: str, *tags: str, locked: bool = False) -> PalletSnapshot:
    slots = [SlotSystem(t) for t in tags] + [None] * (9 - len(tags))
    return PalletSnapshot(id=pid, pallet_number=f"P-{pid}", locked=locked, slots=tuple(slots))


class DOAClient:
    def __init__(self, failing=(), systems=None):
        self.failing = set(failing)
        self.sent: dict[str, str] = {}
        self.systems = systems or {}

    async def update_system_doa(self, tag, doa):
        if tag in self.failing:
            raise ShippingAPIError("boom", status_code=500)
        self.sent[tag] = doa

    async def get_system(self, tag):
        if tag not in self.systems:
            raise ShippingAPIError("not found", status_code=404)
        return self.systems[tag]


@pytest.mark.unit
class TestParse:

    def test_header_is_skipped_and_last_row_wins(self):
        parsed = parse_doa_rows("SERVICE_TAG,doa_number\nab1,D-1\nAB1,D-2\n")
        assert parsed.values == {"AB1": "D-2"}
        assert parsed.invalid_rows == 0

    def test_tab_separated(self):
        parsed = parse_doa_rows("st1\tD 1\nst2\tD,2")
        assert parsed.values == {"ST1": "D 1", "ST2": "D,2"}

    def test_rows_without_a_second_column_are_invalid(self):
        parsed = parse_doa_rows("ST1\nST2,D2\n,D3")
        assert parsed.values == {"ST2": "D2"}
        assert parsed.invalid_rows == 2

    def test_empty_input(self):
        with pytest.raises(DOAUploadError):
            parse_doa_rows("   \n\n")

    def test_no_valid_rows(self):
        with pytest.raises(DOAUploadError):
            parse_doa_rows("justonecolumn")

    def test_plan_skips_inactive_empty_and_long(self):
        parsed = parse_doa_rows("ST1,D1\nST2,\nST3," + "X" * 21 + "\nGONE,D4")
        updates, refused = plan_updates(parsed, ["ST1", "ST2", "ST3"])
        assert updates == {"ST1": "D1"}
        assert refused == 3


@pytest.mark.asyncio
class TestUpload:

    async def test_upload_counts_and_patches_staged_state(self):
        staged = StagedEdits([pallet("1", "ST1", "ST2"), pallet("2", "ST3")])
        staged.mark_release("2")
        client = DOAClient(failing={"ST2"})

        result = await upload_doa_numbers(client, staged, "ST1,D1\nST2,D2\nST3,D3\nNOPE,D9\nbad")

        assert sorted(result.updated) == ["ST1", "ST3"]
        assert result.not_updated == 3
        assert result.summary == "2 updated, 3 did not update"
        assert client.sent == {"ST1": "D1", "ST3": "D3"}
        assert staged.baseline[0].slots[0].doa_number == "D1"
        assert staged.pallet("2").slots[0].doa_number == "D3"
        assert staged.release_flags == {"2"}


@pytest.mark.asyncio
class TestReport:

    async def test_report_rows(self):
        client = DOAClient(systems={
            "ST1": {"ppid": " PP1 ", "dpn": "DPN", "config": "7", "dell_customer": "ACME",
                    "issue": "No POST", "location": "A1", "doa_number": "D1"},
        })
        pallets = [pallet("1", "ST1", "ST2")]

        text = await build_report(client, pallets)
        rows = list(csv.reader(io.StringIO(text)))

        assert rows[0] == REPORT_COLUMNS
        assert rows[1] == ["P-1", "ST1", "PP1", "DPN", "Config 7", "ACME", "No POST", "A1", "D1"]
        assert rows[2] == ["P-1", "ST2", "", "", "", "", "", "", ""]

    async def test_lock_filter(self):
        pallets = [pallet("1", "ST1", locked=True), pallet("2", "ST2")]
        assert [p.id for p in filter_pallets(pallets, "locked")] == ["1"]
        assert [p.id for p in filter_pallets(pallets, "unlocked")] == ["2"]
        assert len(filter_pallets(pallets, "all")) == 2

    async def test_empty_selection(self):
        with pytest.raises(EmptyReport):
            await build_report(DOAClient(), [pallet("1", locked=False)], "locked")
        with pytest.raises(EmptyReport):
            await build_report(DOAClient(), [pallet("1")], "all")


@pytest.mark.unit
class TestReportFilename:

    def test_filename(self):
        when = datetime(2025, 6, 1, 8, 30, 5)
        assert report_filename("all", when) == "pallet-report-all_active-2025-06-01-08-30-05.csv"
        assert report_filename("locked", when) == "pallet-report-locked-2025-06-01-08-30-05.csv"
