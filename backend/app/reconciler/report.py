"""CSV report of the systems currently on open pallets."""

from __future__ import annotations

import asyncio
import csv
import io
from datetime import datetime
from typing import Iterable

from app.reconciler.client import ShippingAPIError, ShippingClient
from app.reconciler.snapshot import PalletSnapshot, SlotSystem

REPORT_COLUMNS = [
    "pallet_number",
    "service_tag",
    "ppid",
    "DPN",
    "Config",
    "Dell Customer",
    "issue",
    "location",
    "doa_number",
]
LOCK_FILTERS = ("all", "locked", "unlocked")


class EmptyReport(ValueError):
    pass


def filter_pallets(pallets: Iterable[PalletSnapshot], lock_filter: str = "all") -> list[PalletSnapshot]:
    if lock_filter not in LOCK_FILTERS:
        raise ValueError(f"Unknown lock filter {lock_filter!r}")
    if lock_filter == "all":
        return list(pallets)
    want_locked = lock_filter == "locked"
    return [p for p in pallets if p.locked == want_locked]


async def _row(client: ShippingClient, pallet_number: str, system: SlotSystem) -> list[str]:
    try:
        d = await client.get_system(system.service_tag)
    except ShippingAPIError:
        return [pallet_number, system.service_tag, "", "", "", "", "", "", system.doa_number or ""]
    return [
        pallet_number,
        system.service_tag,
        (d.get("ppid") or "").strip(),
        d.get("dpn") or "",
        f"Config {d['config']}" if d.get("config") else "",
        d.get("dell_customer") or "",
        d.get("issue") or "",
        d.get("location") or "",
        d.get("doa_number") or system.doa_number or "",
    ]


async def build_report(
    client: ShippingClient, pallets: Iterable[PalletSnapshot], lock_filter: str = "all",
) -> str:
    """One CSV row per system, with live details fetched per system."""
    selected = filter_pallets(pallets, lock_filter)
    if not selected:
        raise EmptyReport("No pallets match the selected filters.")

    rows = []
    for pallet in selected:
        rows.extend(await asyncio.gather(
            *(_row(client, pallet.pallet_number, s) for s in pallet.systems)
        ))
    if not rows:
        raise EmptyReport("No units found for the selected filters.")

    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(REPORT_COLUMNS)
    writer.writerows(rows)
    return output.getvalue()


def report_filename(lock_filter: str = "all", now: datetime | None = None) -> str:
    ts = (now or datetime.utcnow()).strftime("%Y-%m-%d-%H-%M-%S")
    status = "all_active" if lock_filter == "all" else lock_filter
    return f"pallet-report-{status}-{ts}.csv"
