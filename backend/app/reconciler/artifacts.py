"""Shipping labels and pallet manifests produced after a submit.

Artifacts are built only for mutations the server has confirmed.  System
details are looked up best-effort: a failed lookup falls back to
placeholder values instead of failing the artifact.  Codes are rendered
as SVG QR codes with segno; turning them into printable pages is left to
the caller.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

import segno

from app.config import settings
from app.reconciler.client import ShippingAPIError, ShippingClient
from app.reconciler.operations import Move
from app.reconciler.snapshot import PalletSnapshot

logger = logging.getLogger(__name__)


@dataclass
class Artifact:
    kind: str  # label | manifest
    key: str   # service tag for labels, pallet number for manifests
    data: dict = field(default_factory=dict)


def qr_svg(value: str) -> str:
    qr = segno.make(value)
    buf = io.BytesIO()
    qr.save(buf, kind="svg", scale=3, xmldecl=False)
    return buf.getvalue().decode("utf-8")


async def _system_details(client: ShippingClient, service_tag: str) -> dict | None:
    try:
        return await client.get_system(service_tag)
    except ShippingAPIError as exc:
        logger.warning("Could not fetch details for %s: %s", service_tag, exc)
        return None


async def build_label(
    client: ShippingClient, move: Move, destination: PalletSnapshot | None,
) -> Artifact:
    details = await _system_details(client, move.service_tag) or {}
    url = f"{settings.frontend_url}{move.service_tag}"
    return Artifact(
        kind="label",
        key=move.service_tag,
        data={
            "service_tag": move.service_tag,
            "pallet_number": destination.pallet_number if destination else "UNKNOWN",
            "shape": destination.shape if destination else None,
            "dpn": details.get("dpn") or "UNKNOWN",
            "config": details.get("config") or "",
            "dell_customer": details.get("dell_customer") or "",
            "ppid": details.get("ppid") or "",
            "url": url,
            "url_qr": qr_svg(url),
        },
    )


def _safe(value: str | None, placeholder: str) -> str:
    return (value or "").strip() or placeholder


async def build_manifest(
    client: ShippingClient, pallet: PalletSnapshot, released_on: date | None = None,
) -> Artifact:
    details = await asyncio.gather(
        *(_system_details(client, s.service_tag) for s in pallet.systems)
    )

    systems = []
    dpns = set()
    for slot_system, info in zip(pallet.systems, details):
        info = info or {}
        tag = _safe(info.get("service_tag") or slot_system.service_tag, "MISSING-ST")
        ppid = _safe(info.get("ppid"), "MISSING-PPID")
        if info.get("dpn"):
            dpns.add(info["dpn"])
        systems.append({
            "service_tag": tag,
            "ppid": ppid,
            "doa_number": (info.get("doa_number") or slot_system.doa_number or "").strip(),
            "service_tag_qr": qr_svg(tag),
            "ppid_qr": qr_svg(ppid),
        })

    released = (released_on or date.today()).isoformat()
    dpn = dpns.pop() if len(dpns) == 1 else "MIXED"
    number = _safe(pallet.pallet_number, "MISSING-PALLET")
    return Artifact(
        kind="manifest",
        key=pallet.pallet_number,
        data={
            "pallet_number": number,
            "date_released": released,
            "dpn": dpn,
            "systems": systems,
            "pallet_number_qr": qr_svg(number),
            "date_released_qr": qr_svg(released),
            "dpn_qr": qr_svg(dpn),
        },
    )


async def generate_artifacts(
    client: ShippingClient,
    moves: Iterable[Move],
    released: Iterable[PalletSnapshot],
    pallets_by_number: dict[str, PalletSnapshot],
) -> list[Artifact]:
    """Labels for confirmed moves and manifests for confirmed releases.

    Builders run concurrently; one that fails is logged and skipped.
    """
    jobs = [build_label(client, m, pallets_by_number.get(m.to_pallet_number)) for m in moves]
    jobs += [build_manifest(client, p) for p in released]
    results = await asyncio.gather(*jobs, return_exceptions=True)

    artifacts: list[Artifact] = []
    for result in results:
        if isinstance(result, Exception):
            logger.error("Artifact generation failed: %s", result, exc_info=result)
            continue
        artifacts.append(result)
    return artifacts
