"""Immutable client-side views of open pallets.

A snapshot is the tuple of open pallets as last fetched (the baseline) or
as edited locally (the draft).  Pallets are frozen dataclasses; edits
produce new objects, so a baseline can never be mutated by accident.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable

SLOT_COUNT = 9


@dataclass(frozen=True)
class SlotSystem:
    service_tag: str
    doa_number: str | None = None

    @property
    def has_doa(self) -> bool:
        return bool(str(self.doa_number or "").strip())


@dataclass(frozen=True)
class PalletSnapshot:
    id: str
    pallet_number: str
    locked: bool = False
    status: str = "open"
    shape: str | None = None
    slots: tuple[SlotSystem | None, ...] = (None,) * SLOT_COUNT

    @classmethod
    def from_api(cls, data: dict) -> "PalletSnapshot":
        slots: list[SlotSystem | None] = [None] * SLOT_COUNT
        for idx, entry in enumerate((data.get("slots") or [])[:SLOT_COUNT]):
            if entry and entry.get("service_tag"):
                slots[idx] = SlotSystem(
                    service_tag=entry["service_tag"],
                    doa_number=entry.get("doa_number"),
                )
        return cls(
            id=str(data["id"]),
            pallet_number=data["pallet_number"],
            locked=bool(data.get("locked")),
            status=data.get("status", "open"),
            shape=data.get("shape"),
            slots=tuple(slots),
        )

    @property
    def systems(self) -> list[SlotSystem]:
        return [s for s in self.slots if s is not None]

    @property
    def is_empty(self) -> bool:
        return not self.systems

    def occupied_tags(self) -> frozenset[str]:
        return frozenset(s.service_tag for s in self.systems)

    def missing_doa(self) -> list[str]:
        return [s.service_tag for s in self.systems if not s.has_doa]

    def slot_of(self, service_tag: str) -> int | None:
        for idx, s in enumerate(self.slots):
            if s is not None and s.service_tag == service_tag:
                return idx
        return None

    def with_slot(self, index: int, system: SlotSystem | None) -> "PalletSnapshot":
        slots = list(self.slots)
        slots[index] = system
        return replace(self, slots=tuple(slots))

    def with_locked(self, locked: bool) -> "PalletSnapshot":
        return replace(self, locked=locked)

    def with_doa(self, service_tag: str, doa_number: str | None) -> "PalletSnapshot":
        idx = self.slot_of(service_tag)
        if idx is None:
            return self
        return self.with_slot(idx, replace(self.slots[idx], doa_number=doa_number))


Snapshot = tuple[PalletSnapshot, ...]


def by_id(snapshot: Iterable[PalletSnapshot]) -> dict[str, PalletSnapshot]:
    return {p.id: p for p in snapshot}


def owner_of(snapshot: Iterable[PalletSnapshot], service_tag: str) -> PalletSnapshot | None:
    """The pallet whose slots hold `service_tag`, if any."""
    for pallet in snapshot:
        if pallet.slot_of(service_tag) is not None:
            return pallet
    return None
