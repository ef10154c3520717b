"""Remote operations a staged batch turns into, plus the staged flags."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union


@dataclass(frozen=True)
class Move:
    service_tag: str
    from_pallet_number: str
    to_pallet_number: str
    kind: Literal["move"] = "move"


@dataclass(frozen=True)
class SetDOA:
    service_tag: str
    doa_number: str | None
    kind: Literal["set_doa"] = "set_doa"


@dataclass(frozen=True)
class Delete:
    pallet_number: str
    kind: Literal["delete"] = "delete"


@dataclass(frozen=True)
class Release:
    pallet_number: str
    kind: Literal["release"] = "release"


@dataclass(frozen=True)
class SetLock:
    pallet_number: str
    locked: bool
    kind: Literal["set_lock"] = "set_lock"


Operation = Union[Move, SetDOA, Delete, Release, SetLock]

# Submission order; a later step may depend on an earlier one having landed
STEP_ORDER = ("move", "set_doa", "delete", "release", "set_lock")


@dataclass(frozen=True)
class StagedFlags:
    """Out-of-band staged intents, keyed by pallet id."""
    lock: dict[str, bool] = field(default_factory=dict)
    delete: frozenset[str] = frozenset()
    release: frozenset[str] = frozenset()


def describe(op: Operation) -> str:
    if isinstance(op, Move):
        return f"move {op.service_tag} {op.from_pallet_number} → {op.to_pallet_number}"
    if isinstance(op, SetDOA):
        return f"set DOA of {op.service_tag}"
    if isinstance(op, Delete):
        return f"delete {op.pallet_number}"
    if isinstance(op, Release):
        return f"release {op.pallet_number}"
    return f"{'lock' if op.locked else 'unlock'} {op.pallet_number}"
