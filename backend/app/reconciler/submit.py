"""Batch submission of staged pallet edits.

A submit replays the diff between the committed baseline and the draft as
remote calls, strictly in this order:

    1. validate DOA numbers on pallets marked for release (no calls yet)
    2. moves, one at a time
    3. draft DOA edits
    4. deletion of flagged empty pallets
    5. releases
    6. lock changes that differ from the committed state

The first failure stops the pipeline.  Whatever happened, open pallets
are re-fetched at the end and become the new baseline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.reconciler.artifacts import Artifact, generate_artifacts
from app.reconciler.client import MissingDOAError, ShippingAPIError, ShippingClient
from app.reconciler.diff import diff, missing_doa_by_pallet
from app.reconciler.doa_upload import DOAUploadResult, upload_doa_numbers
from app.reconciler.operations import (
    Delete, Move, Operation, Release, SetDOA, SetLock, describe,
)
from app.reconciler.report import build_report
from app.reconciler.snapshot import PalletSnapshot, owner_of
from app.reconciler.staging import StagedEdits
from app.utils.doa import normalize_doa

logger = logging.getLogger(__name__)

MISSING_DOA_MESSAGE = "All Service Tags must have a DOA number."


class SubmissionInProgress(RuntimeError):
    pass


@dataclass
class SubmissionResult:
    planned: list[Operation] = field(default_factory=list)
    applied: list[Operation] = field(default_factory=list)
    failed: Operation | None = None
    error: str | None = None
    missing_doa: dict[str, list[str]] = field(default_factory=dict)
    artifacts: list[Artifact] = field(default_factory=list)
    refreshed: bool = False
    refresh_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def count(self, kind: type) -> int:
        return sum(1 for op in self.applied if isinstance(op, kind))

    @property
    def summary(self) -> str:
        if self.error:
            return self.error
        parts = []
        if self.count(Move):
            parts.append(f"Submitted {self.count(Move)} move(s)")
        if self.count(Delete):
            parts.append(f"Deleted {self.count(Delete)} empty pallet(s)")
        if self.count(Release):
            parts.append(f"Released {self.count(Release)} pallet(s)")
        locks = [op for op in self.applied if isinstance(op, SetLock)]
        if locks:
            locked = sum(1 for op in locks if op.locked)
            parts.append(f"Locks: {locked} locked / {len(locks) - locked} unlocked")
        return ", ".join(parts) or "No changes"


class Reconciler:
    """Drives one operator's staged edits against the shipping API."""

    def __init__(self, client: ShippingClient, staged: StagedEdits | None = None):
        self.client = client
        self.staged = staged if staged is not None else StagedEdits()
        self._submitting = False

    @property
    def submitting(self) -> bool:
        return self._submitting

    async def refresh(self) -> None:
        self.staged.rebaseline(await self.client.get_open_pallets())

    async def create_pallet(self) -> PalletSnapshot:
        pallet = PalletSnapshot.from_api(await self.client.create_pallet())
        self.staged.add_pallet(pallet)
        logger.info("Created pallet %s", pallet.pallet_number)
        return pallet

    async def save_doa(self, service_tag: str, doa_number: str | None) -> None:
        """Persist one DOA immediately; the owning pallet must be re-marked for release."""
        value = normalize_doa(doa_number)
        await self.client.update_system_doa(service_tag, value)
        self.staged.apply_committed_doa(service_tag, value)
        owner = owner_of(self.staged.draft, service_tag)
        if owner is not None:
            self.staged.release_flags.discard(owner.id)

    async def upload_doa(self, text: str) -> DOAUploadResult:
        return await upload_doa_numbers(self.client, self.staged, text)

    async def report(self, lock_filter: str = "all") -> str:
        return await build_report(self.client, self.staged.baseline, lock_filter)

    # ── Submit ───────────────────────────────────────────────

    async def submit(self) -> SubmissionResult:
        if self._submitting:
            raise SubmissionInProgress("A submission is already in progress")
        self._submitting = True
        try:
            return await self._submit()
        finally:
            self._submitting = False

    async def _submit(self) -> SubmissionResult:
        staged = self.staged
        result = SubmissionResult(
            planned=diff(staged.baseline, staged.draft, staged.flags()),
        )

        missing = missing_doa_by_pallet(staged.draft, staged.release_flags)
        if missing:
            result.missing_doa = missing
            result.error = MISSING_DOA_MESSAGE
            logger.info("Submit aborted, missing DOA on %s", ", ".join(sorted(missing)))
            return result
        if not result.planned:
            return result

        draft_by_number = {p.pallet_number: p for p in staged.draft}
        for op in result.planned:
            try:
                await self._apply(op, draft_by_number)
            except MissingDOAError as exc:
                result.missing_doa[getattr(op, "pallet_number", "")] = exc.missing_service_tags
                result.error = MISSING_DOA_MESSAGE
            except ShippingAPIError as exc:
                result.error = f"Failed to {describe(op)}: {exc.message}"
            else:
                result.applied.append(op)
                continue
            result.failed = op
            logger.warning("Submit stopped at %s: %s", describe(op), result.error)
            break

        released = [
            draft_by_number[op.pallet_number]
            for op in result.applied if isinstance(op, Release)
        ]
        moves = [op for op in result.applied if isinstance(op, Move)]
        if moves or released:
            result.artifacts = await generate_artifacts(
                self.client, moves, released, draft_by_number,
            )

        try:
            await self.refresh()
            result.refreshed = True
        except ShippingAPIError as exc:
            result.refresh_error = f"Failed to refresh pallets: {exc.message}"
            logger.error(result.refresh_error)

        logger.info("Submit finished: %s", result.summary)
        return result

    async def _apply(self, op: Operation, draft_by_number: dict[str, PalletSnapshot]) -> None:
        if isinstance(op, Move):
            await self.client.move_system_between_pallets(
                op.service_tag, op.from_pallet_number, op.to_pallet_number,
            )
        elif isinstance(op, SetDOA):
            await self.client.update_system_doa(op.service_tag, op.doa_number)
            self.staged.apply_committed_doa(op.service_tag, op.doa_number)
        elif isinstance(op, Delete):
            await self.client.delete_pallet(op.pallet_number)
        elif isinstance(op, Release):
            await self.client.release_pallet(op.pallet_number)
        elif isinstance(op, SetLock):
            await self.client.set_pallet_lock(op.pallet_number, op.locked)
            self.staged.apply_committed_lock(draft_by_number[op.pallet_number].id, op.locked)
