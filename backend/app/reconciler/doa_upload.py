"""Bulk DOA number upload from pasted CSV or TSV rows.

Each row is `service_tag,doa_number` (a tab separator is used when the
row contains one).  An optional `SERVICE_TAG,doa_number` header is
ignored and a later row for the same tag overrides an earlier one.  Only
systems currently on an open pallet are updated.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

from app.reconciler.client import ShippingClient
from app.reconciler.staging import StagedEdits
from app.utils.doa import DOA_MAX_LENGTH

logger = logging.getLogger(__name__)


class DOAUploadError(ValueError):
    pass


@dataclass
class ParsedRows:
    values: dict[str, str] = field(default_factory=dict)
    invalid_rows: int = 0


@dataclass
class DOAUploadResult:
    updated: list[str] = field(default_factory=list)
    not_updated: int = 0

    @property
    def summary(self) -> str:
        return f"{len(self.updated)} updated, {self.not_updated} did not update"


def parse_doa_rows(text: str) -> ParsedRows:
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    if not lines:
        raise DOAUploadError("Please provide CSV data.")

    parsed = ParsedRows()
    for line in lines:
        parts = [p.strip() for p in line.split("\t" if "\t" in line else ",")]
        if len(parts) < 2:
            parsed.invalid_rows += 1
            continue

        service_tag = parts[0].upper()
        doa_number = "".join(parts[1:]).strip()
        if service_tag == "SERVICE_TAG" and doa_number.lower() == "doa_number":
            continue
        if not service_tag:
            parsed.invalid_rows += 1
            continue
        parsed.values[service_tag] = doa_number

    if not parsed.values:
        raise DOAUploadError("No valid CSV rows found.")
    return parsed


def plan_updates(parsed: ParsedRows, active_tags: Iterable[str]) -> tuple[dict[str, str], int]:
    """Rows that can be sent, and how many were refused locally."""
    active = {t.upper() for t in active_tags}
    updates: dict[str, str] = {}
    refused = parsed.invalid_rows
    for tag, doa in parsed.values.items():
        if tag not in active or not doa or len(doa) > DOA_MAX_LENGTH:
            refused += 1
            continue
        updates[tag] = doa
    return updates, refused


async def upload_doa_numbers(
    client: ShippingClient, staged: StagedEdits, text: str,
) -> DOAUploadResult:
    """Send every valid row concurrently and patch the staged pallets."""
    parsed = parse_doa_rows(text)
    active_tags = [s.service_tag for p in staged.draft for s in p.systems]
    updates, refused = plan_updates(parsed, active_tags)

    tags = list(updates)
    results = await asyncio.gather(
        *(client.update_system_doa(tag, updates[tag]) for tag in tags),
        return_exceptions=True,
    )

    outcome = DOAUploadResult(not_updated=refused)
    for tag, result in zip(tags, results):
        if isinstance(result, Exception):
            logger.warning("DOA update for %s failed: %s", tag, result)
            outcome.not_updated += 1
            continue
        staged.apply_committed_doa(tag, updates[tag])
        outcome.updated.append(tag)

    logger.info("DOA upload: %s", outcome.summary)
    return outcome
