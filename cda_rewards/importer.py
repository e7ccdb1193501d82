# D:\cda_rewards\cda_rewards\importer.py
"""
出席 CSV → ActivityRecord

    address,name,role
    0xAbC...,Alice,speaker

アドレスが空 / 不正な行はスキップして警告ログを残す。role の既定は "attendee"。
"""
from __future__ import annotations

import csv
import logging
from pathlib import Path

from web3 import Web3

from .data_models import ActivityRecord, ActivityType
from .errors import ValidationError

_logger = logging.getLogger(__name__)


def load_attendance_csv(
    path: str | Path,
    activity_type: ActivityType = ActivityType.EVENT,
    reason: str | None = None,
) -> list[ActivityRecord]:
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"attendance file not found: {path}", path=str(path))

    reason = reason or f"Event attendance ({path.stem})"
    records: list[ActivityRecord] = []
    skipped = 0
    with path.open(newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        for lineno, row in enumerate(reader, start=2):
            address = (row.get("address") or "").strip()
            if not address or not Web3.is_address(address):
                skipped += 1
                _logger.warning("%s:%d skipped, invalid address %r", path.name, lineno, address)
                continue
            records.append(
                ActivityRecord(
                    address=Web3.to_checksum_address(address),
                    activity_type=activity_type,
                    name=(row.get("name") or "").strip(),
                    role=(row.get("role") or "").strip() or "attendee",
                    reason=reason,
                )
            )
    _logger.info("loaded %d attendees from %s (%d skipped)", len(records), path, skipped)
    return records
