"""
Execution Audit Ledger
======================

Hash-chained record of every leg attempt and compensating order.

Features:
- Each entry carries the hash of the previous entry (tamper-evident chain)
- SHA-256 hashing
- Chain verification
- Optional JSONL persistence
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    """
    A single ledger entry, linked to its predecessor via previous_hash.
    """
    sequence_number: int
    timestamp: str  # ISO format
    event_type: str
    source: str
    event_data: dict
    previous_hash: str
    entry_hash: str = ""

    def __post_init__(self):
        if not self.entry_hash:
            self.entry_hash = self._calculate_hash()

    def _calculate_hash(self) -> str:
        payload = json.dumps({
            "sequence_number": self.sequence_number,
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "source": self.source,
            "event_data": self.event_data,
            "previous_hash": self.previous_hash,
        }, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def verify(self) -> bool:
        return self.entry_hash == self._calculate_hash()

    def to_dict(self) -> dict:
        return asdict(self)


class AuditLedger:
    """
    Append-only, hash-chained audit ledger.

    Entries live in a bounded in-memory window. When a storage path is
    given, flush_to_disk() appends the window to a JSONL file.
    """

    GENESIS_HASH = "0" * 64

    def __init__(
        self,
        storage_path: Path | str | None = None,
        max_memory_entries: int = 10000,
    ):
        self._storage_path = Path(storage_path) if storage_path else None
        if self._storage_path is not None:
            self._storage_path.mkdir(parents=True, exist_ok=True)

        self._entries: deque[LedgerEntry] = deque(maxlen=max_memory_entries)
        self._sequence_number = 0
        self._last_hash = self.GENESIS_HASH
        self._flushed_through = 0

    def append(self, event_type: str, source: str, event_data: dict[str, Any]) -> LedgerEntry:
        """
        Append a new entry linked to the previous one.

        Raises:
            ValueError: If event_type or source is empty, or event_data is not a dict
        """
        if not event_type or not event_type.strip():
            raise ValueError("event_type must be a non-empty string")
        if not source or not source.strip():
            raise ValueError("source must be a non-empty string")
        if not isinstance(event_data, dict):
            raise ValueError("event_data must be a dictionary")

        self._sequence_number += 1
        entry = LedgerEntry(
            sequence_number=self._sequence_number,
            timestamp=datetime.now(timezone.utc).isoformat(),
            event_type=event_type,
            source=source,
            event_data=event_data,
            previous_hash=self._last_hash,
        )
        self._entries.append(entry)
        self._last_hash = entry.entry_hash
        return entry

    def verify_chain(self) -> tuple[bool, list[int]]:
        """
        Verify every in-memory entry and its link to the previous one.

        Returns:
            Tuple of (chain_valid, invalid_sequence_numbers)
        """
        invalid: list[int] = []
        previous: LedgerEntry | None = None
        for entry in self._entries:
            if not entry.verify():
                invalid.append(entry.sequence_number)
                logger.error(f"Audit ledger entry {entry.sequence_number} hash mismatch")
            elif previous is not None and entry.previous_hash != previous.entry_hash:
                invalid.append(entry.sequence_number)
                logger.error(f"Audit ledger entry {entry.sequence_number} chain link broken")
            previous = entry

        if invalid:
            logger.critical(f"Audit ledger chain invalid: {len(invalid)} corrupted entries")
        return not invalid, invalid

    def flush_to_disk(self) -> int:
        """
        Append entries not yet written to the JSONL file.

        Returns:
            Number of entries written (0 when no storage path is set)
        """
        if self._storage_path is None:
            return 0
        pending = [e for e in self._entries if e.sequence_number > self._flushed_through]
        if not pending:
            return 0

        filepath = self._storage_path / f"execution_ledger_{datetime.now(timezone.utc):%Y%m%d}.jsonl"
        with open(filepath, 'a', encoding='utf-8') as f:
            for entry in pending:
                f.write(json.dumps(entry.to_dict(), default=str) + '\n')
        self._flushed_through = pending[-1].sequence_number
        logger.info(f"Flushed {len(pending)} audit entries to {filepath}")
        return len(pending)

    def get_entries(
        self,
        event_type: str | None = None,
        transaction_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        results = [
            e.to_dict() for e in self._entries
            if (event_type is None or e.event_type == event_type)
            and (transaction_id is None or e.event_data.get("transaction_id") == transaction_id)
        ]
        return results[-limit:] if limit else results

    def get_statistics(self) -> dict:
        return {
            "sequence_number": self._sequence_number,
            "entries_in_memory": len(self._entries),
            "last_hash": self._last_hash[:16],
            "flushed_through": self._flushed_through,
        }

    def __len__(self) -> int:
        return len(self._entries)


def create_audit_ledger(config: dict[str, Any] | None = None) -> AuditLedger:
    """Build an AuditLedger from the `audit` config section."""
    config = config or {}
    return AuditLedger(
        storage_path=config.get("storage_path"),
        max_memory_entries=config.get("max_memory_entries", 10000),
    )
