"""
Tests for Execution Audit Ledger
================================

Tests cover:
- Hash chain integrity
- Entry creation and verification
- Chain tampering detection
- JSONL persistence
"""

import json
from datetime import datetime, timezone

import pytest

from execution_core.audit_ledger import AuditLedger, LedgerEntry, create_audit_ledger


class TestLedgerEntry:
    """Tests for individual ledger entries."""

    def _entry(self, **overrides):
        fields = {
            "sequence_number": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": "leg_attempt",
            "source": "atomic_engine",
            "event_data": {"leg_id": "a", "outcome": "FILLED"},
            "previous_hash": "0" * 64,
        }
        fields.update(overrides)
        return LedgerEntry(**fields)

    def test_entry_creates_hash(self):
        entry = self._entry()
        assert len(entry.entry_hash) == 64

    def test_entry_verify_valid(self):
        assert self._entry().verify() is True

    def test_entry_verify_tampered(self):
        entry = self._entry()
        entry.event_data["outcome"] = "REJECTED"
        assert entry.verify() is False


class TestAuditLedger:
    """Tests for the hash-chained ledger."""

    def test_append_links_entries(self):
        ledger = AuditLedger()
        first = ledger.append("leg_attempt", "atomic_engine", {"leg_id": "a"})
        second = ledger.append("leg_attempt", "atomic_engine", {"leg_id": "b"})

        assert first.previous_hash == AuditLedger.GENESIS_HASH
        assert second.previous_hash == first.entry_hash
        assert second.sequence_number == 2
        assert len(ledger) == 2

    def test_verify_chain_valid(self):
        ledger = AuditLedger()
        for i in range(5):
            ledger.append("leg_attempt", "atomic_engine", {"i": i})
        assert ledger.verify_chain() == (True, [])

    def test_verify_chain_detects_tampering(self):
        ledger = AuditLedger()
        for i in range(3):
            ledger.append("leg_attempt", "atomic_engine", {"i": i})
        ledger._entries[1].event_data["i"] = 99

        valid, invalid = ledger.verify_chain()
        assert valid is False
        assert invalid == [2]

    def test_verify_chain_detects_broken_link(self):
        ledger = AuditLedger()
        for i in range(3):
            ledger.append("leg_attempt", "atomic_engine", {"i": i})
        entry = ledger._entries[2]
        ledger._entries[2] = LedgerEntry(
            sequence_number=entry.sequence_number,
            timestamp=entry.timestamp,
            event_type=entry.event_type,
            source=entry.source,
            event_data=entry.event_data,
            previous_hash="f" * 64,
        )

        valid, invalid = ledger.verify_chain()
        assert valid is False
        assert invalid == [3]

    @pytest.mark.parametrize("event_type,source,data", [
        ("", "atomic_engine", {}),
        ("leg_attempt", " ", {}),
        ("leg_attempt", "atomic_engine", ["not", "a", "dict"]),
    ])
    def test_append_rejects_bad_input(self, event_type, source, data):
        with pytest.raises(ValueError):
            AuditLedger().append(event_type, source, data)

    def test_filter_entries(self):
        ledger = AuditLedger()
        ledger.append("leg_attempt", "atomic_engine", {"transaction_id": "T1"})
        ledger.append("leg_compensation", "atomic_engine", {"transaction_id": "T1"})
        ledger.append("leg_attempt", "atomic_engine", {"transaction_id": "T2"})

        assert len(ledger.get_entries(event_type="leg_attempt")) == 2
        assert len(ledger.get_entries(transaction_id="T1")) == 2
        assert len(ledger.get_entries(limit=1)) == 1

    def test_memory_window_is_bounded(self):
        ledger = AuditLedger(max_memory_entries=2)
        for i in range(4):
            ledger.append("leg_attempt", "atomic_engine", {"i": i})
        assert len(ledger) == 2
        assert ledger.get_statistics()["sequence_number"] == 4
        assert ledger.verify_chain()[0] is True


class TestPersistence:
    """Tests for flush_to_disk."""

    def test_flush_without_path(self):
        ledger = AuditLedger()
        ledger.append("leg_attempt", "atomic_engine", {})
        assert ledger.flush_to_disk() == 0

    def test_flush_writes_pending_entries_once(self, tmp_path):
        ledger = create_audit_ledger({"storage_path": str(tmp_path / "audit")})
        ledger.append("leg_attempt", "atomic_engine", {"leg_id": "a"})
        ledger.append("leg_attempt", "atomic_engine", {"leg_id": "b"})

        assert ledger.flush_to_disk() == 2
        assert ledger.flush_to_disk() == 0
        ledger.append("transaction_finished", "atomic_engine", {})
        assert ledger.flush_to_disk() == 1

        files = list((tmp_path / "audit").glob("execution_ledger_*.jsonl"))
        assert len(files) == 1
        lines = [json.loads(line) for line in files[0].read_text().splitlines()]
        assert [line["sequence_number"] for line in lines] == [1, 2, 3]
        assert lines[1]["previous_hash"] == lines[0]["entry_hash"]
