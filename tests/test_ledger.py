"""Hash-chained ledger, watermark and session commitments."""

import json
import threading
from dataclasses import replace

import pytest

from rollet.errors import LedgerIntegrityError
from rollet.keys import KeyPair
from rollet.ledger import (
    FileLedgerStore,
    InMemoryLedgerStore,
    Ledger,
    LedgerEntry,
    LedgerEntryType,
    compute_entry_id,
    verify_chain,
    verify_entry_signatures,
)
from rollet.merkle import EMPTY_ROOT, merkle_root, verify_inclusion_proof

T0 = 1_709_251_200_000


def _fill(ledger, n, start=T0):
    for i in range(n):
        ledger.append(LedgerEntryType.ROUND_LOCKED, {"round": f"r{i}", "seats": i}, now=start + i)


class TestChain:
    def test_first_entry(self, ledger):
        entry = ledger.append("round_locked", {"round": "r7", "seats": 4}, now=T0)
        assert entry.seq == 1
        assert entry.prev_hash is None
        assert entry.entry_id == compute_entry_id(None, "round_locked", {"seats": 4, "round": "r7"}, T0)

    def test_links(self, ledger):
        _fill(ledger, 5)
        entries = ledger.entries()
        assert [e.seq for e in entries] == [1, 2, 3, 4, 5]
        for prev, cur in zip(entries, entries[1:]):
            assert cur.prev_hash == prev.entry_id
        assert ledger.verify() == (True, None)

    @pytest.mark.parametrize("store_kind", ["memory", pytest.param("file", marks=pytest.mark.slow)])
    def test_concurrent_appends_keep_one_chain(self, tmp_path, store_kind):
        store = InMemoryLedgerStore() if store_kind == "memory" else FileLedgerStore(tmp_path / "house.ledger.json")
        ledger = Ledger(store)
        barrier = threading.Barrier(8)

        def writer(w):
            barrier.wait()
            for i in range(50):
                ledger.append(LedgerEntryType.ADMISSION, {"round": "r7", "seat": f"{w}-{i}"}, now=T0 + i)

        threads = [threading.Thread(target=writer, args=(w,)) for w in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        entries = ledger.entries()
        assert len(ledger) == 400
        assert [e.seq for e in entries] == list(range(1, 401))
        assert verify_chain(entries) == (True, None)
        assert len({e.payload["seat"] for e in entries}) == 400

    def test_unknown_type_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.append("coffee_break", {})

    def test_tampered_payload_detected(self, ledger):
        _fill(ledger, 4)
        entries = ledger.entries()
        entries[2] = replace(entries[2], payload={"round": "r2", "seats": 99})
        assert verify_chain(entries) == (False, 2)

    def test_reordered_entries_detected(self, ledger):
        _fill(ledger, 3)
        entries = ledger.entries()
        assert verify_chain([entries[1], entries[0], entries[2]])[0] is False

    def test_dropped_entry_detected(self, ledger):
        _fill(ledger, 3)
        entries = ledger.entries()
        assert verify_chain([entries[0], entries[2]]) == (False, 1)

    def test_store_rejects_non_extending_entry(self):
        store = InMemoryLedgerStore()
        ledger = Ledger(store)
        first = ledger.append("round_locked", {"round": "r1"}, now=T0)
        with pytest.raises(LedgerIntegrityError):
            store.append(first)

    def test_dict_roundtrip(self, ledger):
        entry = ledger.append("admission", {"round": "r7", "seat": "1"}, now=T0)
        assert LedgerEntry.from_dict(json.loads(json.dumps(entry.to_dict()))) == entry


class TestSignedEntries:
    def test_signer_signs_entry_ids(self, house_key):
        ledger = Ledger(signer=house_key)
        _fill(ledger, 3)
        entries = ledger.entries()
        assert all(e.sig for e in entries)
        assert verify_entry_signatures(entries, house_key.public_key) == (True, None)
        assert verify_entry_signatures(entries, KeyPair.generate().public_key) == (False, 0)


class TestWatermark:
    def test_unsynced_is_everything_above_watermark(self, ledger):
        _fill(ledger, 5)
        assert [e.seq for e in ledger.get_unsynced()] == [1, 2, 3, 4, 5]
        assert ledger.mark_synced(3) == 3
        assert [e.seq for e in ledger.get_unsynced()] == [4, 5]

    def test_watermark_never_moves_backwards(self, ledger):
        _fill(ledger, 5)
        ledger.mark_synced(4)
        assert ledger.mark_synced(2) == 4
        assert ledger.watermark == 4

    def test_watermark_clamped_to_tail(self, ledger):
        _fill(ledger, 2)
        assert ledger.mark_synced(10) == 2
        assert ledger.get_unsynced() == []

    def test_empty_ledger(self, ledger):
        assert ledger.mark_synced(5) == 0
        assert ledger.get_unsynced() == []


class TestFileStore:
    def test_persists_entries_and_watermark(self, tmp_path):
        path = tmp_path / "house.ledger.json"
        ledger = Ledger(FileLedgerStore(path))
        _fill(ledger, 3)
        ledger.mark_synced(2)

        reopened = Ledger(FileLedgerStore(path))
        assert [e.seq for e in reopened.entries()] == [1, 2, 3]
        assert reopened.watermark == 2
        assert reopened.verify() == (True, None)
        reopened.append("round_settled", {"round": "r7"}, now=T0 + 10)
        assert len(Ledger(FileLedgerStore(path))) == 4

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "house.ledger.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(LedgerIntegrityError):
            Ledger(FileLedgerStore(path)).entries()

    def test_malformed_entry_in_file(self, tmp_path):
        path = tmp_path / "house.ledger.json"
        path.write_text(json.dumps([{"seq": 0}]), encoding="utf-8")
        with pytest.raises(LedgerIntegrityError):
            Ledger(FileLedgerStore(path)).entries()

    def test_corrupt_watermark(self, tmp_path):
        path = tmp_path / "house.ledger.json"
        store = FileLedgerStore(path)
        store.watermark_path.write_text("many\n", encoding="utf-8")
        with pytest.raises(LedgerIntegrityError):
            Ledger(store).watermark

    def test_from_config(self, tmp_path, _fresh_config):
        path = tmp_path / "cfg.ledger.json"
        _fresh_config.set("ledger.path", str(path))
        ledger = Ledger.from_config()
        assert isinstance(ledger.store, FileLedgerStore)
        _fill(ledger, 1)
        assert path.exists()


class TestSessions:
    def test_close_session_commits_to_entries(self, ledger):
        _fill(ledger, 5)
        marker = ledger.close_session("r7", now=T0 + 100)
        ids = [e.entry_id for e in ledger.entries()[:5]]
        assert marker.type == LedgerEntryType.SESSION_CLOSED.value
        assert marker.merkle_root == merkle_root(ids)
        assert marker.payload == {"round": "r7", "count": 5, "fromSeq": 1, "toSeq": 5}

    def test_next_session_starts_after_marker(self, ledger):
        _fill(ledger, 2)
        ledger.close_session("r1", now=T0 + 10)
        _fill(ledger, 3, start=T0 + 20)
        marker = ledger.close_session("r2", now=T0 + 30)
        assert marker.payload == {"round": "r2", "count": 3, "fromSeq": 4, "toSeq": 6}

    def test_empty_session(self, ledger):
        marker = ledger.close_session("r0", now=T0)
        assert marker.merkle_root == EMPTY_ROOT
        assert marker.payload == {"round": "r0", "count": 0}

    def test_inclusion_proof(self, ledger):
        _fill(ledger, 5)
        marker = ledger.close_session("r7", now=T0 + 100)
        proof = ledger.inclusion_proof(3)
        assert proof["sessionSeq"] == marker.seq
        assert proof["entryId"] == ledger.entries()[2].entry_id
        assert verify_inclusion_proof(proof, root=marker.merkle_root)

    def test_open_entry_has_no_proof(self, ledger):
        _fill(ledger, 2)
        with pytest.raises(ValueError):
            ledger.inclusion_proof(1)
