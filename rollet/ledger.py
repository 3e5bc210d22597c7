"""Tamper-evident local ledger.

Every issuing action on the house device (challenges, admissions, bet
certificates, receipts, redemptions, session markers) is appended here. Each
entry commits to its predecessor:

    entryId = SHA256(prevHash || "|" || type || "|" || canonical(payload) || "|" || ts)

with an empty string for the first entry's null ``prevHash``. ``seq`` starts at
1 and increases by one per entry. A separate watermark records the highest
``seq`` acknowledged by the remote authority.

Persistence is behind `LedgerStore`; the ledger itself is single-writer and
serializes appends with the store's re-entrant lock.
"""

from __future__ import annotations

import abc
import json
import os
import pathlib
import tempfile
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from rollet.artifacts import validate_against_schema
from rollet.core import b64url_decode, b64url_encode, canonical_json_text, resolve_now, sha256_text
from rollet.errors import LedgerIntegrityError, MalformedPayload
from rollet.infra.observability import RolletLayer, get_logger
from rollet.keys import KeyPair, verify_signature
from rollet.merkle import build_inclusion_proof, merkle_root

logger = get_logger("ledger", RolletLayer.LEDGER)


class LedgerEntryType(str, Enum):
    ROUND_LOCKED = "round_locked"
    BET_CERT_ISSUED = "bet_cert_issued"
    ROUND_SETTLED = "round_settled"
    RECEIPT_ISSUED = "receipt_issued"
    JOIN_CHALLENGE_ISSUED = "join_challenge_issued"
    ADMISSION = "admission"
    RECEIPT_SPENT = "receipt_spent"
    SESSION_CLOSED = "session_closed"
    SYNC_EXPORT = "sync_export"


def compute_entry_id(prev_hash: Optional[str], entry_type: str, payload: Dict[str, Any], ts: int) -> str:
    return sha256_text(f"{prev_hash or ''}|{entry_type}|{canonical_json_text(payload)}|{ts}")


@dataclass(frozen=True)
class LedgerEntry:
    seq: int
    prev_hash: Optional[str]
    entry_id: str
    ts: int
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    sig: Optional[str] = None
    merkle_root: Optional[str] = None

    def recompute_id(self) -> str:
        return compute_entry_id(self.prev_hash, self.type, self.payload, self.ts)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "seq": self.seq,
            "prevHash": self.prev_hash,
            "entryId": self.entry_id,
            "ts": self.ts,
            "type": self.type,
            "payload": self.payload,
        }
        if self.sig is not None:
            d["sig"] = self.sig
        if self.merkle_root is not None:
            d["merkleRoot"] = self.merkle_root
        return d

    @classmethod
    def from_dict(cls, data: Any) -> "LedgerEntry":
        validate_against_schema(data, "ledger-entry")
        return cls(
            seq=data["seq"],
            prev_hash=data["prevHash"],
            entry_id=data["entryId"],
            ts=data["ts"],
            type=data["type"],
            payload=data["payload"],
            sig=data.get("sig"),
            merkle_root=data.get("merkleRoot"),
        )


def verify_chain(entries: Sequence[LedgerEntry]) -> Tuple[bool, Optional[int]]:
    """
    Recompute every entry id and link.

    Returns (valid, first_invalid_index).
    """
    prev: Optional[LedgerEntry] = None
    for i, entry in enumerate(entries):
        if entry.recompute_id() != entry.entry_id:
            return (False, i)
        expected_prev = prev.entry_id if prev else None
        expected_seq = prev.seq + 1 if prev else 1
        if entry.prev_hash != expected_prev or entry.seq != expected_seq:
            return (False, i)
        prev = entry
    return (True, None)


def verify_entry_signatures(entries: Sequence[LedgerEntry], public_key: Any) -> Tuple[bool, Optional[int]]:
    """Check the house signature over each signed entry's id."""
    for i, entry in enumerate(entries):
        if entry.sig is None:
            continue
        try:
            sig = b64url_decode(entry.sig)
        except ValueError:
            return (False, i)
        if not verify_signature(public_key, sig, entry.entry_id.encode("ascii")):
            return (False, i)
    return (True, None)


# =============================================================================
# STORES
# =============================================================================


class LedgerStore(abc.ABC):
    """Persistence for ledger entries and the sync watermark.

    Writers hold ``lock`` across reading the tail, computing the next entry and
    `append`; stores reject entries that do not extend the current tail.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()

    @abc.abstractmethod
    def append(self, entry: LedgerEntry) -> None:
        ...

    @abc.abstractmethod
    def read_all(self) -> List[LedgerEntry]:
        ...

    @abc.abstractmethod
    def read_watermark(self) -> int:
        ...

    @abc.abstractmethod
    def write_watermark(self, seq: int) -> None:
        ...

    def tail(self) -> Optional[LedgerEntry]:
        entries = self.read_all()
        return entries[-1] if entries else None

    @staticmethod
    def _check_extends(tail: Optional[LedgerEntry], entry: LedgerEntry) -> None:
        expected_seq = tail.seq + 1 if tail else 1
        expected_prev = tail.entry_id if tail else None
        if entry.seq != expected_seq or entry.prev_hash != expected_prev:
            raise LedgerIntegrityError(
                f"entry seq={entry.seq} does not extend the ledger tail",
                detail={"expectedSeq": expected_seq, "expectedPrevHash": expected_prev},
            )


class InMemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        super().__init__()
        self._entries: List[LedgerEntry] = []
        self._watermark = 0

    def append(self, entry: LedgerEntry) -> None:
        with self.lock:
            self._check_extends(self._entries[-1] if self._entries else None, entry)
            self._entries.append(entry)

    def read_all(self) -> List[LedgerEntry]:
        with self.lock:
            return list(self._entries)

    def read_watermark(self) -> int:
        with self.lock:
            return self._watermark

    def write_watermark(self, seq: int) -> None:
        with self.lock:
            self._watermark = int(seq)


def _atomic_write_text(path: pathlib.Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class FileLedgerStore(LedgerStore):
    """
    Durable store: a JSON array of entries plus a sibling ``.watermark`` file.

    Both files are rewritten through a temporary file and ``os.replace`` so a
    crash leaves either the old or the new content, never a torn write.
    """

    def __init__(self, path: Union[str, pathlib.Path]):
        super().__init__()
        self.path = pathlib.Path(path)
        self.watermark_path = self.path.with_name(self.path.name + ".watermark")
        self._entries: Optional[List[LedgerEntry]] = None

    def _load(self) -> List[LedgerEntry]:
        if self._entries is None:
            if self.path.exists():
                try:
                    raw = json.loads(self.path.read_text(encoding="utf-8"))
                except ValueError as ex:
                    raise LedgerIntegrityError(f"ledger file {self.path} is not valid JSON") from ex
                if not isinstance(raw, list):
                    raise LedgerIntegrityError(f"ledger file {self.path} must hold a JSON array")
                try:
                    self._entries = [LedgerEntry.from_dict(item) for item in raw]
                except MalformedPayload as ex:
                    raise LedgerIntegrityError(f"ledger file {self.path} has a malformed entry", detail=ex.detail) from ex
            else:
                self._entries = []
        return self._entries

    def append(self, entry: LedgerEntry) -> None:
        with self.lock:
            entries = self._load()
            self._check_extends(entries[-1] if entries else None, entry)
            updated = entries + [entry]
            _atomic_write_text(self.path, json.dumps([e.to_dict() for e in updated], indent=2, sort_keys=True))
            self._entries = updated

    def read_all(self) -> List[LedgerEntry]:
        with self.lock:
            return list(self._load())

    def read_watermark(self) -> int:
        with self.lock:
            if not self.watermark_path.exists():
                return 0
            text = self.watermark_path.read_text(encoding="utf-8").strip()
            try:
                return int(text or 0)
            except ValueError as ex:
                raise LedgerIntegrityError(f"watermark file {self.watermark_path} is corrupt") from ex

    def write_watermark(self, seq: int) -> None:
        with self.lock:
            _atomic_write_text(self.watermark_path, f"{int(seq)}\n")


# =============================================================================
# LEDGER
# =============================================================================


class Ledger:
    """
    Append-only, hash-chained event log for one house device.

    Example:
        ledger = Ledger(FileLedgerStore("house.ledger.json"))
        ledger.append("round_locked", {"round": "r7", "seats": 4})
        batch = ledger.get_unsynced()
    """

    def __init__(self, store: Optional[LedgerStore] = None, signer: Optional[KeyPair] = None):
        self.store = store or InMemoryLedgerStore()
        self.signer = signer

    @classmethod
    def from_config(cls, signer: Optional[KeyPair] = None) -> "Ledger":
        """File-backed ledger at ``ledger.path``, or in-memory when unset."""
        from rollet.infra.config import get_config

        path = get_config().ledger.path.get()
        store: LedgerStore = FileLedgerStore(path) if path else InMemoryLedgerStore()
        return cls(store, signer=signer)

    def append(
        self,
        entry_type: Union[str, LedgerEntryType],
        payload: Dict[str, Any],
        sig: Optional[str] = None,
        merkle_root: Optional[str] = None,
        now: Optional[int] = None,
    ) -> LedgerEntry:
        entry_type = LedgerEntryType(entry_type).value
        ts = resolve_now(now)
        with self.store.lock:
            tail = self.store.tail()
            prev_hash = tail.entry_id if tail else None
            entry_id = compute_entry_id(prev_hash, entry_type, payload, ts)
            if sig is None and self.signer is not None:
                sig = b64url_encode(self.signer.sign(entry_id.encode("ascii")))
            entry = LedgerEntry(
                seq=tail.seq + 1 if tail else 1,
                prev_hash=prev_hash,
                entry_id=entry_id,
                ts=ts,
                type=entry_type,
                payload=dict(payload),
                sig=sig,
                merkle_root=merkle_root,
            )
            self.store.append(entry)
        logger.debug("ledger entry appended", seq=entry.seq, type=entry_type)
        return entry

    def entries(self) -> List[LedgerEntry]:
        return self.store.read_all()

    def __len__(self) -> int:
        return len(self.entries())

    @property
    def watermark(self) -> int:
        return self.store.read_watermark()

    def get_unsynced(self) -> List[LedgerEntry]:
        """Entries with ``seq`` above the watermark, in order."""
        with self.store.lock:
            mark = self.store.read_watermark()
            return [e for e in self.store.read_all() if e.seq > mark]

    def mark_synced(self, upto_seq: int) -> int:
        """Advance the watermark to ``upto_seq``; it never moves backwards."""
        with self.store.lock:
            tail = self.store.tail()
            target = min(int(upto_seq), tail.seq if tail else 0)
            current = self.store.read_watermark()
            if target > current:
                self.store.write_watermark(target)
                return target
            return current

    def verify(self) -> Tuple[bool, Optional[int]]:
        return verify_chain(self.entries())

    # -- session markers ---------------------------------------------------

    def _open_session(self) -> List[LedgerEntry]:
        entries = self.entries()
        for i in range(len(entries) - 1, -1, -1):
            if entries[i].type == LedgerEntryType.SESSION_CLOSED.value:
                return entries[i + 1 :]
        return entries

    def close_session(self, round_id: str, now: Optional[int] = None) -> LedgerEntry:
        """Append ``session_closed`` committing to every entry since the last one."""
        with self.store.lock:
            session = self._open_session()
            root = merkle_root([e.entry_id for e in session])
            payload: Dict[str, Any] = {"round": round_id, "count": len(session)}
            if session:
                payload["fromSeq"] = session[0].seq
                payload["toSeq"] = session[-1].seq
            entry = self.append(LedgerEntryType.SESSION_CLOSED, payload, merkle_root=root, now=now)
        logger.info("session closed", round=round_id, entries=len(session), merkle_root=root)
        return entry

    def inclusion_proof(self, seq: int) -> Dict[str, Any]:
        """Proof that entry ``seq`` is committed by the session marker that closed it."""
        entries = self.entries()
        start = 0
        for i, entry in enumerate(entries):
            if entry.type != LedgerEntryType.SESSION_CLOSED.value:
                continue
            session = entries[start:i]
            ids = [e.entry_id for e in session]
            for j, member in enumerate(session):
                if member.seq == seq:
                    proof = build_inclusion_proof(ids, j)
                    proof["sessionSeq"] = entry.seq
                    return proof
            start = i + 1
        raise ValueError(f"entry {seq} is not in a closed session")

    def append_sync_export(self, payload: Dict[str, Any], now: Optional[int] = None) -> LedgerEntry:
        return self.append(LedgerEntryType.SYNC_EXPORT, payload, now=now)
