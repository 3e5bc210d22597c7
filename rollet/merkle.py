"""Merkle mountain range commitments over ledger entry ids.

A closed session commits to every entry appended since the previous
``session_closed`` marker. An auditor holding one entry and its inclusion proof
can check that the entry belongs to the committed root without seeing the rest
of the session.

Hashing (SHA-256, domain separated):
- leaf = SHA256(0x00 || entry_id_bytes)
- node = SHA256(0x01 || left || right)

Peaks are bagged right to left with the node hash. The root of an empty
session is SHA256 of the empty string.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from rollet.core import is_valid_sha256

EMPTY_ROOT = hashlib.sha256(b"").hexdigest()


def _h(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hex32(value: str, what: str) -> bytes:
    if not isinstance(value, str) or not is_valid_sha256(value.lower()):
        raise ValueError(f"{what} must be 64 hex chars")
    return bytes.fromhex(value)


def leaf_hash(entry_id: str) -> str:
    return _h(b"\x00" + _hex32(entry_id, "entry_id"))


def node_hash(left: str, right: str) -> str:
    return _h(b"\x01" + _hex32(left, "left") + _hex32(right, "right"))


@dataclass(frozen=True)
class Peak:
    height: int
    hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {"height": self.height, "hash": self.hash}


def build_peaks(leaves: Sequence[str]) -> List[Peak]:
    stack: List[Tuple[int, str]] = []
    for leaf in leaves:
        height, cur = 0, leaf
        # Merge while the top peak has the same height.
        while stack and stack[-1][0] == height:
            _, left = stack.pop()
            cur = node_hash(left, cur)
            height += 1
        stack.append((height, cur))
    return [Peak(height=h, hash=d) for h, d in stack]


def bag_peaks(peaks: Sequence[Peak]) -> str:
    if not peaks:
        return EMPTY_ROOT
    bag = peaks[-1].hash
    for peak in reversed(peaks[:-1]):
        bag = node_hash(peak.hash, bag)
    return bag


def merkle_root(entry_ids: Sequence[str]) -> str:
    """Bagged MMR root over the given entry ids, in ledger order."""
    return bag_peaks(build_peaks([leaf_hash(e) for e in entry_ids]))


def _peak_layout(size: int) -> List[Tuple[int, int]]:
    """(start, height) of each peak, left to right."""
    out: List[Tuple[int, int]] = []
    start, remaining = 0, size
    while remaining > 0:
        height = remaining.bit_length() - 1
        out.append((start, height))
        start += 1 << height
        remaining -= 1 << height
    return out


def _locate(size: int, index: int) -> Tuple[int, int, int]:
    for peak_index, (start, height) in enumerate(_peak_layout(size)):
        if start <= index < start + (1 << height):
            return peak_index, start, height
    raise ValueError("index out of range")


def build_inclusion_proof(entry_ids: Sequence[str], index: int) -> Dict[str, Any]:
    """Proof that ``entry_ids[index]`` is committed by `merkle_root(entry_ids)`."""

    size = len(entry_ids)
    if not 0 <= index < size:
        raise ValueError("index out of range")

    leaves = [leaf_hash(e) for e in entry_ids]
    peaks = build_peaks(leaves)
    peak_index, start, height = _locate(size, index)

    level = leaves[start : start + (1 << height)]
    pos = index - start
    path: List[Dict[str, str]] = []
    while len(level) > 1:
        sibling = pos ^ 1
        path.append({"side": "left" if sibling < pos else "right", "hash": level[sibling]})
        level = [node_hash(level[i], level[i + 1]) for i in range(0, len(level), 2)]
        pos //= 2

    return {
        "size": size,
        "index": index,
        "entryId": entry_ids[index],
        "root": bag_peaks(peaks),
        "peakIndex": peak_index,
        "path": path,
        "peaks": [p.to_dict() for p in peaks],
    }


def verify_inclusion_proof(proof: Dict[str, Any], root: str = "") -> bool:
    """Check a proof from `build_inclusion_proof`; optionally pin the expected root."""

    try:
        size = int(proof["size"])
        index = int(proof["index"])
        peak_index = int(proof["peakIndex"])
        expected_root = str(proof["root"])
        cur = leaf_hash(str(proof["entryId"]))
        peaks = [Peak(height=int(p["height"]), hash=str(p["hash"])) for p in proof["peaks"]]
        path = list(proof["path"])
    except (KeyError, TypeError, ValueError):
        return False

    if root and root != expected_root:
        return False
    if not 0 <= index < size:
        return False
    try:
        exp_peak_index, _, exp_height = _locate(size, index)
    except ValueError:
        return False
    if exp_peak_index != peak_index or peak_index >= len(peaks):
        return False
    if peaks[peak_index].height != exp_height or len(path) != exp_height:
        return False

    try:
        for step in path:
            side, sibling = step.get("side"), step.get("hash")
            if side == "left":
                cur = node_hash(sibling, cur)
            elif side == "right":
                cur = node_hash(cur, sibling)
            else:
                return False
        peaks[peak_index] = Peak(height=exp_height, hash=cur)
        return bag_peaks(peaks) == expected_root
    except (AttributeError, ValueError):
        return False
