"""Core primitives for the rollet trust layer.

This module provides the foundational utilities used by every artifact:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- base64url without padding
- Millisecond wall clock

Design principles:
- Pure functions where possible
- One repo-wide definition of canonical bytes
- Floats rejected (amounts and timestamps are integers)
"""

from __future__ import annotations

import base64
import hashlib
import json
import pathlib
import re
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

import yaml

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")
_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*$")


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    return sha256_bytes(text.encode("utf-8"))


def is_valid_sha256(digest: str) -> bool:
    """Check if string is a valid SHA-256 hex digest."""
    return bool(SHA256_HEX_RE.match(digest or ""))


def _coerce_json_types(obj: Any, path: str = "$") -> Any:
    """Coerce Python objects into strict JSON types.

    - datetimes become RFC3339 strings (UTC, seconds precision)
    - tuples become lists
    - floats are rejected to avoid non-JCS number edge cases
    """
    if obj is None:
        return None
    if isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise ValueError(f"Float not allowed in canonical JSON at {path}")
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=timezone.utc)
        return obj.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x, f"{path}[{i}]") for i, x in enumerate(obj)]
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            out[str(k)] = _coerce_json_types(v, f"{path}.{k}")
        return out
    raise ValueError(f"Unsupported type {type(obj).__name__} in canonical JSON at {path}")


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use integers for amounts and epoch milliseconds)

    This ensures byte-for-byte reproducibility for signatures and hash chains.
    """
    clean = _coerce_json_types(obj)
    return json.dumps(
        clean,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_json_text(obj: Any) -> str:
    return canonical_json_bytes(obj).decode("utf-8")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    if not isinstance(s, str) or not _B64URL_RE.match(s):
        raise ValueError("value must be base64url (A-Z a-z 0-9 _ -) with no padding")
    pad = "=" * ((4 - len(s) % 4) % 4)
    raw = base64.urlsafe_b64decode((s + pad).encode("ascii"))
    # Trailing bits must be zero so each byte string has exactly one encoding.
    if b64url_encode(raw) != s:
        raise ValueError("value is not canonical base64url")
    return raw


def now_ms() -> int:
    """Current wall clock as integer epoch milliseconds."""
    return int(time.time() * 1000)


def resolve_now(now: Optional[int]) -> int:
    """Return `now` when supplied, otherwise the current epoch milliseconds."""
    return now_ms() if now is None else int(now)


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def load_structured(path: pathlib.Path) -> Any:
    """Load a YAML or JSON file, chosen by suffix."""
    p = pathlib.Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)
