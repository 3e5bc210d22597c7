"""Short human-readable codes derived from signed artifacts and secrets.

- TOTP join codes: a 6-digit code a player can type instead of scanning, bound
  to the round and challenge nonce and keyed by the pairing secret shared once
  through a pairing scan (`pairing_payload` / `parse_pairing`).
- Spend codes: a 10-digit code (9 digits plus a Luhn check digit) that names a
  bank receipt at the bank desk.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from rollet.core import b64url_decode, b64url_encode, canonical_json_text
from rollet.errors import MalformedPayload
from rollet.infra.config import get_config

TOTP_DIGITS = 6
SPEND_CODE_LENGTH = 10

_SEPARATORS_RE = re.compile(r"[\s\-]")


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def _step_ms(step_ms: Optional[int]) -> int:
    return get_config().codes.totp_step_ms.get() if step_ms is None else int(step_ms)


def _code_for_step(secret: bytes, round_id: str, nonce: str, step: int) -> str:
    mac = hmac.new(secret, f"{round_id}|{nonce}|{step}".encode("utf-8"), hashlib.sha256).digest()
    offset = mac[-1] & 0x0F
    binary = int.from_bytes(mac[offset : offset + 4], "big") & 0x7FFFFFFF
    return str(binary % 10**TOTP_DIGITS).zfill(TOTP_DIGITS)


def generate_totp(
    secret: bytes,
    round_id: str,
    nonce: str,
    epoch_ms: int,
    step_ms: Optional[int] = None,
) -> str:
    """Six-digit code for the step containing ``epoch_ms``."""
    return _code_for_step(secret, round_id, nonce, int(epoch_ms) // _step_ms(step_ms))


def verify_totp(
    candidate: str,
    secret: bytes,
    round_id: str,
    nonce: str,
    epoch_ms: int,
    step_ms: Optional[int] = None,
    window: Optional[int] = None,
) -> bool:
    """Accept codes from ``window`` steps either side of ``epoch_ms``."""
    if window is None:
        window = get_config().codes.totp_window.get()
    step = int(epoch_ms) // _step_ms(step_ms)
    given = str(candidate).encode("utf-8")
    matched = False
    for w in range(-window, window + 1):
        expected = _code_for_step(secret, round_id, nonce, step + w).encode("utf-8")
        # Compare every step so timing does not reveal which one matched.
        matched |= hmac.compare_digest(expected, given)
    return matched


# ---------------------------------------------------------------------------
# Spend codes
# ---------------------------------------------------------------------------


def luhn_check_digit(digits: Union[str, Sequence[int]]) -> int:
    total = 0
    double = True
    for d in reversed([int(c) for c in digits]):
        if double:
            d *= 2
            if d > 9:
                d -= 9
        total += d
        double = not double
    return (10 - total % 10) % 10


def compute_spend_code(receipt: Any) -> str:
    """Deterministic 10-digit code for a bank receipt."""
    p = receipt.payload
    material = f"{p.receipt_id}|{p.house_id}|{p.player_uid_thumbprint}|{p.amount}"
    b = hashlib.sha256(material.encode("utf-8")).digest()
    num = int.from_bytes(b[:4], "big")
    extra = b[4] ^ b[5]
    mixed = (num ^ (extra << 7)) & 0xFFFFFFFF
    base = str(mixed % 1_000_000_000).zfill(9)
    return base + str(luhn_check_digit(base))


def normalize_spend_code(text: str) -> str:
    return _SEPARATORS_RE.sub("", text or "")


def is_valid_spend_code(code: str) -> bool:
    code = normalize_spend_code(code)
    if len(code) != SPEND_CODE_LENGTH or not code.isdigit() or not code.isascii():
        return False
    return luhn_check_digit(code[:-1]) == int(code[-1])


def format_spend_code(code: str) -> str:
    """``123456789X`` -> ``123-456-789X``."""
    code = normalize_spend_code(code)
    return f"{code[:3]}-{code[3:6]}-{code[6:]}"


# ---------------------------------------------------------------------------
# Pairing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Pairing:
    player_id: str
    secret: bytes


def pairing_payload(player_id: str, secret: bytes) -> str:
    """Text for the one-time pairing scan that shares a player's TOTP secret."""
    return canonical_json_text({"type": "pairing", "playerId": player_id, "secret": b64url_encode(secret)})


def parse_pairing(text: Union[str, bytes]) -> Pairing:
    from rollet.artifacts import loads_json

    data = loads_json(text)
    if not isinstance(data, dict) or set(data) != {"type", "playerId", "secret"}:
        raise MalformedPayload("pairing payload must have exactly type, playerId and secret")
    if data["type"] != "pairing":
        raise MalformedPayload(f"expected type 'pairing', got {data['type']!r}")
    if not isinstance(data["playerId"], str) or not data["playerId"]:
        raise MalformedPayload("pairing playerId must be a non-empty string")
    try:
        secret = b64url_decode(data["secret"])
    except ValueError as ex:
        raise MalformedPayload("pairing secret is not base64url") from ex
    if not secret:
        raise MalformedPayload("pairing secret is empty")
    return Pairing(player_id=data["playerId"], secret=secret)
