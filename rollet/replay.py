"""Replay protection for the house device.

Two registries, both owned by the house:

- `NonceRegistry` remembers join nonces that have been answered, per round, so
  a captured join response cannot be replayed into a second admission.
- `SpentSet` remembers redeemed bank receipts. The ``spent`` flag inside a
  receipt payload is never consulted; this set (and the ledger it is rebuilt
  from) is the only redemption state.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, Optional, Set, Tuple

from rollet.core import resolve_now

_HOUR_MS = 60 * 60 * 1000


class NonceRegistry:
    """
    Registry of consumed ``(round, nonce)`` pairs.

    Entries older than ``max_age_hours`` are dropped on the next registration;
    a challenge is only valid for seconds, so an aged-out nonce can no longer be
    answered anyway.
    """

    def __init__(self, max_age_hours: Optional[int] = None):
        if max_age_hours is None:
            from rollet.infra.config import get_config

            max_age_hours = get_config().join.nonce_max_age_hours.get()
        self._nonces: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()
        self._max_age_ms = int(max_age_hours) * _HOUR_MS

    def check_and_register(self, round_id: str, nonce: str, now: Optional[int] = None) -> bool:
        """
        Consume ``nonce`` for ``round_id``.

        Returns True if the pair was fresh and is now recorded, False if it had
        already been consumed (replay).
        """
        ts = resolve_now(now)
        key = (round_id, nonce)
        with self._lock:
            self._cleanup(ts)
            if key in self._nonces:
                return False
            self._nonces[key] = ts
            return True

    def is_fresh(self, round_id: str, nonce: str) -> bool:
        with self._lock:
            return (round_id, nonce) not in self._nonces

    def _cleanup(self, now: int) -> None:
        cutoff = now - self._max_age_ms
        expired = [k for k, t in self._nonces.items() if t < cutoff]
        for key in expired:
            del self._nonces[key]

    def size(self) -> int:
        with self._lock:
            return len(self._nonces)


class SpentSet:
    """Thread-safe set of redeemed receipt ids.

    ``lock`` is re-entrant so a caller can hold it across the membership check,
    the ledger append and `add`.
    """

    def __init__(self, receipt_ids: Iterable[str] = ()):
        self._spent: Set[str] = set(receipt_ids)
        self.lock = threading.RLock()

    def __contains__(self, receipt_id: object) -> bool:
        with self.lock:
            return receipt_id in self._spent

    def __len__(self) -> int:
        with self.lock:
            return len(self._spent)

    def add(self, receipt_id: str) -> bool:
        """Record a redemption; False if the receipt was already spent."""
        with self.lock:
            if receipt_id in self._spent:
                return False
            self._spent.add(receipt_id)
            return True
