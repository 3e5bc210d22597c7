"""Bet model.

A bet is one of a closed set of kinds, each with a fixed selection arity:

    single   1 number        split    2 numbers      quarter  4 numbers
    even / odd / high / low  no selection

Numbers are drawn from the 1..20 board. Only the canonical form of a bet
matters here (it feeds the bet hash inside a bet certificate); resolving a
roll into a payout happens outside this package.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from rollet.errors import MalformedPayload

BOARD_MIN = 1
BOARD_MAX = 20


class BetKind(str, Enum):
    SINGLE = "single"
    SPLIT = "split"
    QUARTER = "quarter"
    EVEN = "even"
    ODD = "odd"
    HIGH = "high"
    LOW = "low"

    @property
    def arity(self) -> int:
        return SELECTION_ARITY[self]

    @property
    def default_odds(self) -> int:
        return DEFAULT_ODDS[self]


SELECTION_ARITY: Dict[BetKind, int] = {
    BetKind.SINGLE: 1,
    BetKind.SPLIT: 2,
    BetKind.QUARTER: 4,
    BetKind.EVEN: 0,
    BetKind.ODD: 0,
    BetKind.HIGH: 0,
    BetKind.LOW: 0,
}

DEFAULT_ODDS: Dict[BetKind, int] = {
    BetKind.SINGLE: 18,
    BetKind.SPLIT: 8,
    BetKind.QUARTER: 3,
    BetKind.EVEN: 1,
    BetKind.ODD: 1,
    BetKind.HIGH: 1,
    BetKind.LOW: 1,
}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class Bet:
    bet_id: str
    kind: BetKind
    selection: Tuple[int, ...]
    amount: int
    odds: int

    def __post_init__(self) -> None:
        if not isinstance(self.kind, BetKind):
            object.__setattr__(self, "kind", BetKind(self.kind))
        object.__setattr__(self, "selection", tuple(self.selection))
        if len(self.selection) != self.kind.arity:
            raise ValueError(
                f"{self.kind.value} bet takes {self.kind.arity} numbers, got {len(self.selection)}"
            )
        for n in self.selection:
            if not _is_int(n) or not BOARD_MIN <= n <= BOARD_MAX:
                raise ValueError(f"selection number {n!r} is not on the board")
        if len(set(self.selection)) != len(self.selection):
            raise ValueError("selection numbers must be distinct")
        if not _is_int(self.amount) or self.amount <= 0:
            raise ValueError("amount must be a positive integer")
        if not _is_int(self.odds) or self.odds <= 0:
            raise ValueError("odds must be a positive integer")

    @classmethod
    def place(
        cls,
        kind: BetKind,
        selection: Iterable[int] = (),
        amount: int = 1,
        odds: Optional[int] = None,
        bet_id: Optional[str] = None,
    ) -> "Bet":
        kind = BetKind(kind)
        return cls(
            bet_id=bet_id or str(uuid.uuid4()),
            kind=kind,
            selection=tuple(selection),
            amount=amount,
            odds=kind.default_odds if odds is None else odds,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.bet_id,
            "type": self.kind.value,
            "selection": list(self.selection),
            "amount": self.amount,
            "odds": self.odds,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Bet":
        expected = {"id", "type", "selection", "amount", "odds"}
        if not isinstance(data, Mapping) or set(data) != expected:
            raise MalformedPayload(f"bet must have exactly the fields {sorted(expected)}")
        try:
            return cls(
                bet_id=str(data["id"]),
                kind=BetKind(data["type"]),
                selection=tuple(data["selection"]),
                amount=data["amount"],
                odds=data["odds"],
            )
        except (TypeError, ValueError) as ex:
            raise MalformedPayload(f"invalid bet: {ex}") from ex
