"""Bank receipts: signed credit the house owes a player.

A receipt is issued for a winning bet certificate (``payout``) or a pool top-up
(``rebuy``). Players carry it as a QR artifact or as a 10-digit spend code.
Redemption happens at the house's `ReceiptDesk`, which records the spend in the
ledger; the ``spent`` field inside the signed payload is always ``false`` and
carries no meaning.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from rollet.artifacts import Payload, SignedArtifact, register_artifact, wire
from rollet.codes import compute_spend_code, format_spend_code, is_valid_spend_code, normalize_spend_code
from rollet.core import resolve_now
from rollet.errors import Expired, MalformedPayload, NotAuthorized, NotYetValid, ReplayDetected, SignatureInvalid
from rollet.infra.config import get_config
from rollet.infra.observability import RolletLayer, get_logger
from rollet.keys import KeyPair
from rollet.ledger import Ledger, LedgerEntryType
from rollet.replay import SpentSet

logger = get_logger("receipts", RolletLayer.RECEIPTS)


class ReceiptKind(str, Enum):
    PAYOUT = "payout"
    REBUY = "rebuy"


@dataclass(frozen=True)
class BankReceiptPayload(Payload):
    KIND = "bank-receipt"

    receipt_id: str = wire("receiptId")
    house_id: str = wire("houseId")
    player: str = wire("player")
    player_uid_thumbprint: str = wire("playerUidThumbprint")
    round_id: str = wire("round")
    amount: int = wire("amount")
    kind: str = wire("kind", default=ReceiptKind.PAYOUT.value)
    not_before: int = wire("notBefore", default=0)
    not_after: Optional[int] = wire("notAfter", default=None)
    bet_cert_ref: str = wire("betCertRef", default="")
    spent: bool = wire("spent", default=False)


@register_artifact
@dataclass(frozen=True)
class BankReceipt(SignedArtifact[BankReceiptPayload]):
    PAYLOAD_TYPE = BankReceiptPayload
    SCHEMA = "bank-receipt"

    @property
    def receipt_id(self) -> str:
        return self.payload.receipt_id

    def spend_code(self) -> str:
        return compute_spend_code(self)


def parse_bank_receipt(text: Union[str, bytes]) -> BankReceipt:
    return BankReceipt.from_json(text)


def issue_bank_receipt(
    receipt_id: str,
    house_id: str,
    player: str,
    player_uid_thumbprint: str,
    round_id: str,
    amount: int,
    bet_cert_ref: str,
    house_key: KeyPair,
    kind: Union[str, ReceiptKind] = ReceiptKind.PAYOUT,
    now: Optional[int] = None,
    ttl_ms: Optional[int] = None,
) -> BankReceipt:
    """Sign a receipt. ``ttl_ms`` of 0 (the default from config) means no expiry."""
    ts = resolve_now(now)
    ttl = get_config().receipts.ttl_ms.get() if ttl_ms is None else int(ttl_ms)
    payload = BankReceiptPayload(
        receipt_id=receipt_id,
        house_id=house_id,
        player=str(player),
        player_uid_thumbprint=player_uid_thumbprint,
        round_id=round_id,
        amount=int(amount),
        kind=ReceiptKind(kind).value,
        not_before=ts,
        not_after=ts + ttl if ttl > 0 else None,
        bet_cert_ref=bet_cert_ref,
        spent=False,
    )
    return BankReceipt.create(payload, house_key)


def _rejection_reason(receipt: BankReceipt, house_public_key: Ed25519PublicKey, now: int) -> Optional[str]:
    p = receipt.payload
    if now < p.not_before:
        return NotYetValid.code
    if p.not_after is not None and now > p.not_after:
        return Expired.code
    if not receipt.verify_signature(house_public_key):
        return SignatureInvalid.code
    return None


def verify_bank_receipt(
    receipt: BankReceipt,
    house_public_key: Ed25519PublicKey,
    now: Optional[int] = None,
) -> bool:
    reason = _rejection_reason(receipt, house_public_key, resolve_now(now))
    if reason:
        logger.rejected("bank receipt", reason, receipt_id=receipt.payload.receipt_id)
        return False
    return True


@dataclass(frozen=True)
class Winner:
    player: str
    player_uid_thumbprint: str
    amount: int
    bet_cert_ref: str


def issue_receipts_for_winners(
    winners: Iterable[Winner],
    round_id: str,
    house_id: str,
    house_key: KeyPair,
    now: Optional[int] = None,
    ttl_ms: Optional[int] = None,
) -> List[BankReceipt]:
    """One payout receipt per winner with a positive amount."""
    ts = resolve_now(now)
    receipts = []
    for w in winners:
        if w.amount <= 0:
            continue
        receipts.append(
            issue_bank_receipt(
                str(uuid.uuid4()),
                house_id,
                w.player,
                w.player_uid_thumbprint,
                round_id,
                w.amount,
                w.bet_cert_ref,
                house_key,
                kind=ReceiptKind.PAYOUT,
                now=ts,
                ttl_ms=ttl_ms,
            )
        )
    return receipts


# =============================================================================
# REDEMPTION
# =============================================================================


class ReceiptDesk:
    """
    House-side registry of issued receipts and their redemptions.

    A spend verifies the receipt, checks the spent-set and appends
    ``receipt_spent`` inside one critical section, so a receipt can be
    redeemed once no matter how many devices present it.
    """

    def __init__(
        self,
        house_public_key: Ed25519PublicKey,
        ledger: Ledger,
        spent: Optional[SpentSet] = None,
    ):
        self.house_public_key = house_public_key
        self.ledger = ledger
        self.spent = spent or SpentSet()
        self._by_code: Dict[str, BankReceipt] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_ledger(cls, house_public_key: Ed25519PublicKey, ledger: Ledger) -> "ReceiptDesk":
        """Rebuild redemption state by replaying the ledger.

        Every `receipt_issued` entry carries the signed receipt, so the spend
        code index comes back along with the spent-set. The receipts are
        re-verified when they are spent, not here.
        """
        spent_ids = []
        issued = []
        for entry in ledger.entries():
            if entry.type == LedgerEntryType.RECEIPT_SPENT.value:
                spent_ids.append(entry.payload["receiptId"])
            elif entry.type == LedgerEntryType.RECEIPT_ISSUED.value:
                issued.append(BankReceipt.from_dict(entry.payload["receipt"]))
        desk = cls(house_public_key, ledger, SpentSet(spent_ids))
        for receipt in issued:
            desk._by_code[compute_spend_code(receipt)] = receipt
        return desk

    def register(self, receipt: BankReceipt, now: Optional[int] = None) -> str:
        """Remember an issued receipt; returns its spend code."""
        code = compute_spend_code(receipt)
        p = receipt.payload
        with self._lock:
            self._by_code[code] = receipt
        self.ledger.append(
            LedgerEntryType.RECEIPT_ISSUED,
            {
                "receiptId": p.receipt_id,
                "player": p.player,
                "round": p.round_id,
                "amount": p.amount,
                "kind": p.kind,
                "betCertRef": p.bet_cert_ref,
                "spendCode": code,
                "receipt": receipt.to_dict(),
            },
            now=now,
        )
        return code

    def settle_round(
        self,
        round_id: str,
        winners: Iterable[Winner],
        house_id: str,
        house_key: KeyPair,
        now: Optional[int] = None,
    ) -> List[BankReceipt]:
        """Issue and register payout receipts, then record ``round_settled``."""
        ts = resolve_now(now)
        receipts = issue_receipts_for_winners(winners, round_id, house_id, house_key, now=ts)
        for receipt in receipts:
            self.register(receipt, now=ts)
        self.ledger.append(
            LedgerEntryType.ROUND_SETTLED,
            {
                "round": round_id,
                "receipts": [r.receipt_id for r in receipts],
                "total": sum(r.payload.amount for r in receipts),
            },
            now=ts,
        )
        logger.info("round settled", round=round_id, receipts=len(receipts))
        return receipts

    def is_spent(self, receipt_id: str) -> bool:
        return receipt_id in self.spent

    def spend(self, receipt: BankReceipt, now: Optional[int] = None) -> Dict[str, Any]:
        ts = resolve_now(now)
        receipt_id = receipt.payload.receipt_id
        if not verify_bank_receipt(receipt, self.house_public_key, ts):
            raise SignatureInvalid(f"receipt {receipt_id} does not verify")
        with self.spent.lock:
            if receipt_id in self.spent:
                logger.rejected("bank receipt", ReplayDetected.code, receipt_id=receipt_id)
                raise ReplayDetected(f"receipt {receipt_id} has already been spent")
            entry = self.ledger.append(
                LedgerEntryType.RECEIPT_SPENT,
                {
                    "receiptId": receipt_id,
                    "player": receipt.payload.player,
                    "amount": receipt.payload.amount,
                    "spendCode": compute_spend_code(receipt),
                },
                now=ts,
            )
            self.spent.add(receipt_id)
        logger.info("receipt spent", receipt_id=receipt_id, amount=receipt.payload.amount)
        return entry.payload

    def spend_by_code(self, code: str, now: Optional[int] = None) -> Dict[str, Any]:
        normalized = normalize_spend_code(code)
        if not is_valid_spend_code(normalized):
            raise MalformedPayload(f"spend code {code!r} fails its check digit")
        with self._lock:
            receipt = self._by_code.get(normalized)
        if receipt is None:
            raise NotAuthorized(f"no receipt issued for code {format_spend_code(normalized)}")
        return self.spend(receipt, now)
