"""Bet certificates: the house's signed lock on a seat's bets for one round.

When a round locks, the house hashes each seat's bets (canonical JSON list, in
placement order) and signs a short-lived certificate binding that hash to the
seat and round. A later change to the bets requires a renewal, which names the
certificate it replaces through ``renewalOf``.
"""

from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from rollet.artifacts import Payload, SignedArtifact, register_artifact, wire
from rollet.bets import Bet
from rollet.core import canonical_json_bytes, resolve_now, sha256_bytes
from rollet.errors import Expired, NotYetValid, SignatureInvalid
from rollet.infra.config import get_config
from rollet.infra.observability import RolletLayer, get_logger, timed_operation
from rollet.keys import KeyPair
from rollet.ledger import Ledger, LedgerEntryType

logger = get_logger("bet_cert", RolletLayer.BETS)


@dataclass(frozen=True)
class BetCertificatePayload(Payload):
    KIND = "bet-cert"

    cert_id: str = wire("certId")
    player: str = wire("player")
    round_id: str = wire("round")
    bet_hash: str = wire("betHash")
    not_before: int = wire("notBefore")
    not_after: int = wire("notAfter")
    bank_ref: Optional[str] = wire("bankRef", default=None)
    renewal_of: Optional[str] = wire("renewalOf", default=None)


@register_artifact
@dataclass(frozen=True)
class BetCertificate(SignedArtifact[BetCertificatePayload]):
    PAYLOAD_TYPE = BetCertificatePayload
    SCHEMA = "bet-cert"

    @property
    def cert_id(self) -> str:
        return self.payload.cert_id


def parse_bet_cert(text: Union[str, bytes]) -> BetCertificate:
    return BetCertificate.from_json(text)


@dataclass(frozen=True)
class Seat:
    """One seat's bets at lock time."""

    seat: str
    bets: Sequence[Bet] = field(default_factory=tuple)
    bank_ref: Optional[str] = None


def _as_bet(bet: Union[Bet, Mapping[str, Any]]) -> Bet:
    return bet if isinstance(bet, Bet) else Bet.from_dict(bet)


def hash_bets(bets: Iterable[Union[Bet, Mapping[str, Any]]]) -> str:
    """SHA-256 hex of the canonical JSON list of bets, in placement order."""
    return sha256_bytes(canonical_json_bytes([_as_bet(b).to_dict() for b in bets]))


def _default_ttl_ms() -> int:
    return get_config().bets.cert_ttl_ms.get()


def issue_bet_cert(
    player: str,
    round_id: str,
    bet_hash: str,
    house_key: KeyPair,
    now: Optional[int] = None,
    ttl_ms: Optional[int] = None,
    bank_ref: Optional[str] = None,
    renewal_of: Optional[str] = None,
) -> BetCertificate:
    ts = resolve_now(now)
    payload = BetCertificatePayload(
        cert_id=str(uuid.uuid4()),
        player=str(player),
        round_id=round_id,
        bet_hash=bet_hash,
        not_before=ts,
        not_after=ts + (_default_ttl_ms() if ttl_ms is None else int(ttl_ms)),
        bank_ref=bank_ref,
        renewal_of=renewal_of,
    )
    return BetCertificate.create(payload, house_key)


@timed_operation(logger, "lock_round")
def lock_round(
    seats: Sequence[Seat],
    house_key: KeyPair,
    round_id: str,
    now: Optional[int] = None,
    ttl_ms: Optional[int] = None,
    max_workers: Optional[int] = None,
) -> List[BetCertificate]:
    """
    One certificate per seat, all sharing the same window.

    Seats are signed concurrently; the result order matches ``seats``.
    """
    labels = [s.seat for s in seats]
    if len(set(labels)) != len(labels):
        raise ValueError("each seat may appear only once per round")

    ts = resolve_now(now)
    ttl = _default_ttl_ms() if ttl_ms is None else int(ttl_ms)
    workers = max_workers or get_config().bets.signing_workers.get()

    def sign_seat(seat: Seat) -> BetCertificate:
        return issue_bet_cert(seat.seat, round_id, hash_bets(seat.bets), house_key, ts, ttl, seat.bank_ref)

    if not seats:
        return []
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rollet-betcert") as pool:
        return list(pool.map(sign_seat, seats))


def _window_reason(payload: BetCertificatePayload, now: int) -> Optional[str]:
    if now < payload.not_before:
        return NotYetValid.code
    if now > payload.not_after:
        return Expired.code
    return None


def verify_bet_cert(
    cert: BetCertificate,
    house_public_key: Ed25519PublicKey,
    now: Optional[int] = None,
) -> bool:
    reason = _window_reason(cert.payload, resolve_now(now))
    if reason is None and not cert.verify_signature(house_public_key):
        reason = SignatureInvalid.code
    if reason:
        logger.rejected("bet certificate", reason, cert_id=cert.payload.cert_id, round=cert.payload.round_id)
        return False
    return True


def renew_bet_cert(
    previous: BetCertificate,
    bets: Iterable[Union[Bet, Mapping[str, Any]]],
    house_key: KeyPair,
    now: Optional[int] = None,
    ttl_ms: Optional[int] = None,
) -> BetCertificate:
    """Replacement certificate for changed bets, linked through ``renewalOf``."""
    p = previous.payload
    return issue_bet_cert(
        p.player,
        p.round_id,
        hash_bets(bets),
        house_key,
        now=now,
        ttl_ms=ttl_ms,
        bank_ref=p.bank_ref,
        renewal_of=p.cert_id,
    )


def authoritative_cert(
    certs: Iterable[BetCertificate],
    house_public_key: Ed25519PublicKey,
    now: Optional[int] = None,
) -> Optional[BetCertificate]:
    """
    The certificate currently in force for one seat.

    Any certificate named by a genuine renewal is superseded, whether or not
    the renewal is still inside its window. Of the remaining certificates,
    the newest one that is inside its window wins.
    """
    ts = resolve_now(now)
    genuine = [c for c in certs if c.verify_signature(house_public_key)]
    superseded = {c.payload.renewal_of for c in genuine if c.payload.renewal_of}
    live = [
        c
        for c in genuine
        if c.payload.cert_id not in superseded and _window_reason(c.payload, ts) is None
    ]
    if not live:
        return None
    return max(live, key=lambda c: (c.payload.not_before, c.payload.cert_id))


class BetCertificateService:
    """House-side issuance that records every certificate in the ledger."""

    def __init__(
        self,
        house_key: KeyPair,
        ledger: Ledger,
        ttl_ms: Optional[int] = None,
        max_workers: Optional[int] = None,
    ):
        self.house_key = house_key
        self.ledger = ledger
        self.ttl_ms = ttl_ms
        self.max_workers = max_workers

    def _record(self, cert: BetCertificate, now: int) -> None:
        p = cert.payload
        entry: Dict[str, Any] = {
            "certId": p.cert_id,
            "player": p.player,
            "round": p.round_id,
            "betHash": p.bet_hash,
            "notAfter": p.not_after,
            "signature": cert.signature,
        }
        if p.renewal_of:
            entry["renewalOf"] = p.renewal_of
        self.ledger.append(LedgerEntryType.BET_CERT_ISSUED, entry, now=now)

    def lock_round(self, round_id: str, seats: Sequence[Seat], now: Optional[int] = None) -> List[BetCertificate]:
        ts = resolve_now(now)
        certs = lock_round(seats, self.house_key, round_id, ts, self.ttl_ms, self.max_workers)
        for cert in certs:
            self._record(cert, ts)
        self.ledger.append(
            LedgerEntryType.ROUND_LOCKED,
            {"round": round_id, "seats": len(certs), "certIds": [c.cert_id for c in certs]},
            now=ts,
        )
        logger.info("round locked", round=round_id, seats=len(certs))
        return certs

    def renew(
        self,
        previous: BetCertificate,
        bets: Iterable[Union[Bet, Mapping[str, Any]]],
        now: Optional[int] = None,
    ) -> BetCertificate:
        if not previous.verify_signature(self.house_key.public_key):
            raise SignatureInvalid(f"bet certificate {previous.cert_id} was not issued by this house")
        ts = resolve_now(now)
        cert = renew_bet_cert(previous, bets, self.house_key, ts, self.ttl_ms)
        self._record(cert, ts)
        logger.info("bet certificate renewed", cert_id=cert.cert_id, renewal_of=previous.cert_id)
        return cert
