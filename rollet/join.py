"""Join protocol: admitting a player device to a round.

1. The house shows a `JoinChallenge` (its certificate, the round, a fresh
   128-bit nonce and a short window).
2. The player validates the challenge against the root key, derives its
   per-house uid and answers with a signed `JoinResponse`.
3. The house checks the response (`verify_response`) and, through
   `AdmissionDesk`, consumes the nonce exactly once and seats the player.

The player uid is ``hex(SHA256(raw_public_key || house_id))``, so the same
device has an unlinkable identity at every house.
"""

from __future__ import annotations

import binascii
import secrets
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from rollet.artifacts import Payload, SignedArtifact, loads_json, register_artifact, validate_against_schema, wire
from rollet.core import b64url_decode, b64url_encode, canonical_json_text, resolve_now, sha256_bytes
from rollet.errors import (
    ChallengeMismatch,
    Expired,
    MalformedPayload,
    NotYetValid,
    ReplayDetected,
    SignatureInvalid,
)
from rollet.house_cert import AllowList, HouseCertificate, require_trusted_house_cert, validate_house_cert
from rollet.infra.observability import RolletLayer, get_logger
from rollet.keys import KeyPair, public_key_b64, public_key_from_raw
from rollet.ledger import Ledger, LedgerEntryType
from rollet.replay import NonceRegistry

logger = get_logger("join", RolletLayer.JOIN)

NONCE_BYTES = 16


@dataclass(frozen=True)
class JoinChallenge(Payload):
    """Unsigned challenge; its trust comes from the embedded house certificate."""

    KIND = "join-challenge"

    house_cert: HouseCertificate = wire("houseCert")
    round_id: str = wire("round")
    nonce: str = wire("nonce")
    not_before: int = wire("notBefore")
    not_after: int = wire("notAfter")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinChallenge":
        validate_against_schema(data, "join-challenge")
        return super().from_dict(data)

    @classmethod
    def _decode_field(cls, name: str, value: Any) -> Any:
        if name == "house_cert":
            return HouseCertificate.from_dict(value)
        return super()._decode_field(name, value)

    def to_json(self) -> str:
        return canonical_json_text(self.to_dict())


@dataclass(frozen=True)
class JoinResponsePayload(Payload):
    KIND = "join-response"

    player_uid: str = wire("playerUid")
    player_public_key: str = wire("playerPublicKey")
    round_id: str = wire("round")
    seat: str = wire("seat")
    nonce: str = wire("nonce")
    bank_ref: Optional[str] = wire("bankRef", default=None)


@register_artifact
@dataclass(frozen=True)
class JoinResponse(SignedArtifact[JoinResponsePayload]):
    """Signed join answer. ``alias`` is a display name and is not signed."""

    PAYLOAD_TYPE = JoinResponsePayload
    SCHEMA = "join-response"

    alias: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        if self.alias is not None:
            d["alias"] = self.alias
        return d

    @classmethod
    def _extra_from_dict(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"alias": data.get("alias")}


def parse_join_challenge(text: Union[str, bytes]) -> JoinChallenge:
    return JoinChallenge.from_dict(loads_json(text))


def parse_join_response(text: Union[str, bytes]) -> JoinResponse:
    return JoinResponse.from_json(text)


def create_challenge(
    house_cert: HouseCertificate,
    round_id: str,
    ttl_ms: Optional[int] = None,
    now: Optional[int] = None,
) -> JoinChallenge:
    if ttl_ms is None:
        from rollet.infra.config import get_config

        ttl_ms = get_config().join.challenge_ttl_ms.get()
    ts = resolve_now(now)
    return JoinChallenge(
        house_cert=house_cert,
        round_id=round_id,
        nonce=b64url_encode(secrets.token_bytes(NONCE_BYTES)),
        not_before=ts,
        not_after=ts + int(ttl_ms),
    )


def validate_challenge(
    challenge: JoinChallenge,
    root_public_key: Ed25519PublicKey,
    now: Optional[int] = None,
) -> bool:
    """Player side: the challenge window first, then the embedded house certificate."""
    ts = resolve_now(now)
    if ts < challenge.not_before:
        logger.rejected("join challenge", NotYetValid.code, round=challenge.round_id)
        return False
    if ts > challenge.not_after:
        logger.rejected("join challenge", Expired.code, round=challenge.round_id)
        return False
    return validate_house_cert(challenge.house_cert, root_public_key, ts)


def derive_uid(player_public_key_raw: bytes, house_id: str) -> str:
    return sha256_bytes(bytes(player_public_key_raw) + house_id.encode("utf-8"))


def create_response(
    alias: Optional[str],
    challenge: JoinChallenge,
    player_key: KeyPair,
    seat: str,
    bank_ref: Optional[str] = None,
) -> JoinResponse:
    payload = JoinResponsePayload(
        player_uid=derive_uid(player_key.public_raw, challenge.house_cert.house_id),
        player_public_key=public_key_b64(player_key.public_key),
        round_id=challenge.round_id,
        seat=str(seat),
        nonce=challenge.nonce,
        bank_ref=bank_ref,
    )
    return JoinResponse.create(payload, player_key, alias=alias)


def _response_rejection(response: JoinResponse, challenge: JoinChallenge) -> Optional[str]:
    p = response.payload
    if p.round_id != challenge.round_id or p.nonce != challenge.nonce:
        return ChallengeMismatch.code
    try:
        raw = b64url_decode(p.player_public_key)
        public_key = public_key_from_raw(raw)
    except (ValueError, binascii.Error):
        return MalformedPayload.code
    if derive_uid(raw, challenge.house_cert.house_id) != p.player_uid:
        return "uid_mismatch"
    if not response.verify_signature(public_key):
        return SignatureInvalid.code
    return None


def verify_response(response: JoinResponse, challenge: JoinChallenge) -> bool:
    """House side: round, nonce, uid and signature. Single use is not checked here."""
    reason = _response_rejection(response, challenge)
    if reason:
        logger.rejected("join response", reason, round=challenge.round_id, seat=response.payload.seat)
        return False
    return True


# =============================================================================
# HOUSE-SIDE ADMISSION
# =============================================================================


@dataclass(frozen=True)
class Admission:
    round_id: str
    seat: str
    player_uid: str
    alias: Optional[str]
    bank_ref: Optional[str]
    admitted_at: int

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "round": self.round_id,
            "seat": self.seat,
            "playerUid": self.player_uid,
            "admittedAt": self.admitted_at,
        }
        if self.bank_ref is not None:
            d["bankRef"] = self.bank_ref
        return d


class AdmissionDesk:
    """
    Issues join challenges and admits players exactly once per challenge.

    The desk refuses to issue challenges unless its own house certificate is
    valid and on the allow-list. Outstanding challenges are dropped once answered
    or expired, and consumed nonces are tracked per round in a
    `NonceRegistry`, so replaying an accepted response raises `ReplayDetected`.
    """

    def __init__(
        self,
        house_cert: HouseCertificate,
        root_public_key: Ed25519PublicKey,
        allow_list: AllowList,
        ledger: Ledger,
        nonces: Optional[NonceRegistry] = None,
        challenge_ttl_ms: Optional[int] = None,
    ):
        self.house_cert = house_cert
        self.root_public_key = root_public_key
        self.allow_list = allow_list
        self.ledger = ledger
        self.nonces = nonces or NonceRegistry()
        self.challenge_ttl_ms = challenge_ttl_ms
        self._challenges: Dict[Tuple[str, str], JoinChallenge] = {}
        self._seats: Dict[str, Dict[str, Admission]] = {}
        self._lock = threading.RLock()

    def issue_challenge(self, round_id: str, now: Optional[int] = None) -> JoinChallenge:
        ts = resolve_now(now)
        require_trusted_house_cert(self.house_cert, self.root_public_key, self.allow_list, ts)
        challenge = create_challenge(self.house_cert, round_id, self.challenge_ttl_ms, ts)
        with self._lock:
            self._prune_challenges(ts)
            self._challenges[(round_id, challenge.nonce)] = challenge
            self.ledger.append(
                LedgerEntryType.JOIN_CHALLENGE_ISSUED,
                {"round": round_id, "nonce": challenge.nonce, "notAfter": challenge.not_after},
                now=ts,
            )
        logger.info("join challenge issued", round=round_id)
        return challenge

    def admit(self, response: JoinResponse, now: Optional[int] = None) -> Admission:
        ts = resolve_now(now)
        p = response.payload
        with self._lock:
            challenge = self._challenges.get((p.round_id, p.nonce))
            if challenge is None:
                if not self.nonces.is_fresh(p.round_id, p.nonce):
                    raise ReplayDetected(f"join nonce already used in round {p.round_id}")
                raise ChallengeMismatch(f"no outstanding challenge for round {p.round_id}")
            if ts > challenge.not_after:
                raise Expired(f"join challenge for round {p.round_id} has expired")
            if ts < challenge.not_before:
                raise NotYetValid(f"join challenge for round {p.round_id} is not yet valid")
            if not verify_response(response, challenge):
                raise SignatureInvalid(f"join response for seat {p.seat} does not verify")

            seats = self._seats.setdefault(p.round_id, {})
            holder = seats.get(p.seat)
            if holder is not None and holder.player_uid != p.player_uid:
                raise ChallengeMismatch(f"seat {p.seat} is already taken in round {p.round_id}")
            if not self.nonces.check_and_register(p.round_id, p.nonce, ts):
                raise ReplayDetected(f"join nonce already used in round {p.round_id}")

            admission = Admission(
                round_id=p.round_id,
                seat=p.seat,
                player_uid=p.player_uid,
                alias=response.alias,
                bank_ref=p.bank_ref,
                admitted_at=ts,
            )
            seats[p.seat] = admission
            del self._challenges[(p.round_id, p.nonce)]
            self.ledger.append(LedgerEntryType.ADMISSION, admission.to_dict(), now=ts)

        logger.info("player admitted", round=p.round_id, seat=p.seat)
        return admission

    def outstanding_challenges(self) -> int:
        with self._lock:
            return len(self._challenges)

    def _prune_challenges(self, now: int) -> None:
        stale = [k for k, c in self._challenges.items() if c.not_after < now]
        for key in stale:
            del self._challenges[key]

    def admissions(self, round_id: str) -> Dict[str, Admission]:
        with self._lock:
            return dict(self._seats.get(round_id, {}))
