"""House certificates: the root authority's delegation to one house device.

The root authority signs a `HouseCertificatePayload` naming the house, its
public key and a validity window. Players hold the root public key and an
allow-list of `(houseId, keyId, signature)` entries; a certificate that
validates but is not on the allow-list is still refused.

The root private key never exists on house or player devices; issuance happens
offline (see the ``rollet house-cert issue`` command).
"""

from __future__ import annotations

import pathlib
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import yaml
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from rollet.artifacts import (
    Payload,
    SignedArtifact,
    json_to_pem,
    loads_json_or_pem,
    register_artifact,
    validate_against_schema,
    wire,
)
from rollet.core import load_structured, resolve_now
from rollet.errors import Expired, MalformedPayload, NotAuthorized, NotYetValid, SignatureInvalid
from rollet.infra.observability import RolletLayer, get_logger
from rollet.keys import KeyPair, jwk_thumbprint, public_jwk, public_key_from_jwk

logger = get_logger("house_cert", RolletLayer.CERTS)

PEM_LABEL = "ROLLET HOUSE CERTIFICATE"

DEFAULT_CAPABILITIES: Tuple[str, ...] = ("admit", "lock-round", "issue-receipt", "redeem", "sync")


@dataclass(frozen=True)
class HouseCertificatePayload(Payload):
    KIND = "house-cert"

    house_id: str = wire("houseId")
    key_id: str = wire("keyId")
    public_key: Dict[str, str] = wire("publicKey")
    not_before: int = wire("notBefore")
    not_after: int = wire("notAfter")
    capabilities: Tuple[str, ...] = wire("capabilities", default=())

    def house_public_key(self) -> Ed25519PublicKey:
        return public_key_from_jwk(self.public_key)


@register_artifact
@dataclass(frozen=True)
class HouseCertificate(SignedArtifact[HouseCertificatePayload]):
    PAYLOAD_TYPE = HouseCertificatePayload
    SCHEMA = "house-cert"

    @property
    def house_id(self) -> str:
        return self.payload.house_id

    @property
    def key_id(self) -> str:
        return self.payload.key_id

    def public_key(self) -> Ed25519PublicKey:
        return self.payload.house_public_key()

    def to_pem(self) -> str:
        return house_cert_to_pem(self)


def build_house_cert_payload(
    house_id: str,
    public_key: Ed25519PublicKey,
    not_before: int,
    lifetime_ms: int,
    capabilities: Sequence[str] = DEFAULT_CAPABILITIES,
) -> HouseCertificatePayload:
    """Payload for ``public_key`` with ``keyId`` set to its JWK thumbprint."""
    jwk = public_jwk(public_key)
    return HouseCertificatePayload(
        house_id=house_id,
        key_id=jwk_thumbprint(jwk),
        public_key=jwk,
        not_before=int(not_before),
        not_after=int(not_before) + int(lifetime_ms),
        capabilities=tuple(capabilities),
    )


def issue_house_cert(payload: HouseCertificatePayload, root_key: KeyPair) -> HouseCertificate:
    """Sign ``payload`` with the root key. No validation is performed."""
    cert = HouseCertificate.create(payload, root_key)
    logger.info("house certificate issued", house_id=payload.house_id, key_id=payload.key_id)
    return cert


def _rejection_reason(cert: HouseCertificate, root_public_key: Ed25519PublicKey, now: int) -> Optional[str]:
    p = cert.payload
    if now < p.not_before:
        return NotYetValid.code
    if now > p.not_after:
        return Expired.code
    if not cert.verify_signature(root_public_key):
        return SignatureInvalid.code
    return None


def validate_house_cert(
    cert: HouseCertificate,
    root_public_key: Ed25519PublicKey,
    now: Optional[int] = None,
) -> bool:
    """True when ``now`` is inside ``[notBefore, notAfter]`` and the root signature verifies."""
    reason = _rejection_reason(cert, root_public_key, resolve_now(now))
    if reason:
        logger.rejected("house certificate", reason, house_id=cert.payload.house_id)
        return False
    return True


# ---------------------------------------------------------------------------
# Allow-list
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthorizationEntry:
    house_id: str
    key_id: str
    signature: str

    @classmethod
    def for_cert(cls, cert: HouseCertificate) -> "AuthorizationEntry":
        return cls(cert.payload.house_id, cert.payload.key_id, cert.signature)

    def to_dict(self) -> Dict[str, str]:
        return {"houseId": self.house_id, "keyId": self.key_id, "signature": self.signature}

    @classmethod
    def from_dict(cls, data: Any) -> "AuthorizationEntry":
        validate_against_schema(data, "authorization-entry")
        return cls(data["houseId"], data["keyId"], data["signature"])


class AllowList:
    """In-memory set of authorized house certificates."""

    def __init__(self, entries: Iterable[AuthorizationEntry] = ()):
        self._entries = set(entries)
        self._lock = threading.Lock()

    def add(self, entry: Union[AuthorizationEntry, HouseCertificate]) -> AuthorizationEntry:
        if isinstance(entry, HouseCertificate):
            entry = AuthorizationEntry.for_cert(entry)
        with self._lock:
            self._entries.add(entry)
        return entry

    def contains(self, entry: AuthorizationEntry) -> bool:
        with self._lock:
            return entry in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def to_list(self) -> List[Dict[str, str]]:
        with self._lock:
            entries = sorted(self._entries, key=lambda e: (e.house_id, e.key_id, e.signature))
        return [e.to_dict() for e in entries]

    @classmethod
    def from_data(cls, data: Any) -> "AllowList":
        if isinstance(data, dict):
            data = data.get("entries")
        if not isinstance(data, list):
            raise MalformedPayload("allow-list must be a list or an object with 'entries'")
        return cls(AuthorizationEntry.from_dict(item) for item in data)

    @classmethod
    def from_file(cls, path: Union[str, pathlib.Path]) -> "AllowList":
        """Load a YAML or JSON allow-list file."""
        try:
            data = load_structured(pathlib.Path(path))
        except (ValueError, yaml.YAMLError) as ex:
            raise MalformedPayload(f"cannot parse allow-list {path}: {ex}") from ex
        return cls.from_data(data)


def is_authorized(cert: HouseCertificate, allow_list: AllowList) -> bool:
    """Exact ``(houseId, keyId, signature)`` membership."""
    return allow_list.contains(AuthorizationEntry.for_cert(cert))


def require_trusted_house_cert(
    cert: HouseCertificate,
    root_public_key: Ed25519PublicKey,
    allow_list: AllowList,
    now: Optional[int] = None,
) -> None:
    """Raise the specific error when ``cert`` is not valid and authorized."""
    reason = _rejection_reason(cert, root_public_key, resolve_now(now))
    if reason == NotYetValid.code:
        raise NotYetValid(f"house certificate for {cert.house_id} is not yet valid")
    if reason == Expired.code:
        raise Expired(f"house certificate for {cert.house_id} has expired")
    if reason == SignatureInvalid.code:
        raise SignatureInvalid(f"house certificate for {cert.house_id} is not signed by the root key")
    if not is_authorized(cert, allow_list):
        raise NotAuthorized(f"house certificate for {cert.house_id} is not on the allow-list")


# ---------------------------------------------------------------------------
# Import / export
# ---------------------------------------------------------------------------


def parse_house_cert(text: Union[str, bytes]) -> HouseCertificate:
    return HouseCertificate.from_json(text)


def load_house_cert(text: Union[str, bytes]) -> HouseCertificate:
    """Import a house certificate from raw JSON or a PEM block."""
    return HouseCertificate.from_dict(loads_json_or_pem(text))


def house_cert_to_pem(cert: HouseCertificate) -> str:
    return json_to_pem(cert.to_dict(), PEM_LABEL)
