"""Key material for the rollet trust layer.

Every role holds Ed25519 keys:
- the root authority (signs house certificates; private key never on devices)
- the house device (signs bet certificates, bank receipts and sync proofs)
- each player device (signs join responses)

Players additionally hold a symmetric pairing secret used for TOTP admission
codes (see `rollet.codes`).

Public keys travel in two encodings:
- OKP JWK ``{"kty": "OKP", "crv": "Ed25519", "x": <b64url>}`` inside house
  certificates
- raw 32-byte keys as base64url inside join responses (the raw bytes feed the
  player uid derivation)

Key ids are RFC 7638 JWK thumbprints (base64url SHA-256 of the canonical
required members).
"""

from __future__ import annotations

import hashlib
import json
import pathlib
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from rollet.core import b64url_decode, b64url_encode, canonical_json_bytes

PAIRING_SECRET_BYTES = 32


# ---------------------------------------------------------------------------
# Raw encodings
# ---------------------------------------------------------------------------


def public_key_raw(key: Union[Ed25519PublicKey, Ed25519PrivateKey]) -> bytes:
    if isinstance(key, Ed25519PrivateKey):
        key = key.public_key()
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def public_key_from_raw(raw: bytes) -> Ed25519PublicKey:
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def public_key_b64(key: Union[Ed25519PublicKey, Ed25519PrivateKey]) -> str:
    return b64url_encode(public_key_raw(key))


def public_key_from_b64(value: str) -> Ed25519PublicKey:
    return public_key_from_raw(b64url_decode(value))


# ---------------------------------------------------------------------------
# JWK
# ---------------------------------------------------------------------------


def public_jwk(key: Union[Ed25519PublicKey, Ed25519PrivateKey]) -> Dict[str, str]:
    """Public-only OKP JWK with the RFC 7638 required members."""

    return {"kty": "OKP", "crv": "Ed25519", "x": public_key_b64(key)}


def public_key_from_jwk(jwk: Dict[str, Any]) -> Ed25519PublicKey:
    if not isinstance(jwk, dict) or jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ValueError("Only OKP/Ed25519 JWK is supported")
    x = jwk.get("x")
    if not isinstance(x, str) or not x:
        raise ValueError("JWK must include 'x'")
    return public_key_from_b64(x)


def jwk_thumbprint(jwk: Dict[str, Any]) -> str:
    """RFC 7638 thumbprint of an OKP JWK (base64url, no padding)."""

    required = {"crv": jwk.get("crv"), "kty": jwk.get("kty"), "x": jwk.get("x")}
    return b64url_encode(hashlib.sha256(canonical_json_bytes(required)).digest())


def key_id(key: Union[Ed25519PublicKey, Ed25519PrivateKey]) -> str:
    return jwk_thumbprint(public_jwk(key))


def private_jwk(key: Ed25519PrivateKey, kid: Optional[str] = None) -> Dict[str, str]:
    priv_bytes = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    jwk = public_jwk(key)
    jwk["d"] = b64url_encode(priv_bytes)
    jwk["kid"] = kid or jwk_thumbprint(jwk)
    return jwk


def private_key_from_jwk(jwk: Dict[str, Any]) -> Ed25519PrivateKey:
    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ValueError("Only OKP/Ed25519 JWK is supported")
    d = jwk.get("d")
    if not d:
        raise ValueError("JWK must include 'd' (private)")
    priv = Ed25519PrivateKey.from_private_bytes(b64url_decode(d))
    x = jwk.get("x")
    if x and x != public_key_b64(priv):
        raise ValueError("JWK 'x' does not match the private key")
    return priv


# ---------------------------------------------------------------------------
# Keypairs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 signing keypair handle."""

    private_key: Ed25519PrivateKey

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(Ed25519PrivateKey.generate())

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self.private_key.public_key()

    @property
    def public_raw(self) -> bytes:
        return public_key_raw(self.private_key)

    @property
    def public_jwk(self) -> Dict[str, str]:
        return public_jwk(self.private_key)

    @property
    def key_id(self) -> str:
        return key_id(self.private_key)

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)

    def to_jwk(self) -> Dict[str, str]:
        return private_jwk(self.private_key)

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "KeyPair":
        return cls(private_key_from_jwk(jwk))


def verify_signature(public_key: Ed25519PublicKey, signature: bytes, message: bytes) -> bool:
    """Ed25519 verification returning a boolean."""

    if len(signature) != 64:
        return False
    try:
        public_key.verify(signature, message)
    except InvalidSignature:
        return False
    return True


def generate_pairing_secret() -> bytes:
    return secrets.token_bytes(PAIRING_SECRET_BYTES)


def load_keypair(path: Union[str, pathlib.Path]) -> KeyPair:
    """Load an Ed25519 keypair from a JSON file.

    Accepted file shapes:

    1) A private OKP JWK: ``{"kty":"OKP","crv":"Ed25519","x":"...","d":"..."}``
    2) A wrapper object: ``{"private_jwk": <jwk>}``
    """

    obj = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    if isinstance(obj, dict) and isinstance(obj.get("private_jwk"), dict):
        obj = obj["private_jwk"]
    if not isinstance(obj, dict):
        raise ValueError("key file must be a JSON object")
    return KeyPair.from_jwk(obj)


def load_public_key(path: Union[str, pathlib.Path]) -> Ed25519PublicKey:
    """Load an Ed25519 public key from a JWK file (private members ignored)."""

    obj = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    if isinstance(obj, dict) and isinstance(obj.get("private_jwk"), dict):
        obj = obj["private_jwk"]
    if isinstance(obj, dict) and obj.get("d"):
        return private_key_from_jwk(obj).public_key()
    return public_key_from_jwk(obj)
