"""rollet.artifacts

Signed-envelope machinery shared by every rollet artifact.

Profile / invariants:
- An artifact is ``{"payload": {...}, "signature": "<b64url>"}``.
- Every payload carries an explicit ``type`` discriminant (``house-cert``,
  ``join-response``, ``bet-cert``, ``bank-receipt``).
- The signing input is the canonical JSON bytes (`rollet.core.canonical_json_bytes`)
  of the payload. Optional fields are omitted when absent.
- Verification always reconstructs the payload from the typed dataclass, never
  from the raw transport dict.
- Wire decoding is strict: additional, missing or wrongly typed fields raise
  `MalformedPayload` (checked against the bundled JSON Schemas).

Signatures are raw Ed25519 (64 bytes) encoded base64url without padding.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import pathlib
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, ClassVar, Dict, Generic, List, Optional, Type, TypeVar, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from rollet.core import b64url_decode, b64url_encode, canonical_json_bytes, canonical_json_text
from rollet.errors import MalformedPayload
from rollet.keys import KeyPair, verify_signature

SCHEMAS_DIR = pathlib.Path(__file__).resolve().parent / "schemas"
SCHEMA_BASE_URI = "https://schemas.rollet.dev/"

_PEM_RE = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----(?P<body>.*?)-----END \1-----",
    re.DOTALL,
)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of all bundled schemas so `$ref` resolves across files."""

    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        schema_id = schema.get("$id") or SCHEMA_BASE_URI + schema_path.name
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Validator for a bundled schema, e.g. ``schema_validator("bet-cert")``."""

    path = SCHEMAS_DIR / f"{name}.schema.json"
    schema = json.loads(path.read_text(encoding="utf-8"))
    return Draft202012Validator(schema, registry=_schema_registry())


def schema_errors(obj: Any, name: str) -> List[str]:
    validator = schema_validator(name)
    return [f"{error.json_path}: {error.message}" for error in validator.iter_errors(obj)]


def validate_against_schema(obj: Any, name: str) -> None:
    errors = schema_errors(obj, name)
    if errors:
        raise MalformedPayload(f"{name} does not match schema", detail=errors)


# ---------------------------------------------------------------------------
# Payload variants
# ---------------------------------------------------------------------------


def wire(name: str, **kwargs: Any) -> Any:
    """Dataclass field carrying its camelCase wire name."""

    metadata = dict(kwargs.pop("metadata", {}) or {})
    metadata["wire"] = name
    return field(metadata=metadata, **kwargs)


def _to_json_value(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_to_json_value(v) for v in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


@dataclass(frozen=True)
class Payload:
    """Base class for signed payload variants.

    Subclasses set ``KIND`` (the ``type`` discriminant) and declare their fields
    with `wire()` so the camelCase wire names stay next to the attribute.
    Fields whose value is ``None`` are omitted from the wire form.
    """

    KIND: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.KIND}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            out[f.metadata.get("wire", f.name)] = _to_json_value(value)
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Payload":
        if not isinstance(data, dict):
            raise MalformedPayload(f"{cls.KIND} payload must be an object")
        if data.get("type") != cls.KIND:
            raise MalformedPayload(f"expected payload type {cls.KIND!r}, got {data.get('type')!r}")
        kwargs: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            name = f.metadata.get("wire", f.name)
            if name in data:
                kwargs[f.name] = cls._decode_field(f.name, data[name])
        try:
            return cls(**kwargs)
        except (TypeError, ValueError) as ex:
            raise MalformedPayload(f"invalid {cls.KIND} payload: {ex}") from ex

    @classmethod
    def _decode_field(cls, name: str, value: Any) -> Any:
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, list):
            return tuple(value)
        return value

    def signing_input(self) -> bytes:
        return canonical_json_bytes(self.to_dict())


P = TypeVar("P", bound=Payload)
A = TypeVar("A", bound="SignedArtifact")


def sign_payload(payload: Payload, key: KeyPair) -> str:
    """Sign the canonical payload bytes; returns a base64url signature."""

    return b64url_encode(key.sign(payload.signing_input()))


def verify_payload_signature(payload: Payload, signature: str, public_key: Ed25519PublicKey) -> bool:
    try:
        sig = b64url_decode(signature)
    except (ValueError, binascii.Error):
        return False
    return verify_signature(public_key, sig, payload.signing_input())


_ARTIFACT_TYPES: Dict[str, Type["SignedArtifact"]] = {}


def register_artifact(cls: Type[A]) -> Type[A]:
    """Class decorator: make an artifact parseable by `parse_artifact`."""

    _ARTIFACT_TYPES[cls.PAYLOAD_TYPE.KIND] = cls
    return cls


@dataclass(frozen=True)
class SignedArtifact(Generic[P]):
    """A payload plus the signature over its canonical bytes."""

    PAYLOAD_TYPE: ClassVar[Type[Payload]] = Payload
    SCHEMA: ClassVar[str] = ""

    payload: P
    signature: str

    @classmethod
    def create(cls: Type[A], payload: P, key: KeyPair, **extra: Any) -> A:
        return cls(payload=payload, signature=sign_payload(payload, key), **extra)

    def verify_signature(self, public_key: Ed25519PublicKey) -> bool:
        return verify_payload_signature(self.payload, self.signature, public_key)

    def to_dict(self) -> Dict[str, Any]:
        return {"payload": self.payload.to_dict(), "signature": self.signature}

    def to_json(self) -> str:
        """Compact canonical JSON text for QR or manual transport."""
        return canonical_json_text(self.to_dict())

    @classmethod
    def from_dict(cls: Type[A], data: Any) -> A:
        if cls.SCHEMA:
            validate_against_schema(data, cls.SCHEMA)
        if not isinstance(data, dict):
            raise MalformedPayload(f"{cls.__name__} must be an object")
        payload = cls.PAYLOAD_TYPE.from_dict(data.get("payload"))
        return cls(payload=payload, signature=data["signature"], **cls._extra_from_dict(data))

    @classmethod
    def _extra_from_dict(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_json(cls: Type[A], text: Union[str, bytes]) -> A:
        return cls.from_dict(loads_json(text))


# ---------------------------------------------------------------------------
# Transport decoding
# ---------------------------------------------------------------------------


def loads_json(text: Union[str, bytes]) -> Any:
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as ex:
            raise MalformedPayload("artifact text is not UTF-8") from ex
    try:
        return json.loads(text)
    except (TypeError, ValueError) as ex:
        raise MalformedPayload(f"artifact is not valid JSON: {ex}") from ex


def pem_to_json(pem: str) -> Any:
    """Decode a PEM block wrapping base64-encoded JSON."""

    m = _PEM_RE.search(pem or "")
    if not m:
        raise MalformedPayload("no PEM block found")
    body = re.sub(r"\s+", "", m.group("body"))
    try:
        raw = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise MalformedPayload("PEM body is not base64") from ex
    return loads_json(raw)


def json_to_pem(obj: Any, label: str) -> str:
    body = base64.b64encode(canonical_json_bytes(obj)).decode("ascii")
    lines = [body[i : i + 64] for i in range(0, len(body), 64)]
    return "\n".join([f"-----BEGIN {label}-----", *lines, f"-----END {label}-----"]) + "\n"


def loads_json_or_pem(text: Union[str, bytes]) -> Any:
    """Accept raw JSON text or a PEM-wrapped JSON block."""

    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    if "-----BEGIN " in text:
        return pem_to_json(text)
    return loads_json(text)


def parse_artifact(text: Union[str, bytes]) -> Any:
    """Parse any signed artifact or join challenge, dispatching on its type tag."""

    # Importing the artifact modules registers their classes.
    from rollet import bet_cert, house_cert, join, receipts  # noqa: F401

    data = loads_json_or_pem(text)
    if not isinstance(data, dict):
        raise MalformedPayload("artifact must be a JSON object")
    if data.get("type") == join.JoinChallenge.KIND:
        return join.JoinChallenge.from_dict(data)
    payload = data.get("payload")
    kind = payload.get("type") if isinstance(payload, dict) else None
    cls = _ARTIFACT_TYPES.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise MalformedPayload(f"unknown artifact type: {kind!r}")
    return cls.from_dict(data)
