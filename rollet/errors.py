"""Error taxonomy for the rollet trust layer.

Verification functions return booleans for expected trust failures so callers
can present a uniform "rejected" outcome. The exceptions below are raised by
operations whose failure is operator-actionable (malformed input, network) and
by the stateful house-side desks that need to say *why* something was refused.
"""

from __future__ import annotations

from typing import Any, Optional


class RolletError(Exception):
    """Base class for all rollet errors."""

    code = "rollet_error"

    def __init__(self, message: str = "", detail: Optional[Any] = None):
        self.message = message or self.code
        self.detail = detail
        super().__init__(self.message)


class SignatureInvalid(RolletError):
    """Signature does not verify over the reconstructed payload."""

    code = "signature_invalid"


class Expired(RolletError):
    """Artifact is past its notAfter."""

    code = "expired"


class NotYetValid(RolletError):
    """Artifact is before its notBefore."""

    code = "not_yet_valid"


class NotAuthorized(RolletError):
    """Valid signature, but not trusted (allow-list miss, key mismatch, unknown code)."""

    code = "not_authorized"


class ChallengeMismatch(RolletError):
    """Join response does not answer the challenge it claims to."""

    code = "challenge_mismatch"


class ReplayDetected(RolletError):
    """Nonce or receipt already consumed."""

    code = "replay_detected"


class MalformedPayload(RolletError):
    """Decoding, parsing or schema failure."""

    code = "malformed_payload"


class NetworkError(RolletError):
    """Remote authority unreachable or answered with an error."""

    code = "network_error"


class LedgerIntegrityError(RolletError):
    """Entry does not extend the stored chain, or the chain fails recomputation."""

    code = "ledger_integrity"
