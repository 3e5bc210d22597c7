"""rollet: trust layer for an in-person, offline-capable betting table.

House certificates, join challenge/response, bet certificates, bank receipts,
the hash-chained house ledger with authority sync, and the short codes derived
from them.
"""

__version__ = "0.3.0"

from rollet.errors import (  # noqa: E402
    ChallengeMismatch,
    Expired,
    LedgerIntegrityError,
    MalformedPayload,
    NetworkError,
    NotAuthorized,
    NotYetValid,
    ReplayDetected,
    RolletError,
    SignatureInvalid,
)
from rollet.keys import KeyPair  # noqa: E402

__all__ = [
    "ChallengeMismatch",
    "Expired",
    "KeyPair",
    "LedgerIntegrityError",
    "MalformedPayload",
    "NetworkError",
    "NotAuthorized",
    "NotYetValid",
    "ReplayDetected",
    "RolletError",
    "SignatureInvalid",
    "__version__",
]
