"""Reconciliation of the local ledger with the remote authority.

Protocol (JSON over HTTP):

    POST {base}/sync/challenge  {houseCert}                          -> {nonce}
    POST {base}/sync            {houseCert, entries, proof}          -> {lastSeq}

``proof`` is ``{nonce, signature}`` where ``signature`` is the house key's
Ed25519 signature over the nonce bytes, so the authority knows the batch comes
from the holder of the certified key.

The watermark only ever moves to the ``lastSeq`` the authority acknowledged
(clamped to the highest ``seq`` actually sent). Any failure leaves it where it
was; the next call resends everything above it.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from rollet.core import b64url_encode
from rollet.errors import NetworkError, NotAuthorized
from rollet.house_cert import HouseCertificate
from rollet.infra.config import get_config
from rollet.infra.observability import RolletLayer, get_correlation_id, get_logger
from rollet.infra.resilience import RetryExhaustedError, RetryPolicy
from rollet.keys import KeyPair, public_key_raw
from rollet.ledger import Ledger, LedgerEntry

logger = get_logger("sync", RolletLayer.SYNC)


class AuthorityClient:
    """Minimal JSON client for the remote authority."""

    def __init__(self, base_url: str, timeout_seconds: Optional[float] = None):
        if not base_url:
            raise ValueError("authority base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = (
            get_config().sync.timeout_seconds.get() if timeout_seconds is None else float(timeout_seconds)
        )

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        req = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "X-Correlation-Id": get_correlation_id(),
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as ex:
            raise NetworkError(f"{url} answered HTTP {ex.code}", detail={"status": ex.code}) from ex
        except (urllib.error.URLError, OSError) as ex:
            raise NetworkError(f"{url} unreachable: {ex}") from ex
        try:
            data = json.loads(raw.decode("utf-8") or "{}")
        except ValueError as ex:
            raise NetworkError(f"{url} returned invalid JSON") from ex
        if not isinstance(data, dict):
            raise NetworkError(f"{url} returned a non-object response")
        return data

    def request_challenge(self, house_cert: HouseCertificate) -> str:
        data = self._post("/sync/challenge", {"houseCert": house_cert.to_dict()})
        nonce = data.get("nonce")
        if not isinstance(nonce, str) or not nonce:
            raise NetworkError("authority challenge response has no nonce")
        return nonce

    def submit(
        self,
        house_cert: HouseCertificate,
        entries: Sequence[LedgerEntry],
        proof: Dict[str, str],
    ) -> int:
        data = self._post(
            "/sync",
            {
                "houseCert": house_cert.to_dict(),
                "entries": [e.to_dict() for e in entries],
                "proof": proof,
            },
        )
        last_seq = data.get("lastSeq")
        if not isinstance(last_seq, int) or isinstance(last_seq, bool):
            raise NetworkError("authority sync response has no integer lastSeq")
        return last_seq


@dataclass
class SyncResult:
    ok: bool
    synced: int = 0
    last_seq: int = 0
    mode: str = "online"
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"ok": self.ok, "synced": self.synced, "lastSeq": self.last_seq, "mode": self.mode}
        if self.error:
            d["error"] = self.error
        return d


def _sync_once(
    ledger: Ledger,
    house_cert: HouseCertificate,
    house_key: KeyPair,
    client: AuthorityClient,
) -> SyncResult:
    batch = ledger.get_unsynced()
    if not batch:
        return SyncResult(ok=True, synced=0, last_seq=ledger.watermark)

    nonce = client.request_challenge(house_cert)
    proof = {"nonce": nonce, "signature": b64url_encode(house_key.sign(nonce.encode("utf-8")))}
    acked = client.submit(house_cert, batch, proof)

    highest_sent = batch[-1].seq
    upto = min(acked, highest_sent)
    before = ledger.watermark
    after = ledger.mark_synced(upto)
    synced = sum(1 for e in batch if before < e.seq <= after)
    if after < highest_sent:
        logger.warning("authority acknowledged part of the batch", sent=highest_sent, acknowledged=acked)
    return SyncResult(ok=True, synced=synced, last_seq=after)


def sync_ledger(
    ledger: Ledger,
    house_cert: HouseCertificate,
    house_key: KeyPair,
    client: Optional[AuthorityClient] = None,
    retry: Optional[RetryPolicy] = None,
) -> SyncResult:
    """
    Push unsynced entries to the authority and advance the watermark.

    Without an authority (no client and no ``sync.authority_url``) every entry is
    marked synced locally and the result reports ``mode="offline"``.
    """
    if client is None:
        url = get_config().sync.authority_url.get()
        if not url:
            unsynced = ledger.get_unsynced()
            if unsynced:
                ledger.mark_synced(unsynced[-1].seq)
            logger.warning("no authority configured; marking ledger synced locally", entries=len(unsynced))
            return SyncResult(ok=True, synced=len(unsynced), last_seq=ledger.watermark, mode="offline")
        client = AuthorityClient(url)

    if public_key_raw(house_key.public_key) != public_key_raw(house_cert.public_key()):
        raise NotAuthorized("house key does not match the house certificate public key")

    if retry is None:
        retry = RetryPolicy.from_config(
            retryable_exceptions=(NetworkError,),
            on_retry=lambda attempt, exc, delay: logger.warning(
                "sync attempt failed; retrying", attempt=attempt, delay_seconds=round(delay, 3), error=str(exc)
            ),
        )

    try:
        result = retry.execute(lambda: _sync_once(ledger, house_cert, house_key, client))
    except RetryExhaustedError as ex:
        logger.error("sync failed", error_code=NetworkError.code, attempts=ex.attempts, error=str(ex.last_exception))
        return SyncResult(ok=False, last_seq=ledger.watermark, error=str(ex.last_exception))
    logger.info("ledger synced", synced=result.synced, last_seq=result.last_seq)
    return result


def pending_entries(ledger: Ledger) -> List[Dict[str, Any]]:
    """Wire form of the entries the next sync would send."""
    return [e.to_dict() for e in ledger.get_unsynced()]
