"""Ledger reconciliation with the remote authority."""

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from rollet.core import b64url_decode
from rollet.errors import NetworkError, NotAuthorized
from rollet.infra.resilience import RetryPolicy
from rollet.keys import KeyPair, verify_signature
from rollet.ledger import LedgerEntryType
from rollet.sync import AuthorityClient, pending_entries, sync_ledger

T0 = 1_709_251_200_000


def _fill(ledger, n):
    for i in range(n):
        ledger.append(LedgerEntryType.ADMISSION, {"round": "r7", "seat": str(i)}, now=T0 + i)


def _no_sleep_retry(attempts=3):
    return RetryPolicy(max_attempts=attempts, retryable_exceptions=(NetworkError,), sleep=lambda _: None)


class FakeAuthority:
    """Records submissions; acknowledges up to ``ack_limit`` entries per batch."""

    def __init__(self, ack_limit=None, failures=0):
        self.ack_limit = ack_limit
        self.failures = failures
        self.batches = []
        self.proofs = []

    def request_challenge(self, house_cert):
        if self.failures:
            self.failures -= 1
            raise NetworkError("authority unreachable")
        return "sync-nonce-1"

    def submit(self, house_cert, entries, proof):
        self.batches.append([e.seq for e in entries])
        self.proofs.append(proof)
        acked = entries if self.ack_limit is None else entries[: self.ack_limit]
        return acked[-1].seq if acked else 0


class TestSyncLedger:
    def test_full_sync(self, ledger, house_cert, house_key):
        _fill(ledger, 4)
        authority = FakeAuthority()
        result = sync_ledger(ledger, house_cert, house_key, client=authority, retry=_no_sleep_retry())

        assert result.ok and result.mode == "online"
        assert result.synced == 4 and result.last_seq == 4
        assert ledger.watermark == 4
        assert authority.batches == [[1, 2, 3, 4]]

        proof = authority.proofs[0]
        assert proof["nonce"] == "sync-nonce-1"
        assert verify_signature(house_key.public_key, b64url_decode(proof["signature"]), b"sync-nonce-1")

    def test_partial_ack_resends_remainder(self, ledger, house_cert, house_key):
        _fill(ledger, 5)
        authority = FakeAuthority(ack_limit=2)

        first = sync_ledger(ledger, house_cert, house_key, client=authority, retry=_no_sleep_retry())
        assert first.synced == 2 and ledger.watermark == 2

        authority.ack_limit = None
        second = sync_ledger(ledger, house_cert, house_key, client=authority, retry=_no_sleep_retry())
        assert second.synced == 3 and ledger.watermark == 5
        assert authority.batches == [[1, 2, 3, 4, 5], [3, 4, 5]]

    def test_ack_beyond_batch_is_clamped(self, ledger, house_cert, house_key):
        _fill(ledger, 2)

        class Overeager(FakeAuthority):
            def submit(self, house_cert, entries, proof):
                super().submit(house_cert, entries, proof)
                return 99

        result = sync_ledger(ledger, house_cert, house_key, client=Overeager(), retry=_no_sleep_retry())
        assert result.last_seq == 2
        assert ledger.watermark == 2

    def test_nothing_to_send(self, ledger, house_cert, house_key):
        authority = FakeAuthority()
        result = sync_ledger(ledger, house_cert, house_key, client=authority, retry=_no_sleep_retry())
        assert result.ok and result.synced == 0
        assert authority.batches == []

    def test_transient_failures_are_retried(self, ledger, house_cert, house_key):
        _fill(ledger, 3)
        authority = FakeAuthority(failures=2)
        delays = []
        retry = RetryPolicy(max_attempts=3, retryable_exceptions=(NetworkError,), sleep=delays.append)

        result = sync_ledger(ledger, house_cert, house_key, client=authority, retry=retry)
        assert result.ok and ledger.watermark == 3
        assert len(delays) == 2

    def test_exhausted_retries_leave_watermark(self, ledger, house_cert, house_key):
        _fill(ledger, 3)
        ledger.mark_synced(1)
        authority = FakeAuthority(failures=10)

        result = sync_ledger(ledger, house_cert, house_key, client=authority, retry=_no_sleep_retry(2))
        assert not result.ok
        assert "unreachable" in result.error
        assert ledger.watermark == 1
        assert [e.seq for e in ledger.get_unsynced()] == [2, 3]

    def test_key_must_match_certificate(self, ledger, house_cert):
        _fill(ledger, 1)
        with pytest.raises(NotAuthorized):
            sync_ledger(ledger, house_cert, KeyPair.generate(), client=FakeAuthority(), retry=_no_sleep_retry())
        assert ledger.watermark == 0

    def test_offline_mode_without_authority(self, ledger, house_cert, house_key):
        _fill(ledger, 3)
        result = sync_ledger(ledger, house_cert, house_key)
        assert result.ok and result.mode == "offline"
        assert result.to_dict() == {"ok": True, "synced": 3, "lastSeq": 3, "mode": "offline"}
        assert ledger.get_unsynced() == []

    def test_pending_entries(self, ledger):
        _fill(ledger, 2)
        ledger.mark_synced(1)
        assert [e["seq"] for e in pending_entries(ledger)] == [2]


class _AuthorityHandler(BaseHTTPRequestHandler):
    received = []

    def do_POST(self):
        body = json.loads(self.rfile.read(int(self.headers["Content-Length"])))
        type(self).received.append((self.path, body, self.headers.get("X-Correlation-Id")))
        if self.path == "/sync/challenge":
            out = {"nonce": "n-123"}
        elif self.path == "/sync":
            out = {"lastSeq": body["entries"][-1]["seq"]}
        else:
            self.send_response(500)
            self.end_headers()
            return
        data = json.dumps(out).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def authority_url():
    _AuthorityHandler.received = []
    server = ThreadingHTTPServer(("127.0.0.1", 0), _AuthorityHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


class TestAuthorityClient:
    def test_sync_over_http(self, authority_url, ledger, house_cert, house_key, _fresh_config):
        _fill(ledger, 2)
        _fresh_config.set("sync.authority_url", authority_url)
        result = sync_ledger(ledger, house_cert, house_key, retry=_no_sleep_retry())

        assert result.ok and result.mode == "online" and ledger.watermark == 2
        paths = [p for p, _, _ in _AuthorityHandler.received]
        assert paths == ["/sync/challenge", "/sync"]
        _, body, correlation_id = _AuthorityHandler.received[1]
        assert body["proof"]["nonce"] == "n-123"
        assert body["houseCert"] == house_cert.to_dict()
        assert correlation_id

    def test_http_error_is_network_error(self, authority_url, house_cert):
        client = AuthorityClient(authority_url + "/elsewhere", timeout_seconds=2)
        with pytest.raises(NetworkError):
            client.request_challenge(house_cert)

    def test_base_url_required(self):
        with pytest.raises(ValueError):
            AuthorityClient("")
