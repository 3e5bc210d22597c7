import pytest

from rollet.artifacts import parse_artifact
from rollet.bet_cert import (
    BetCertificate,
    BetCertificateService,
    Seat,
    authoritative_cert,
    hash_bets,
    issue_bet_cert,
    lock_round,
    parse_bet_cert,
    renew_bet_cert,
    verify_bet_cert,
)
from rollet.bets import Bet, BetKind
from rollet.errors import MalformedPayload, SignatureInvalid
from rollet.keys import KeyPair
from rollet.ledger import LedgerEntryType

T0 = 1_709_251_200_000
MINUTE = 60_000


def _bets():
    return [
        Bet.place(BetKind.SINGLE, [7], amount=5, bet_id="b1"),
        Bet.place(BetKind.EVEN, amount=2, bet_id="b2"),
    ]


class TestBets:
    @pytest.mark.parametrize(
        "kind,selection",
        [
            (BetKind.SINGLE, []),
            (BetKind.SPLIT, [1]),
            (BetKind.QUARTER, [1, 2, 3]),
            (BetKind.EVEN, [2]),
        ],
    )
    def test_arity_is_enforced(self, kind, selection):
        with pytest.raises(ValueError):
            Bet.place(kind, selection)

    def test_board_range_and_distinct_numbers(self):
        with pytest.raises(ValueError):
            Bet.place(BetKind.SINGLE, [0])
        with pytest.raises(ValueError):
            Bet.place(BetKind.SINGLE, [21])
        with pytest.raises(ValueError):
            Bet.place(BetKind.SPLIT, [4, 4])

    def test_amount_must_be_positive(self):
        with pytest.raises(ValueError):
            Bet.place(BetKind.ODD, amount=0)

    def test_default_odds(self):
        assert Bet.place(BetKind.SINGLE, [3]).odds == 18
        assert Bet.place(BetKind.QUARTER, [1, 2, 5, 6]).odds == 3

    def test_dict_roundtrip_is_strict(self):
        bet = Bet.place(BetKind.SPLIT, [1, 2], amount=3, bet_id="b9")
        assert Bet.from_dict(bet.to_dict()) == bet
        with pytest.raises(MalformedPayload):
            Bet.from_dict(dict(bet.to_dict(), note="x"))
        with pytest.raises(MalformedPayload):
            Bet.from_dict(dict(bet.to_dict(), type="jackpot"))


class TestBetHash:
    def test_deterministic_and_order_sensitive(self):
        bets = _bets()
        assert hash_bets(bets) == hash_bets([b.to_dict() for b in bets])
        assert hash_bets(bets) != hash_bets(list(reversed(bets)))

    def test_any_change_alters_hash(self):
        bets = _bets()
        changed = [bets[0], Bet.place(BetKind.EVEN, amount=3, bet_id="b2")]
        assert hash_bets(bets) != hash_bets(changed)


class TestBetCertificate:
    def test_five_minute_window(self, house_key):
        cert = issue_bet_cert("seat1", "r7", hash_bets(_bets()), house_key, now=T0, ttl_ms=5 * MINUTE)
        assert cert.payload.not_after == T0 + 5 * MINUTE
        assert verify_bet_cert(cert, house_key.public_key, now=T0 + 4 * MINUTE)
        assert not verify_bet_cert(cert, house_key.public_key, now=T0 + 6 * MINUTE)
        assert not verify_bet_cert(cert, house_key.public_key, now=T0 - 1)

    def test_other_house_key_fails(self, house_key):
        cert = issue_bet_cert("seat1", "r7", hash_bets(_bets()), house_key, now=T0, ttl_ms=MINUTE)
        assert not verify_bet_cert(cert, KeyPair.generate().public_key, now=T0)

    def test_changed_hash_fails(self, house_key):
        cert = issue_bet_cert("seat1", "r7", hash_bets(_bets()), house_key, now=T0, ttl_ms=MINUTE)
        data = cert.to_dict()
        data["payload"]["betHash"] = hash_bets(_bets()[:1])
        assert not verify_bet_cert(BetCertificate.from_dict(data), house_key.public_key, now=T0)

    def test_json_roundtrip(self, house_key):
        cert = issue_bet_cert("seat1", "r7", hash_bets(_bets()), house_key, now=T0, ttl_ms=MINUTE, bank_ref="p-1")
        assert parse_bet_cert(cert.to_json()) == cert
        assert parse_artifact(cert.to_json()) == cert
        assert "renewalOf" not in cert.to_dict()["payload"]

    def test_bad_hash_is_malformed(self, house_key):
        data = issue_bet_cert("seat1", "r7", hash_bets(_bets()), house_key, now=T0, ttl_ms=MINUTE).to_dict()
        data["payload"]["betHash"] = "not-a-hash"
        with pytest.raises(MalformedPayload):
            BetCertificate.from_dict(data)


class TestLockRound:
    def test_one_cert_per_seat_in_order(self, house_key):
        seats = [Seat(str(i), _bets()) for i in range(1, 9)]
        certs = lock_round(seats, house_key, "r7", now=T0, ttl_ms=MINUTE, max_workers=4)
        assert [c.payload.player for c in certs] == [s.seat for s in seats]
        assert len({c.cert_id for c in certs}) == len(seats)
        assert all(c.payload.not_before == T0 and c.payload.not_after == T0 + MINUTE for c in certs)
        assert all(verify_bet_cert(c, house_key.public_key, now=T0) for c in certs)

    def test_duplicate_seat_rejected(self, house_key):
        with pytest.raises(ValueError):
            lock_round([Seat("1"), Seat("1")], house_key, "r7", now=T0)

    def test_empty_round(self, house_key):
        assert lock_round([], house_key, "r7", now=T0) == []


class TestRenewal:
    def test_renewal_supersedes_previous(self, house_key):
        first = issue_bet_cert("seat1", "r7", hash_bets(_bets()), house_key, now=T0, ttl_ms=5 * MINUTE)
        renewed = renew_bet_cert(first, _bets()[:1], house_key, now=T0 + MINUTE, ttl_ms=5 * MINUTE)
        assert renewed.payload.renewal_of == first.cert_id
        assert authoritative_cert([first, renewed], house_key.public_key, now=T0 + 2 * MINUTE) == renewed

    def test_expired_renewal_still_supersedes(self, house_key):
        first = issue_bet_cert("seat1", "r7", hash_bets(_bets()), house_key, now=T0, ttl_ms=10 * MINUTE)
        renewed = renew_bet_cert(first, _bets()[:1], house_key, now=T0, ttl_ms=MINUTE)
        assert authoritative_cert([first, renewed], house_key.public_key, now=T0 + 5 * MINUTE) is None

    def test_forged_renewal_is_ignored(self, house_key):
        first = issue_bet_cert("seat1", "r7", hash_bets(_bets()), house_key, now=T0, ttl_ms=5 * MINUTE)
        forged = renew_bet_cert(first, [], KeyPair.generate(), now=T0, ttl_ms=5 * MINUTE)
        assert authoritative_cert([first, forged], house_key.public_key, now=T0) == first


class TestService:
    def test_lock_round_records_ledger_entries(self, house_key, ledger):
        service = BetCertificateService(house_key, ledger, ttl_ms=MINUTE, max_workers=2)
        certs = service.lock_round("r7", [Seat("1", _bets()), Seat("2")], now=T0)

        entries = ledger.entries()
        assert [e.type for e in entries] == [
            LedgerEntryType.BET_CERT_ISSUED.value,
            LedgerEntryType.BET_CERT_ISSUED.value,
            LedgerEntryType.ROUND_LOCKED.value,
        ]
        assert entries[0].payload["signature"] == certs[0].signature
        assert entries[-1].payload == {"round": "r7", "seats": 2, "certIds": [c.cert_id for c in certs]}

    def test_renew_records_link(self, house_key, ledger):
        service = BetCertificateService(house_key, ledger, ttl_ms=MINUTE)
        (first,) = service.lock_round("r7", [Seat("1", _bets())], now=T0)
        renewed = service.renew(first, _bets()[:1], now=T0 + 1000)
        assert ledger.entries()[-1].payload["renewalOf"] == first.cert_id
        assert renewed.payload.renewal_of == first.cert_id

    def test_renew_refuses_foreign_cert(self, house_key, ledger):
        foreign = issue_bet_cert("seat1", "r7", hash_bets([]), KeyPair.generate(), now=T0, ttl_ms=MINUTE)
        with pytest.raises(SignatureInvalid):
            BetCertificateService(house_key, ledger).renew(foreign, [], now=T0)
