import json
import logging

import pytest

from rollet.artifacts import parse_artifact
from rollet.core import b64url_decode, b64url_encode
from rollet.errors import Expired, MalformedPayload, NotAuthorized, NotYetValid, SignatureInvalid
from rollet.house_cert import (
    PEM_LABEL,
    AllowList,
    AuthorizationEntry,
    HouseCertificate,
    build_house_cert_payload,
    house_cert_to_pem,
    is_authorized,
    issue_house_cert,
    load_house_cert,
    parse_house_cert,
    require_trusted_house_cert,
    validate_house_cert,
)
from rollet.keys import KeyPair

T0 = 1_709_251_200_000
DAY = 24 * 60 * 60 * 1000


def _cert(root_key, house_key, not_before=T0, lifetime=DAY, house_id="h1"):
    payload = build_house_cert_payload(house_id, house_key.public_key, not_before, lifetime)
    return issue_house_cert(payload, root_key)


def _flip_signature_byte(sig: str, index: int) -> str:
    raw = bytearray(b64url_decode(sig))
    raw[index] ^= 0x01
    return b64url_encode(bytes(raw))


class TestValidation:
    def test_key_id_is_thumbprint_of_embedded_key(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        assert cert.key_id == house_key.key_id
        assert cert.payload.public_key == house_key.public_jwk

    def test_window_is_inclusive(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        pub = root_key.public_key
        assert validate_house_cert(cert, pub, now=T0)
        assert validate_house_cert(cert, pub, now=T0 + DAY)
        assert not validate_house_cert(cert, pub, now=T0 - 1)
        assert not validate_house_cert(cert, pub, now=T0 + DAY + 1)

    def test_wrong_root_key_fails(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        assert not validate_house_cert(cert, KeyPair.generate().public_key, now=T0)

    def test_altered_payload_fails(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        data = cert.to_dict()
        data["payload"]["houseId"] = "h2"
        assert not validate_house_cert(HouseCertificate.from_dict(data), root_key.public_key, now=T0)

    def test_extended_window_fails(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        data = cert.to_dict()
        data["payload"]["notAfter"] += DAY
        assert not validate_house_cert(HouseCertificate.from_dict(data), root_key.public_key, now=T0)

    @pytest.mark.parametrize("index", [0, 17, 31, 32, 63])
    def test_flipped_signature_byte_fails(self, root_key, house_key, index):
        cert = _cert(root_key, house_key)
        data = cert.to_dict()
        data["signature"] = _flip_signature_byte(cert.signature, index)
        assert not validate_house_cert(HouseCertificate.from_dict(data), root_key.public_key, now=T0)

    def test_altered_signature_text_fails(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
        last = cert.signature[-1]
        data = cert.to_dict()
        data["signature"] = cert.signature[:-1] + alphabet[alphabet.index(last) ^ 1]
        assert not validate_house_cert(HouseCertificate.from_dict(data), root_key.public_key, now=T0)

    def test_rejection_reason_is_logged(self, root_key, house_key, caplog):
        cert = _cert(root_key, house_key)
        with caplog.at_level(logging.WARNING, logger="rollet.certs.house_cert"):
            assert not validate_house_cert(cert, root_key.public_key, now=T0 + 2 * DAY)
        assert any(getattr(r, "error_code", "") == "expired" for r in caplog.records)


class TestAllowList:
    def test_exact_match_required(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        allow = AllowList()
        assert not is_authorized(cert, allow)
        allow.add(cert)
        assert is_authorized(cert, allow)

        # Same house and key, re-issued: different signature, not authorized.
        reissued = _cert(root_key, house_key, not_before=T0 + 1)
        assert not is_authorized(reissued, allow)

    def test_from_yaml_file(self, tmp_path, root_key, house_key):
        cert = _cert(root_key, house_key)
        entry = AuthorizationEntry.for_cert(cert)
        path = tmp_path / "allow.yaml"
        path.write_text(
            "entries:\n"
            f"  - houseId: '{entry.house_id}'\n"
            f"    keyId: '{entry.key_id}'\n"
            f"    signature: '{entry.signature}'\n",
            encoding="utf-8",
        )
        assert is_authorized(cert, AllowList.from_file(path))

    def test_from_json_list(self, tmp_path, root_key, house_key):
        cert = _cert(root_key, house_key)
        path = tmp_path / "allow.json"
        path.write_text(json.dumps([AuthorizationEntry.for_cert(cert).to_dict()]), encoding="utf-8")
        allow = AllowList.from_file(path)
        assert len(allow) == 1
        assert allow.to_list() == [AuthorizationEntry.for_cert(cert).to_dict()]

    def test_malformed_entry_is_rejected(self, tmp_path):
        path = tmp_path / "allow.json"
        path.write_text(json.dumps([{"houseId": "h1", "kid": "x", "signature": "y"}]), encoding="utf-8")
        with pytest.raises(MalformedPayload):
            AllowList.from_file(path)


class TestRequireTrusted:
    def test_trusted_cert_passes(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        require_trusted_house_cert(cert, root_key.public_key, AllowList([AuthorizationEntry.for_cert(cert)]), T0)

    def test_each_failure_has_its_own_error(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        allow = AllowList()
        allow.add(cert)
        with pytest.raises(NotYetValid):
            require_trusted_house_cert(cert, root_key.public_key, allow, T0 - 1)
        with pytest.raises(Expired):
            require_trusted_house_cert(cert, root_key.public_key, allow, T0 + DAY + 1)
        with pytest.raises(SignatureInvalid):
            require_trusted_house_cert(cert, KeyPair.generate().public_key, allow, T0)
        with pytest.raises(NotAuthorized):
            require_trusted_house_cert(cert, root_key.public_key, AllowList(), T0)


class TestImport:
    def test_json_roundtrip(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        restored = parse_house_cert(cert.to_json())
        assert restored == cert
        assert validate_house_cert(restored, root_key.public_key, now=T0)

    def test_pem_roundtrip(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        pem = house_cert_to_pem(cert)
        assert pem.startswith(f"-----BEGIN {PEM_LABEL}-----\n")
        assert pem.rstrip().endswith(f"-----END {PEM_LABEL}-----")
        assert all(len(line) <= 64 for line in pem.splitlines())
        assert load_house_cert(pem) == cert
        assert load_house_cert(cert.to_json()) == cert

    def test_pem_with_surrounding_text(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        text = "Your certificate:\n\n" + cert.to_pem() + "\nKeep it safe.\n"
        assert load_house_cert(text) == cert

    def test_parse_artifact_dispatches_on_type(self, root_key, house_key):
        cert = _cert(root_key, house_key)
        assert parse_artifact(cert.to_pem()) == cert

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "-----BEGIN ROLLET HOUSE CERTIFICATE-----\n!!!\n-----END ROLLET HOUSE CERTIFICATE-----",
            "[]",
            "{}",
        ],
    )
    def test_garbage_is_malformed(self, text):
        with pytest.raises(MalformedPayload):
            load_house_cert(text)

    def test_unknown_field_is_malformed(self, root_key, house_key):
        data = _cert(root_key, house_key).to_dict()
        data["payload"]["admin"] = True
        with pytest.raises(MalformedPayload):
            HouseCertificate.from_dict(data)

    def test_missing_field_is_malformed(self, root_key, house_key):
        data = _cert(root_key, house_key).to_dict()
        del data["payload"]["keyId"]
        with pytest.raises(MalformedPayload):
            HouseCertificate.from_dict(data)

    def test_wrong_type_is_malformed(self, root_key, house_key):
        data = _cert(root_key, house_key).to_dict()
        data["payload"]["notAfter"] = str(data["payload"]["notAfter"])
        with pytest.raises(MalformedPayload):
            HouseCertificate.from_dict(data)
