"""
Tests for CLOB request signing.
"""
import base64
import hashlib
import hmac
import os
import sys

from py_clob_client.signing.hmac import build_hmac_signature

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import ExchangeCredentials
from exchange_auth import serialize_body, build_auth_headers


SECRET = base64.urlsafe_b64encode(b"clob-test-secret-0123456789abcdef").decode()


def _creds(**overrides) -> ExchangeCredentials:
    fields = {"api_key": "key", "api_secret": SECRET, "passphrase": "pass"}
    fields.update(overrides)
    return ExchangeCredentials(**fields)


class TestSignature:

    def test_signature_matches_clob_client(self):
        headers = build_auth_headers(_creds(), "GET", "/positions?user=0xabc", timestamp="1700000000")

        assert headers["POLY_SIGNATURE"] == build_hmac_signature(
            SECRET, "1700000000", "GET", "/positions?user=0xabc"
        )

    def test_secret_is_decoded_and_signature_url_safe(self):
        expected = base64.urlsafe_b64encode(
            hmac.new(
                base64.urlsafe_b64decode(SECRET),
                b"1700000000GET/positions?user=0xabc",
                hashlib.sha256,
            ).digest()
        ).decode()

        headers = build_auth_headers(_creds(), "GET", "/positions?user=0xabc", timestamp="1700000000")

        assert headers["POLY_SIGNATURE"] == expected

    def test_body_is_part_of_signature(self):
        body = serialize_body({"token_id": "111", "size": "10"})

        signed = build_auth_headers(_creds(), "POST", "/orders", body, timestamp="1700000000")
        unsigned_body = build_auth_headers(_creds(), "POST", "/orders", timestamp="1700000000")

        assert signed["POLY_SIGNATURE"] != unsigned_body["POLY_SIGNATURE"]
        assert signed["POLY_SIGNATURE"] == build_hmac_signature(SECRET, "1700000000", "POST", "/orders", body)

    def test_serialize_body_is_compact(self):
        assert serialize_body({"a": 1, "b": "x"}) == '{"a":1,"b":"x"}'
        assert serialize_body(None) == ""


class TestAuthHeaders:

    def test_headers_carry_all_four_fields(self):
        headers = build_auth_headers(_creds(), "get", "/positions", timestamp="1700000000")

        assert headers["POLY_API_KEY"] == "key"
        assert headers["POLY_PASSPHRASE"] == "pass"
        assert headers["POLY_TIMESTAMP"] == "1700000000"
        # Method is upper-cased before signing
        assert headers["POLY_SIGNATURE"] == build_hmac_signature(SECRET, "1700000000", "GET", "/positions")
        assert "POLY_ADDRESS" not in headers

    def test_address_header_when_configured(self):
        headers = build_auth_headers(_creds(address="0xabc"), "GET", "/positions")

        assert headers["POLY_ADDRESS"] == "0xabc"

    def test_timestamp_defaults_to_now(self):
        headers = build_auth_headers(_creds(), "GET", "/positions")
        assert headers["POLY_TIMESTAMP"].isdigit()
