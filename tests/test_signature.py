"""Tests for webhook signing, verification and URL admission."""
import hashlib
import hmac
from datetime import datetime, timedelta

import pytest

from payment_orchestration.core.clock import to_unix_seconds
from payment_orchestration.core.errors import SignatureError
from payment_orchestration.webhooks.signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    generate_secret,
    headers_for,
    is_allowed_url,
    parse_signature_header,
    require_valid,
    sign,
    verify,
    verify_headers,
)

SECRET = "whsec_5f2b8c"
BODY = '{"id":"evt_1","type":"payment.completed"}'
NOW = datetime(2026, 1, 15, 12, 0, 0)
TS = to_unix_seconds(NOW)


class TestSign:
    @pytest.mark.unit
    def test_signs_timestamp_dot_body(self) -> None:
        expected = hmac.new(
            SECRET.encode(), f"{TS}.{BODY}".encode(), hashlib.sha256
        ).hexdigest()

        assert sign(BODY, SECRET, TS) == expected

    @pytest.mark.unit
    def test_bare_payload_signature(self) -> None:
        expected = hmac.new(SECRET.encode(), BODY.encode(), hashlib.sha256).hexdigest()

        assert sign(BODY, SECRET) == expected
        assert sign(BODY.encode(), SECRET) == expected

    @pytest.mark.unit
    def test_generated_secrets_are_unique(self) -> None:
        first, second = generate_secret(), generate_secret()

        assert len(first) == 64
        assert first != second


class TestVerify:
    @pytest.mark.unit
    def test_valid_signature(self) -> None:
        result = verify(BODY, sign(BODY, SECRET, TS), SECRET, TS, now=NOW)

        assert result.valid is True
        assert result.reason is None

    @pytest.mark.unit
    def test_tampered_body(self) -> None:
        signature = sign(BODY, SECRET, TS)

        result = verify(BODY.replace("completed", "failed"), signature, SECRET, TS, now=NOW)

        assert not result
        assert result.reason == "signature_mismatch"

    @pytest.mark.unit
    def test_wrong_secret(self) -> None:
        result = verify(BODY, sign(BODY, "other", TS), SECRET, TS, now=NOW)

        assert result.reason == "signature_mismatch"

    @pytest.mark.unit
    @pytest.mark.parametrize("skew", [timedelta(seconds=300), timedelta(seconds=-300)])
    def test_edge_of_tolerance_is_accepted(self, skew) -> None:
        result = verify(BODY, sign(BODY, SECRET, TS), SECRET, TS, now=NOW + skew)

        assert result.valid is True

    @pytest.mark.unit
    @pytest.mark.parametrize("skew", [timedelta(seconds=301), timedelta(seconds=-301)])
    def test_outside_tolerance_is_rejected(self, skew) -> None:
        result = verify(BODY, sign(BODY, SECRET, TS), SECRET, TS, now=NOW + skew)

        assert result.reason == "timestamp_outside_tolerance"

    @pytest.mark.unit
    def test_malformed_timestamp(self) -> None:
        result = verify(BODY, "abc", SECRET, "yesterday", now=NOW)

        assert result.reason == "malformed_timestamp"

    @pytest.mark.unit
    def test_missing_signature(self) -> None:
        assert verify(BODY, "", SECRET, TS, now=NOW).reason == "missing_signature"


class TestHeaders:
    @pytest.mark.unit
    def test_headers_round_trip(self) -> None:
        headers = headers_for(BODY, SECRET, now=NOW)

        assert headers[TIMESTAMP_HEADER] == str(TS)
        assert verify_headers(BODY, headers, SECRET, now=NOW).valid is True

    @pytest.mark.unit
    def test_header_lookup_is_case_insensitive(self) -> None:
        headers = {k.lower(): v for k, v in headers_for(BODY, SECRET, now=NOW).items()}

        assert verify_headers(BODY, headers, SECRET, now=NOW).valid is True

    @pytest.mark.unit
    def test_missing_timestamp_header(self) -> None:
        headers = {SIGNATURE_HEADER: sign(BODY, SECRET, TS)}

        assert verify_headers(BODY, headers, SECRET, now=NOW).reason == "missing_timestamp"

    @pytest.mark.unit
    def test_require_valid_raises(self) -> None:
        headers = headers_for(BODY, SECRET, now=NOW)

        with pytest.raises(SignatureError) as exc_info:
            require_valid(BODY, headers, SECRET, now=NOW + timedelta(minutes=10))

        assert exc_info.value.reason == "timestamp_outside_tolerance"
        assert exc_info.value.code == "SIGNATURE_ERROR"

    @pytest.mark.unit
    def test_parse_provider_style_header(self) -> None:
        timestamp, signatures = parse_signature_header("t=1700000000, v1=abc, v1=def, v0=old")

        assert timestamp == "1700000000"
        assert signatures == ["abc", "def"]

    @pytest.mark.unit
    def test_parse_header_without_timestamp(self) -> None:
        assert parse_signature_header("v1=abc,garbage") == (None, ["abc"])


class TestUrlAdmission:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "url",
        ["https://merchant.example.com/hooks", "http://localhost:8080/hooks"],
    )
    def test_default_mode_accepts_http_and_https(self, url) -> None:
        assert is_allowed_url(url) is True

    @pytest.mark.unit
    @pytest.mark.parametrize("url", ["ftp://example.com/hooks", "not a url", "https://"])
    def test_rejects_bad_scheme_or_host(self, url) -> None:
        assert is_allowed_url(url) is False

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "url",
        [
            "http://merchant.example.com/hooks",
            "https://localhost/hooks",
            "https://127.0.0.1/hooks",
            "https://10.0.0.5/hooks",
            "https://192.168.1.10/hooks",
            "https://169.254.169.254/latest",
            "https://[::1]/hooks",
        ],
    )
    def test_hardened_mode_rejects_plain_http_and_private_targets(self, url) -> None:
        assert is_allowed_url(url, hardened=True) is False

    @pytest.mark.unit
    def test_hardened_mode_accepts_public_https(self) -> None:
        assert is_allowed_url("https://merchant.example.com/hooks", hardened=True) is True
