import json

import pytest

from boxoffice.errors import Reason
from boxoffice.payments.signatures import (
    ERR_HEADER_FORMAT, ERR_JSON, ERR_MISMATCH, ERR_SECRET_MISSING,
    ERR_TIMESTAMP, ERR_URL_MISSING, construct_timestamped_event,
    construct_url_event, sign_timestamped, sign_url,
    verify_timestamped_signature, verify_url_signature,
)

SECRET = "whsec_abc123"
URL = "https://tickets.example.com/payment/webhook"
NOW = 1_700_000_000

EVENT = {
    "id": "evt_1",
    "type": "checkout.session.completed",
    "data": {"object": {"id": "cs_test_1"}},
}


def signed(event=EVENT, timestamp=NOW):
    return construct_timestamped_event(event, SECRET, timestamp)


class TestTimestampedScheme:
    def test_valid_signature_returns_event(self):
        body, header = signed()
        result = verify_timestamped_signature(body, header, SECRET, now=NOW)
        assert result.valid
        assert result.event == EVENT
        assert result.error is None

    def test_accepts_str_payload(self):
        body, header = signed()
        result = verify_timestamped_signature(
            body.decode(), header, SECRET, now=NOW
        )
        assert result.valid

    def test_tampered_body_is_rejected(self):
        body, header = signed()
        tampered = body.replace(b"cs_test_1", b"cs_test_2")
        result = verify_timestamped_signature(tampered, header, SECRET,
                                              now=NOW)
        assert not result.valid
        assert result.error == ERR_MISMATCH
        assert result.reason == Reason.SIGNATURE_MISMATCH

    def test_single_byte_change_is_rejected(self):
        body, header = signed()
        flipped = body[:-1] + bytes([body[-1] ^ 1])
        result = verify_timestamped_signature(flipped, header, SECRET,
                                              now=NOW)
        assert result.reason == Reason.SIGNATURE_MISMATCH

    def test_wrong_secret_is_rejected(self):
        body, header = signed()
        result = verify_timestamped_signature(body, header, "other", now=NOW)
        assert result.error == ERR_MISMATCH

    def test_any_matching_v1_candidate_is_accepted(self):
        body, header = signed()
        header = f"{header},v1={'0' * 64}"
        result = verify_timestamped_signature(body, header, SECRET, now=NOW)
        assert result.valid

    @pytest.mark.parametrize("offset", [301, -301, 10_000])
    def test_timestamp_outside_default_window(self, offset):
        body, header = signed(timestamp=NOW + offset)
        result = verify_timestamped_signature(body, header, SECRET, now=NOW)
        assert not result.valid
        assert result.error == ERR_TIMESTAMP
        assert result.reason == Reason.TIMESTAMP_OUT_OF_TOLERANCE

    def test_timestamp_on_window_edge_is_accepted(self):
        body, header = signed(timestamp=NOW - 300)
        assert verify_timestamped_signature(body, header, SECRET,
                                            now=NOW).valid

    def test_custom_tolerance(self):
        body, header = signed(timestamp=NOW - 60)
        strict = verify_timestamped_signature(body, header, SECRET,
                                              tolerance=30, now=NOW)
        assert strict.error == ERR_TIMESTAMP
        relaxed = verify_timestamped_signature(body, header, SECRET,
                                               tolerance=120, now=NOW)
        assert relaxed.valid

    @pytest.mark.parametrize("header", [
        "",
        "garbage",
        "t=abc,v1=deadbeef",
        "t=0,v1=deadbeef",
        f"t={NOW}",
        "v1=deadbeef",
        f"t={NOW},v0=deadbeef",
    ])
    def test_malformed_header(self, header):
        result = verify_timestamped_signature(b"{}", header, SECRET, now=NOW)
        assert not result.valid
        assert result.error == ERR_HEADER_FORMAT
        assert result.reason == Reason.INVALID_SIGNATURE_FORMAT

    def test_missing_secret(self):
        body, header = signed()
        result = verify_timestamped_signature(body, header, None, now=NOW)
        assert result.error == ERR_SECRET_MISSING
        assert result.reason == Reason.SECRET_MISSING

    def test_signed_non_json_payload(self):
        body = b"not json at all"
        header = sign_timestamped(body, SECRET, NOW)
        result = verify_timestamped_signature(body, header, SECRET, now=NOW)
        assert result.error == ERR_JSON
        assert result.reason == Reason.INVALID_PAYLOAD

    @pytest.mark.parametrize("doc", [
        [1, 2, 3],
        {"type": "x", "data": {}},
        {"id": "evt", "data": {}},
        {"id": "evt", "type": "x", "data": "nope"},
    ])
    def test_signed_payload_with_bad_envelope(self, doc):
        body = json.dumps(doc).encode()
        header = sign_timestamped(body, SECRET, NOW)
        result = verify_timestamped_signature(body, header, SECRET, now=NOW)
        assert result.error == ERR_JSON

    def test_errors_never_leak_secret_or_payload(self):
        body, header = signed()
        for result in (
            verify_timestamped_signature(body + b"x", header, SECRET,
                                         now=NOW),
            verify_timestamped_signature(body, header, SECRET,
                                         now=NOW + 10_000),
        ):
            assert SECRET not in result.error
            assert "cs_test_1" not in result.error


class TestUrlScheme:
    def test_valid_signature(self):
        body, header = construct_url_event(EVENT, SECRET, URL)
        result = verify_url_signature(body, header, SECRET, URL)
        assert result.valid
        assert result.event["type"] == EVENT["type"]

    def test_event_id_envelope(self):
        doc = {"event_id": "sq_evt", "type": "payment.updated", "data": {}}
        body, header = construct_url_event(doc, SECRET, URL)
        result = verify_url_signature(body, header, SECRET, URL)
        assert result.valid
        assert result.event["id"] == "sq_evt"

    def test_signature_is_bound_to_url(self):
        body, header = construct_url_event(EVENT, SECRET, URL)
        result = verify_url_signature(
            body, header, SECRET, "https://elsewhere.example.com/hook"
        )
        assert result.error == ERR_MISMATCH

    def test_tampered_body(self):
        body, header = construct_url_event(EVENT, SECRET, URL)
        result = verify_url_signature(body + b" ", header, SECRET, URL)
        assert result.reason == Reason.SIGNATURE_MISMATCH

    def test_missing_url_context(self):
        body, header = construct_url_event(EVENT, SECRET, URL)
        result = verify_url_signature(body, header, SECRET, None)
        assert result.error == ERR_URL_MISSING

    def test_missing_secret(self):
        body, header = construct_url_event(EVENT, SECRET, URL)
        result = verify_url_signature(body, header, "", URL)
        assert result.error == ERR_SECRET_MISSING

    @pytest.mark.parametrize("header", ["", "not base64!", "c2hvcnQ="])
    def test_malformed_header(self, header):
        result = verify_url_signature(b"{}", header, SECRET, URL)
        assert result.error == ERR_HEADER_FORMAT

    def test_signed_non_json_payload(self):
        body = b"<xml/>"
        result = verify_url_signature(body, sign_url(body, SECRET, URL),
                                      SECRET, URL)
        assert result.error == ERR_JSON
