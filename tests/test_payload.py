"""Tests for payload decoding and validation."""

import json
import sys

import pytest
from pydantic import ValidationError

from notifier.services.payload import NotificationPayload, PayloadRejected, parse_payload


def encode(data) -> bytes:
    return json.dumps(data).encode("utf-8")


class TestValidPayloads:
    def test_parses_valid_payload(self):
        """Test a well-formed message becomes a payload."""
        payload = parse_payload(encode({"numbers": ["628123"], "content": "hi", "api_key": "k"}))

        assert payload.numbers == ("628123",)
        assert payload.content == "hi"
        assert payload.api_key == "k"

    def test_numeric_numbers_are_coerced_to_strings(self):
        """Test numbers given as JSON numbers become strings."""
        payload = parse_payload(
            encode({"numbers": [628123, "628456", 628789.0], "content": "hi", "api_key": "k"})
        )

        assert payload.numbers == ("628123", "628456", "628789")

    def test_missing_api_key_uses_default(self):
        """Test the configured key fills in for a message without one."""
        payload = parse_payload(
            encode({"numbers": ["628123"], "content": "hi"}),
            default_api_key="fallback",
        )

        assert payload.api_key == "fallback"

    def test_message_api_key_wins_over_default(self):
        payload = parse_payload(
            encode({"numbers": ["1"], "content": "hi", "api_key": "own"}),
            default_api_key="fallback",
        )

        assert payload.api_key == "own"

    def test_unknown_fields_are_ignored(self):
        payload = parse_payload(
            encode({"numbers": ["1"], "content": "hi", "api_key": "k", "campaign": 7})
        )

        assert not hasattr(payload, "campaign")

    def test_payload_is_immutable(self):
        """Test a validated payload cannot be changed."""
        payload = parse_payload(encode({"numbers": ["1"], "content": "hi", "api_key": "k"}))

        with pytest.raises(ValidationError):
            payload.content = "changed"

    def test_summary_excludes_api_key(self):
        payload = NotificationPayload(numbers=["1", "2"], content="hello", api_key="secret")

        summary = payload.summary()

        assert summary["recipients"] == 2
        assert "secret" not in str(summary)


class TestMalformedBodies:
    @pytest.mark.parametrize(
        "body",
        [b"not json", b"{\"numbers\": [", b"", b"\xff\xfe\xfa"],
    )
    def test_undecodable_bodies_are_rejected(self, body):
        """Test bodies that are not JSON are rejected without a field."""
        with pytest.raises(PayloadRejected) as exc_info:
            parse_payload(body)

        assert exc_info.value.field is None

    @pytest.mark.skipif(
        not hasattr(sys, "get_int_max_str_digits"), reason="no int conversion limit"
    )
    def test_oversized_integer_is_rejected(self):
        """Test an integer beyond the int conversion limit is treated as malformed."""
        body = b'{"numbers": [' + b"1" * 5000 + b'], "content": "hi", "api_key": "k"}'

        with pytest.raises(PayloadRejected) as exc_info:
            parse_payload(body)

        assert exc_info.value.field is None

    def test_deeply_nested_json_is_rejected(self):
        body = b"[" * 100000 + b"]" * 100000

        with pytest.raises(PayloadRejected):
            parse_payload(body)

    @pytest.mark.parametrize("data", [[], "text", 42, None])
    def test_non_object_json_is_rejected(self, data):
        with pytest.raises(PayloadRejected, match="not a JSON object"):
            parse_payload(encode(data))


class TestStructuralValidation:
    @pytest.mark.parametrize(
        "data, field",
        [
            ({"numbers": [], "content": "hi", "api_key": "k"}, "numbers"),
            ({"content": "hi", "api_key": "k"}, "numbers"),
            ({"numbers": "628123", "content": "hi", "api_key": "k"}, "numbers"),
            ({"numbers": [True], "content": "hi", "api_key": "k"}, "numbers"),
            ({"numbers": [float("nan")], "content": "hi", "api_key": "k"}, "numbers"),
            ({"numbers": [float("inf")], "content": "hi", "api_key": "k"}, "numbers"),
            ({"numbers": [{"n": 1}], "content": "hi", "api_key": "k"}, "numbers"),
            ({"numbers": ["1"], "api_key": "k"}, "content"),
            ({"numbers": ["1"], "content": "", "api_key": "k"}, "content"),
            ({"numbers": ["1"], "content": 5, "api_key": "k"}, "content"),
            ({"numbers": ["1"], "content": "hi"}, "api_key"),
            ({"numbers": ["1"], "content": "hi", "api_key": ""}, "api_key"),
        ],
    )
    def test_violation_names_the_field(self, data, field):
        """Test each structural violation reports the offending field."""
        with pytest.raises(PayloadRejected) as exc_info:
            parse_payload(encode(data))

        assert exc_info.value.field == field
