"""Tests for api/base.py - error body format."""

from api.base import APIError, ErrorCodes, error_response
from utils.timezone import parse_iso


class TestErrorResponse:
    """Tests for error_response()."""

    def test_structure(self):
        body = error_response(ErrorCodes.AUTHENTICATION_FAILED, "Invalid credentials")

        assert body["error"] == "AUTHENTICATION_FAILED"
        assert body["message"] == "Invalid credentials"
        assert set(body) == {"error", "message", "timestamp"}

    def test_timestamp_is_utc_iso(self):
        body = error_response("ERR", "msg")

        assert body["timestamp"].endswith("Z")
        assert parse_iso(body["timestamp"]).utcoffset().total_seconds() == 0

    def test_details_included_when_given(self):
        details = [{"field": "email", "message": "value is not a valid email address"}]
        body = error_response(ErrorCodes.VALIDATION_ERROR, "Request validation failed", details)
        assert body["details"] == details

    def test_body_validates_as_model(self):
        APIError.model_validate(error_response("ERR", "msg"))


class TestErrorCodes:
    """Codes clients branch on must keep their exact spelling."""

    def test_codes_equal_their_names(self):
        for name, value in vars(ErrorCodes).items():
            if name.isupper():
                assert value == name

    def test_has_core_codes(self):
        assert ErrorCodes.MISSING_TOKEN == "MISSING_TOKEN"
        assert ErrorCodes.RATE_LIMITED == "RATE_LIMITED"
        assert ErrorCodes.INTERNAL_SERVER_ERROR == "INTERNAL_SERVER_ERROR"
