"""
Tests for OAuth error classification and retry policy.
"""

import httpx
import pytest

from credentials.errors import (
    ExpiredTokenError,
    InsufficientPermissionsError,
    InvalidTokenError,
    NetworkError,
    OAuthValidationError,
    RateLimitedError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    UnknownOAuthError,
    classify_oauth_error,
    error_for_code,
    error_response,
    get_retry_delay,
    is_retryable,
    requires_reauthentication,
)


def _status_error(status_code: int, json_body=None, headers=None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://vendor.example/oauth2/token")
    response = httpx.Response(status_code, json=json_body, headers=headers, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


class TestClassification:
    @pytest.mark.parametrize(
        "status_code, expected",
        [
            (400, OAuthValidationError),
            (401, InvalidTokenError),
            (403, InsufficientPermissionsError),
            (404, ResourceNotFoundError),
            (429, RateLimitedError),
            (502, ServiceUnavailableError),
            (418, UnknownOAuthError),
        ],
    )
    def test_by_status(self, status_code, expected):
        assert type(classify_oauth_error(_status_error(status_code))) is expected

    def test_body_code_wins_over_status(self):
        error = classify_oauth_error(_status_error(400, {"error": "invalid_grant"}))
        assert isinstance(error, InvalidTokenError)
        assert error.error_code == "invalid_grant"
        assert error.requires_reauth is True

    def test_dropbox_tagged_error(self):
        error = classify_oauth_error(_status_error(400, {"error": {".tag": "invalid_grant"}}))
        assert isinstance(error, InvalidTokenError)

    def test_retry_after_header(self):
        error = classify_oauth_error(_status_error(429, headers={"Retry-After": "12"}))
        assert error.retry_after == 12.0
        assert error.retry_after_supplied is True

    def test_transport_error_is_network(self):
        request = httpx.Request("POST", "https://vendor.example/oauth2/token")
        error = classify_oauth_error(httpx.ConnectError("boom", request=request))
        assert isinstance(error, NetworkError)
        assert error.retryable is True

    def test_message_hints(self):
        assert isinstance(classify_oauth_error(Exception("Token revoked by user")), InvalidTokenError)
        assert isinstance(classify_oauth_error(Exception("rate limit hit")), RateLimitedError)
        assert isinstance(classify_oauth_error(Exception("connection reset")), NetworkError)
        assert isinstance(classify_oauth_error(Exception("something odd")), UnknownOAuthError)

    def test_code_attribute(self):
        exc = Exception("vendor said no")
        exc.code = "token_expired"
        assert isinstance(classify_oauth_error(exc), ExpiredTokenError)

    def test_already_classified_passes_through(self):
        original = RateLimitedError("slow down")
        assert classify_oauth_error(original) is original

    def test_error_for_code(self):
        assert isinstance(error_for_code("invalid_refresh_token"), InvalidTokenError)
        assert isinstance(error_for_code("ratelimited"), RateLimitedError)
        assert isinstance(error_for_code("weird_code"), UnknownOAuthError)


class TestPolicy:
    def test_reauth_and_retry_flags(self):
        assert requires_reauthentication(InvalidTokenError()) is True
        assert requires_reauthentication(ExpiredTokenError()) is True
        assert requires_reauthentication(RateLimitedError()) is False
        assert is_retryable(ServiceUnavailableError()) is True
        assert is_retryable(InsufficientPermissionsError()) is False

    def test_no_delay_for_non_retryable(self):
        assert get_retry_delay(InvalidTokenError()) is None
        assert get_retry_delay(OAuthValidationError()) is None

    def test_vendor_retry_after_is_honoured(self):
        assert get_retry_delay(RateLimitedError(retry_after=7)) == 7

    def test_exponential_backoff_with_jitter(self):
        first = get_retry_delay(NetworkError(), attempt=1)
        third = get_retry_delay(NetworkError(), attempt=3)
        assert 1.0 <= first <= 2.0
        assert 4.0 <= third <= 5.0

    def test_backoff_is_capped(self):
        assert get_retry_delay(ServiceUnavailableError(), attempt=10) == 60.0


class TestErrorResponse:
    def test_payload(self):
        body = error_response(_status_error(401), "inst-1", "get_bearer_token")

        assert body["success"] is False
        assert body["error"]["type"] == "INVALID_TOKEN"
        assert body["error"]["requires_reauth"] is True
        assert body["error"]["should_retry"] is False
        assert body["error"]["http_status"] == 401
        assert body["metadata"] == {
            "instance_id": "inst-1",
            "operation": "get_bearer_token",
            "original_error": "error",
        }
