"""
OAuth error taxonomy and classification.

Vendor token endpoints fail in many shapes — HTTP status codes, OAuth2
``error`` codes in a JSON body, Slack-style ``{"ok": false, "error": ...}``
payloads, transport errors.  :func:`classify_oauth_error` folds all of
them into one :class:`OAuthError` subclass that carries the policy
decisions the watcher and request path act on: does the user have to
re-authenticate, may the call be retried, and after how long.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 60.0


class CredentialError(Exception):
    """Base class for everything raised by the credential subsystem."""


class OAuthError(CredentialError):
    error_type = "UNKNOWN_ERROR"
    status_code = 500
    requires_reauth = False
    retryable = False
    default_retry_after: Optional[float] = None
    log_level = logging.ERROR
    user_message = "An unexpected authentication error occurred. Please try again."

    def __init__(
        self,
        message: str = "",
        *,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message or self.user_message)
        self.error_code = error_code
        self.retry_after_supplied = retry_after is not None
        self.retry_after = retry_after if retry_after is not None else self.default_retry_after
        if status_code is not None:
            self.status_code = status_code


class InvalidTokenError(OAuthError):
    error_type = "INVALID_TOKEN"
    status_code = 401
    requires_reauth = True
    log_level = logging.WARNING
    user_message = "Your authorization is no longer valid. Please re-authenticate."


class ExpiredTokenError(InvalidTokenError):
    error_type = "EXPIRED_TOKEN"
    user_message = "Your authorization has expired. Please re-authenticate."


class InsufficientPermissionsError(OAuthError):
    error_type = "INSUFFICIENT_PERMISSIONS"
    status_code = 403
    log_level = logging.INFO
    user_message = "The connected account lacks the required permissions."


class RateLimitedError(OAuthError):
    error_type = "RATE_LIMITED"
    status_code = 429
    retryable = True
    default_retry_after = 60.0
    log_level = logging.WARNING
    user_message = "Rate limit exceeded. Please try again later."


class ResourceNotFoundError(OAuthError):
    error_type = "RESOURCE_NOT_FOUND"
    status_code = 404
    log_level = logging.INFO
    user_message = "The requested resource was not found."


class OAuthValidationError(OAuthError):
    error_type = "VALIDATION_ERROR"
    status_code = 400
    log_level = logging.WARNING
    user_message = "The authentication request was rejected as invalid."


class NetworkError(OAuthError):
    error_type = "NETWORK_ERROR"
    status_code = 503
    retryable = True
    default_retry_after = 5.0
    log_level = logging.WARNING
    user_message = "Network error contacting the service. Please try again."


class ServiceUnavailableError(OAuthError):
    error_type = "SERVICE_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_retry_after = 30.0
    log_level = logging.WARNING
    user_message = "The service is temporarily unavailable. Please try again later."


class RefreshLimitExceededError(OAuthError):
    error_type = "REFRESH_LIMIT_EXCEEDED"
    status_code = 503
    retryable = True
    log_level = logging.WARNING
    user_message = "Token refresh is temporarily paused after repeated failures. Please try again later."


class UnknownOAuthError(OAuthError):
    pass


class ReauthenticationRequired(CredentialError):
    """The instance cannot be used until the user redoes the OAuth consent flow."""

    def __init__(self, instance_id: str, reason: str) -> None:
        super().__init__(f"Instance {instance_id} requires re-authentication ({reason})")
        self.instance_id = instance_id
        self.reason = reason


class InstanceNotFoundError(CredentialError, LookupError):
    def __init__(self, instance_id: str, service_name: str) -> None:
        super().__init__(f"No {service_name} instance found for ID: {instance_id}")
        self.instance_id = instance_id
        self.service_name = service_name


class WatcherNotRunningError(CredentialError, RuntimeError):
    pass


# OAuth2 / vendor error codes → exception class.
_ERROR_CODE_MAP: Dict[str, type[OAuthError]] = {
    "invalid_grant": InvalidTokenError,
    "invalid_refresh_token": InvalidTokenError,
    "invalid_token": InvalidTokenError,
    "invalid_auth": InvalidTokenError,
    "not_authed": InvalidTokenError,
    "token_revoked": InvalidTokenError,
    "account_inactive": InvalidTokenError,
    "invalid_client": InvalidTokenError,
    "unauthorized_client": InvalidTokenError,
    "expired_token": ExpiredTokenError,
    "token_expired": ExpiredTokenError,
    "access_denied": InsufficientPermissionsError,
    "no_permission": InsufficientPermissionsError,
    "missing_scope": InsufficientPermissionsError,
    "team_access_not_granted": InsufficientPermissionsError,
    "insufficient_scope": InsufficientPermissionsError,
    "invalid_request": OAuthValidationError,
    "invalid_scope": OAuthValidationError,
    "unsupported_grant_type": OAuthValidationError,
    "rate_limited": RateLimitedError,
    "ratelimited": RateLimitedError,
    "server_error": ServiceUnavailableError,
    "temporarily_unavailable": ServiceUnavailableError,
}

_STATUS_MAP: Dict[int, type[OAuthError]] = {
    400: OAuthValidationError,
    401: InvalidTokenError,
    403: InsufficientPermissionsError,
    404: ResourceNotFoundError,
    429: RateLimitedError,
    500: ServiceUnavailableError,
    502: ServiceUnavailableError,
    503: ServiceUnavailableError,
    504: ServiceUnavailableError,
}

# Substring heuristics for errors that only carry a message.  Order matters.
_MESSAGE_HINTS = (
    (("invalid_grant", "invalid refresh token", "refresh token expired", "token revoked",
      "token_revoked", "invalid_auth", "authentication required"), InvalidTokenError),
    (("expired",), ExpiredTokenError),
    (("access_denied", "permission", "forbidden"), InsufficientPermissionsError),
    (("rate limit", "rate_limit", "too many requests"), RateLimitedError),
    (("not found",), ResourceNotFoundError),
    (("service unavailable", "temporarily unavailable", "bad gateway", "gateway timeout",
      "server error"), ServiceUnavailableError),
    (("network", "connection", "timeout", "timed out", "econnreset", "enotfound"), NetworkError),
    (("invalid_request", "invalid_scope", "validation"), OAuthValidationError),
)


def _response_error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    code = body.get("error")
    if isinstance(code, dict):  # Dropbox: {"error": {".tag": "..."}}
        code = code.get(".tag")
    return str(code).lower() if code else None


def _retry_after_header(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_for_code(code: str, message: str = "") -> OAuthError:
    """Build the taxonomy error for a vendor/OAuth2 ``error`` code."""
    cls = _ERROR_CODE_MAP.get(code.lower(), UnknownOAuthError)
    return cls(message or code, error_code=code.lower())


def classify_oauth_error(exc: BaseException) -> OAuthError:
    """Map any exception raised by a refresh call onto the taxonomy."""
    if isinstance(exc, OAuthError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        code = _response_error_code(response)
        cls = _ERROR_CODE_MAP.get(code or "") or _STATUS_MAP.get(response.status_code)
        if cls is None:
            cls = ServiceUnavailableError if response.status_code >= 500 else UnknownOAuthError
        return cls(
            f"HTTP {response.status_code} from {response.request.url}: {code or response.reason_phrase}",
            error_code=code,
            retry_after=_retry_after_header(response),
            status_code=response.status_code if cls is UnknownOAuthError else None,
        )

    if isinstance(exc, httpx.TransportError):
        return NetworkError(str(exc) or type(exc).__name__)

    message = str(exc).lower()
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.lower() in _ERROR_CODE_MAP:
        return _ERROR_CODE_MAP[code.lower()](str(exc), error_code=code.lower())
    for needles, cls in _MESSAGE_HINTS:
        if any(needle in message for needle in needles):
            return cls(str(exc))
    return UnknownOAuthError(str(exc) or type(exc).__name__)


def requires_reauthentication(exc: BaseException) -> bool:
    return classify_oauth_error(exc).requires_reauth


def is_retryable(exc: BaseException) -> bool:
    return classify_oauth_error(exc).retryable


def get_retry_delay(exc: BaseException, attempt: int = 1) -> Optional[float]:
    """
    Seconds to wait before retry ``attempt`` (1-based), or ``None`` when the
    error must not be retried.

    Rate limits honour the vendor's ``Retry-After``; everything else backs
    off exponentially from a per-class base with up to a second of jitter,
    capped at one minute.
    """
    error = classify_oauth_error(exc)
    if not error.retryable:
        return None
    if isinstance(error, RateLimitedError) and error.retry_after_supplied:
        return min(error.retry_after, MAX_RETRY_DELAY)

    if isinstance(error, RateLimitedError):
        base = 5.0
    elif isinstance(error, ServiceUnavailableError):
        base = 3.0
    else:
        base = 1.0
    delay = base * (2 ** max(attempt - 1, 0)) + random.uniform(0, 1)
    return min(delay, MAX_RETRY_DELAY)


def error_response(exc: BaseException, instance_id: str, operation: str) -> Dict[str, Any]:
    """Log ``exc`` at its class's level and build the user-facing payload."""
    error = classify_oauth_error(exc)
    logger.log(
        error.log_level,
        "OAuth error in %s for instance %s: %s",
        operation,
        instance_id,
        exc,
    )
    return {
        "success": False,
        "error": {
            "type": error.error_type,
            "message": error.user_message,
            "requires_reauth": error.requires_reauth,
            "should_retry": error.retryable,
            "retry_after": error.retry_after,
            "http_status": error.status_code,
        },
        "metadata": {
            "instance_id": instance_id,
            "operation": operation,
            "original_error": str(exc),
        },
    }
