"""
Global middleware.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from credentials.errors import CredentialError, OAuthError, ReauthenticationRequired, error_response

logger = logging.getLogger(__name__)


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and credential error handlers."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(ReauthenticationRequired)
    async def reauth_required_handler(request: Request, exc: ReauthenticationRequired):
        return JSONResponse(
            status_code=401,
            content={
                "success": False,
                "error": {
                    "type": "REAUTH_REQUIRED",
                    "message": "Please re-authenticate this connection.",
                    "requires_reauth": True,
                    "reason": exc.reason,
                },
                "metadata": {"instance_id": exc.instance_id},
            },
        )

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        instance_id = request.path_params.get("instance_id", "")
        body = error_response(exc, instance_id, f"{request.method} {request.url.path}")
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(CredentialError)
    async def credential_error_handler(request: Request, exc: CredentialError):
        status_code = 404 if isinstance(exc, LookupError) else 409
        return JSONResponse(status_code=status_code, content={"success": False, "detail": str(exc)})
