"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

import hmac
import logging
from typing import Dict

from fastapi import Header, HTTPException, Request, status

from config.settings import config
from credentials.service import CredentialService

logger = logging.getLogger(__name__)


async def require_admin_key(
    x_admin_key: str = Header("", alias="X-Admin-Key"),
) -> None:
    """
    Guard for the credential operations routes.

    With no ``ADMIN_API_KEY`` configured every request is refused.
    """
    expected = config.admin_api_key
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key is not configured",
        )
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        logger.warning("Rejected credentials admin request with invalid X-Admin-Key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )


def get_credential_services(request: Request) -> Dict[str, CredentialService]:
    return getattr(request.app.state, "credential_services", {})


def get_credential_service(service_name: str, request: Request) -> CredentialService:
    """Resolve the ``{service_name}`` path parameter to its running service."""
    service = get_credential_services(request).get(service_name.lower())
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown or disabled service: {service_name}",
        )
    return service
