"""
Database helper functions — instance credential lookup, token persistence,
re-auth marking and the audit trail.

Every helper takes an optional ``db_session``; without one it opens and
commits its own.  Audit and usage writes are best-effort: failures are
logged and swallowed.  Credential writes raise so the caller can count the
failure.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import case, func, inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from credentials.models import InstanceCredentials
from database.encryption import decrypt_secret, encrypt_secret
from database.models import (
    OAUTH_COMPLETED,
    OAUTH_REQUIRES_AUTH,
    McpAuditLog,
    McpCredential,
    McpService,
    McpServiceInstance,
)
from database.session import engine, session_scope

logger = logging.getLogger(__name__)

_audit_table_exists: Optional[bool] = None


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Lookups ────────────────────────────────────────────────────────────


async def lookup_instance_credentials(
    instance_id: str,
    service_name: str,
    *,
    require_completed: bool = True,
    db_session: Optional[AsyncSession] = None,
) -> Optional[InstanceCredentials]:
    """
    Load an instance of ``service_name`` together with its credentials.

    Returns ``None`` for unknown / malformed ids, instances of another
    service, and (unless ``require_completed=False``) instances whose OAuth
    flow is not ``completed``.
    """
    try:
        iid = _to_uuid(instance_id)
    except ValueError:
        logger.info("Malformed instance id: %s", instance_id)
        return None

    stmt = (
        select(McpServiceInstance, McpService.mcp_service_name, McpCredential)
        .join(McpService, McpServiceInstance.mcp_service_id == McpService.mcp_service_id)
        .outerjoin(McpCredential, McpCredential.instance_id == McpServiceInstance.instance_id)
        .where(
            McpServiceInstance.instance_id == iid,
            McpService.mcp_service_name == service_name,
        )
    )
    if require_completed:
        stmt = stmt.where(McpServiceInstance.oauth_status == OAUTH_COMPLETED)

    try:
        async with session_scope(db_session) as session:
            row = (await session.execute(stmt)).first()
    except Exception as exc:
        logger.error("Database lookup error for %s: %s", instance_id, exc)
        raise RuntimeError(f"Failed to lookup instance credentials: {exc}") from exc

    if row is None:
        logger.info("No instance found for ID: %s (service: %s)", instance_id, service_name)
        return None

    instance, svc_name, cred = row
    return InstanceCredentials(
        instance_id=str(instance.instance_id),
        user_id=str(instance.user_id),
        service_name=svc_name,
        oauth_status=instance.oauth_status,
        status=instance.status,
        client_id=cred.client_id if cred else None,
        client_secret=decrypt_secret(cred.client_secret) if cred else None,
        access_token=decrypt_secret(cred.access_token) if cred else None,
        refresh_token=decrypt_secret(cred.refresh_token) if cred else None,
        token_expires_at=cred.token_expires_at if cred else None,
        token_scope=cred.token_scope if cred else None,
        team_id=cred.team_id if cred else None,
        credentials_updated_at=instance.credentials_updated_at,
        usage_count=instance.usage_count or 0,
    )


# ── Credential writes ──────────────────────────────────────────────────


async def update_instance_credentials(
    instance_id: str,
    *,
    access_token: str,
    refresh_token: Optional[str],
    token_expires_at: Optional[datetime],
    scope: Optional[str] = None,
    db_session: Optional[AsyncSession] = None,
) -> None:
    """Store refreshed tokens.  A ``None`` refresh token keeps the stored one."""
    iid = _to_uuid(instance_id)
    values: Dict[str, Any] = {
        "access_token": encrypt_secret(access_token),
        "token_expires_at": token_expires_at,
        "updated_at": _now(),
    }
    if refresh_token:
        values["refresh_token"] = encrypt_secret(refresh_token)
    if scope is not None:
        values["token_scope"] = scope

    try:
        async with session_scope(db_session) as session:
            await session.execute(
                update(McpCredential).where(McpCredential.instance_id == iid).values(**values)
            )
            await session.execute(
                update(McpServiceInstance)
                .where(McpServiceInstance.instance_id == iid)
                .values(credentials_updated_at=_now(), updated_at=_now())
            )
    except Exception as exc:
        logger.error("Failed to update credentials for %s: %s", instance_id, exc)
        raise RuntimeError(f"Failed to update credentials: {exc}") from exc

    logger.info("Updated OAuth credentials for instance: %s", instance_id)


async def update_oauth_status(
    instance_id: str,
    *,
    status: str,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    token_expires_at: Optional[datetime] = None,
    scope: Optional[str] = None,
    team_id: Optional[str] = None,
    db_session: Optional[AsyncSession] = None,
) -> None:
    """Set the instance OAuth status and overwrite its token material."""
    iid = _to_uuid(instance_id)
    cred_values: Dict[str, Any] = {
        "access_token": encrypt_secret(access_token),
        "refresh_token": encrypt_secret(refresh_token),
        "token_expires_at": token_expires_at,
        "token_scope": scope,
        "updated_at": _now(),
    }
    if team_id is not None:
        cred_values["team_id"] = team_id
    if status == OAUTH_COMPLETED:
        cred_values["oauth_completed_at"] = _now()

    try:
        async with session_scope(db_session) as session:
            await session.execute(
                update(McpCredential).where(McpCredential.instance_id == iid).values(**cred_values)
            )
            await session.execute(
                update(McpServiceInstance)
                .where(McpServiceInstance.instance_id == iid)
                .values(oauth_status=status, credentials_updated_at=_now(), updated_at=_now())
            )
    except Exception as exc:
        logger.error("Failed to update OAuth status for %s: %s", instance_id, exc)
        raise RuntimeError(f"Failed to update OAuth status: {exc}") from exc

    logger.info("Updated OAuth status for instance %s: %s", instance_id, status)


async def mark_instance_for_reauth(
    instance_id: str,
    service_name: str,
    reason: str,
    *,
    db_session: Optional[AsyncSession] = None,
) -> None:
    """Flag the instance ``requires_auth`` / ``inactive`` and audit the reason."""
    iid = _to_uuid(instance_id)
    try:
        async with session_scope(db_session) as session:
            await session.execute(
                update(McpServiceInstance)
                .where(McpServiceInstance.instance_id == iid)
                .values(oauth_status=OAUTH_REQUIRES_AUTH, status="inactive", updated_at=_now())
            )
    except Exception as exc:
        logger.error("Failed to mark instance %s for re-auth: %s", instance_id, exc)
        raise RuntimeError(f"Failed to mark instance for re-auth: {exc}") from exc

    logger.info("Marked instance for re-auth: %s (reason: %s)", instance_id, reason)
    await log_api_operation(instance_id, service_name, "REAUTH_REQUIRED", {"reason": reason})


# ── Best-effort bookkeeping ────────────────────────────────────────────


async def _audit_table_available() -> bool:
    global _audit_table_exists
    if _audit_table_exists is None:
        async with engine.connect() as conn:
            _audit_table_exists = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).has_table(McpAuditLog.__tablename__)
            )
    return _audit_table_exists


async def log_api_operation(
    instance_id: str,
    service_name: str,
    operation: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    db_session: Optional[AsyncSession] = None,
) -> None:
    """Insert an audit row.  Skipped when the audit table does not exist."""
    try:
        if not await _audit_table_available():
            logger.debug("Audit table not found, skipping log for operation: %s", operation)
            return
        async with session_scope(db_session) as session:
            session.add(
                McpAuditLog(
                    instance_id=_to_uuid(instance_id),
                    service_name=service_name,
                    operation=operation,
                    metadata_=metadata or {},
                )
            )
        logger.debug("Logged operation: %s for instance: %s", operation, instance_id)
    except Exception as exc:
        logger.error("Failed to log API operation %s for %s: %s", operation, instance_id, exc)


async def update_instance_usage(
    instance_id: str,
    *,
    db_session: Optional[AsyncSession] = None,
) -> bool:
    """Bump ``usage_count`` / ``last_used_at``.  Returns False on any failure."""
    try:
        async with session_scope(db_session) as session:
            result = await session.execute(
                update(McpServiceInstance)
                .where(McpServiceInstance.instance_id == _to_uuid(instance_id))
                .values(
                    usage_count=McpServiceInstance.usage_count + 1,
                    last_used_at=_now(),
                    updated_at=_now(),
                )
            )
        if result.rowcount == 0:
            logger.warning("Could not update usage for instance: %s (not found)", instance_id)
            return False
        return True
    except Exception as exc:
        logger.error("Database usage update error for %s: %s", instance_id, exc)
        return False


async def get_service_health_stats(
    service_name: str,
    *,
    db_session: Optional[AsyncSession] = None,
) -> Dict[str, Any]:
    """Instance counts for one service, by status and OAuth status."""
    empty = {
        "total_instances": 0,
        "active_instances": 0,
        "authenticated_instances": 0,
        "reauth_required": 0,
    }
    stmt = (
        select(
            func.count().label("total_instances"),
            func.count(case((McpServiceInstance.status == "active", 1))).label("active_instances"),
            func.count(case((McpServiceInstance.oauth_status == OAUTH_COMPLETED, 1))).label(
                "authenticated_instances"
            ),
            func.count(case((McpServiceInstance.oauth_status == OAUTH_REQUIRES_AUTH, 1))).label(
                "reauth_required"
            ),
        )
        .select_from(McpServiceInstance)
        .join(McpService, McpServiceInstance.mcp_service_id == McpService.mcp_service_id)
        .where(McpService.mcp_service_name == service_name)
    )
    try:
        async with session_scope(db_session) as session:
            row = (await session.execute(stmt)).one_or_none()
        return dict(row._mapping) if row else empty
    except Exception as exc:
        logger.error("Failed to get service health stats for %s: %s", service_name, exc)
        return {**empty, "error": str(exc)}


class SqlCredentialStore:
    """:class:`credentials.store.CredentialStore` backed by the helpers above."""

    async def lookup_instance_credentials(
        self, instance_id: str, service_name: str, *, require_completed: bool = True
    ) -> Optional[InstanceCredentials]:
        return await lookup_instance_credentials(
            instance_id, service_name, require_completed=require_completed
        )

    async def update_instance_credentials(self, instance_id: str, **kwargs: Any) -> None:
        await update_instance_credentials(instance_id, **kwargs)

    async def update_oauth_status(self, instance_id: str, **kwargs: Any) -> None:
        await update_oauth_status(instance_id, **kwargs)

    async def mark_instance_for_reauth(self, instance_id: str, service_name: str, reason: str) -> None:
        await mark_instance_for_reauth(instance_id, service_name, reason)

    async def log_api_operation(
        self,
        instance_id: str,
        service_name: str,
        operation: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await log_api_operation(instance_id, service_name, operation, metadata)

    async def update_instance_usage(self, instance_id: str) -> bool:
        return await update_instance_usage(instance_id)

    async def get_service_health_stats(self, service_name: str) -> Dict[str, Any]:
        return await get_service_health_stats(service_name)
