"""
SQLAlchemy ORM models for MCP service instances and their OAuth credentials.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


# Values of McpServiceInstance.oauth_status
OAUTH_PENDING = "pending"
OAUTH_COMPLETED = "completed"
OAUTH_REQUIRES_AUTH = "requires_auth"
OAUTH_EXPIRED = "expired"
OAUTH_FAILED = "failed"


class McpService(Base):
    """A vendor service type (discord, slack, …)."""

    __tablename__ = "mcp_table"

    mcp_service_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mcp_service_name = Column(String(50), unique=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)  # "api_key" | "oauth"
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    instances = relationship("McpServiceInstance", back_populates="service")


class McpServiceInstance(Base):
    """A user's configured connection to one vendor service."""

    __tablename__ = "mcp_service_table"

    instance_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    mcp_service_id = Column(
        UUID(as_uuid=True),
        ForeignKey("mcp_table.mcp_service_id", ondelete="CASCADE"),
        nullable=False,
    )
    oauth_status = Column(String(20), nullable=False, default=OAUTH_PENDING)
    status = Column(String(20), nullable=False, default="active")  # active | inactive | expired
    custom_name = Column(String(255))
    expires_at = Column(DateTime(timezone=True))
    last_used_at = Column(DateTime(timezone=True))
    usage_count = Column(Integer, default=0)
    credentials_updated_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    service = relationship("McpService", back_populates="instances")
    credential = relationship(
        "McpCredential",
        back_populates="instance",
        uselist=False,
        cascade="all, delete-orphan",
    )


class McpCredential(Base):
    __tablename__ = "mcp_credentials"

    credential_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    instance_id = Column(
        UUID(as_uuid=True),
        ForeignKey("mcp_service_table.instance_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    api_key = Column(Text)
    client_id = Column(String(500))
    client_secret = Column(Text)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    token_scope = Column(Text)
    team_id = Column(String(128))
    oauth_completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    instance = relationship("McpServiceInstance", back_populates="credential")


class McpAuditLog(Base):
    __tablename__ = "mcp_audit_log"

    log_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    instance_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    service_name = Column(String(50), nullable=False)
    operation = Column(String(64), nullable=False)
    metadata_ = Column("metadata", JSONB, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
