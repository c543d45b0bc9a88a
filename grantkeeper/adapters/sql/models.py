"""SQLAlchemy Models for account persistence."""
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    """Account record. ``name`` uniqueness is enforced here, not in memory."""
    __tablename__ = "accounts"
    id = Column(String(36), primary_key=True)
    requester_id = Column(BigInteger, nullable=False, default=0, index=True)
    name = Column(String(20), nullable=False, unique=True)
    credential_secret_ref = Column(String(255), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    profile_artifact_ref = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)
    connected_at = Column(DateTime(timezone=True), nullable=True)
    bytes_in = Column(BigInteger, nullable=False, default=0)
    bytes_out = Column(BigInteger, nullable=False, default=0)
    max_connections = Column(Integer, nullable=False, default=3)
    notes = Column(Text, nullable=True)
    provisioning_state = Column(String(32), nullable=False, default="pending")
    last_provisioning_error = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("idx_accounts_active_expires", "active", "expires_at"),
        CheckConstraint("bytes_in >= 0", name="ck_accounts_bytes_in"),
        CheckConstraint("bytes_out >= 0", name="ck_accounts_bytes_out"),
        CheckConstraint("max_connections BETWEEN 1 AND 10", name="ck_accounts_max_connections"),
    )


class AuditEventRow(Base):
    """Append-only log of lifecycle actions."""
    __tablename__ = "audit_events"
    event_id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    actor_id = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    target_account_id = Column(String(36), nullable=True)
    detail = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("idx_audit_timestamp", "timestamp"),)
