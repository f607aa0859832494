"""
SQLAlchemy models for packets, clients, users and the notification log
"""
from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from app.utils.timestamps import utcnow

Base = declarative_base()


class ClientDB(Base):
    __tablename__ = "client"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("app_user.id"), nullable=True)  # Platform login, if any
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    client_type = Column(String(50), nullable=True)
    intake_responses = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class UserDB(Base):
    __tablename__ = "app_user"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="CLIENT")  # ADMIN, COACH, CLIENT
    status = Column(String(20), nullable=False, default="ACTIVE")
    email_notifications = Column(Boolean, nullable=False, default=True)
    notify_on_packet_ready = Column(Boolean, nullable=False, default=True)
    notify_on_packet_update = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class PacketDB(Base):
    __tablename__ = "packet"
    __table_args__ = (
        Index("ix_packet_client_type", "client_id", "type"),
        Index("ix_packet_status_updated", "status", "updated_at"),
    )

    id = Column(String(36), primary_key=True)
    client_id = Column(String(36), ForeignKey("client.id"), nullable=False)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    content = Column(JSON, nullable=True)
    pdf_url = Column(Text, nullable=True)  # Only set while status is READY
    last_error = Column(String(500), nullable=True)  # Sanitized, truncated
    error_type = Column(String(30), nullable=True)
    retryable = Column(Boolean, nullable=True)  # Classification of last failure
    retry_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    # Unique: a packet version has at most one successor
    previous_version_id = Column(String(36), ForeignKey("packet.id"), nullable=True, unique=True)
    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PacketNotificationDB(Base):
    __tablename__ = "packet_notification"
    __table_args__ = (
        # One admin notification per packet per terminal-failure occurrence
        UniqueConstraint("packet_id", "notification_type", "failure_marker",
                         name="uq_packet_notification_marker"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    packet_id = Column(String(36), ForeignKey("packet.id"), nullable=False)
    notification_type = Column(String(30), nullable=False)
    failure_marker = Column(DateTime, nullable=True)  # packet.updated_at of the reported failure
    recipient_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
