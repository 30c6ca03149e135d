"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text

from whatsapp_pipeline.storage import Base, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    Pre-registered end user. Channel messages are matched on `phone` (E.164).
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(64), nullable=False, unique=True)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    password = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Chat(Base):
    """One conversation per user; the most recent one is reused for new messages."""
    __tablename__ = "chats"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    visibility = Column(String(16), nullable=False, default="private")
    last_context = Column(JSON, nullable=True)  # usage snapshot of the last generation
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Message(Base):
    """
    Inbound (role=user) and outbound (role=assistant) chat messages.

    Channel details live in `metadata`: direction, messageSid, sendStatus
    (pending/sent/failed), toNumber/fromNumber, sendError.
    """
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    chat_id = Column(String(36), ForeignKey("chats.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    parts = Column(JSON, nullable=False, default=list)
    attachments = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class WebhookLog(Base):
    """
    Audit ledger for every inbound/outbound channel event.

    Unique message_sid makes this table the idempotency gate for inbound webhooks.
    Rows are never deleted.
    """
    __tablename__ = "webhook_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    source = Column(String(64), nullable=False)
    direction = Column(String(16), nullable=True)  # inbound, outbound
    status = Column(String(64), nullable=True)
    request_url = Column(Text, nullable=True)
    message_sid = Column(String(64), nullable=True, unique=True)
    from_number = Column(String(64), nullable=True)
    to_number = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class QueuedMessage(Base):
    """Operator-scheduled outbound message, delivered by the cron sweep."""
    __tablename__ = "queued_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    # When set, sent from this content template; content is the stored text
    content_sid = Column(String(64), nullable=True)
    content_variables = Column(JSON, nullable=True)
    status = Column(String(16), nullable=False, default="pending")  # pending, sent, failed, cancelled
    scheduled_for = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
