"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from chatrelay.storage import Base


class Message(Base):
    """
    SQLAlchemy model for a relayed WhatsApp message.

    Table: messages
    Primary Key: id (internal identifier)
    gateway_message_id holds an interim "tmp_" identifier until the gateway
    assigns its own; it is unique either way.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id = Column(String, primary_key=True, index=True)
    gateway_message_id = Column(String, nullable=False, unique=True, index=True)
    conversation_id = Column(String, nullable=False, index=True)
    contact_name = Column(String, nullable=True, index=True)
    from_name = Column(String, nullable=True)
    direction = Column(String, nullable=False)  # inbound / outbound
    message_type = Column(String, nullable=False, default="text")  # text / template / media

    body = Column(Text, nullable=True)
    template_id = Column(String, nullable=True, index=True)
    template_variables = Column(JSON, nullable=True)
    media_urls = Column(JSON, nullable=False, default=list)

    # Stored without the channel marker, e.g. "+15551234567"
    from_address = Column(String, nullable=False, index=True)
    to_address = Column(String, nullable=False, index=True)

    status = Column(String, nullable=False, default="queued", index=True)
    is_read = Column(Boolean, nullable=False, default=False)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<Message(id={self.id}, gateway_message_id='{self.gateway_message_id}', status='{self.status}')>"
