"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For the detached records handed out by the store, see storage.py.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

# Base class for SQLAlchemy models
Base = declarative_base()


class Conversation(Base):
    """
    One row per external contact.

    Table: conversations
    Unique: phone (one conversation per contact identifier)
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    last_ts = Column(Integer, nullable=False)  # epoch seconds

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """
    One row per inbound, outbound or system message.

    Table: messages
    wa_msg_id is the provider-assigned id used to correlate status callbacks;
    it is null for system messages.
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("direction IN ('in', 'out', 'system')", name="ck_messages_direction"),
        Index("idx_messages_conv_ts", "conversation_id", "ts"),
        Index("idx_messages_wa_msg_id", "wa_msg_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    wa_msg_id = Column(String, nullable=True)
    direction = Column(String, nullable=False)
    text = Column(Text, nullable=True)
    status = Column(String, nullable=True)
    ts = Column(Integer, nullable=False)  # epoch seconds

    conversation = relationship("Conversation", back_populates="messages")
