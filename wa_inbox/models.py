"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import Column, ForeignKey, String, Text, UniqueConstraint

from wa_inbox.storage import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    """
    One row per tenant (business account).

    Table: profiles
    whatsapp_phone_number_id routes inbound webhook events back to the tenant,
    so it is unique whenever it is set.
    """
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=_new_id)
    full_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    whatsapp_access_token = Column(Text, nullable=True)
    whatsapp_phone_number_id = Column(String, nullable=True, unique=True, index=True)
    whatsapp_business_account_id = Column(String, nullable=True, index=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Contact(Base):
    """
    A tenant-scoped customer identity.

    Table: whatsapp_contacts
    Unique: (user_id, whatsapp_id)
    """
    __tablename__ = "whatsapp_contacts"
    __table_args__ = (
        UniqueConstraint("user_id", "whatsapp_id", name="uq_contact_user_whatsapp_id"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    whatsapp_id = Column(String, nullable=False)  # digits only
    phone_number = Column(String, nullable=True)  # "+" prefixed display form
    name = Column(String, nullable=True)
    profile_picture_url = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False, index=True)


class Message(Base):
    """
    A single inbound or outbound message.

    Table: whatsapp_messages
    Unique: (user_id, message_id). message_id is the provider-assigned id and
    stays NULL for outbound rows until the provider accepts the send.
    """
    __tablename__ = "whatsapp_messages"
    __table_args__ = (
        UniqueConstraint("user_id", "message_id", name="uq_message_user_provider_id"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    contact_id = Column(String, ForeignKey("whatsapp_contacts.id"), nullable=True, index=True)
    message_id = Column(String, nullable=True, index=True)
    content = Column(Text, nullable=True)
    direction = Column(String, nullable=False)  # inbound | outbound
    status = Column(String, nullable=False)  # sending | sent | delivered | read | received | failed
    message_type = Column(String, nullable=False, default="text")
    timestamp = Column(String, nullable=False, index=True)  # event time, ISO-8601 UTC
    created_at = Column(String, nullable=False)  # row time, ISO-8601 UTC
