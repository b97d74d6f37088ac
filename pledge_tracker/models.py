"""
SQLAlchemy ORM models for database tables.

The two tables live in different databases, so each model is bound to its
store's own declarative base. For Pydantic request/response schemas, see
schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Integer, Numeric, String, Text, func

from pledge_tracker.storage import PrimaryBase, SmsBase


class PaddlePledge(PrimaryBase):
    """
    Count of pledges made at one fixed donation tier.

    Table: paddle_pledges (primary store)
    total_cents is always tier_cents * count; it is written by the same
    UPDATE statement that changes count.
    """
    __tablename__ = "paddle_pledges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tier_cents = Column(Integer, nullable=False, unique=True, index=True)
    count = Column(Integer, nullable=False, default=0)
    total_cents = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, server_default=func.now())


class TextPledge(SmsBase):
    """
    A single pledge received by text message.

    Table: text_pledges (SMS store, populated by the SMS provider integration)
    pledge_amount is stored in dollars.
    """
    __tablename__ = "text_pledges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pledge_amount = Column(Numeric(12, 2), nullable=False)
    phone_number = Column(String, nullable=True)
    message_text = Column(Text, nullable=True)
    created_at = Column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc).replace(tzinfo=None),
        index=True,
    )
