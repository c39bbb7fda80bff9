"""
SQLAlchemy ORM models.

Purpose:
- Define User and Subscription tables
- Use SQLAlchemy async-compatible models
- Support migrations via Alembic

Production notes:
- subscriptions(email) is indexed: the API lists by email, the dispatcher
  resolves users by email
- (email, stop_id, trip_id) is unique; the API upserts on it
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, UniqueConstraint
from core.db import Base
from datetime import datetime


class User(Base):
    """
    A rider's notification identity.

    Columns:
    - email: unique identity
    - fcm_tokens: JSON list of push tokens, kept duplicate-free by the store
    - created_at: audit timestamp
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    fcm_tokens = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)


class Subscription(Base):
    """
    One rider's interest in one trip at one stop.

    Columns:
    - email: owner, matches users.email (business key, no real FK)
    - stop_id / trip_id: transit identifiers
    - notify_before_minutes: alert window; NULL means "use the poller default"
    - last_notified_for: arrival key (YYYYMMDD_HH:MM:SS) already notified
    - created_at: set on insert, never updated
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), index=True, nullable=False)
    stop_id = Column(String(64), nullable=False)
    trip_id = Column(String(128), nullable=False)
    notify_before_minutes = Column(Float, nullable=True)
    last_notified_for = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("email", "stop_id", "trip_id", name="ux_subscription_email_stop_trip"),
    )
