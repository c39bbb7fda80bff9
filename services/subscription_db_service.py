"""
DB-backed subscription/user store using async SQLAlchemy.

Used by both sides of the system:
- poller: list_active, get_user_tokens, mark_notified
- HTTP API: upsert_subscription, list_subscriptions, list_by_email, register_token, get_user

Every method opens its own short-lived AsyncSession from the session maker, so
concurrent per-stop tasks in a poll cycle never share a session. Returned values
are pydantic snapshots (models.subscription), never live ORM objects.
"""

from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select
from sqlalchemy.exc import IntegrityError

from core.db import Base
from models.db_models import Subscription as SubscriptionRow, User as UserRow
from models.subscription import Subscription, User
import logging

logger = logging.getLogger(__name__)


class SubscriptionStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def create_tables(self):
        """Create missing tables (development convenience; use Alembic in production)."""
        async with self.session_maker() as session:
            conn = await session.connection()
            await conn.run_sync(Base.metadata.create_all)
            await session.commit()

    # --- poller side ---

    async def list_active(self, limit: int = 1000) -> List[Subscription]:
        """
        Bounded read of all subscriptions, oldest first.

        Equivalent to:
        SELECT * FROM subscriptions ORDER BY id LIMIT :limit
        """
        async with self.session_maker() as session:
            stmt = select(SubscriptionRow).order_by(SubscriptionRow.id).limit(limit)
            result = await session.execute(stmt)
            return [Subscription.model_validate(row) for row in result.scalars().all()]

    async def get_user(self, email: str) -> Optional[User]:
        async with self.session_maker() as session:
            row = await self._find_user(session, email)
            return User.model_validate(row) if row else None

    async def get_user_tokens(self, email: str) -> List[str]:
        """Current push tokens for an email; empty when the user is unknown."""
        user = await self.get_user(email)
        return list(user.fcm_tokens) if user else []

    async def mark_notified(self, subscription_id: int, arrival_key: str) -> bool:
        """
        Persist the idempotency marker for one subscription.

        Single-row conditional UPDATE keyed by record identity; returns False when
        the subscription no longer exists.
        """
        async with self.session_maker() as session:
            stmt = (
                update(SubscriptionRow)
                .where(SubscriptionRow.id == subscription_id)
                .values(last_notified_for=arrival_key)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    # --- API side ---

    async def upsert_subscription(
        self,
        email: str,
        stop_id: str,
        trip_id: str,
        notify_before_minutes: Optional[float] = None,
    ) -> Subscription:
        """
        Create or update the subscription keyed on (email, stop_id, trip_id).

        Also makes sure a User row exists for the email, so tokens can be
        registered later. notify_before_minutes is only overwritten when given.
        """
        async with self.session_maker() as session:
            await self._ensure_user(session, email)
            row = await self._find_subscription(session, email, stop_id, trip_id)
            if row is None:
                row = SubscriptionRow(
                    email=email,
                    stop_id=stop_id,
                    trip_id=trip_id,
                    notify_before_minutes=notify_before_minutes,
                )
                session.add(row)
            elif notify_before_minutes is not None:
                row.notify_before_minutes = notify_before_minutes
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent insert of the same key; update theirs
                await session.rollback()
                logger.info("Concurrent upsert for %s:%s:%s, retrying as update", email, stop_id, trip_id)
                row = await self._find_subscription(session, email, stop_id, trip_id)
                if notify_before_minutes is not None:
                    row.notify_before_minutes = notify_before_minutes
                    await session.commit()
            await session.refresh(row)
            return Subscription.model_validate(row)

    async def list_subscriptions(self, limit: int = 200) -> List[Subscription]:
        return await self.list_active(limit=limit)

    async def list_by_email(self, email: str) -> List[Subscription]:
        async with self.session_maker() as session:
            stmt = select(SubscriptionRow).where(SubscriptionRow.email == email).order_by(SubscriptionRow.id)
            result = await session.execute(stmt)
            return [Subscription.model_validate(row) for row in result.scalars().all()]

    async def register_token(self, email: str, token: str) -> User:
        """Add a push token to the user's set, creating the user if needed."""
        async with self.session_maker() as session:
            row = await self._ensure_user(session, email)
            tokens = list(row.fcm_tokens or [])
            if token not in tokens:
                # reassign so SQLAlchemy sees the JSON column change
                row.fcm_tokens = tokens + [token]
            await session.commit()
            await session.refresh(row)
            return User.model_validate(row)

    # --- helpers ---

    @staticmethod
    async def _find_user(session: AsyncSession, email: str) -> Optional[UserRow]:
        result = await session.execute(select(UserRow).where(UserRow.email == email))
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_subscription(session: AsyncSession, email: str, stop_id: str, trip_id: str) -> Optional[SubscriptionRow]:
        stmt = (
            select(SubscriptionRow)
            .where(SubscriptionRow.email == email)
            .where(SubscriptionRow.stop_id == stop_id)
            .where(SubscriptionRow.trip_id == trip_id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _ensure_user(self, session: AsyncSession, email: str) -> UserRow:
        row = await self._find_user(session, email)
        if row is None:
            row = UserRow(email=email, fcm_tokens=[])
            session.add(row)
            await session.flush()
        return row
