"""
Async database engine and session management.

Purpose:
- Create SQLAlchemy async engine from settings.DATABASE_URL
- Provide async session factory shared by the API and the poller
- Provide Base declarative class for ORM models

Production notes:
- Use connection pooling with appropriate pool_size and max_overflow
- The poller opens one short-lived session per store operation
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from config.settings import settings
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
	return create_async_engine(url, echo=echo, future=True)


def build_session_maker(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
	return async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
async_session_maker = build_session_maker(engine)
logger.info("Async DB engine created: %s", engine.url.render_as_string(hide_password=True))
