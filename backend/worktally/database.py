"""Database engine, session factory, and declarative base.

Tenancy is row-level: every tenant-owned table carries an
`organization_id` column (see TenantMixin). Scoping is applied by the
DataClient, not by the session.

  - async_session   → session factory shared by DataClient and routers
  - get_db()        → FastAPI dependency, commits on success
"""

from sqlalchemy import ForeignKey, String
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

from worktally.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base classes ────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


class TenantMixin:
    """Rows owned by exactly one organization."""

    @declared_attr
    def organization_id(cls) -> Mapped[str]:
        return mapped_column(
            String(36),
            ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )


# ── Session dependency ──────────────────────────────────────

async def get_db() -> AsyncSession:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_all_tables(bind=None) -> None:
    """Create every mapped table. Used at dev startup and by tests."""
    import worktally.models  # noqa: F401  (registers all mappers)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for DataClient (overridden in tests)."""
    return async_session
