"""
Base de dados SQLAlchemy.

Configuração assíncrona e sessão para o PostgreSQL do backend ``postgres``.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from policy_engine.config import get_settings

settings = get_settings()

# Engine assíncrono (a conexão só é aberta no primeiro uso)
engine = create_async_engine(
    settings.postgres_url,
    echo=settings.debug,
    pool_size=settings.postgres_pool_size,
    max_overflow=settings.postgres_max_overflow,
    pool_pre_ping=True,
)

# Session factory assíncrono
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Classe base para todos os modelos SQLAlchemy."""

    pass


async def init_models() -> None:
    """Cria as tabelas ausentes sem migrations (dev e testes); produção usa Alembic."""
    # Registra todos os modelos no metadata antes do create_all.
    import policy_engine.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
