"""
Conexao com o Banco de Dados - Meterflow
Suporta PostgreSQL (producao) e SQLite (desenvolvimento/testes)
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from meterflow import config

logger = logging.getLogger(__name__)

# ============================================
# Base para os modelos
# ============================================

Base = declarative_base()

# ============================================
# Engine Async
# ============================================

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def create_engine_for_url(url: str) -> AsyncEngine:
    """Cria engine async adequado ao tipo de banco"""
    if "postgresql" in url:
        return create_async_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False
        )

    if ":memory:" in url:
        # Banco em memoria precisa de uma unica conexao compartilhada
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False
        )

    return create_async_engine(url, echo=False)


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    """Obtem engine async (singleton)"""
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(url or config.DATABASE_URL)
    return _engine


def get_session_factory(engine: Optional[AsyncEngine] = None) -> async_sessionmaker:
    """Factory de sessoes; sem engine explicito usa o singleton"""
    global _session_factory
    if engine is not None:
        return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def session_scope(factory: Optional[async_sessionmaker] = None) -> AsyncGenerator[AsyncSession, None]:
    """
    Sessao transacional.

    Uso:
        async with session_scope() as session:
            session.add(record)
            # commit automatico no fim do bloco
            # rollback automatico em caso de excecao
    """
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ============================================
# Inicializacao e Reset
# ============================================

async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Cria as tabelas se nao existirem"""
    from . import models  # noqa: F401  registra tabelas no metadata

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


async def dispose_engine() -> None:
    """Fecha o engine singleton"""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
