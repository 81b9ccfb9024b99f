"""
Database configuration and session management
"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from config import Config
import logging

logger = logging.getLogger(__name__)

# Get the appropriate database URL based on USE_POOLER setting
database_url = Config.get_database_url()
async_database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://')

# Session poolers have strict limits, so we use smaller pool sizes
if Config.USE_POOLER:
    pool_size = 3
    max_overflow = 2
    pool_recycle = 180  # Recycle connections every 3 minutes
    pool_timeout = 5  # Fail fast if no connections available
    logger.info(f"Using POOLER mode: pool_size={pool_size}, max_overflow={max_overflow}, timeout={pool_timeout}s")
else:
    pool_size = 10
    max_overflow = 10
    pool_recycle = 3600  # Recycle connections every hour
    pool_timeout = 10
    logger.info(f"Using DIRECT connection mode: pool_size={pool_size}, max_overflow={max_overflow}")

async_engine = create_async_engine(
    async_database_url,
    pool_pre_ping=True,
    pool_size=pool_size,
    max_overflow=max_overflow,
    pool_recycle=pool_recycle,
    pool_timeout=pool_timeout,
    echo=False,
    pool_reset_on_return='rollback',  # Reset connection state on return
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)

# Create base class for models
Base = declarative_base()


async def dispose_db():
    await async_engine.dispose()
