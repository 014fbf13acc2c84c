import pytest
import pytest_asyncio
from flash_hydrate import query_set
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .models import Base, seed, users

DATABASE_URL = "sqlite+aiosqlite:///:memory:"  # in-memory DB for tests


@pytest_asyncio.fixture(scope="function")
async def engine():
    """Create a fresh in-memory database with all tables."""
    # StaticPool keeps the single in-memory connection alive across sessions
    engine = create_async_engine(DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(engine):
    """Provide a seeded database session for tests."""
    factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        await seed(session)
        yield session


@pytest.fixture
def users_qs():
    """Root query set over users, ordered by id for deterministic pages."""
    return query_set("users", select(users.c.id, users.c.username)).order_by("id")
