from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def create_engine(database_url: str) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to server databases."""
    options: dict[str, object] = {"echo": False}
    if not database_url.startswith("sqlite"):
        options.update(pool_size=20, max_overflow=30, pool_pre_ping=True)
    return create_async_engine(database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
