from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    # Handling SQLite specific args
    connect_args = {}
    if "sqlite" in database_url:
        connect_args = {"check_same_thread": False}

    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        connect_args=connect_args
    )


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
