from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base


def get_engine(database_url: str, echo: bool = False):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_async_engine(database_url, echo=echo, future=True, connect_args=connect_args)


Base = declarative_base()


def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )


def dialect_name(db) -> str:
    """Dialect of the engine an AsyncSession (or AsyncEngine) is bound to."""
    bind = db.get_bind() if hasattr(db, "get_bind") else db
    return bind.dialect.name
