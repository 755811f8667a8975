from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from .config import settings


def make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            return create_engine(
                database_url,
                future=True,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, future=True, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        future=True,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


engine = make_engine(settings.database_url)

# Create a fresh Session per unit of work; never share one across threads
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()
