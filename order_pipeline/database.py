from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings

# Get DB connection string from environment variables.
DATABASE_URL = settings.database_url


def make_engine(url: str):
    """Create the SQLAlchemy engine; SQLite connections may cross threads."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


# Create the SQLAlchemy engine.
engine = make_engine(DATABASE_URL)

# Create a configured "Session" class for database interactions.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative ORM models.
Base = declarative_base()


def init_db(bind=None):
    """Create database tables if they don't exist."""
    # Models register themselves on Base when imported.
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
