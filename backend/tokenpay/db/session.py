"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from tokenpay.models.base import Base
from tokenpay.core.config import settings


def engine_options(database_url: str) -> dict:
    """Engine keyword arguments for ``database_url``

    SQLite connections are shared with the webhook worker thread, so the
    same-thread check is off; server databases get pre-ping and recycling.
    """
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


# Create engine
engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    import tokenpay.models  # noqa: F401  registers every model with Base.metadata
    Base.metadata.create_all(bind=engine)
