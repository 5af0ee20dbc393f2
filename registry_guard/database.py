"""
Registry database: engine, session factory and the per-request session dependency.

Commands run inside one session; the dispatcher decides commit or rollback.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from registry_guard import config

database_url = config.DATABASE_URL

# Hosted Postgres URLs still use the postgres:// scheme SQLAlchemy dropped
if database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)

if database_url.startswith("sqlite"):
    # Requests run in a threadpool; the keyed locks serialize writers per entity
    engine = create_engine(database_url, connect_args={"check_same_thread": False})
else:
    engine = create_engine(database_url, pool_pre_ping=True, pool_size=5, max_overflow=10)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """One registry session per request, closed even when the command failed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
