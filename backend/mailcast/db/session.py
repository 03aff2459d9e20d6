"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mailcast.core.config import settings
from mailcast.models import Base

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Initialize database (create all tables)"""
    Base.metadata.create_all(bind=bind or engine)
