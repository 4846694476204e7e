from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from nmc_prep.core.config import settings

engine = create_engine(settings.DATABASE_URL, future=True, pool_pre_ping=True, echo=settings.DATABASE_ECHO)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db():
    """Create tables if they don't exist. In production, use migrations instead."""
    from nmc_prep.models.orm import Base
    Base.metadata.create_all(bind=engine)
