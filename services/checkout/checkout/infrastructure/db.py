from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from checkout.core_settings import get_settings
from checkout.domain.models import Base

settings = get_settings()
DATABASE_URL = settings.database_url
engine = create_engine(DATABASE_URL, echo=False, future=True, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_engine():
    return engine

def init_models():
    Base.metadata.create_all(engine)

def apply_transaction_timeout(db: Session, seconds: int) -> None:
    """Bound the current transaction's statements and lock waits.

    Only PostgreSQL honours ``SET LOCAL``; other dialects run unbounded.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    millis = int(seconds * 1000)
    db.execute(text(f"SET LOCAL statement_timeout = {millis}"))
    db.execute(text(f"SET LOCAL lock_timeout = {millis}"))
