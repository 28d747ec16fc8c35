from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from order_engine.core_settings import get_settings
from order_engine.domain.models import Base, InvoiceSequence

INVOICE_SEQUENCE_NAME = "orders"

def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # SQLite serialises writers; wait for the lock instead of failing at once
        return create_engine(url, future=True, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, echo=False, future=True, pool_pre_ping=True, pool_size=10, max_overflow=20)

settings = get_settings()
engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def ensure_invoice_sequence(db: Session, prefix: str, start: int) -> None:
    """Create the invoice counter row if this database has none yet."""
    exists = db.execute(
        select(InvoiceSequence.name).where(InvoiceSequence.name == INVOICE_SEQUENCE_NAME)
    ).first()
    if not exists:
        db.add(InvoiceSequence(name=INVOICE_SEQUENCE_NAME, prefix=prefix, next_value=start))
        db.commit()

def init_models(bind: Engine = engine) -> None:
    Base.metadata.create_all(bind)
    db = Session(bind=bind)
    try:
        ensure_invoice_sequence(db, settings.INVOICE_PREFIX, settings.INVOICE_START)
    finally:
        db.close()
