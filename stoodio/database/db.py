from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from stoodio.core.config import settings

is_sqlite = settings.DATABASE_URL.startswith("sqlite")

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 15} if is_sqlite else {},
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


# Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    Run the block as one transaction: commit on success, roll back on error.

    Status changes, ledger rows and outbox events written inside the block
    land together or not at all.
    """
    if db.in_transaction():
        # Use the existing transaction and commit it
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
    else:
        # Start a new transaction
        with db.begin():
            yield db
