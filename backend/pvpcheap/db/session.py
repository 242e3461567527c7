from collections.abc import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from pvpcheap.core.config import get_settings


settings = get_settings()
# Sweep workers each hold one connection per device task.
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_size=settings.execution_pool_size + 2,
    max_overflow=settings.execution_pool_size,
)
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


def get_db() -> Generator[Session, None, None]:
    with SessionLocal() as db:
        yield db


def check_db_connection(db: Session) -> tuple[bool, str | None]:
    try:
        db.execute(text("SELECT 1"))
        return True, None
    except Exception as exc:
        db.rollback()
        return False, f"{type(exc).__name__}: {exc}"
