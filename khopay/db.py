from typing import Generator
from urllib.parse import urlparse

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings

# -----------------------
# DATABASE URL
# -----------------------
SQLALCHEMY_DATABASE_URL = settings.DATABASE_URL.strip()

if not SQLALCHEMY_DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Please set a valid Postgres URL.")

parsed = urlparse(SQLALCHEMY_DATABASE_URL)
IS_SQLITE = parsed.scheme.startswith("sqlite")

if not (IS_SQLITE or parsed.scheme.startswith("postgresql")):
    raise RuntimeError(
        f"Unsupported DATABASE_URL scheme '{parsed.scheme}'. Use Postgres (or SQLite for local runs)."
    )

# Ensure sslmode=require for remote Postgres if missing
if (
    not IS_SQLITE
    and "sslmode=" not in SQLALCHEMY_DATABASE_URL
    and parsed.hostname not in ("localhost", "127.0.0.1", None)
):
    sep = "&" if "?" in SQLALCHEMY_DATABASE_URL else "?"
    SQLALCHEMY_DATABASE_URL = f"{SQLALCHEMY_DATABASE_URL}{sep}sslmode=require"

# -----------------------
# SQLAlchemy Engine
# -----------------------
if IS_SQLITE:
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,
    )
else:
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
        pool_recycle=300,
    )

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

# Base for ALL models
Base = declarative_base()


# -----------------------
# Dependency
# -----------------------
def get_db() -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
