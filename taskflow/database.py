import math

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from taskflow.config import DATABASE_URL, SQL_ECHO, STORE_TIMEOUT_SECONDS


def engine_options(database_url: str, timeout_seconds: float) -> dict:
    """Engine keyword arguments bounding how long the driver may block."""
    options = {
        "echo": SQL_ECHO,
        "pool_pre_ping": True,
    }
    if database_url.startswith("postgresql"):
        options["pool_timeout"] = timeout_seconds
        options["connect_args"] = {
            # libpq takes whole seconds and treats anything below 2 as 2.
            "connect_timeout": max(2, math.ceil(timeout_seconds)),
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        }
    return options


# SQLAlchemy setup
engine = create_engine(DATABASE_URL, **engine_options(DATABASE_URL, STORE_TIMEOUT_SECONDS))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
