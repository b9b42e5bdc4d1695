from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from billing.core.config import settings
import logging

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Tests y desarrollo local: varias conexiones sobre el mismo archivo
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


sync_engine = create_engine(
    settings.database_url,
    echo=settings.DEBUG and settings.ENVIRONMENT == "development",
    **_engine_options(settings.database_url)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)

Base = declarative_base()


def get_db():
    """Genera una sesión de base de datos por request."""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()
