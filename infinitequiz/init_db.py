from sqlmodel import SQLModel, create_engine
from . import models  # noqa: F401  registers the tables
from .config import settings
from .logging_utils import get_logger

logger = get_logger("infinitequiz.init_db")


def make_engine(url: str = ""):
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    # pooled connections for server databases
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )


def init_db(url: str = ""):
    engine = make_engine(url)
    SQLModel.metadata.create_all(engine)
    logger.info("db_initialized", extra={"url": url or settings.DATABASE_URL})
    return engine


if __name__ == '__main__':
    init_db()
