from sqlmodel import create_engine, SQLModel
from . import models  # noqa: F401  (registers the tables on SQLModel.metadata)
from .logging_utils import get_logger

logger = get_logger("tictactoe.init_db")


def make_engine(url='sqlite:///./tictactoe.db'):
    """Build an engine without connecting; SQLite gets cross-thread access."""
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )


def init_db(url_or_engine='sqlite:///./tictactoe.db'):
    engine = make_engine(url_or_engine) if isinstance(url_or_engine, str) else url_or_engine
    SQLModel.metadata.create_all(engine)
    logger.info("db_initialized", extra={"path": str(engine.url)})
    return engine


if __name__ == '__main__':
    from .config import get_settings
    init_db(get_settings().database_url)
