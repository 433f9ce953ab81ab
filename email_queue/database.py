from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from email_queue.config import Settings, settings
from email_queue.utils.logger import get_logger

logger = get_logger("database")

Base = declarative_base()


def build_database_url(config: Settings) -> str:
    url = make_url(config.database_url)
    if config.database_password:
        url = url.set(password=config.database_password)
    return url.render_as_string(hide_password=False)


def create_db_engine(config: Settings = settings) -> Engine:
    url = build_database_url(config)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


@retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    reraise=True,
)
def init_db(bind: Engine):
    """Create the queue tables, waiting for the database to come up."""
    from email_queue import models  # noqa: F401  register tables on Base

    Base.metadata.create_all(bind=bind)
    logger.info("database_ready", extra={"dialect": bind.dialect.name})


engine = create_db_engine(settings)
SessionLocal = create_session_factory(engine)
