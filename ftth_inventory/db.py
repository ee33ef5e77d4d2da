import logging

from fastapi import HTTPException
from sqlmodel import SQLModel, Session, create_engine

from ftth_inventory.config import get_settings

logger = logging.getLogger(__name__)


def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = _make_engine(get_settings().database_url)


def create_db_and_tables(bind=None) -> None:
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    session = Session(engine)
    try:
        yield session
    except HTTPException:
        # Business / auth errors: nothing was committed for this request
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        logger.exception("rollback after %s: %s", type(e).__name__, e)
        raise
    finally:
        session.close()
