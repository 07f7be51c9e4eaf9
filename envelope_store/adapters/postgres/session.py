"""Postgres Session Management."""
import logging
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from envelope_store.settings import settings

logger = logging.getLogger(__name__)


@lru_cache
def get_session_factory() -> sessionmaker:
    engine = create_engine(settings.database_url, pool_pre_ping=True)
    logger.info("Initialized Database Engine")
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
