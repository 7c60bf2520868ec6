import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

# Bound to an engine by init_db(); every request opens its own session.
SessionLocal = sessionmaker(autoflush=False, autocommit=False)


def init_db(database_uri, echo=False):
    """
    Create the engine, bind SessionLocal to it and create missing tables.
    """
    engine = create_engine(database_uri, echo=echo, future=True)
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(engine)
    logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))
    return engine
