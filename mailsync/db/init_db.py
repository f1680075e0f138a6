# init_db.py

import logging

from mailsync.db.session import Base, engine
import mailsync.db.models  # noqa: F401

logger = logging.getLogger(__name__)


def init(bind=engine):
    logger.info("[DB] Creating tables (if not exist)...")
    Base.metadata.create_all(bind=bind)
    logger.info("[DB] Done.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init()
