"""Purge expired and revoked refresh tokens on a fixed interval as a standalone process."""

import logging
import time

from tourney.config import settings
from tourney.core.database import SessionLocal
from tourney.services.token_service import token_service

logger = logging.getLogger(__name__)

INTERVAL_SECONDS = 6 * 60 * 60


def purge_once() -> int:
    db = SessionLocal()
    try:
        return token_service.purge_expired(db)
    finally:
        db.close()


def main() -> None:
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL), format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        while True:
            try:
                purge_once()
            except Exception:
                logger.exception("Refresh token purge failed")
            time.sleep(INTERVAL_SECONDS)
    except KeyboardInterrupt:
        logger.info("Cleanup worker stopped")


if __name__ == "__main__":
    main()
