import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from shared.database import Base, get_engine, get_session

from .config import DATABASE_URL
from .errors import Conflict, Internal, DUPLICATE, STALE_PROPOSAL

logger = logging.getLogger(__name__)

__all__ = ["Base", "new_id", "utcnow", "build_session_factory", "transaction"]


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_session_factory(database_url: str | None = None):
    url = database_url or DATABASE_URL
    if not url:
        raise RuntimeError("RESERVATION_DB environment variable is not set")
    return get_session(get_engine(url))


@asynccontextmanager
async def transaction(session_factory):
    """
    One unit of work: commits on clean exit, rolls back on any exception.
    Domain errors pass through; persistence errors are translated.
    """
    async with session_factory() as db:
        try:
            async with db.begin():
                yield db
        except StaleDataError as e:
            raise Conflict("the booking was modified by a concurrent request", STALE_PROPOSAL) from e
        except IntegrityError as e:
            logger.info("integrity violation: %s", e.orig)
            raise Conflict("the record already exists", DUPLICATE) from e
        except SQLAlchemyError as e:
            logger.exception("transaction failed")
            raise Internal("persistence failure, please retry") from e
