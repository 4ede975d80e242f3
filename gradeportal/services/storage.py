from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from gradeportal.core.errors import StorageUnavailable


@contextmanager
def storage_transaction(session_factory: sessionmaker[Session], operation: str) -> Iterator[Session]:
    """Open a session, run the block in one transaction and translate driver faults."""
    try:
        with session_factory() as db:
            with db.begin():
                yield db
    except SQLAlchemyError as exc:
        raise StorageUnavailable(operation) from exc
