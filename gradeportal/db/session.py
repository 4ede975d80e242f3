from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gradeportal.core.config import settings


def _engine_kwargs(database_url: str) -> dict[str, object]:
    # Stale pooled connections would otherwise surface as lockout read faults.
    kwargs: dict[str, object] = {"pool_pre_ping": True}
    if database_url.lower().startswith("sqlite"):
        # Login handlers reach the store from the threadpool.
        kwargs["connect_args"] = {"check_same_thread": False}
        return kwargs

    kwargs.update(
        {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_timeout": settings.db_pool_timeout_seconds,
            "pool_recycle": settings.db_pool_recycle_seconds,
        }
    )
    return kwargs


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))

# Snapshots are built from rows after commit, so attributes must survive it.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
