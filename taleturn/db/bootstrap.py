from taleturn.db import models  # noqa: F401
from taleturn.db import session as db_session
from taleturn.db.base import Base


def init_db() -> None:
    """Create every table directly from the models. Tests only; real databases go through alembic."""
    Base.metadata.create_all(bind=db_session.engine)


def drop_db() -> None:
    Base.metadata.drop_all(bind=db_session.engine)
