"""Create all tables. Run with `python -m plateyard.db.init_db`."""

import logging

from sqlalchemy.engine import Engine

from plateyard.db.base import Base

# imported for their side effect of registering tables on Base.metadata
from plateyard.models import customer, option, order, product  # noqa: F401
from plateyard.models import stripe_event, stripe_settings, webhook  # noqa: F401

logger = logging.getLogger("plateyard.db")


def create_tables(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
    logger.info("tables ready: %s", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    from plateyard.core.logging import configure_logging
    from plateyard.db.session import engine

    configure_logging()
    create_tables(engine)
