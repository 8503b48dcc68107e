"""
Database Initialization Script

Creates every table defined in the models module. Production schemas
are managed by Alembic; this is for local development databases.

Usage:
    python -m chatflow.common.init_db
"""

from chatflow.common.db import Base, init_engine
from chatflow.common import models  # noqa: F401 - Import needed to register models


def create_tables(engine=None):
    """
    Create all database tables.

    Args:
        engine: Engine to create the tables on (defaults to the configured one)

    Returns:
        sqlalchemy.Engine: The engine the tables were created on
    """
    engine = init_engine(engine)
    Base.metadata.create_all(bind=engine)
    return engine


if __name__ == '__main__':
    create_tables()
    print("Database tables created successfully")
