from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from config import DB_URL
from models.base import Base
import models  # noqa: F401  (registers all tables on Base.metadata)


def enable_sqlite_savepoints(engine):
    """
    Let SQLAlchemy own BEGIN on pysqlite connections so SAVEPOINTs nest
    inside the job transaction.
    """
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


engine = create_engine(DB_URL)
if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)
SessionLocal = sessionmaker(bind=engine)

def init_db(bind=None):
    """Create all tables in the database (idempotent)."""
    Base.metadata.create_all(bind=bind or engine)
