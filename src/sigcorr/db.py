"""
Database configuration and session management
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
import os
from pathlib import Path

data_dir = Path(os.getenv("SIGCORR_DATA_DIR", "data/db"))

DB_URL = os.getenv("SIGCORR_DB_URL", f"sqlite:///{data_dir}/sigcorr.db")
DB_ECHO = os.getenv("SIGCORR_DB_ECHO", "false").lower() == "true"


def _enable_sqlite_savepoints(engine) -> None:
    # pysqlite opens transactions lazily on its own, which breaks SAVEPOINT;
    # let SQLAlchemy emit BEGIN itself, taking the write lock when the
    # transaction starts.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str = DB_URL, **kwargs):
    """Create an engine with settings suited to the backend"""
    if url.startswith("sqlite"):
        if url.startswith("sqlite:///") and ":memory:" not in url:
            # Ensure data directory exists
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        connect_args = {"check_same_thread": False, **kwargs.pop("connect_args", {})}
        engine = create_engine(
            url,
            connect_args=connect_args,
            echo=DB_ECHO,
            **kwargs,
        )
        _enable_sqlite_savepoints(engine)
        return engine
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        echo=DB_ECHO,
        **kwargs,
    )


engine = make_engine()

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    """Yield a session and always close it"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database tables"""
    from sigcorr.models.incident import Base
    Base.metadata.create_all(bind=bind or engine)
