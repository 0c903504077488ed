# xui/database.py
import os
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from .logger import get_logger

logger = get_logger("database")

Base = declarative_base()

SQLITE_SIGNATURE = b"SQLite format 3\x00"


def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=10000")
    cursor.close()


class Database:
    """Owns the engine and session factory of one SQLite file.

    Components receive this object instead of reaching for a module global,
    so tests can point them at a temporary file.
    """

    def __init__(self, path: str, echo: bool = False):
        self.path = path
        self.echo = echo
        self.engine = None
        self.SessionLocal = None
        self.open()

    def open(self):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{self.path}",
            connect_args={"check_same_thread": False},
            echo=self.echo,
        )
        event.listen(self.engine, "connect", _set_sqlite_pragma)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def close(self):
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    def reopen(self):
        self.close()
        self.open()

    def init(self):
        """Apply pending migrations, then the one-shot seeders."""
        from . import migrations, seeders

        migrations.run_migrations(self.engine)
        with self.session() as db:
            seeders.run_seeders(db)

    @contextmanager
    def session(self):
        db: Session = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def checkpoint(self):
        # Flush the WAL into the main file so a copy of it is complete.
        with self.engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA wal_checkpoint;")


def is_sqlite_db(fileobj) -> bool:
    """Check the 16 byte header of an open binary file. The position is restored."""
    pos = fileobj.tell()
    try:
        fileobj.seek(0)
        header = fileobj.read(len(SQLITE_SIGNATURE))
    finally:
        fileobj.seek(pos)
    return header == SQLITE_SIGNATURE
