# xui/migrations.py
"""Versioned schema migrations.

Each migration has a monotonic id and runs once; applied ids are stored in
``schema_migrations``. Migrations must tolerate databases produced by older
panel builds (an imported file may already have some tables or columns).
"""

import datetime

from sqlalchemy import inspect, text

from .database import Base
from .logger import get_logger
from . import models

logger = get_logger("migrations")


def _has_column(conn, table: str, column: str) -> bool:
    return any(c["name"] == column for c in inspect(conn).get_columns(table))


def _create_tables(conn):
    Base.metadata.create_all(bind=conn, checkfirst=True)


def _add_client_last_online(conn):
    if not _has_column(conn, "client_traffics", "last_online"):
        conn.execute(text("ALTER TABLE client_traffics ADD COLUMN last_online BIGINT DEFAULT 0"))


def _add_banned_ips(conn):
    if not _has_column(conn, "inbound_client_ips", "banned"):
        conn.execute(text("ALTER TABLE inbound_client_ips ADD COLUMN banned TEXT DEFAULT '[]'"))


def _backfill_inbound_tags(conn):
    rows = conn.execute(text("SELECT id, listen, port FROM inbounds WHERE tag IS NULL OR tag = ''")).fetchall()
    for row in rows:
        conn.execute(
            text("UPDATE inbounds SET tag = :tag WHERE id = :id"),
            {"tag": models.inbound_tag(row.listen, row.port), "id": row.id},
        )


MIGRATIONS = [
    (1, "create_tables", _create_tables),
    (2, "client_traffics_last_online", _add_client_last_online),
    (3, "inbound_client_ips_banned", _add_banned_ips),
    (4, "inbounds_tag_backfill", _backfill_inbound_tags),
]


def applied_versions(engine) -> set:
    with engine.connect() as conn:
        if not inspect(conn).has_table(models.SchemaMigration.__tablename__):
            return set()
        return {row[0] for row in conn.execute(text("SELECT version FROM schema_migrations"))}


def run_migrations(engine) -> list:
    """Apply every pending migration in id order; returns the ids applied."""
    models.SchemaMigration.__table__.create(bind=engine, checkfirst=True)
    done = applied_versions(engine)
    applied = []
    for version, name, fn in MIGRATIONS:
        if version in done:
            continue
        with engine.begin() as conn:
            fn(conn)
            conn.execute(
                models.SchemaMigration.__table__.insert().values(
                    version=version, name=name, applied_at=datetime.datetime.now()
                )
            )
        logger.info("applied migration %d %s", version, name)
        applied.append(version)
    return applied
