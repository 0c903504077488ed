import io
import os

import pytest
from conftest import inbound_data, vless_client
from sqlalchemy import text

from xui import crud, migrations, models, security
from xui.database import Database, is_sqlite_db
from xui.errors import InvalidDB, IOFailed
from xui.migrations import MIGRATIONS, applied_versions, run_migrations
from xui.seeders import USER_PASSWORD_HASH
from xui.services.server import ServerService
from xui.services.xray_service import XrayService


def test_sqlite_signature():
    assert is_sqlite_db(io.BytesIO(b"SQLite format 3\x00" + b"\x00" * 100))
    assert not is_sqlite_db(io.BytesIO(b"PK\x03\x04 definitely a zip"))
    assert not is_sqlite_db(io.BytesIO(b""))


def test_migrations_run_once(database):
    assert applied_versions(database.engine) == {version for version, _, _ in MIGRATIONS}
    assert run_migrations(database.engine) == []


def test_default_admin_is_seeded_hashed(db):
    user = crud.get_user_by_username(db, "admin")
    assert security.is_bcrypt_hash(user.password)
    assert security.verify_password("admin", user.password)


def test_plaintext_passwords_are_rehashed_once(tmp_path):
    database = Database(str(tmp_path / "old.db"))
    run_migrations(database.engine)
    with database.engine.begin() as conn:
        conn.execute(text("INSERT INTO users (username, password) VALUES ('old', 'secret')"))

    database.init()

    with database.session() as db:
        user = crud.get_user_by_username(db, "old")
        assert security.verify_password("secret", user.password)
        assert crud.get_user_by_username(db, "admin") is None
        names = [row.seeder_name for row in db.query(models.HistoryOfSeeders).all()]
        assert names == [USER_PASSWORD_HASH]
        first_hash = user.password

    database.init()
    with database.session() as db:
        assert crud.get_user_by_username(db, "old").password == first_hash
    database.close()


def _other_db(tmp_path, port=8443):
    other = Database(str(tmp_path / "upload.db"))
    other.init()
    with other.session() as db:
        crud.add_inbound(db, inbound_data(port=port, clients=[vless_client("imported@x")]))
    other.checkpoint()
    other.close()
    with open(tmp_path / "upload.db", "rb") as f:
        return f.read()


@pytest.fixture
def server(database, fake_process):
    return ServerService(database, XrayService(database, process=fake_process))


def test_import_rejects_non_sqlite(server, database, add_inbound):
    add_inbound(port=443)

    with pytest.raises(InvalidDB):
        server.import_db(io.BytesIO(b"this is not a database at all"))

    with database.session() as db:
        assert [ib.port for ib in crud.list_inbounds(db)] == [443]


def test_import_rejects_corrupt_sqlite(server, database, add_inbound):
    add_inbound(port=443)

    with pytest.raises(InvalidDB):
        server.import_db(io.BytesIO(b"SQLite format 3\x00" + b"\xff" * 4000))

    with database.session() as db:
        assert [ib.port for ib in crud.list_inbounds(db)] == [443]
    assert not os.path.exists(database.path + ".temp")


def test_import_replaces_database_and_restarts(server, database, fake_process, add_inbound, tmp_path):
    add_inbound(port=443)
    server.xray.reconcile()
    upload = _other_db(tmp_path)

    server.import_db(io.BytesIO(upload))

    with database.session() as db:
        assert [ib.port for ib in crud.list_inbounds(db)] == [8443]
        assert crud.get_client_traffic(db, "imported@x") is not None
    assert fake_process.stops == 1
    assert fake_process.starts == 2
    assert fake_process.config.inbounds[-1].tag == "inbound-8443"
    assert not os.path.exists(database.path + ".backup")
    assert not os.path.exists(database.path + ".temp")


def test_failed_migration_restores_previous_database(server, database, fake_process, add_inbound,
                                                     tmp_path, monkeypatch):
    add_inbound(port=443)
    server.xray.reconcile()
    upload = _other_db(tmp_path)

    calls = []
    run_migrations_orig = migrations.run_migrations

    def failing_second_run(engine):
        calls.append(engine)
        if len(calls) == 2:
            raise RuntimeError("disk full")
        return run_migrations_orig(engine)

    monkeypatch.setattr(migrations, "run_migrations", failing_second_run)

    with pytest.raises(IOFailed, match="disk full"):
        server.import_db(io.BytesIO(upload))

    with database.session() as db:
        assert [ib.port for ib in crud.list_inbounds(db)] == [443]
        assert crud.get_client_traffic(db, "imported@x") is None
    assert not os.path.exists(database.path + ".backup")
    assert not os.path.exists(database.path + ".temp")
    assert fake_process.stops == 1
    assert fake_process.starts == 2
    assert fake_process.config.inbounds[-1].tag == "inbound-443"


def test_export_is_a_complete_sqlite_file(server, add_inbound):
    add_inbound(port=443)

    data = server.export_db()

    assert is_sqlite_db(io.BytesIO(data))


def test_link_history_and_short_links(server):
    for i in range(11):
        server.save_link_history("vless", f"vless://{i}")

    history = server.load_link_history()
    assert len(history) == 10
    assert history[0]["link"] == "vless://10"

    code = server.create_short_link("vless://10")
    assert len(code) == 8
    assert server.resolve_short_link(code) == "vless://10"
    assert server.resolve_short_link("missing") is None


def test_status_includes_xray(server):
    status = server.get_status()
    assert status["xray"]["state"] == "stop"
    assert status["xray"]["uptime"] == 0
    assert "cpu" in status and "ram" in status
