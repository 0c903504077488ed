import json

import pytest

from xui import crud, models
from xui.database import Database
from xui.errors import AlreadyRunning, NotRunning, XrayUnavailable
from xui.xray.process import State

GB = 1024 ** 3
NOW = 1_700_000_000_000


@pytest.fixture
def database(tmp_path):
    db = Database(str(tmp_path / "x-ui.db"))
    db.init()
    yield db
    db.close()


@pytest.fixture
def db(database):
    with database.session() as session:
        yield session


def vless_client(email, **fields):
    client = {"id": f"uuid-{email}", "email": email, "flow": "", "enable": True}
    client.update(fields)
    return client


def inbound_data(port=443, clients=None, protocol="vless", **fields):
    data = {
        "remark": f"in-{port}",
        "enable": True,
        "listen": "",
        "port": port,
        "protocol": protocol,
        "total": 0,
        "expiry_time": 0,
        "settings": {"clients": clients or [], "decryption": "none", "fallbacks": []},
        "stream_settings": {"network": "tcp", "security": "none"},
        "sniffing": {"enabled": True, "destOverride": ["http", "tls"]},
    }
    data.update(fields)
    return data


def make_inbound(inbound_id=1, port=443, clients=None, protocol="vless", enable=True, stream=None, settings=None):
    """An unsaved inbound row, enough for the assembler."""
    if settings is None:
        settings = json.dumps({"clients": clients or [], "decryption": "none"})
    return models.Inbound(
        id=inbound_id,
        remark=f"in-{port}",
        enable=enable,
        listen="",
        port=port,
        protocol=protocol,
        tag=models.inbound_tag("", port),
        settings=settings,
        stream_settings=json.dumps(stream or {"network": "tcp", "security": "none"}),
        sniffing="{}",
    )


@pytest.fixture
def add_inbound(db):
    def _add(port=443, clients=None, **fields):
        return crud.add_inbound(db, inbound_data(port=port, clients=clients, **fields))
    return _add


class FakeProcess:
    """Stands in for XrayProcess without spawning anything."""

    def __init__(self):
        self.state = State.STOPPED
        self.config = None
        self.starts = 0
        self.stops = 0
        self.error = ""
        self.fail_with = None
        self.online = set()

    def start(self, xray_config):
        if self.state == State.RUNNING:
            raise AlreadyRunning("xray is already running")
        if self.fail_with is not None:
            self.state = State.FAILING
            self.error = self.fail_with.message
            raise self.fail_with
        self.starts += 1
        self.config = xray_config
        self.error = ""
        self.state = State.RUNNING

    def stop(self):
        if self.state != State.RUNNING:
            raise NotRunning("xray is not running")
        self.stops += 1
        self.state = State.STOPPED

    def crash(self):
        self.state = State.FAILING
        self.error = "xray exited unexpectedly with code 1"

    def acknowledge_failure(self):
        if self.state != State.FAILING:
            return False
        self.state = State.STOPPED
        return True

    def is_running(self):
        return self.state == State.RUNNING

    def get_api_port(self):
        return 10085 if self.is_running() else 0

    def get_error(self):
        return self.error

    def get_result(self):
        return ""

    def get_uptime(self):
        return 0

    def get_config(self):
        return self.config

    def get_online_clients(self):
        return set(self.online)

    def set_online_clients(self, emails):
        self.online = set(emails)

    def get_version(self):
        return "1.8.24"


class FakeAPI:
    def __init__(self, traffics=None, clients=None, online=None):
        self.traffics = traffics or []
        self.clients = clients or []
        self.online = online
        self.error = None
        self.closed = False

    def get_traffic(self, reset=True):
        if self.error is not None:
            raise self.error
        traffics, clients = self.traffics, self.clients
        self.traffics, self.clients = [], []
        return traffics, clients

    def get_online_clients(self):
        if self.error is not None:
            raise XrayUnavailable("down")
        return self.online

    def close(self):
        self.closed = True


class FakeHost:
    def __init__(self, domain="panel.example.com"):
        self.domain = domain
        self.allowed = []

    def get_panel_domain(self, db):
        return self.domain

    def allow_port(self, port):
        self.allowed.append(port)
        return True


@pytest.fixture
def fake_process():
    return FakeProcess()


@pytest.fixture
def fake_api():
    return FakeAPI()
