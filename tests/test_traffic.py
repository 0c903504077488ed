import pytest
from conftest import GB, NOW, FakeAPI, vless_client

from xui import crud, settings
from xui.errors import XrayUnavailable
from xui.services.traffic import TrafficService
from xui.services.xray_service import XrayService
from xui.xray.access_log import IPWindow
from xui.xray.api import ClientTraffic, Traffic


@pytest.fixture
def xray(database, fake_process):
    return XrayService(database, process=fake_process)


@pytest.fixture
def service_factory(database, xray, tmp_path):
    def _make(api, notifier=None):
        return TrafficService(
            database,
            xray,
            api=api,
            notifier=notifier,
            clock=lambda: NOW,
            ban_log_path=str(tmp_path / "3xipl.log"),
        )
    return _make


def _client_emails(xray_config):
    return [
        c["email"]
        for ib in xray_config.inbounds
        for c in (ib.settings or {}).get("clients", [])
    ]


def test_quota_exhaustion_disables_and_restarts(database, xray, add_inbound, service_factory):
    add_inbound(clients=[vless_client("a@x", totalGB=GB), vless_client("b@x")])
    xray.reconcile()
    assert "a@x" in _client_emails(xray.get_config())

    api = FakeAPI(
        traffics=[Traffic(True, False, "inbound-443", GB // 2, GB // 2), Traffic(True, False, "api", 9, 9)],
        clients=[ClientTraffic("a@x", GB // 2, GB // 2), ClientTraffic("b@x", 10, 0)],
    )
    assert service_factory(api).tick() is True

    with database.session() as db:
        row = crud.get_client_traffic(db, "a@x")
        assert (row.up, row.down, row.enable) == (GB // 2, GB // 2, False)
        assert crud.get_client_traffic(db, "b@x").enable is True
        inbound = crud.get_inbound_by_tag(db, "inbound-443")
        assert (inbound.up, inbound.down) == (GB // 2, GB // 2)

    assert xray.consume_restart_request() == (True, False)
    assert xray.reconcile() is None
    assert xray.process.starts == 2
    assert _client_emails(xray.get_config()) == ["b@x"]


def test_tick_marks_active_clients_online(database, xray, add_inbound, service_factory):
    add_inbound(clients=[vless_client("a@x"), vless_client("b@x")])
    api = FakeAPI(clients=[ClientTraffic("a@x", 5, 5), ClientTraffic("b@x", 0, 0)])

    service = service_factory(api)
    service.tick()

    assert service.get_online_clients() == ["a@x"]
    with database.session() as db:
        assert crud.get_client_traffic(db, "a@x").last_online == NOW
        assert crud.get_client_traffic(db, "b@x").last_online == 0


def test_tick_prefers_xray_online_list(add_inbound, service_factory):
    add_inbound(clients=[vless_client("a@x"), vless_client("b@x")])
    service = service_factory(FakeAPI(online={"b@x"}))

    service.tick()

    assert service.get_online_clients() == ["b@x"]


def test_delayed_expiry_starts_on_first_traffic(database, xray, add_inbound, service_factory):
    add_inbound(clients=[vless_client("a@x", expiryTime=-7)])

    service_factory(FakeAPI(clients=[ClientTraffic("a@x", 1, 1)])).tick()

    with database.session() as db:
        row = crud.get_client_traffic(db, "a@x")
        assert row.expiry_time == NOW + 7 * crud.DAY_MS
        assert row.enable is True
    assert xray.consume_restart_request() == (False, False)


def test_unavailable_xray_drops_the_tick(database, add_inbound, service_factory):
    add_inbound(clients=[vless_client("a@x")])
    api = FakeAPI(clients=[ClientTraffic("a@x", 5, 5)])
    api.error = XrayUnavailable("connection refused")

    service = service_factory(api)
    for _ in range(4):
        assert service.tick() is False

    with database.session() as db:
        assert crud.get_client_traffic(db, "a@x").up == 0


def test_unknown_client_traffic_is_ignored(database, add_inbound, service_factory):
    add_inbound(clients=[vless_client("a@x")])

    api = FakeAPI(clients=[ClientTraffic("ghost@x", 5, 5), ClientTraffic("a@x", 1, 2)])
    assert service_factory(api).tick() is True

    with database.session() as db:
        assert crud.get_client_traffic(db, "ghost@x") is None
        assert crud.get_client_traffic(db, "a@x").down == 2


def test_exhaust_soon_is_reported_not_disabled(database, add_inbound, service_factory):
    add_inbound(clients=[vless_client("a@x", totalGB=2 * GB), vless_client("b@x", totalGB=10 * GB)])
    with database.session() as db:
        settings.update(db, {"trafficDiff": 1})

    reported = []
    api = FakeAPI(clients=[ClientTraffic("a@x", GB, GB // 2), ClientTraffic("b@x", GB, 0)])
    service_factory(api, notifier=lambda rows: reported.extend(r.email for r in rows)).tick()

    assert reported == ["a@x"]
    with database.session() as db:
        assert crud.get_client_traffic(db, "a@x").enable is True


def _window(*observations):
    window = IPWindow(window=60, clock=lambda: 1000.0)
    for email, ip, at in observations:
        window.observe(email, ip, at)
    return window


def test_ip_limit_bans_newest_ips(database, xray, add_inbound, service_factory, tmp_path):
    add_inbound(clients=[vless_client("a@x", limitIp=2), vless_client("free@x")])
    window = _window(
        ("a@x", "1.1.1.1", 990.0),
        ("a@x", "2.2.2.2", 991.0),
        ("a@x", "3.3.3.3", 992.0),
        ("free@x", "4.4.4.4", 990.0),
        ("free@x", "5.5.5.5", 990.0),
        ("free@x", "6.6.6.6", 990.0),
    )

    service = service_factory(FakeAPI())
    assert service.enforce_ip_limits(window) is True

    with database.session() as db:
        assert crud.get_banned_ips(db, "a@x") == ["3.3.3.3"]
        assert crud.get_banned_ips(db, "free@x") == []
        assert crud.get_client_ips(db, "a@x") == ["1.1.1.1", "2.2.2.2", "3.3.3.3"]
    assert xray.consume_restart_request() == (True, False)

    log = (tmp_path / "3xipl.log").read_text()
    assert "[LIMIT_IP] Email = a@x || SRC = 3.3.3.3" in log

    rules = xray.get_xray_config().routing["rules"]
    assert {"type": "field", "source": ["3.3.3.3"], "outboundTag": "blocked"} in rules

    # the same picture again changes nothing
    assert service.enforce_ip_limits(window) is False
    assert xray.consume_restart_request() == (False, False)


def test_ip_limit_releases_when_back_within_limit(database, xray, add_inbound, service_factory):
    add_inbound(clients=[vless_client("a@x", limitIp=1)])
    service = service_factory(FakeAPI())
    service.enforce_ip_limits(_window(("a@x", "1.1.1.1", 990.0), ("a@x", "2.2.2.2", 995.0)))
    xray.consume_restart_request()

    # the second address went quiet and fell out of the window
    assert service.enforce_ip_limits(_window(("a@x", "1.1.1.1", 999.0), ("a@x", "2.2.2.2", 900.0))) is True

    with database.session() as db:
        assert crud.get_banned_ips(db, "a@x") == []
    assert xray.consume_restart_request() == (True, False)
