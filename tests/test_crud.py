import json

import pytest
from conftest import GB, NOW, inbound_data, vless_client

from xui import crud, models
from xui.errors import Conflict, InvalidInbound, InvalidSettings, NotFound


def test_add_inbound_creates_traffic_rows(db, add_inbound):
    inbound = add_inbound(clients=[vless_client("a@x", totalGB=5 * GB), vless_client("b@x")])

    assert inbound.tag == "inbound-443"
    rows = {row.email: row for row in inbound.client_stats}
    assert set(rows) == {"a@x", "b@x"}
    assert rows["a@x"].total == 5 * GB
    assert rows["a@x"].enable is True


def test_enabled_inbounds_cannot_share_a_port(db, add_inbound):
    add_inbound(port=443)

    with pytest.raises(Conflict):
        add_inbound(port=443)

    disabled = add_inbound(port=443, enable=False)
    assert disabled.enable is False

    with pytest.raises(Conflict):
        crud.update_inbound(db, disabled.id, {"enable": True})


def test_email_is_unique_across_inbounds(db, add_inbound):
    add_inbound(port=443, clients=[vless_client("a@x")])

    with pytest.raises(Conflict):
        add_inbound(port=8443, clients=[vless_client("a@x")])

    with pytest.raises(InvalidSettings):
        add_inbound(port=8443, clients=[vless_client("b@x"), vless_client("b@x")])


def test_add_inbound_rejects_bad_rows(db):
    with pytest.raises(InvalidInbound):
        crud.add_inbound(db, inbound_data(protocol="carrier-pigeon"))
    with pytest.raises(InvalidInbound):
        crud.add_inbound(db, inbound_data(port=70000))
    with pytest.raises(InvalidSettings):
        crud.add_inbound(db, inbound_data(settings="{not json"))
    assert crud.list_inbounds(db) == []


def test_update_inbound_syncs_traffic_rows(db, add_inbound):
    inbound = add_inbound(clients=[vless_client("a@x"), vless_client("b@x")])

    settings = json.loads(inbound.settings)
    settings["clients"] = [vless_client("b@x", totalGB=GB), vless_client("c@x")]
    crud.update_inbound(db, inbound.id, {"settings": settings, "remark": "renamed"})

    emails = {row.email: row for row in crud.get_inbound(db, inbound.id).client_stats}
    assert set(emails) == {"b@x", "c@x"}
    assert emails["b@x"].total == GB
    assert crud.get_inbound(db, inbound.id).remark == "renamed"


def test_delete_inbound(db, add_inbound):
    inbound = add_inbound(clients=[vless_client("a@x")])

    crud.delete_inbound(db, inbound.id)

    with pytest.raises(NotFound):
        crud.get_inbound(db, inbound.id)
    assert crud.get_client_traffic(db, "a@x") is None


def test_client_lifecycle(db, add_inbound):
    inbound = add_inbound(clients=[vless_client("a@x")])

    crud.add_clients(db, inbound.id, [vless_client("b@x", limitIp=1)])
    assert [c.email for c in crud.list_clients(crud.get_inbound(db, inbound.id))] == ["a@x", "b@x"]
    assert crud.get_client_traffic(db, "b@x") is not None

    updated = crud.update_client(db, "b@x", {"email": "c@x", "totalGB": 2 * GB})
    assert updated.email == "c@x"
    assert crud.get_client_traffic(db, "c@x").total == 2 * GB
    assert crud.get_client_traffic(db, "b@x") is None

    with pytest.raises(Conflict):
        crud.update_client(db, "c@x", {"email": "a@x"})

    crud.delete_client(db, "c@x")
    with pytest.raises(NotFound):
        crud.get_client_by_email(db, "c@x")
    assert crud.get_client_traffic(db, "c@x") is None


def test_set_client_enable_reports_change(db, add_inbound):
    add_inbound(clients=[vless_client("a@x")])

    assert crud.set_client_enable(db, "a@x", False) is True
    assert crud.set_client_enable(db, "a@x", False) is False
    assert crud.get_client_by_email(db, "a@x")[1].enable is False
    assert crud.toggle_client_enable(db, "a@x") is True
    assert crud.get_client_traffic(db, "a@x").enable is True


def test_upsert_traffic_delta_accumulates(db, add_inbound):
    add_inbound(clients=[vless_client("a@x")])

    crud.upsert_traffic_delta(db, "inbound-443", "a@x", 100, 200)
    crud.upsert_traffic_delta(db, None, "a@x", 1, 2)
    crud.upsert_traffic_delta(db, None, "a@x", -5, 0)

    row = crud.get_client_traffic(db, "a@x")
    assert (row.up, row.down) == (101, 202)


def test_upsert_traffic_delta_creates_missing_row(db, add_inbound):
    inbound = add_inbound(clients=[vless_client("a@x")])
    db.delete(crud.get_client_traffic(db, "a@x"))
    db.commit()

    crud.upsert_traffic_delta(db, None, "a@x", 10, 20)

    row = crud.get_client_traffic(db, "a@x")
    assert row.inbound_id == inbound.id
    assert (row.up, row.down) == (10, 20)

    with pytest.raises(NotFound):
        crud.upsert_traffic_delta(db, None, "ghost@x", 1, 1)


def test_disable_invalid_clients(db, add_inbound):
    add_inbound(clients=[
        vless_client("quota@x", totalGB=GB),
        vless_client("expired@x", expiryTime=NOW - 1),
        vless_client("fine@x", totalGB=GB, expiryTime=NOW + 1000),
    ])
    crud.upsert_traffic_delta(db, None, "quota@x", GB // 2, GB // 2)
    crud.upsert_traffic_delta(db, None, "fine@x", 10, 10)

    disabled = crud.disable_invalid_clients(db, NOW)

    assert sorted(disabled) == ["expired@x", "quota@x"]
    assert crud.traffic_enable_map(db) == {"quota@x": False, "expired@x": False, "fine@x": True}


def test_reset_client_traffic_re_enables(db, add_inbound):
    add_inbound(clients=[vless_client("a@x", totalGB=GB)])
    crud.upsert_traffic_delta(db, None, "a@x", GB, 0)
    crud.disable_invalid_clients(db, NOW)

    assert crud.reset_client_traffic(db, "a@x") is True

    row = crud.get_client_traffic(db, "a@x")
    assert (row.up, row.down, row.enable) == (0, 0, True)


def test_disable_invalid_inbounds(db, add_inbound):
    inbound = add_inbound(total=100)
    db.query(models.Inbound).update({models.Inbound.up: 60, models.Inbound.down: 40})
    db.commit()

    assert crud.disable_invalid_inbounds(db, NOW) == [inbound.id]
    assert crud.get_inbound(db, inbound.id).enable is False


def test_sync_client_traffics_repairs_rows(db, add_inbound):
    inbound = add_inbound(clients=[vless_client("a@x")])
    db.add(models.ClientTraffic(inbound_id=inbound.id, email="orphan@x", enable=True, up=0, down=0))
    db.delete(crud.get_client_traffic(db, "a@x"))
    db.commit()

    assert crud.sync_client_traffics(db) == 2
    assert set(crud.traffic_enable_map(db)) == {"a@x"}


def test_activate_delayed_expiry_counts_days(db, add_inbound):
    add_inbound(clients=[vless_client("a@x", expiryTime=-30)])

    assert crud.activate_delayed_expiry(db, ["a@x", "other@x"], NOW) == ["a@x"]

    expected = NOW + 30 * crud.DAY_MS
    assert crud.get_client_traffic(db, "a@x").expiry_time == expected
    assert crud.get_client_by_email(db, "a@x")[1].expiryTime == expected
    assert crud.activate_delayed_expiry(db, ["a@x"], NOW) == []


def test_non_ascii_emails_are_found(db, add_inbound):
    inbound = add_inbound(clients=[vless_client("کاربر1", expiryTime=-7)])
    assert "کاربر1" in crud.get_inbound(db, inbound.id).settings

    assert crud.get_client_by_email(db, "کاربر1")[0].id == inbound.id
    assert crud.set_client_enable(db, "کاربر1", False) is True

    assert crud.activate_delayed_expiry(db, ["کاربر1"], NOW) == ["کاربر1"]
    assert crud.get_client_by_email(db, "کاربر1")[1].expiryTime == NOW + 7 * crud.DAY_MS

    crud.update_inbound(db, inbound.id, {"remark": "renamed"})
    assert crud.get_client_traffic(db, "کاربر1").expiry_time == NOW + 7 * crud.DAY_MS
    assert crud.activate_delayed_expiry(db, ["کاربر1"], NOW) == []


def test_escaped_settings_blob_is_searchable(db):
    data = inbound_data(port=443, clients=[vless_client("用户")])
    data["settings"] = json.dumps(data["settings"])
    assert "用户" not in data["settings"]
    crud.add_inbound(db, data)

    inbound, client = crud.get_client_by_email(db, "用户")
    assert client.email == "用户"
    crud.delete_client(db, "用户")
    with pytest.raises(NotFound):
        crud.get_client_by_email(db, "用户")


def test_outbound_traffic(db):
    from xui.xray.api import Traffic

    crud.add_inbound_traffic(db, [Traffic(False, True, "direct", 5, 6), Traffic(False, True, "blocked", 0, 0)])
    crud.add_inbound_traffic(db, [Traffic(False, True, "direct", 1, 1)])

    rows = crud.list_outbound_traffics(db)
    assert [(r.tag, r.up, r.down, r.total) for r in rows] == [("direct", 6, 7, 13)]

    crud.reset_outbound_traffic(db, "-alltags-")
    db.expire_all()
    assert crud.list_outbound_traffics(db)[0].total == 0


def test_client_ips_and_bans(db):
    crud.save_client_ips(db, "a@x", ["1.1.1.1", "2.2.2.2"])
    crud.set_banned_ips(db, "a@x", ["3.3.3.3"])
    crud.set_banned_ips(db, "b@x", ["4.4.4.4", "3.3.3.3"])

    assert crud.get_client_ips(db, "a@x") == ["1.1.1.1", "2.2.2.2"]
    assert crud.all_banned_ips(db) == ["3.3.3.3", "4.4.4.4"]
    assert crud.banned_clients(db) == {"a@x": ["3.3.3.3"], "b@x": ["3.3.3.3", "4.4.4.4"]}

    crud.clear_client_ips(db, "a@x")
    assert crud.get_client_ips(db, "a@x") == []


def test_link_history_keeps_latest_ten(db):
    for i in range(12):
        crud.record_link(db, "vless", f"vless://link-{i}")

    links = [r.link for r in crud.get_recent_links(db)]
    assert len(links) == 10
    assert links[0] == "vless://link-11"
    assert "vless://link-0" not in links
    assert db.query(models.LinkHistory).count() == 10


def test_short_links(db):
    crud.add_short_link(db, "abc", "vless://x")

    assert crud.get_short_link(db, "abc").full_link == "vless://x"
    assert crud.get_short_link(db, "nope") is None
    with pytest.raises(Conflict):
        crud.add_short_link(db, "abc", "vless://y")


def test_lottery_wins(db):
    assert crud.has_user_won_today(db, 7) is False
    crud.record_user_win(db, 7, "1GB")
    assert crud.has_user_won_today(db, 7) is True
    assert crud.has_user_won_today(db, 8) is False
