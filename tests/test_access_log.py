import os

from xui.xray.access_log import AccessLogWatcher, IPWindow, parse_line

LINE = "2024/05/01 12:00:00 from {ip}:51234 accepted tcp:www.google.com:443 [inbound-443 >> direct] email: {email}"


def test_parse_line():
    record = parse_line(LINE.format(ip="8.8.4.4", email="a@x"))
    assert (record.ip, record.email) == ("8.8.4.4", "a@x")

    tcp = parse_line("2024/05/01 12:00:00 from tcp:1.2.3.4:4000 accepted udp:1.1.1.1:53 email: b@x")
    assert (tcp.ip, tcp.email) == ("1.2.3.4", "b@x")

    v6 = parse_line("2024/05/01 12:00:00 from [2001:db8::1]:4000 accepted tcp:x.com:443 email: c@x")
    assert v6.ip == "2001:db8::1"


def test_parse_line_skips_noise():
    assert parse_line(LINE.format(ip="127.0.0.1", email="a@x")) is None
    assert parse_line("2024/05/01 12:00:00 from 8.8.8.8:1 accepted tcp:x.com:443 [direct]") is None
    assert parse_line("2024/05/01 12:00:00 [Warning] core: something") is None


def test_ip_window_keeps_first_seen_order_and_evicts():
    now = [1000.0]
    window = IPWindow(window=60, clock=lambda: now[0])
    window.observe("a@x", "1.1.1.1", 950.0)
    window.observe("a@x", "2.2.2.2", 990.0)
    window.observe("a@x", "1.1.1.1", 995.0)
    window.observe("b@x", "3.3.3.3", 900.0)

    assert window.snapshot() == {"a@x": ["1.1.1.1", "2.2.2.2"]}

    now[0] = 1052.0
    assert window.snapshot() == {"a@x": ["1.1.1.1"]}
    assert window.emails() == ["a@x"]


def test_ip_window_is_bounded():
    window = IPWindow(max_ips=2, clock=lambda: 0.0)
    for ip in ("1.1.1.1", "2.2.2.2", "3.3.3.3"):
        window.observe("a@x", ip, 0.0)
    assert window.observed_ips("a@x") == ["2.2.2.2", "3.3.3.3"]


def _append(path, *lines):
    with open(path, "a") as f:
        for line in lines:
            f.write(line + "\n")


def test_watcher_reads_only_new_complete_lines(tmp_path):
    path = tmp_path / "access.log"
    _append(path, "old line")
    watcher = AccessLogWatcher(str(path))

    assert watcher.poll() == []
    _append(path, "first")
    with open(path, "a") as f:
        f.write("half")
    assert watcher.poll() == ["first"]
    with open(path, "a") as f:
        f.write(" done\n")
    assert watcher.poll() == ["half done"]


def test_watcher_survives_truncation(tmp_path):
    path = tmp_path / "access.log"
    path.write_text("")
    watcher = AccessLogWatcher(str(path), from_start=True)
    _append(path, "a long line number one", "a long line number two")
    assert len(watcher.poll()) == 2

    path.write_text("new\n")

    assert watcher.poll() == ["new"]


def test_watcher_follows_rotation(tmp_path):
    path = tmp_path / "access.log"
    _append(path, "before")
    watcher = AccessLogWatcher(str(path), from_start=True)
    assert watcher.poll() == ["before"]

    os.rename(path, tmp_path / "access.log.1")
    _append(path, "after")

    assert watcher.poll() == ["after"]


def test_watcher_waits_for_missing_file(tmp_path):
    path = tmp_path / "access.log"
    watcher = AccessLogWatcher(lambda: str(path))

    assert watcher.poll() == []
    _append(path, LINE.format(ip="9.9.9.9", email="a@x"))
    assert watcher.poll() == [LINE.format(ip="9.9.9.9", email="a@x")]


def test_watcher_thread_feeds_window(tmp_path):
    import time

    path = tmp_path / "access.log"
    path.write_text("")
    watcher = AccessLogWatcher(str(path), poll_interval=0.05, from_start=True)
    watcher.start()
    try:
        _append(path, LINE.format(ip="8.8.8.8", email="a@x"), LINE.format(ip="127.0.0.1", email="a@x"))
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not watcher.window.observed_ips("a@x"):
            time.sleep(0.05)
    finally:
        watcher.stop()

    assert watcher.window.observed_ips("a@x") == ["8.8.8.8"]
