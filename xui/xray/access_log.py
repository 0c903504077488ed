# xui/xray/access_log.py
"""Follows xray's access log to learn which source IPs each client uses."""

import os
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Union

import config
from ..logger import get_logger

logger = get_logger("xray.access_log")

MAX_IPS_PER_EMAIL = 64

IP_RE = re.compile(r"from (?:tcp:|udp:)?\[?([0-9a-fA-F\.:]+)\]?:\d+ accepted")
EMAIL_RE = re.compile(r"email:\s*(\S+)")
LOOPBACK = ("127.0.0.1", "::1")


@dataclass
class AccessRecord:
    ip: str
    email: str
    line: str


def parse_line(line: str) -> Optional[AccessRecord]:
    """Parse ``<ts> from <ip>:<port> accepted <target> [<tag>] email: <email>``.

    Returns None for lines without a client email and for loopback sources.
    """
    ip_match = IP_RE.search(line)
    email_match = EMAIL_RE.search(line)
    if not ip_match or not email_match:
        return None
    ip = ip_match.group(1)
    if ip in LOOPBACK or ip.startswith("127."):
        return None
    email = email_match.group(1).strip("[]")
    if not email:
        return None
    return AccessRecord(ip=ip, email=email, line=line)


class IPWindow:
    """Recently seen source IPs per email, oldest first."""

    def __init__(self, window: float = config.IP_WINDOW_SECONDS, max_ips: int = MAX_IPS_PER_EMAIL,
                 clock: Callable[[], float] = time.time):
        self.window = window
        self.max_ips = max_ips
        self.clock = clock
        self._lock = threading.Lock()
        # email -> ip -> last seen
        self._seen: Dict[str, "OrderedDict[str, float]"] = {}

    def observe(self, email: str, ip: str, at: Optional[float] = None):
        at = self.clock() if at is None else at
        with self._lock:
            ips = self._seen.setdefault(email, OrderedDict())
            ips[ip] = at
            while len(ips) > self.max_ips:
                ips.popitem(last=False)

    def evict(self, now: Optional[float] = None):
        now = self.clock() if now is None else now
        with self._lock:
            for email in list(self._seen):
                ips = self._seen[email]
                for ip in [ip for ip, seen in ips.items() if now - seen > self.window]:
                    del ips[ip]
                if not ips:
                    del self._seen[email]

    def observed_ips(self, email: str) -> List[str]:
        with self._lock:
            return list(self._seen.get(email, ()))

    def emails(self) -> List[str]:
        with self._lock:
            return list(self._seen)

    def snapshot(self) -> Dict[str, List[str]]:
        self.evict()
        with self._lock:
            return {email: list(ips) for email, ips in self._seen.items()}


class AccessLogWatcher:
    """Tails the access log on its own thread and feeds an ``IPWindow``.

    ``path`` is a string or a callable returning the current log path, so a
    template change that moves the log is picked up on the next reopen.
    """

    def __init__(self, path: Union[str, Callable[[], str]], window: Optional[IPWindow] = None,
                 poll_interval: float = 0.5, from_start: bool = False):
        self._path = path
        self.window = window or IPWindow()
        self.poll_interval = poll_interval
        self.from_start = from_start
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._file = None
        self._inode = 0
        self._offset = 0
        self._carry = b""

    @property
    def path(self) -> str:
        return self._path() if callable(self._path) else self._path

    def _open(self, at_end: bool):
        self._close()
        path = self.path
        if not path:
            return
        try:
            f = open(path, "rb")
        except OSError:
            return
        st = os.fstat(f.fileno())
        self._inode = st.st_ino
        self._offset = st.st_size if at_end else 0
        f.seek(self._offset, os.SEEK_SET)
        self._file = f
        self._carry = b""

    def _close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def poll(self) -> List[str]:
        """Return the complete lines appended since the last call."""
        if self._file is None:
            self._open(at_end=not self.from_start)
            self.from_start = True
            if self._file is None:
                return []

        try:
            st = os.stat(self.path)
        except OSError:
            # file gone, keep reading what we hold until it shows up again
            st = None
        if st is not None and st.st_ino != self._inode:
            logger.debug("access log rotated, reopening %s", self.path)
            self._open(at_end=False)
        elif st is not None and st.st_size < self._offset:
            logger.debug("access log truncated, reading %s from the start", self.path)
            self._file.seek(0, os.SEEK_SET)
            self._offset = 0
            self._carry = b""
        if self._file is None:
            return []

        try:
            data = self._file.read()
        except OSError as e:
            logger.warning("reading %s failed: %s", self.path, e)
            self._open(at_end=True)
            return []
        if not data:
            return []
        self._offset += len(data)
        data = self._carry + data
        lines = data.split(b"\n")
        self._carry = lines.pop()
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in lines if line]

    def follow(self) -> Iterator[AccessRecord]:
        """Yield records until ``stop`` is called."""
        while not self._stop.is_set():
            lines = self.poll()
            if not lines:
                self._stop.wait(self.poll_interval)
                continue
            for line in lines:
                record = parse_line(line)
                if record is not None:
                    yield record

    def _run(self):
        logger.info("watching access log %s", self.path)
        for record in self.follow():
            self.window.observe(record.email, record.ip)
        self._close()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="access-log-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
