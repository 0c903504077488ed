# xui/services/traffic.py
import datetime
import os
from typing import Callable, Dict, List, Optional

import config
from .. import crud, models, settings
from ..database import Database
from ..errors import InvalidSettings, NotFound, XrayUnavailable
from ..logger import get_logger
from ..xray.access_log import IPWindow
from ..xray.api import XrayAPI
from .xray_service import XrayService

logger = get_logger("services.traffic")

# consecutive failed ticks before the warning is raised from debug
WARN_AFTER_FAILURES = 3


def _now_ms() -> int:
    return crud.now_ms()


class TrafficService:
    """Folds xray's counters into the database and enforces client limits.

    ``notifier`` is called with the clients that are close to exhaustion
    (per the ``trafficDiff``/``expireDiff`` settings); it never disables
    anybody.
    """

    def __init__(
        self,
        database: Database,
        xray: XrayService,
        api: Optional[XrayAPI] = None,
        notifier: Optional[Callable[[List[models.ClientTraffic]], None]] = None,
        clock: Callable[[], int] = _now_ms,
        ban_log_path: str = config.IP_LIMIT_LOG,
    ):
        self.database = database
        self.xray = xray
        self.api = api or XrayAPI(xray.process.get_api_port)
        self.notifier = notifier
        self.clock = clock
        self.ban_log_path = ban_log_path
        self._failures = 0

    def tick(self) -> bool:
        """One stats tick. Returns False when xray could not be read."""
        try:
            traffics, client_traffics = self.api.get_traffic(reset=True)
        except XrayUnavailable as e:
            self._failures += 1
            if self._failures >= WARN_AFTER_FAILURES:
                logger.warning("get xray traffic failed %d times in a row: %s", self._failures, e)
            else:
                logger.debug("get xray traffic failed: %s", e)
            return False
        self._failures = 0

        now = self.clock()
        active = [c.email for c in client_traffics if c.up > 0 or c.down > 0]

        with self.database.session() as db:
            crud.add_inbound_traffic(db, traffics, commit=False)
            for ct in client_traffics:
                if ct.up <= 0 and ct.down <= 0:
                    continue
                try:
                    crud.upsert_traffic_delta(db, None, ct.email, ct.up, ct.down, commit=False)
                except NotFound:
                    logger.debug("traffic for unknown client %s dropped", ct.email)
            db.commit()

            activated = crud.activate_delayed_expiry(db, active, now)
            for email in activated:
                logger.info("client %s used the first traffic, expiry starts now", email)

            disabled_clients = crud.disable_invalid_clients(db, now)
            disabled_inbounds = crud.disable_invalid_inbounds(db, now)
            if disabled_clients or disabled_inbounds:
                self.xray.request_restart()

            if self.notifier is not None:
                soon = crud.get_exhaust_soon(
                    db, settings.traffic_diff_bytes(db), settings.expire_diff_ms(db), now
                )
                if soon:
                    self.notifier(soon)

            online = self._online_clients(active)
            self.xray.process.set_online_clients(online)
            crud.update_last_online(db, online, now)
        return True

    def _online_clients(self, active: List[str]) -> set:
        try:
            online = self.api.get_online_clients()
        except XrayUnavailable as e:
            logger.debug("get online clients failed: %s", e)
            online = None
        if online is None:
            return set(active)
        return online

    def get_online_clients(self) -> List[str]:
        return sorted(self.xray.process.get_online_clients())

    # --- device limit ---
    def _ip_limits(self, db) -> Dict[str, int]:
        limits = {}
        for inbound in crud.list_inbounds(db):
            if not inbound.enable or inbound.protocol not in models.CLIENT_PROTOCOLS:
                continue
            try:
                clients = crud.list_clients(inbound)
            except InvalidSettings:
                continue
            for client in clients:
                limits[client.email] = client.limitIp
        return limits

    def _write_ban_log(self, email: str, ips: List[str]):
        stamp = datetime.datetime.now().strftime("%Y/%m/%d %H:%M:%S")
        try:
            os.makedirs(os.path.dirname(self.ban_log_path) or ".", exist_ok=True)
            with open(self.ban_log_path, "a", encoding="utf-8") as f:
                for ip in ips:
                    f.write(f"{stamp} [LIMIT_IP] Email = {email} || SRC = {ip}\n")
        except OSError as e:
            logger.warning("cannot write ban log %s: %s", self.ban_log_path, e)

    def enforce_ip_limits(self, window: IPWindow) -> bool:
        """Ban the IPs a client uses beyond its ``limitIp``.

        The oldest IPs keep working; the newer ones are sent to the
        blackhole outbound by the next assembled config. A client is released
        once its observed IP count is back within the limit. Returns True when
        the ban list changed.
        """
        observed = window.snapshot()
        changed = False
        with self.database.session() as db:
            limits = self._ip_limits(db)
            banned = crud.banned_clients(db)

            for email, ips in observed.items():
                if email in limits:
                    crud.save_client_ips(db, email, ips, commit=False)

            for email in sorted(set(observed) | set(banned)):
                ips = observed.get(email, [])
                limit = limits.get(email, 0)
                current = banned.get(email, [])
                if limit > 0 and len(ips) > limit:
                    extra = ips[limit:]
                    new = [ip for ip in extra if ip not in current]
                    if new:
                        logger.info("client %s uses %d IPs, limit %d, banning %s", email, len(ips), limit, new)
                        self._write_ban_log(email, new)
                        crud.set_banned_ips(db, email, current + new, commit=False)
                        changed = True
                elif current:
                    logger.info("client %s is back within its IP limit, releasing %s", email, current)
                    crud.set_banned_ips(db, email, [], commit=False)
                    changed = True
            db.commit()

        if changed:
            self.xray.request_restart()
        return changed
