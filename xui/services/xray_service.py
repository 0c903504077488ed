# xui/services/xray_service.py
import threading
from typing import Optional, Tuple

import config
from .. import crud, settings
from ..database import Database
from ..errors import NotRunning, XUIError
from ..logger import get_logger
from ..xray.assembler import build_config
from ..xray.config import XrayConfig
from ..xray.process import State, XrayProcess

logger = get_logger("services.xray")


class XrayService:
    """Keeps the running xray in step with the database.

    Every change that affects the generated config goes through
    ``request_restart``; the restart job drains the request and calls
    ``reconcile``, which only restarts xray when the assembled config
    differs from the running one (or when forced).
    """

    def __init__(self, database: Database, process: Optional[XrayProcess] = None):
        self.database = database
        self.process = process or XrayProcess()
        self._lock = threading.Lock()
        self._flag_lock = threading.Lock()
        self._need_restart = False
        self._force_restart = False
        self._manually_stopped = False
        self._result = ""

    # --- restart requests ---
    def request_restart(self, force: bool = False):
        with self._flag_lock:
            self._need_restart = True
            self._force_restart = self._force_restart or force

    def consume_restart_request(self) -> Tuple[bool, bool]:
        with self._flag_lock:
            requested, forced = self._need_restart, self._force_restart
            self._need_restart = False
            self._force_restart = False
            return requested, forced

    # --- assembly ---
    def get_xray_config(self) -> XrayConfig:
        with self.database.session() as db:
            crud.sync_client_traffics(db)
            template = settings.xray_template(db)
            inbounds = crud.list_inbounds(db)
            traffics = crud.traffic_enable_map(db)
            banned = crud.all_banned_ips(db)
            return build_config(template, inbounds, traffics, banned)

    def access_log_path(self) -> str:
        running = self.process.get_config()
        if running is not None:
            return running.access_log_path()
        with self.database.session() as db:
            template = settings.xray_template(db)
        try:
            path = XrayConfig.from_json(template).access_log_path()
        except ValueError:
            path = ""
        return path or config.XRAY_ACCESS_LOG

    # --- lifecycle ---
    def reconcile(self, force: bool = False) -> Optional[XUIError]:
        """Bring xray in line with the database. Errors are recorded and returned."""
        with self._lock:
            self._manually_stopped = False
            try:
                xray_config = self.get_xray_config()
                if self.process.is_running():
                    if not force and xray_config.equals(self.process.get_config()):
                        logger.debug("xray config unchanged, no restart needed")
                        return None
                    self.process.stop()
                elif self.process.state == State.FAILING:
                    self.process.acknowledge_failure()
                self._result = ""
                self.process.start(xray_config)
            except XUIError as e:
                self._result = e.message
                logger.error("reconcile xray failed: %s", e.message)
                return e
            return None

    def restart_xray(self, force: bool = False) -> Optional[XUIError]:
        return self.reconcile(force)

    def stop_xray(self):
        with self._lock:
            self._manually_stopped = True
            logger.info("stopping xray on request")
            self.process.stop()

    def shutdown(self):
        with self._lock:
            self._manually_stopped = True
            try:
                self.process.stop()
            except NotRunning:
                pass

    # --- jobs ---
    def restart_tick(self):
        requested, forced = self.consume_restart_request()
        if requested:
            self.reconcile(forced)

    def is_crashed(self) -> bool:
        return not self.process.is_running() and not self._manually_stopped

    def crash_probe(self):
        if not self.is_crashed():
            return
        if self.process.acknowledge_failure():
            logger.warning("xray is not running, restart requested: %s", self.process.get_error())
        self.request_restart(force=True)

    # --- status ---
    def is_running(self) -> bool:
        return self.process.is_running()

    def get_result(self) -> str:
        if self._result:
            return self._result
        if self.process.is_running():
            return ""
        return self.process.get_error() or self.process.get_result()

    def get_status(self) -> dict:
        if self.process.is_running():
            state = "running"
        elif self.process.state == State.FAILING or self._result or (
            not self._manually_stopped and self.process.get_error()
        ):
            state = "error"
        else:
            state = "stop"
        return {
            "state": state,
            "error_msg": self.get_result() if state == "error" else "",
            "version": self.process.get_version(),
        }

    def get_config(self) -> XrayConfig:
        running = self.process.get_config()
        return running if running is not None else self.get_xray_config()
