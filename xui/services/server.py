# xui/services/server.py
import datetime
import os
import secrets
import shutil
import socket
import string
import time
from typing import BinaryIO, List, Optional

import psutil

from .. import crud, models
from ..database import Database, is_sqlite_db
from ..errors import Conflict, InvalidDB, IOFailed, XUIError
from ..logger import get_logger
from .xray_service import XrayService

logger = get_logger("services.server")

SHORT_CODE_ALPHABET = string.ascii_letters + string.digits
SHORT_CODE_LENGTH = 8
SHORT_CODE_ATTEMPTS = 5


def _gb(value: float) -> float:
    return round(value / (1024 ** 3), 2)


class ServerService:
    def __init__(self, database: Database, xray: XrayService):
        self.database = database
        self.xray = xray
        self._last_net_io = psutil.net_io_counters()
        self._last_time = time.time()

    # --- status ---
    def get_system_stats(self) -> dict:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        disk = psutil.disk_usage("/")
        boot_time = datetime.datetime.fromtimestamp(psutil.boot_time())
        uptime = datetime.datetime.now() - boot_time

        current_time = time.time()
        time_diff = current_time - self._last_time
        current_net_io = psutil.net_io_counters()
        upload_speed = (current_net_io.bytes_sent - self._last_net_io.bytes_sent) / time_diff if time_diff > 0 else 0
        download_speed = (current_net_io.bytes_recv - self._last_net_io.bytes_recv) / time_diff if time_diff > 0 else 0
        self._last_net_io = current_net_io
        self._last_time = current_time

        try:
            connections = psutil.net_connections()
            tcp_count = len([c for c in connections if c.status == "ESTABLISHED" and c.type == socket.SOCK_STREAM])
            udp_count = len([c for c in connections if c.type == socket.SOCK_DGRAM])
        except (psutil.AccessDenied, OSError):
            tcp_count = udp_count = 0

        ipv4_addrs, ipv6_addrs = [], []
        for snicaddrs in psutil.net_if_addrs().values():
            for snicaddr in snicaddrs:
                if snicaddr.family == socket.AF_INET and not snicaddr.address.startswith("127."):
                    ipv4_addrs.append(snicaddr.address)
                elif snicaddr.family == socket.AF_INET6 and not snicaddr.address.startswith(("::1", "fe80")):
                    ipv6_addrs.append(snicaddr.address)

        return {
            "cpu": {"percent": psutil.cpu_percent(interval=0.1), "count": psutil.cpu_count(logical=True)},
            "ram": {"percent": mem.percent, "used": _gb(mem.used), "total": _gb(mem.total)},
            "swap": {"percent": swap.percent, "used": _gb(swap.used), "total": _gb(swap.total)},
            "storage": {"percent": disk.percent, "used": _gb(disk.used), "total": _gb(disk.total)},
            "uptime": str(uptime).split(".")[0],
            "total_data": {"sent": _gb(current_net_io.bytes_sent), "received": _gb(current_net_io.bytes_recv)},
            "speed": {"upload": upload_speed, "download": download_speed},
            "connections": {"tcp": tcp_count, "udp": udp_count},
            "ip_addresses": {"ipv4": sorted(set(ipv4_addrs)), "ipv6": sorted(set(ipv6_addrs))},
        }

    def get_status(self) -> dict:
        status = self.get_system_stats()
        status["xray"] = self.xray.get_status()
        status["xray"]["uptime"] = self.xray.process.get_uptime()
        return status

    def get_config_json(self) -> dict:
        return self.xray.get_config().to_dict()

    # --- database file ---
    def export_db(self) -> bytes:
        self.database.checkpoint()
        try:
            with open(self.database.path, "rb") as f:
                return f.read()
        except OSError as e:
            raise IOFailed(f"cannot read database: {e}")

    def import_db(self, fileobj: BinaryIO):
        """Replace the database with an uploaded SQLite file.

        The upload is validated on a temporary copy first. The current file is
        kept as ``.backup`` until the new one is migrated and xray restarted.
        """
        if not is_sqlite_db(fileobj):
            raise InvalidDB("invalid db file format")
        fileobj.seek(0)

        db_path = self.database.path
        temp_path = f"{db_path}.temp"
        backup_path = f"{db_path}.backup"
        for path in (temp_path, f"{temp_path}-wal", f"{temp_path}-shm"):
            if os.path.exists(path):
                os.remove(path)

        try:
            try:
                with open(temp_path, "wb") as f:
                    shutil.copyfileobj(fileobj, f)
            except OSError as e:
                raise IOFailed(f"error saving db: {e}")

            candidate = Database(temp_path)
            try:
                candidate.init()
                candidate.checkpoint()
            except Exception as e:
                raise InvalidDB(f"error checking db: {e}")
            finally:
                candidate.close()

            self.xray.shutdown()
            self.database.checkpoint()
            self.database.close()

            if os.path.exists(backup_path):
                os.remove(backup_path)
            try:
                os.rename(db_path, backup_path)
            except OSError as e:
                self.database.open()
                raise IOFailed(f"error backing up current db file: {e}")
            self._drop_wal(db_path)

            try:
                os.rename(temp_path, db_path)
                self._drop_wal(temp_path)
                self.database.open()
                self.database.init()
            except Exception as e:
                logger.error("import db failed, restoring the previous database: %s", e)
                self._restore(backup_path)
                if isinstance(e, XUIError):
                    raise
                raise IOFailed(f"error migrating db: {e}")
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)

        if os.path.exists(backup_path):
            os.remove(backup_path)
        logger.info("database imported")

        err = self.xray.reconcile(force=True)
        if err is not None:
            raise type(err)(f"imported db but failed to start xray: {err.message}")

    def _restore(self, backup_path: str):
        self.database.close()
        db_path = self.database.path
        if os.path.exists(db_path):
            os.remove(db_path)
        self._drop_wal(db_path)
        os.rename(backup_path, db_path)
        self.database.open()
        self.xray.reconcile(force=True)

    @staticmethod
    def _drop_wal(path: str):
        for suffix in ("-wal", "-shm"):
            if os.path.exists(path + suffix):
                os.remove(path + suffix)

    # --- link history ---
    def save_link_history(self, link_type: str, link: str) -> models.LinkHistory:
        with self.database.session() as db:
            record = crud.record_link(db, link_type, link)
        self.database.checkpoint()
        return record

    def load_link_history(self) -> List[dict]:
        with self.database.session() as db:
            return [
                {"type": r.type, "link": r.link, "createdAt": r.created_at.isoformat()}
                for r in crud.get_recent_links(db)
            ]

    # --- short links ---
    def create_short_link(self, full_link: str) -> str:
        with self.database.session() as db:
            for _ in range(SHORT_CODE_ATTEMPTS):
                code = "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))
                try:
                    crud.add_short_link(db, code, full_link)
                    return code
                except Conflict:
                    continue
        raise Conflict("could not allocate a unique short code")

    def resolve_short_link(self, code: str) -> Optional[str]:
        with self.database.session() as db:
            link = crud.get_short_link(db, code)
            return link.full_link if link else None
