# xui/host.py
import shutil
import socket
import subprocess

from . import settings
from .logger import get_logger

logger = get_logger("host")


def get_server_public_ip() -> str:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError as e:
        logger.warning("could not determine server IP: %s", e)
    return "127.0.0.1"


def run_command(args, timeout: float = 30):
    try:
        result = subprocess.run(args, check=True, capture_output=True, text=True, timeout=timeout)
        return result.stdout.strip()
    except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        stderr = getattr(e, "stderr", None) or str(e)
        logger.warning("command %s failed: %s", " ".join(args), stderr.strip())
        return None


class Host:
    """The bits of the machine the panel touches outside of xray."""

    def get_panel_domain(self, db) -> str:
        domain = settings.get(db, "subDomain") or settings.get(db, "webDomain")
        return domain or get_server_public_ip()

    def allow_port(self, port: int) -> bool:
        """Open ``port`` in ufw when ufw is installed. Best effort."""
        if shutil.which("ufw") is None:
            return False
        return run_command(["ufw", "allow", str(port)]) is not None
