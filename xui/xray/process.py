# xui/xray/process.py
import enum
import json
import os
import socket
import subprocess
import threading
import time
from collections import deque
from typing import Callable, Optional, Set

import config
from ..errors import AlreadyRunning, IOFailed, NotRunning, SpawnFailed
from ..logger import get_logger
from .assembler import inject_api_port
from .config import XrayConfig

logger = get_logger("xray.process")

OUTPUT_TAIL_LINES = 100


class State(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILING = "failing"


def find_free_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def port_is_open(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class XrayProcess:
    """Supervises a single xray child process.

    ``start`` writes the config with a freshly picked api port, spawns the
    binary and waits for the api port to accept connections. A monitor
    thread notices when the child exits on its own and moves the state to
    ``FAILING`` until ``acknowledge_failure`` is called.
    """

    def __init__(
        self,
        binary: str = config.XRAY_BINARY,
        config_path: str = config.XRAY_CONFIG_PATH,
        port_injector: Callable[[XrayConfig, int], XrayConfig] = inject_api_port,
        start_timeout: float = config.XRAY_START_TIMEOUT,
        stop_timeout: float = config.XRAY_STOP_TIMEOUT,
    ):
        self.binary = binary
        self.config_path = config_path
        self.port_injector = port_injector
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout

        self._lock = threading.RLock()
        self._proc: Optional[subprocess.Popen] = None
        self._state = State.STOPPED
        self._config: Optional[XrayConfig] = None
        self._api_port = 0
        self._started_at = 0.0
        self._stopping = False
        self._error = ""
        self._output = deque(maxlen=OUTPUT_TAIL_LINES)
        self._online: Set[str] = set()
        self._version: Optional[str] = None

    # --- lifecycle ---
    def start(self, xray_config: XrayConfig):
        with self._lock:
            if self._proc is not None and self._proc.poll() is None:
                raise AlreadyRunning("xray is already running")

            port = find_free_port()
            runtime = self.port_injector(xray_config, port)
            self._write_config(runtime)

            self._output.clear()
            self._error = ""
            self._stopping = False
            self._state = State.STARTING
            try:
                proc = subprocess.Popen(
                    [self.binary, "-c", self.config_path],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    env=self._child_env(),
                )
            except OSError as e:
                self._fail(f"cannot execute {self.binary}: {e}")
                raise SpawnFailed(self._error)

            self._proc = proc
            self._api_port = port
            self._config = xray_config
            threading.Thread(target=self._read_output, args=(proc,), daemon=True).start()

            if not self._wait_ready(proc, port):
                reason = self._error or f"api port {port} not ready after {self.start_timeout}s"
                self._stopping = True
                self._terminate(proc)
                self._proc = None
                self._api_port = 0
                self._fail(reason)
                raise SpawnFailed(reason)

            self._started_at = time.time()
            self._state = State.RUNNING
            threading.Thread(target=self._monitor, args=(proc,), daemon=True).start()
            logger.info("xray started, pid %s, api port %s", proc.pid, port)

    def stop(self):
        with self._lock:
            proc = self._proc
            if proc is None or proc.poll() is not None:
                self._proc = None
                self._api_port = 0
                if self._state != State.FAILING:
                    self._state = State.STOPPED
                raise NotRunning("xray is not running")
            self._stopping = True
            self._terminate(proc)
            self._proc = None
            self._api_port = 0
            self._online = set()
            self._state = State.STOPPED
            logger.info("xray stopped")

    def acknowledge_failure(self) -> bool:
        with self._lock:
            if self._state != State.FAILING:
                return False
            self._state = State.STOPPED
            self._proc = None
            self._api_port = 0
            return True

    def _terminate(self, proc: subprocess.Popen):
        try:
            proc.terminate()
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("xray did not exit after %ss, killing it", self.stop_timeout)
            proc.kill()
            proc.wait()
        except ProcessLookupError:
            pass

    def _fail(self, message: str):
        self._error = message
        self._state = State.FAILING
        logger.error("xray failed: %s", message)

    def _wait_ready(self, proc: subprocess.Popen, port: int) -> bool:
        deadline = time.monotonic() + self.start_timeout
        while time.monotonic() < deadline:
            code = proc.poll()
            if code is not None:
                # let the reader thread catch the last lines
                time.sleep(0.1)
                self._error = f"xray exited with code {code}: {self.get_result()}".rstrip(": ")
                return False
            if port_is_open(port):
                return True
            time.sleep(0.1)
        return False

    def _monitor(self, proc: subprocess.Popen):
        code = proc.wait()
        with self._lock:
            if self._stopping or self._proc is not proc:
                return
            self._online = set()
            self._fail(f"xray exited unexpectedly with code {code}")

    def _read_output(self, proc: subprocess.Popen):
        for raw in iter(proc.stdout.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._output.append(line)
                logger.debug("xray: %s", line)
        proc.stdout.close()

    def _write_config(self, runtime: XrayConfig):
        directory = os.path.dirname(self.config_path)
        tmp_path = f"{self.config_path}.tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(runtime.to_json())
            os.replace(tmp_path, self.config_path)
        except OSError as e:
            raise IOFailed(f"cannot write xray config {self.config_path}: {e}")

    def _child_env(self) -> dict:
        env = dict(os.environ)
        # geoip.dat and geosite.dat live next to the binary
        env.setdefault("XRAY_LOCATION_ASSET", os.path.dirname(self.binary) or ".")
        return env

    # --- accessors ---
    @property
    def state(self) -> State:
        return self._state

    def is_running(self) -> bool:
        proc = self._proc
        return self._state == State.RUNNING and proc is not None and proc.poll() is None

    def get_api_port(self) -> int:
        return self._api_port if self.is_running() else 0

    def get_error(self) -> str:
        return self._error

    def get_result(self) -> str:
        return "\n".join(self._output)

    def get_uptime(self) -> int:
        if not self.is_running():
            return 0
        return int(time.time() - self._started_at)

    def get_config(self) -> Optional[XrayConfig]:
        return self._config

    def get_online_clients(self) -> Set[str]:
        return set(self._online)

    def set_online_clients(self, emails):
        self._online = set(emails)

    def get_version(self) -> str:
        if self._version is None:
            self._version = self._read_version()
        return self._version

    def _read_version(self) -> str:
        try:
            result = subprocess.run(
                [self.binary, "-version"], capture_output=True, text=True, timeout=5
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("cannot read xray version: %s", e)
            return "Unknown"
        first = (result.stdout or "").strip().splitlines()
        if not first:
            return "Unknown"
        parts = first[0].split()
        # "Xray 1.8.24 (Xray, Penetrates Everything.) ..."
        return parts[1] if len(parts) > 1 else parts[0]
