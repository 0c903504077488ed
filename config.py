# config.py
import os

# ================== Server Settings ==================
# IP address for the panel to listen on.
# Use "0.0.0.0" to make it accessible from the network.
HOST = os.environ.get("XUI_HOST", "0.0.0.0")

# Port for the panel to listen on. The value stored in the settings
# table ("webPort") wins when the environment does not set one.
PORT = int(os.environ.get("XUI_PORT", "2053"))

# Enable auto-reload for development.
# Set this to False in a production environment.
RELOAD = os.environ.get("XUI_RELOAD", "0") == "1"

PANEL_NAME = "x-ui"
VERSION = "2.4.0"


# ================== Storage ==================
DB_PATH = os.environ.get("XUI_DB_PATH", "/etc/x-ui/x-ui.db")


# ================== Xray ==================
# Directory holding the xray binary, its geo files and the generated config.
BIN_DIR = os.environ.get("XUI_BIN_DIR", "/usr/local/x-ui/bin")
XRAY_BINARY = os.environ.get("XUI_XRAY_BINARY", os.path.join(BIN_DIR, "xray-linux-amd64"))
XRAY_CONFIG_PATH = os.path.join(BIN_DIR, "config.json")

# Seconds to wait for the stats API to answer after spawning xray.
XRAY_START_TIMEOUT = 10.0
# Seconds between SIGTERM and SIGKILL when stopping xray.
XRAY_STOP_TIMEOUT = 5.0
# Deadline of a single stats gRPC call.
XRAY_API_TIMEOUT = 10.0


# ================== Logging ==================
LOG_DIR = os.environ.get("XUI_LOG_DIR", "/var/log/x-ui")
LOG_LEVEL = os.environ.get("XUI_LOG_LEVEL", "INFO")

# Used when the xray template does not name an access log.
XRAY_ACCESS_LOG = os.path.join(LOG_DIR, "access.log")
# Every IP banned by the device limit is appended here.
IP_LIMIT_LOG = os.path.join(LOG_DIR, "3xipl.log")


# ================== Jobs ==================
CRASH_PROBE_INTERVAL = 1
RESTART_INTERVAL = 30
TRAFFIC_INTERVAL = 10
TRAFFIC_INITIAL_DELAY = 5
IP_LIMIT_INTERVAL = 10
# Seconds an IP stays "online" after its last access log line.
IP_WINDOW_SECONDS = 60


# ============ Initial Admin User Settings ============
# This is only used on the very first run to create the initial admin user.
# After the first run, you must use the CLI tool to change the password.
DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_PASSWORD = "admin"
