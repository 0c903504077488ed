# xui/settings.py
"""Panel settings stored in the key/value ``settings`` table.

A missing key falls back to ``DEFAULTS``; values are stored as strings.
"""

from typing import Dict

from sqlalchemy.orm import Session

import config
from . import crud
from .errors import InvalidSettings
from .xray.assembler import DEFAULT_TEMPLATE_JSON
from .xray.config import XrayConfig

DEFAULTS = {
    "webListen": "",
    "webPort": str(config.PORT),
    "webDomain": "",
    "subDomain": "",
    "xrayTemplateConfig": DEFAULT_TEMPLATE_JSON,
    # GB before the quota runs out at which a client is reported
    "trafficDiff": "0",
    # days before expiry at which a client is reported
    "expireDiff": "0",
    "tgBotEnable": "false",
    "tgBotToken": "",
    "tgBotChatId": "",
    "timeLocation": "Local",
}

GB = 1024 ** 3
DAY_MS = 86400 * 1000


def get(db: Session, key: str) -> str:
    return crud.get_setting(db, key, DEFAULTS.get(key, ""))


def get_int(db: Session, key: str) -> int:
    value = get(db, key)
    try:
        return int(value or 0)
    except ValueError:
        raise InvalidSettings(f"setting {key} is not a number: {value!r}")


def get_bool(db: Session, key: str) -> bool:
    return get(db, key).lower() in ("1", "true", "yes", "on")


def get_all(db: Session) -> Dict[str, str]:
    values = dict(DEFAULTS)
    values.update(crud.get_all_settings(db))
    return values


def update(db: Session, values: Dict[str, object]):
    for key, value in values.items():
        if key not in DEFAULTS:
            raise InvalidSettings(f"unknown setting {key}")
        if key == "xrayTemplateConfig":
            check_template(str(value))
        if key == "webPort":
            try:
                port = int(value)
            except (TypeError, ValueError):
                raise InvalidSettings(f"port {value!r} is not a number")
            if not 1 <= port <= 65535:
                raise InvalidSettings(f"port {port} is out of range")

    for key, value in values.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        crud.set_setting(db, key, value)


def check_template(raw: str) -> XrayConfig:
    try:
        return XrayConfig.from_json(raw)
    except ValueError as e:
        raise InvalidSettings(f"xray template is not a valid config: {e}")


def xray_template(db: Session) -> str:
    return get(db, "xrayTemplateConfig") or DEFAULT_TEMPLATE_JSON


def traffic_diff_bytes(db: Session) -> int:
    return get_int(db, "trafficDiff") * GB


def expire_diff_ms(db: Session) -> int:
    return get_int(db, "expireDiff") * DAY_MS


def web_port(db: Session) -> int:
    return get_int(db, "webPort") or config.PORT
