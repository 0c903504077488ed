# xui/xray/assembler.py
"""Builds the xray config the panel runs.

``build_config`` is pure: the template, the inbound rows, the enable flags of
the traffic rows and the banned source IPs fully determine the output, and
equal inputs serialize to identical bytes.

Speed limits ride on xray's policy levels: a client limited to N KB/s gets
``level = N`` and the policy table gains a level "N" whose uplinkOnly and
downlinkOnly are N.
"""

import copy
import json
from typing import Iterable, List, Mapping, Optional

from pydantic import ValidationError

from ..errors import InvalidInbound, InvalidSettings
from ..logger import get_logger
from ..models import CLIENT_PROTOCOLS, PROTOCOLS, inbound_tag
from .config import Client, InboundConfig, Policy, PolicyLevel, XrayConfig

logger = get_logger("xray.assembler")

API_TAG = "api"
API_LISTEN = "127.0.0.1"
BLOCKED_TAG = "blocked"

VISION_UDP443 = "xtls-rprx-vision-udp443"
VISION = "xtls-rprx-vision"

# Fields of a panel client that xray understands, per protocol.
CLIENT_FIELDS = {
    "vmess": ("id", "email"),
    "vless": ("id", "email", "flow"),
    "trojan": ("password", "email"),
    "shadowsocks": ("password", "email", "method"),
}

DEFAULT_TEMPLATE = {
    "log": {"access": "none", "dnsLog": False, "error": "", "loglevel": "warning"},
    "api": {"tag": "api", "services": ["HandlerService", "LoggerService", "StatsService"]},
    "inbounds": [
        {
            "listen": "127.0.0.1",
            "port": 62789,
            "protocol": "dokodemo-door",
            "settings": {"address": "127.0.0.1"},
            "tag": "api",
        }
    ],
    "outbounds": [
        {"protocol": "freedom", "settings": {"domainStrategy": "AsIs"}, "tag": "direct"},
        {"protocol": "blackhole", "settings": {}, "tag": "blocked"},
    ],
    "policy": {
        "levels": {"0": {"statsUserDownlink": True, "statsUserUplink": True}},
        "system": {
            "statsInboundDownlink": True,
            "statsInboundUplink": True,
            "statsOutboundDownlink": True,
            "statsOutboundUplink": True,
        },
    },
    "routing": {
        "domainStrategy": "AsIs",
        "rules": [
            {"type": "field", "inboundTag": ["api"], "outboundTag": "api"},
            {"type": "field", "outboundTag": "blocked", "ip": ["geoip:private"]},
            {"type": "field", "outboundTag": "blocked", "protocol": ["bittorrent"]},
        ],
    },
    "stats": {},
}

DEFAULT_TEMPLATE_JSON = json.dumps(DEFAULT_TEMPLATE, indent=2)


def base_level() -> PolicyLevel:
    return PolicyLevel(
        handshake=4,
        connIdle=300,
        uplinkOnly=0,
        downlinkOnly=0,
        statsUserUplink=True,
        statsUserDownlink=True,
        statsUserOnline=True,
    )


def speed_level(speed: int) -> PolicyLevel:
    return PolicyLevel(
        uplinkOnly=speed,
        downlinkOnly=speed,
        statsUserUplink=True,
        statsUserDownlink=True,
        statsUserOnline=True,
    )


def _level_order(key: str):
    try:
        return (0, int(key), key)
    except ValueError:
        return (1, 0, key)


def parse_settings(inbound) -> dict:
    try:
        settings = json.loads(inbound.settings or "{}")
    except ValueError as e:
        raise InvalidSettings(f"inbound {inbound.id}: settings is not valid JSON: {e}")
    if not isinstance(settings, dict):
        raise InvalidSettings(f"inbound {inbound.id}: settings must be an object")
    return settings


def parse_clients(inbound, settings: Optional[dict] = None) -> List[Client]:
    if settings is None:
        settings = parse_settings(inbound)
    raw = settings.get("clients") or []
    if not isinstance(raw, list):
        raise InvalidSettings(f"inbound {inbound.id}: clients must be a list")
    try:
        return [Client.model_validate(c) for c in raw]
    except ValidationError as e:
        raise InvalidSettings(f"inbound {inbound.id}: bad client entry: {e}")


def _parse_blob(raw: Optional[str], what: str, inbound) -> Optional[dict]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise InvalidSettings(f"inbound {inbound.id}: {what} is not valid JSON: {e}")
    return value or None


def _is_active(client: Client, traffics: Mapping[str, bool]) -> bool:
    return client.enable and traffics.get(client.email, True)


def collect_speed_limits(inbounds, traffics: Mapping[str, bool]) -> List[int]:
    """Distinct positive speed limits of the active clients of enabled inbounds."""
    speeds = set()
    for inbound in inbounds:
        if not inbound.enable or inbound.protocol not in CLIENT_PROTOCOLS:
            continue
        try:
            clients = parse_clients(inbound)
        except InvalidSettings:
            continue
        speeds.update(c.speedLimit for c in clients if _is_active(c, traffics) and c.speedLimit > 0)
    return sorted(speeds)


def build_policy(template_policy: Optional[Policy], speeds: Iterable[int]) -> Policy:
    policy = template_policy.model_copy(deep=True) if template_policy else Policy()
    levels = dict(policy.levels)

    level0 = levels.get("0") or PolicyLevel()
    levels["0"] = level0.model_copy(update=base_level().model_dump(exclude_none=True))

    for speed in sorted(set(speeds)):
        levels[str(speed)] = speed_level(speed)

    policy.levels = {k: levels[k] for k in sorted(levels, key=_level_order)}
    return policy


def project_client(protocol: str, client: Client, level: int) -> dict:
    data = client.to_dict()
    out = {}
    for field in CLIENT_FIELDS[protocol]:
        value = data.get(field)
        if value in (None, ""):
            continue
        if field == "flow" and value == VISION_UDP443:
            value = VISION
        out[field] = value
    out["level"] = level
    return out


def scrub_stream_settings(stream: Optional[dict]) -> Optional[dict]:
    if not stream:
        return stream
    stream = copy.deepcopy(stream)
    for key in ("tlsSettings", "realitySettings"):
        section = stream.get(key)
        if isinstance(section, dict):
            section.pop("settings", None)
    stream.pop("externalProxy", None)
    return stream


def build_inbound(inbound, traffics: Mapping[str, bool]) -> InboundConfig:
    if inbound.protocol not in PROTOCOLS:
        raise InvalidInbound(f"inbound {inbound.id}: unknown protocol {inbound.protocol!r}")

    settings = parse_settings(inbound)
    if inbound.protocol in CLIENT_PROTOCOLS:
        final_clients = []
        for client in parse_clients(inbound, settings):
            if not _is_active(client, traffics):
                continue
            level = client.speedLimit if client.speedLimit > 0 else 0
            final_clients.append(project_client(inbound.protocol, client, level))
        settings["clients"] = final_clients

    return InboundConfig(
        listen=inbound.listen or None,
        port=inbound.port,
        protocol=inbound.protocol,
        settings=settings,
        streamSettings=scrub_stream_settings(_parse_blob(inbound.stream_settings, "streamSettings", inbound)),
        tag=inbound.tag or inbound_tag(inbound.listen, inbound.port),
        sniffing=_parse_blob(inbound.sniffing, "sniffing", inbound),
    )


def _ensure_api(config: XrayConfig):
    api = dict(config.api or {})
    api.setdefault("tag", API_TAG)
    services = list(api.get("services") or [])
    if "StatsService" not in services:
        services.append("StatsService")
    api["services"] = services
    config.api = api

    if config.stats is None:
        config.stats = {}

    if not any(ib.tag == API_TAG for ib in config.inbounds):
        config.inbounds.insert(0, InboundConfig(
            listen=API_LISTEN,
            port=0,
            protocol="dokodemo-door",
            settings={"address": API_LISTEN},
            tag=API_TAG,
        ))

    routing = dict(config.routing or {})
    rules = list(routing.get("rules") or [])
    has_api_rule = any(
        API_TAG in (r.get("inboundTag") or []) and r.get("outboundTag") == API_TAG
        for r in rules if isinstance(r, dict)
    )
    if not has_api_rule:
        rules.insert(0, {"type": "field", "inboundTag": [API_TAG], "outboundTag": API_TAG})
    routing["rules"] = rules
    config.routing = routing


def _block_sources(config: XrayConfig, banned_ips: Iterable[str]):
    ips = sorted(set(banned_ips))
    if not ips:
        return
    tag = next((o.get("tag") for o in config.outbounds if o.get("protocol") == "blackhole" and o.get("tag")), None)
    if tag is None:
        tag = BLOCKED_TAG
        config.outbounds.append({"protocol": "blackhole", "settings": {}, "tag": tag})

    rules = list(config.routing["rules"])
    # right after the api rule, ahead of anything that could route the source elsewhere
    api_index = next(
        (i for i, r in enumerate(rules) if isinstance(r, dict) and API_TAG in (r.get("inboundTag") or [])),
        -1,
    )
    rules.insert(api_index + 1, {"type": "field", "source": ips, "outboundTag": tag})
    config.routing["rules"] = rules


def build_config(template: str, inbounds, traffics: Optional[Mapping[str, bool]] = None,
                 banned_ips: Iterable[str] = ()) -> XrayConfig:
    """Merge the template with the enabled inbounds.

    ``traffics`` maps a client email to the enable flag of its traffic row.
    An inbound whose settings cannot be used is skipped with a warning.
    """
    traffics = traffics or {}
    config = XrayConfig.from_json(template or DEFAULT_TEMPLATE_JSON)

    config.policy = build_policy(config.policy, collect_speed_limits(inbounds, traffics))

    _ensure_api(config)

    for inbound in inbounds:
        if not inbound.enable:
            continue
        try:
            config.inbounds.append(build_inbound(inbound, traffics))
        except (InvalidInbound, InvalidSettings) as e:
            logger.warning("skip inbound %s (%s): %s", inbound.id, inbound.remark, e)

    _block_sources(config, banned_ips)
    return config


def inject_api_port(config: XrayConfig, port: int) -> XrayConfig:
    """Return a copy of ``config`` whose api inbound listens on ``port``."""
    out = config.copy_deep()
    for inbound in out.inbounds:
        if inbound.tag == API_TAG:
            inbound.port = port
            inbound.listen = API_LISTEN
            break
    return out
