# xui/xray/links.py
import base64
import json
from typing import Optional
from urllib.parse import quote

from ..errors import InvalidInbound
from .config import Client


def _stream(inbound) -> dict:
    try:
        return json.loads(inbound.stream_settings or "{}") or {}
    except ValueError:
        return {}


def _transport_params(stream: dict, address: str) -> dict:
    network = stream.get("network", "tcp")
    params = {"type": network}
    if network == "ws":
        ws_opts = stream.get("wsSettings", {})
        params["path"] = ws_opts.get("path", "/")
        params["host"] = ws_opts.get("headers", {}).get("Host") or ws_opts.get("host") or address
    elif network == "grpc":
        grpc_opts = stream.get("grpcSettings", {})
        params["serviceName"] = grpc_opts.get("serviceName", "")
    elif network in ("httpupgrade", "xhttp", "splithttp"):
        opts = stream.get(f"{network}Settings", {})
        params["path"] = opts.get("path", "/")
        params["host"] = opts.get("host") or address
    elif network == "tcp":
        header = stream.get("tcpSettings", {}).get("header", {})
        if header.get("type") == "http":
            params["headerType"] = "http"
            request = header.get("request", {})
            params["path"] = ",".join(request.get("path", ["/"]))
            host = request.get("headers", {}).get("Host")
            if host:
                params["host"] = ",".join(host) if isinstance(host, list) else host
    return params


def _security_params(stream: dict) -> dict:
    security = stream.get("security", "none")
    params = {"security": security}
    if security == "tls":
        tls = stream.get("tlsSettings", {})
        if tls.get("serverName"):
            params["sni"] = tls["serverName"]
        fp = tls.get("settings", {}).get("fingerprint")
        if fp:
            params["fp"] = fp
        if tls.get("alpn"):
            params["alpn"] = ",".join(tls["alpn"])
    elif security == "reality":
        reality = stream.get("realitySettings", {})
        settings = reality.get("settings", {})
        names = reality.get("serverNames") or []
        if names:
            params["sni"] = names[0]
        if settings.get("publicKey"):
            params["pbk"] = settings["publicKey"]
        short_ids = reality.get("shortIds") or []
        if short_ids:
            params["sid"] = short_ids[0]
        if settings.get("fingerprint"):
            params["fp"] = settings["fingerprint"]
        if settings.get("spiderX"):
            params["spx"] = settings["spiderX"]
    return params


def _query(params: dict) -> str:
    return "&".join(f"{k}={quote(str(v), safe='/,')}" for k, v in params.items() if v not in (None, ""))


def _remark(inbound, client: Client) -> str:
    return f"{inbound.remark}-{client.email}" if inbound.remark else client.email


def vless_link(inbound, client: Client, address: str) -> str:
    stream = _stream(inbound)
    params = _transport_params(stream, address)
    params.update(_security_params(stream))
    params["encryption"] = "none"
    if client.flow and params.get("type") == "tcp" and params.get("security") in ("tls", "reality"):
        params["flow"] = client.flow
    link = f"vless://{client.id}@{address}:{inbound.port}"
    return f"{link}?{_query(params)}#{quote(_remark(inbound, client))}"


def trojan_link(inbound, client: Client, address: str) -> str:
    stream = _stream(inbound)
    params = _transport_params(stream, address)
    params.update(_security_params(stream))
    link = f"trojan://{quote(client.password or '', safe='')}@{address}:{inbound.port}"
    return f"{link}?{_query(params)}#{quote(_remark(inbound, client))}"


def vmess_link(inbound, client: Client, address: str) -> str:
    stream = _stream(inbound)
    transport = _transport_params(stream, address)
    security = _security_params(stream)
    obj = {
        "v": "2",
        "ps": _remark(inbound, client),
        "add": address,
        "port": inbound.port,
        "id": client.id,
        "scy": client.security or "auto",
        "net": transport["type"],
        "type": transport.get("headerType", "none"),
        "host": transport.get("host", ""),
        "path": transport.get("path") or transport.get("serviceName", ""),
        "tls": security["security"] if security["security"] == "tls" else "",
        "sni": security.get("sni", ""),
        "fp": security.get("fp", ""),
    }
    encoded = base64.b64encode(json.dumps(obj, indent=2).encode("utf-8")).decode("utf-8")
    return f"vmess://{encoded}"


def shadowsocks_link(inbound, client: Client, address: str) -> str:
    try:
        settings = json.loads(inbound.settings or "{}")
    except ValueError:
        settings = {}
    method = settings.get("method") or client.method or ""
    password = client.password or ""
    if method.startswith("2022"):
        # multi-user 2022 ciphers need the server key in front of the user key
        password = f"{settings.get('password', '')}:{password}"
    userinfo = base64.urlsafe_b64encode(f"{method}:{password}".encode("utf-8")).decode("utf-8").rstrip("=")
    stream = _stream(inbound)
    params = _transport_params(stream, address)
    query = "" if params == {"type": "tcp"} else f"?{_query(params)}"
    return f"ss://{userinfo}@{address}:{inbound.port}{query}#{quote(_remark(inbound, client))}"


BUILDERS = {
    "vless": vless_link,
    "vmess": vmess_link,
    "trojan": trojan_link,
    "shadowsocks": shadowsocks_link,
}


def build_link(inbound, client: Client, address: Optional[str]) -> str:
    if not address:
        return ""
    builder = BUILDERS.get(inbound.protocol)
    if builder is None:
        raise InvalidInbound(f"no share link for protocol {inbound.protocol}")
    return builder(inbound, client, address)
