# xui/xray/api.py
"""Client of xray's StatsService.

The message classes are built at runtime from a descriptor so the panel does
not need generated ``*_pb2`` modules matching the xray release.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

import config
from ..errors import Timeout, Unsupported, XrayUnavailable
from ..logger import get_logger

logger = get_logger("xray.api")

PACKAGE = "xray.app.stats.command"
SERVICE = f"/{PACKAGE}.StatsService"
API_TAG = "api"


@dataclass
class Traffic:
    is_inbound: bool
    is_outbound: bool
    tag: str
    up: int = 0
    down: int = 0


@dataclass
class ClientTraffic:
    email: str
    up: int = 0
    down: int = 0


def _build_messages() -> Dict[str, type]:
    F = descriptor_pb2.FieldDescriptorProto
    proto = descriptor_pb2.FileDescriptorProto(name="xui/stats_command.proto", package=PACKAGE, syntax="proto3")

    def message(name, *fields):
        m = proto.message_type.add(name=name)
        for field_name, number, field_type, label, type_name in fields:
            f = m.field.add(name=field_name, number=number, type=field_type, label=label)
            if type_name:
                f.type_name = type_name

    stat = f".{PACKAGE}.Stat"
    message("GetStatsRequest",
            ("name", 1, F.TYPE_STRING, F.LABEL_OPTIONAL, None),
            ("reset", 2, F.TYPE_BOOL, F.LABEL_OPTIONAL, None))
    message("Stat",
            ("name", 1, F.TYPE_STRING, F.LABEL_OPTIONAL, None),
            ("value", 2, F.TYPE_INT64, F.LABEL_OPTIONAL, None))
    message("GetStatsResponse", ("stat", 1, F.TYPE_MESSAGE, F.LABEL_OPTIONAL, stat))
    message("QueryStatsRequest",
            ("pattern", 1, F.TYPE_STRING, F.LABEL_OPTIONAL, None),
            ("reset", 2, F.TYPE_BOOL, F.LABEL_OPTIONAL, None))
    message("QueryStatsResponse", ("stat", 1, F.TYPE_MESSAGE, F.LABEL_REPEATED, stat))
    message("GetAllOnlineUsersRequest")
    message("GetAllOnlineUsersResponse", ("users", 1, F.TYPE_STRING, F.LABEL_REPEATED, None))

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(proto.SerializeToString())
    return {
        m.name: message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{PACKAGE}.{m.name}"))
        for m in proto.message_type
    }


MESSAGES = _build_messages()


def fold_stats(stats: Iterable[Tuple[str, int]]) -> Tuple[List[Traffic], List[ClientTraffic]]:
    """Group ``a>>>b>>>traffic>>>uplink`` counters by tag and by email."""
    tags: Dict[Tuple[str, str], Traffic] = {}
    clients: Dict[str, ClientTraffic] = {}
    for name, value in stats:
        parts = name.split(">>>")
        if len(parts) != 4 or parts[2] != "traffic":
            continue
        kind, key, direction = parts[0], parts[1], parts[3]
        if kind == "user":
            item = clients.setdefault(key, ClientTraffic(email=key))
        elif kind in ("inbound", "outbound"):
            if key == API_TAG:
                continue
            item = tags.setdefault(
                (kind, key), Traffic(is_inbound=kind == "inbound", is_outbound=kind == "outbound", tag=key)
            )
        else:
            continue
        if direction == "uplink":
            item.up += value
        elif direction == "downlink":
            item.down += value
    return list(tags.values()), list(clients.values())


def _online_email(name: str) -> str:
    # entries may come back as "user>>>email>>>online"
    parts = name.split(">>>")
    if len(parts) >= 2 and parts[0] == "user":
        return parts[1]
    return name


class XrayAPI:
    """Talks to the api inbound of the running xray.

    ``port_provider`` returns the current api port, 0 when xray is down.
    """

    def __init__(self, port_provider: Callable[[], int], timeout: float = config.XRAY_API_TIMEOUT):
        self.port_provider = port_provider
        self.timeout = timeout
        self._channel = None
        self._port = 0

    def _stub(self, method: str, request_name: str, response_name: str):
        port = self.port_provider()
        if not port:
            raise XrayUnavailable("xray api port is not available")
        if self._channel is None or self._port != port:
            self.close()
            self._channel = grpc.insecure_channel(f"127.0.0.1:{port}")
            self._port = port
        return self._channel.unary_unary(
            f"{SERVICE}/{method}",
            request_serializer=MESSAGES[request_name].SerializeToString,
            response_deserializer=MESSAGES[response_name].FromString,
        )

    def _call(self, method: str, request_name: str, response_name: str, **fields):
        call = self._stub(method, request_name, response_name)
        try:
            return call(MESSAGES[request_name](**fields), timeout=self.timeout)
        except grpc.RpcError as e:
            code = e.code() if hasattr(e, "code") else None
            if code == grpc.StatusCode.DEADLINE_EXCEEDED:
                raise Timeout(f"xray api {method} timed out after {self.timeout}s")
            if code == grpc.StatusCode.UNIMPLEMENTED:
                raise Unsupported(f"xray does not implement {method}")
            raise XrayUnavailable(f"xray api {method} failed: {e}")

    def get_traffic(self, reset: bool = True) -> Tuple[List[Traffic], List[ClientTraffic]]:
        resp = self._call("QueryStats", "QueryStatsRequest", "QueryStatsResponse", pattern="", reset=reset)
        return fold_stats((stat.name, stat.value) for stat in resp.stat)

    def get_online_clients(self) -> Optional[Set[str]]:
        """Emails xray currently sees online, None on builds without the call."""
        try:
            resp = self._call("GetAllOnlineUsers", "GetAllOnlineUsersRequest", "GetAllOnlineUsersResponse")
        except Unsupported:
            logger.debug("GetAllOnlineUsers is not available on this xray build")
            return None
        return {_online_email(u) for u in resp.users}

    def close(self):
        if self._channel is not None:
            self._channel.close()
            self._channel = None
            self._port = 0
