# xui/xray/config.py
"""Typed documents for the xray config and the panel's client entries.

Only the parts the panel rewrites are modelled; everything else (routing,
dns, log, transport details) rides along in the extra fields so a template
written for a newer xray keeps working.
"""

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class Client(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    password: Optional[str] = None
    email: str = ""
    flow: Optional[str] = None
    enable: bool = True
    expiryTime: int = 0
    totalGB: int = 0
    limitIp: int = 0
    speedLimit: int = 0
    tgId: int = 0
    subId: str = ""
    comment: str = ""
    reset: int = 0
    security: Optional[str] = None
    method: Optional[str] = None

    @field_validator("tgId", "limitIp", "speedLimit", "totalGB", "expiryTime", "reset", mode="before")
    @classmethod
    def _empty_is_zero(cls, v):
        if v is None or v == "":
            return 0
        return v

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class PolicyLevel(BaseModel):
    model_config = ConfigDict(extra="allow")

    handshake: Optional[int] = None
    connIdle: Optional[int] = None
    uplinkOnly: Optional[int] = None
    downlinkOnly: Optional[int] = None
    statsUserUplink: Optional[bool] = None
    statsUserDownlink: Optional[bool] = None
    statsUserOnline: Optional[bool] = None
    bufferSize: Optional[int] = None


class Policy(BaseModel):
    model_config = ConfigDict(extra="allow")

    levels: Dict[str, PolicyLevel] = {}
    system: Optional[Dict[str, Any]] = None


class InboundConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    listen: Optional[str] = None
    port: int = 0
    protocol: str
    settings: Optional[Dict[str, Any]] = None
    streamSettings: Optional[Dict[str, Any]] = None
    tag: str = ""
    sniffing: Optional[Dict[str, Any]] = None


class XrayConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    log: Optional[Dict[str, Any]] = None
    api: Optional[Dict[str, Any]] = None
    dns: Optional[Dict[str, Any]] = None
    inbounds: List[InboundConfig] = []
    outbounds: List[Dict[str, Any]] = []
    routing: Optional[Dict[str, Any]] = None
    policy: Optional[Policy] = None
    stats: Optional[Dict[str, Any]] = None

    @classmethod
    def from_json(cls, raw: str) -> "XrayConfig":
        return cls.model_validate(json.loads(raw))

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    def equals(self, other: Optional["XrayConfig"]) -> bool:
        if other is None:
            return False
        return self.to_dict() == other.to_dict()

    def copy_deep(self) -> "XrayConfig":
        return XrayConfig.model_validate(json.loads(self.to_json()))

    def access_log_path(self) -> str:
        """The access log xray writes, or "" when logging is off."""
        path = (self.log or {}).get("access") or ""
        return "" if path == "none" else path
