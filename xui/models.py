# xui/models.py
import json

from sqlalchemy import Column, Integer, String, Boolean, BigInteger, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base

PROTOCOLS = ("vmess", "vless", "trojan", "shadowsocks", "socks", "http", "wireguard", "tunnel")
# Protocols whose settings carry a "clients" array.
CLIENT_PROTOCOLS = ("vmess", "vless", "trojan", "shadowsocks")


def inbound_tag(listen, port) -> str:
    if listen and listen not in ("0.0.0.0", "::", "::0"):
        return f"inbound-{listen}:{port}"
    return f"inbound-{port}"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)
    session_token = Column(String, unique=True, nullable=True)


class Inbound(Base):
    __tablename__ = "inbounds"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, default=0)
    remark = Column(String, default="")
    enable = Column(Boolean, default=True)
    listen = Column(String, default="")
    port = Column(Integer, nullable=False)
    protocol = Column(String, nullable=False)
    tag = Column(String, index=True)
    up = Column(BigInteger, default=0)
    down = Column(BigInteger, default=0)
    total = Column(BigInteger, default=0)
    expiry_time = Column(BigInteger, default=0)

    settings = Column(Text, default='{}')
    stream_settings = Column(Text, default='{}')
    sniffing = Column(Text, default='{}')

    client_stats = relationship("ClientTraffic", back_populates="inbound", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "remark": self.remark,
            "enable": self.enable,
            "listen": self.listen,
            "port": self.port,
            "protocol": self.protocol,
            "tag": self.tag,
            "up": self.up,
            "down": self.down,
            "total": self.total,
            "expiryTime": self.expiry_time,
            "settings": self.settings,
            "streamSettings": self.stream_settings,
            "sniffing": self.sniffing,
            "clientStats": [c.to_dict() for c in self.client_stats],
        }


class ClientTraffic(Base):
    __tablename__ = "client_traffics"
    id = Column(Integer, primary_key=True, index=True)
    inbound_id = Column(Integer, ForeignKey("inbounds.id"), nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    enable = Column(Boolean, default=True)
    up = Column(BigInteger, default=0)
    down = Column(BigInteger, default=0)
    total = Column(BigInteger, default=0)
    expiry_time = Column(BigInteger, default=0)
    reset = Column(Integer, default=0)
    last_online = Column(BigInteger, default=0)

    inbound = relationship("Inbound", back_populates="client_stats")

    def to_dict(self):
        return {
            "id": self.id,
            "inboundId": self.inbound_id,
            "email": self.email,
            "enable": self.enable,
            "up": self.up,
            "down": self.down,
            "total": self.total,
            "expiryTime": self.expiry_time,
            "reset": self.reset,
            "lastOnline": self.last_online,
        }


class OutboundTraffics(Base):
    __tablename__ = "outbound_traffics"
    id = Column(Integer, primary_key=True, index=True)
    tag = Column(String, unique=True, nullable=False)
    up = Column(BigInteger, default=0)
    down = Column(BigInteger, default=0)
    total = Column(BigInteger, default=0)


class Setting(Base):
    __tablename__ = "settings"
    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(Text, default="")


class InboundClientIps(Base):
    __tablename__ = "inbound_client_ips"
    id = Column(Integer, primary_key=True, index=True)
    client_email = Column(String, unique=True, index=True, nullable=False)
    ips = Column(Text, default="[]")
    banned = Column(Text, default="[]")

    def ip_list(self):
        return json.loads(self.ips or "[]")

    def banned_list(self):
        return json.loads(self.banned or "[]")


class HistoryOfSeeders(Base):
    __tablename__ = "history_of_seeders"
    id = Column(Integer, primary_key=True)
    seeder_name = Column(String, nullable=False)


class LinkHistory(Base):
    __tablename__ = "link_history"
    id = Column(Integer, primary_key=True)
    type = Column(String(255), nullable=False)
    link = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)


class ShortLink(Base):
    __tablename__ = "short_links"
    id = Column(Integer, primary_key=True)
    code = Column(String(255), unique=True, index=True, nullable=False)
    full_link = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)


class LotteryWin(Base):
    __tablename__ = "lottery_wins"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    user_id = Column(BigInteger, index=True)
    prize = Column(String)
    win_date = Column(DateTime)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"
    version = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    applied_at = Column(DateTime, nullable=False)
