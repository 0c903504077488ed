# xui/crud.py
import datetime
import json
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, security
from .errors import Conflict, InvalidInbound, InvalidSettings, NotFound
from .logger import get_logger
from .xray.assembler import parse_clients, parse_settings
from .xray.config import Client

logger = get_logger("crud")

LINK_HISTORY_SIZE = 10
DAY_MS = 86400 * 1000

# Client fields mirrored on the traffic row.
_MIRRORED = {"enable": "enable", "totalGB": "total", "expiryTime": "expiry_time", "reset": "reset"}


def now_ms() -> int:
    return int(datetime.datetime.now().timestamp() * 1000)


# --- User Functions ---
def get_user_by_username(db: Session, username: str):
    return db.query(models.User).filter(models.User.username == username).first()


def get_user_by_session_token(db: Session, token: str):
    return db.query(models.User).filter(models.User.session_token == token).first()


def create_user(db: Session, username: str, password: str):
    db_user = models.User(username=username, password=security.get_password_hash(password))
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def update_user_password(db: Session, username: str, new_password: str):
    db_user = get_user_by_username(db, username)
    if db_user:
        db_user.password = security.get_password_hash(new_password)
        db_user.session_token = None
        db.commit()
        db.refresh(db_user)
    return db_user


def update_user_session(db: Session, user_id: int, token: Optional[str]):
    db_user = db.query(models.User).filter(models.User.id == user_id).first()
    if db_user:
        db_user.session_token = token
        db.commit()
    return db_user


# --- Setting Functions ---
def get_setting(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    row = db.query(models.Setting).filter(models.Setting.key == key).first()
    return row.value if row else default


def set_setting(db: Session, key: str, value) -> None:
    row = db.query(models.Setting).filter(models.Setting.key == key).first()
    if row is None:
        db.add(models.Setting(key=key, value=str(value)))
    else:
        row.value = str(value)
    db.commit()


def get_all_settings(db: Session) -> Dict[str, str]:
    return {row.key: row.value for row in db.query(models.Setting).all()}


# --- INBOUND CRUD Functions ---
def list_inbounds(db: Session) -> List[models.Inbound]:
    return db.query(models.Inbound).order_by(models.Inbound.id).all()


def get_inbound(db: Session, inbound_id: int) -> models.Inbound:
    inbound = db.query(models.Inbound).filter(models.Inbound.id == inbound_id).first()
    if inbound is None:
        raise NotFound(f"inbound {inbound_id} not found")
    return inbound


def get_inbound_by_tag(db: Session, tag: str) -> models.Inbound:
    inbound = (
        db.query(models.Inbound)
        .filter(models.Inbound.tag == tag)
        .order_by(models.Inbound.enable.desc(), models.Inbound.id)
        .first()
    )
    if inbound is None:
        raise NotFound(f"inbound with tag {tag} not found")
    return inbound


def _dump_blob(value) -> str:
    if value is None:
        return "{}"
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, ensure_ascii=False)


def _check_port(db: Session, port: int, enable: bool, exclude_id: Optional[int] = None):
    if not isinstance(port, int) or not 1 <= port <= 65535:
        raise InvalidInbound(f"port {port} is out of range")
    if not enable:
        return
    query = db.query(models.Inbound).filter(models.Inbound.port == port, models.Inbound.enable.is_(True))
    if exclude_id is not None:
        query = query.filter(models.Inbound.id != exclude_id)
    if query.first() is not None:
        raise Conflict(f"port {port} is already used by another inbound")


def _email_owners(db: Session, exclude_id: Optional[int] = None) -> Dict[str, int]:
    owners = {}
    for inbound in list_inbounds(db):
        if inbound.id == exclude_id or inbound.protocol not in models.CLIENT_PROTOCOLS:
            continue
        try:
            clients = parse_clients(inbound)
        except InvalidSettings:
            continue
        for client in clients:
            owners[client.email] = inbound.id
    for row in db.query(models.ClientTraffic).all():
        if row.inbound_id != exclude_id:
            owners.setdefault(row.email, row.inbound_id)
    return owners


def _check_clients(db: Session, clients: List[Client], exclude_id: Optional[int] = None):
    seen = set()
    for client in clients:
        if not client.email:
            raise InvalidSettings("client email is required")
        if client.email in seen:
            raise InvalidSettings(f"duplicate email {client.email} in inbound")
        seen.add(client.email)
    owners = _email_owners(db, exclude_id)
    for email in seen:
        if email in owners:
            raise Conflict(f"email {email} is already used")


def _validated_inbound(inbound: models.Inbound) -> List[Client]:
    if inbound.protocol not in models.PROTOCOLS:
        raise InvalidInbound(f"unknown protocol {inbound.protocol!r}")
    settings = parse_settings(inbound)
    if inbound.protocol not in models.CLIENT_PROTOCOLS:
        return []
    return parse_clients(inbound, settings)


def _new_traffic(inbound_id: int, client: Client) -> models.ClientTraffic:
    return models.ClientTraffic(
        inbound_id=inbound_id,
        email=client.email,
        enable=True,
        up=0,
        down=0,
        total=client.totalGB,
        expiry_time=client.expiryTime,
        reset=client.reset,
        last_online=0,
    )


def add_inbound(db: Session, inbound_data: dict) -> models.Inbound:
    db_inbound = models.Inbound(
        user_id=inbound_data.get("user_id", 0),
        remark=inbound_data.get("remark", ""),
        enable=inbound_data.get("enable", True),
        listen=inbound_data.get("listen") or "",
        port=inbound_data.get("port"),
        protocol=inbound_data.get("protocol"),
        up=0,
        down=0,
        total=inbound_data.get("total", 0),
        expiry_time=inbound_data.get("expiry_time", 0),
        settings=_dump_blob(inbound_data.get("settings")),
        stream_settings=_dump_blob(inbound_data.get("stream_settings")),
        sniffing=_dump_blob(inbound_data.get("sniffing")),
    )
    db_inbound.tag = models.inbound_tag(db_inbound.listen, db_inbound.port)

    clients = _validated_inbound(db_inbound)
    _check_port(db, db_inbound.port, db_inbound.enable)
    _check_clients(db, clients)

    db.add(db_inbound)
    db.flush()
    for client in clients:
        db.add(_new_traffic(db_inbound.id, client))
    db.commit()
    db.refresh(db_inbound)
    return db_inbound


def update_inbound(db: Session, inbound_id: int, inbound_data: dict) -> models.Inbound:
    db_inbound = get_inbound(db, inbound_id)
    for key in ("remark", "enable", "listen", "port", "protocol", "total", "expiry_time"):
        if inbound_data.get(key) is not None:
            setattr(db_inbound, key, inbound_data[key])
    for key in ("settings", "stream_settings", "sniffing"):
        if inbound_data.get(key) is not None:
            setattr(db_inbound, key, _dump_blob(inbound_data[key]))
    db_inbound.tag = models.inbound_tag(db_inbound.listen, db_inbound.port)

    try:
        clients = _validated_inbound(db_inbound)
        _check_port(db, db_inbound.port, db_inbound.enable, exclude_id=inbound_id)
        _check_clients(db, clients, exclude_id=inbound_id)
    except Exception:
        db.rollback()
        raise

    wanted = {c.email: c for c in clients}
    for row in list(db_inbound.client_stats):
        client = wanted.pop(row.email, None)
        if client is None:
            db.delete(row)
            _delete_client_ips(db, row.email)
        else:
            row.total = client.totalGB
            row.expiry_time = client.expiryTime
            row.reset = client.reset
    for client in wanted.values():
        db.add(_new_traffic(db_inbound.id, client))
    db.commit()
    db.refresh(db_inbound)
    return db_inbound


def delete_inbound(db: Session, inbound_id: int) -> bool:
    db_inbound = get_inbound(db, inbound_id)
    for row in db_inbound.client_stats:
        _delete_client_ips(db, row.email)
    db.delete(db_inbound)
    db.commit()
    return True


# --- Client Functions ---
def list_clients(inbound: models.Inbound) -> List[Client]:
    if inbound.protocol not in models.CLIENT_PROTOCOLS:
        return []
    return parse_clients(inbound)


def get_client_by_email(db: Session, email: str) -> Tuple[models.Inbound, Client]:
    # blobs may hold \u escapes, so emails are compared after parsing
    candidates = (
        db.query(models.Inbound)
        .filter(models.Inbound.protocol.in_(models.CLIENT_PROTOCOLS))
        .order_by(models.Inbound.id)
        .all()
    )
    for inbound in candidates:
        try:
            clients = list_clients(inbound)
        except InvalidSettings:
            continue
        for client in clients:
            if client.email == email:
                return inbound, client
    raise NotFound(f"client {email} not found")


def get_client_traffic(db: Session, email: str) -> Optional[models.ClientTraffic]:
    return db.query(models.ClientTraffic).filter(models.ClientTraffic.email == email).first()


def _write_clients(inbound: models.Inbound, settings: dict, clients: List[dict]):
    settings["clients"] = clients
    inbound.settings = json.dumps(settings, indent=2, ensure_ascii=False)


def _edit_client(db: Session, email: str, changes: dict) -> Tuple[models.Inbound, models.ClientTraffic]:
    """Apply ``changes`` to the settings entry of ``email`` and mirror them on its traffic row."""
    inbound, _ = get_client_by_email(db, email)
    settings = parse_settings(inbound)
    entries = settings.get("clients") or []
    target = next(e for e in entries if e.get("email") == email)
    target.update(changes)
    _write_clients(inbound, settings, entries)

    row = get_client_traffic(db, email)
    if row is None:
        row = _new_traffic(inbound.id, Client.model_validate(target))
        db.add(row)
    for field, column in _MIRRORED.items():
        if field in changes and field != "enable":
            setattr(row, column, changes[field])
    return inbound, row


def add_clients(db: Session, inbound_id: int, new_clients: List[dict]) -> List[Client]:
    inbound = get_inbound(db, inbound_id)
    if inbound.protocol not in models.CLIENT_PROTOCOLS:
        raise InvalidInbound(f"protocol {inbound.protocol} has no clients")
    settings = parse_settings(inbound)
    try:
        added = [Client.model_validate(c) for c in new_clients]
    except ValueError as e:
        raise InvalidSettings(f"bad client entry: {e}")
    existing = parse_clients(inbound, settings)
    _check_clients(db, existing + added, exclude_id=inbound_id)

    entries = list(settings.get("clients") or [])
    entries.extend(c.to_dict() for c in added)
    _write_clients(inbound, settings, entries)
    for client in added:
        db.add(_new_traffic(inbound.id, client))
    db.commit()
    return added


def update_client(db: Session, email: str, client_data: dict) -> Client:
    inbound, _ = get_client_by_email(db, email)
    new_email = client_data.get("email") or email
    if new_email != email:
        owners = _email_owners(db)
        if new_email in owners:
            raise Conflict(f"email {new_email} is already used")
    try:
        Client.model_validate({**client_data, "email": new_email})
    except ValueError as e:
        raise InvalidSettings(f"bad client entry: {e}")

    _, row = _edit_client(db, email, client_data)
    if "enable" in client_data and client_data["enable"]:
        row.enable = True
    if new_email != email:
        row.email = new_email
        ips = db.query(models.InboundClientIps).filter(models.InboundClientIps.client_email == email).first()
        if ips is not None:
            ips.client_email = new_email
    db.commit()
    return get_client_by_email(db, new_email)[1]


def delete_client(db: Session, email: str) -> bool:
    inbound, _ = get_client_by_email(db, email)
    settings = parse_settings(inbound)
    entries = [e for e in settings.get("clients") or [] if e.get("email") != email]
    _write_clients(inbound, settings, entries)
    row = get_client_traffic(db, email)
    if row is not None:
        db.delete(row)
    _delete_client_ips(db, email)
    db.commit()
    return True


def set_client_enable(db: Session, email: str, enable: bool) -> bool:
    """Returns True when the effective state changed."""
    _, client = get_client_by_email(db, email)
    row = get_client_traffic(db, email)
    before = client.enable and (row.enable if row else True)
    _, row = _edit_client(db, email, {"enable": enable})
    row.enable = enable
    db.commit()
    return before != enable


def toggle_client_enable(db: Session, email: str) -> bool:
    _, client = get_client_by_email(db, email)
    set_client_enable(db, email, not client.enable)
    return not client.enable


def set_client_tg_id(db: Session, email: str, tg_id: int):
    _edit_client(db, email, {"tgId": int(tg_id)})
    db.commit()


def set_client_ip_limit(db: Session, email: str, limit: int):
    if limit < 0:
        raise InvalidSettings("ip limit must not be negative")
    _edit_client(db, email, {"limitIp": int(limit)})
    db.commit()


def _usable(row: models.ClientTraffic, now: int) -> bool:
    if row.total and row.total > 0 and (row.up or 0) + (row.down or 0) >= row.total:
        return False
    if row.expiry_time and row.expiry_time > 0 and row.expiry_time <= now:
        return False
    return True


def reset_client_traffic(db: Session, email: str) -> bool:
    """Zero the counters. Returns True when the client got re-enabled."""
    _, client = get_client_by_email(db, email)
    row = get_client_traffic(db, email)
    if row is None:
        raise NotFound(f"traffic of {email} not found")
    row.up = 0
    row.down = 0
    re_enabled = False
    if not row.enable and client.enable and _usable(row, now_ms()):
        row.enable = True
        re_enabled = True
    db.commit()
    return re_enabled


def reset_client_expiry(db: Session, email: str, expiry_time: int) -> bool:
    _, client = get_client_by_email(db, email)
    _, row = _edit_client(db, email, {"expiryTime": int(expiry_time)})
    re_enabled = False
    if not row.enable and client.enable and _usable(row, now_ms()):
        row.enable = True
        re_enabled = True
    db.commit()
    return re_enabled


def reset_all_client_traffics(db: Session, inbound_id: int) -> int:
    inbound = get_inbound(db, inbound_id)
    count = 0
    for row in inbound.client_stats:
        row.up = 0
        row.down = 0
        count += 1
    db.commit()
    return count


def reset_inbound_traffic(db: Session, inbound_id: int):
    inbound = get_inbound(db, inbound_id)
    inbound.up = 0
    inbound.down = 0
    db.commit()


# --- Traffic Functions ---
def upsert_traffic_delta(db: Session, inbound_tag: Optional[str], email: str, up: int, down: int,
                         commit: bool = True) -> models.ClientTraffic:
    up, down = max(0, int(up)), max(0, int(down))
    row = get_client_traffic(db, email)
    if row is None:
        if inbound_tag:
            inbound = get_inbound_by_tag(db, inbound_tag)
        else:
            inbound = get_client_by_email(db, email)[0]
        row = models.ClientTraffic(inbound_id=inbound.id, email=email, enable=True, up=up, down=down,
                                   total=0, expiry_time=0, reset=0, last_online=0)
        db.add(row)
    else:
        row.up = models.ClientTraffic.up + up
        row.down = models.ClientTraffic.down + down
    if commit:
        db.commit()
    return row


def add_inbound_traffic(db: Session, traffics: Iterable, commit: bool = True):
    for t in traffics:
        if t.up <= 0 and t.down <= 0:
            continue
        if t.is_inbound:
            db.query(models.Inbound).filter(models.Inbound.tag == t.tag).update(
                {models.Inbound.up: models.Inbound.up + t.up, models.Inbound.down: models.Inbound.down + t.down},
                synchronize_session=False,
            )
        elif t.is_outbound:
            row = db.query(models.OutboundTraffics).filter(models.OutboundTraffics.tag == t.tag).first()
            if row is None:
                db.add(models.OutboundTraffics(tag=t.tag, up=t.up, down=t.down, total=t.up + t.down))
            else:
                row.up = models.OutboundTraffics.up + t.up
                row.down = models.OutboundTraffics.down + t.down
                row.total = models.OutboundTraffics.total + t.up + t.down
    if commit:
        db.commit()


def list_outbound_traffics(db: Session) -> List[models.OutboundTraffics]:
    return db.query(models.OutboundTraffics).order_by(models.OutboundTraffics.tag).all()


def reset_outbound_traffic(db: Session, tag: str):
    query = db.query(models.OutboundTraffics)
    if tag != "-alltags-":
        query = query.filter(models.OutboundTraffics.tag == tag)
    query.update({models.OutboundTraffics.up: 0, models.OutboundTraffics.down: 0,
                  models.OutboundTraffics.total: 0}, synchronize_session=False)
    db.commit()


def traffic_enable_map(db: Session) -> Dict[str, bool]:
    return {row.email: bool(row.enable) for row in db.query(models.ClientTraffic).all()}


def sync_client_traffics(db: Session) -> int:
    """Create the missing traffic rows and drop rows whose client is gone."""
    changes = 0
    known = set()
    unreadable = set()
    for inbound in list_inbounds(db):
        if inbound.protocol not in models.CLIENT_PROTOCOLS:
            continue
        try:
            clients = parse_clients(inbound)
        except InvalidSettings:
            unreadable.add(inbound.id)
            continue
        for client in clients:
            known.add(client.email)
            if get_client_traffic(db, client.email) is None:
                db.add(_new_traffic(inbound.id, client))
                db.flush()
                changes += 1
    for row in db.query(models.ClientTraffic).all():
        if row.email not in known and row.inbound_id not in unreadable:
            db.delete(row)
            changes += 1
    if changes:
        db.commit()
    return changes


def activate_delayed_expiry(db: Session, emails: Iterable[str], now: int) -> List[str]:
    """A negative expiry is a number of days that starts counting with the first traffic."""
    emails = set(emails)
    if not emails:
        return []
    rows = db.query(models.ClientTraffic).filter(
        models.ClientTraffic.email.in_(emails), models.ClientTraffic.expiry_time < 0
    ).all()
    activated = []
    for row in rows:
        expiry = now + abs(row.expiry_time) * DAY_MS
        try:
            _edit_client(db, row.email, {"expiryTime": expiry})
        except NotFound:
            row.expiry_time = expiry
        activated.append(row.email)
    if activated:
        db.commit()
    return activated


def disable_invalid_clients(db: Session, now: int) -> List[str]:
    used = models.ClientTraffic.up + models.ClientTraffic.down
    rows = db.query(models.ClientTraffic).filter(
        models.ClientTraffic.enable.is_(True),
        (
            ((models.ClientTraffic.total > 0) & (used >= models.ClientTraffic.total))
            | ((models.ClientTraffic.expiry_time > 0) & (models.ClientTraffic.expiry_time <= now))
        ),
    ).all()
    for row in rows:
        row.enable = False
        logger.info("disable client %s: traffic or time limit reached", row.email)
    if rows:
        db.commit()
    return [row.email for row in rows]


def disable_invalid_inbounds(db: Session, now: int) -> List[int]:
    used = models.Inbound.up + models.Inbound.down
    rows = db.query(models.Inbound).filter(
        models.Inbound.enable.is_(True),
        (
            ((models.Inbound.total > 0) & (used >= models.Inbound.total))
            | ((models.Inbound.expiry_time > 0) & (models.Inbound.expiry_time <= now))
        ),
    ).all()
    for row in rows:
        row.enable = False
        logger.info("disable inbound %s (%s): traffic or time limit reached", row.id, row.remark)
    if rows:
        db.commit()
    return [row.id for row in rows]


def get_exhaust_soon(db: Session, traffic_diff: int, expire_diff: int, now: int) -> List[models.ClientTraffic]:
    used = models.ClientTraffic.up + models.ClientTraffic.down
    conditions = []
    if traffic_diff > 0:
        conditions.append((models.ClientTraffic.total > 0) & (models.ClientTraffic.total - used < traffic_diff))
    if expire_diff > 0:
        conditions.append(
            (models.ClientTraffic.expiry_time > 0) & (models.ClientTraffic.expiry_time - now < expire_diff)
        )
    if not conditions:
        return []
    cond = conditions[0]
    for extra in conditions[1:]:
        cond = cond | extra
    return db.query(models.ClientTraffic).filter(models.ClientTraffic.enable.is_(True), cond).all()


def update_last_online(db: Session, emails: Iterable[str], now: int, commit: bool = True):
    emails = list(emails)
    if emails:
        db.query(models.ClientTraffic).filter(models.ClientTraffic.email.in_(emails)).update(
            {models.ClientTraffic.last_online: now}, synchronize_session=False
        )
    if commit:
        db.commit()


def get_total_usage(db: Session) -> int:
    total = db.query(func.sum(models.ClientTraffic.up + models.ClientTraffic.down)).scalar()
    return total or 0


# --- Client IP Functions ---
def _client_ips_row(db: Session, email: str, create: bool = False):
    row = db.query(models.InboundClientIps).filter(models.InboundClientIps.client_email == email).first()
    if row is None and create:
        row = models.InboundClientIps(client_email=email, ips="[]", banned="[]")
        db.add(row)
        db.flush()
    return row


def _delete_client_ips(db: Session, email: str):
    db.query(models.InboundClientIps).filter(models.InboundClientIps.client_email == email).delete(
        synchronize_session=False
    )


def get_client_ips(db: Session, email: str) -> List[str]:
    row = _client_ips_row(db, email)
    return row.ip_list() if row else []


def save_client_ips(db: Session, email: str, ips: List[str], commit: bool = True):
    row = _client_ips_row(db, email, create=True)
    row.ips = json.dumps(list(ips))
    if commit:
        db.commit()


def clear_client_ips(db: Session, email: str):
    row = _client_ips_row(db, email)
    if row is not None:
        row.ips = "[]"
        db.commit()


def get_banned_ips(db: Session, email: str) -> List[str]:
    row = _client_ips_row(db, email)
    return row.banned_list() if row else []


def set_banned_ips(db: Session, email: str, ips: List[str], commit: bool = True):
    row = _client_ips_row(db, email, create=True)
    row.banned = json.dumps(sorted(set(ips)))
    if commit:
        db.commit()


def all_banned_ips(db: Session) -> List[str]:
    banned = set()
    for row in db.query(models.InboundClientIps).all():
        banned.update(row.banned_list())
    return sorted(banned)


def banned_clients(db: Session) -> Dict[str, List[str]]:
    return {
        row.client_email: row.banned_list()
        for row in db.query(models.InboundClientIps).all()
        if row.banned_list()
    }


# --- Link History and Short Links ---
def record_link(db: Session, link_type: str, link: str) -> models.LinkHistory:
    record = models.LinkHistory(type=link_type, link=link, created_at=datetime.datetime.now())
    try:
        db.add(record)
        db.flush()
        count = db.query(models.LinkHistory).count()
        if count > LINK_HISTORY_SIZE:
            old = (
                db.query(models.LinkHistory)
                .order_by(models.LinkHistory.created_at.asc(), models.LinkHistory.id.asc())
                .limit(count - LINK_HISTORY_SIZE)
                .all()
            )
            for row in old:
                db.delete(row)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return record


def get_recent_links(db: Session, limit: int = LINK_HISTORY_SIZE) -> List[models.LinkHistory]:
    return (
        db.query(models.LinkHistory)
        .order_by(models.LinkHistory.created_at.desc(), models.LinkHistory.id.desc())
        .limit(limit)
        .all()
    )


def add_short_link(db: Session, code: str, full_link: str) -> models.ShortLink:
    link = models.ShortLink(code=code, full_link=full_link, created_at=datetime.datetime.now())
    db.add(link)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(f"short code {code} already exists")
    return link


def get_short_link(db: Session, code: str) -> Optional[models.ShortLink]:
    return db.query(models.ShortLink).filter(models.ShortLink.code == code).first()


# --- Lottery ---
def has_user_won_today(db: Session, user_id: int) -> bool:
    start = datetime.datetime.combine(datetime.date.today(), datetime.time.min)
    end = start + datetime.timedelta(days=1)
    count = db.query(models.LotteryWin).filter(
        models.LotteryWin.user_id == user_id,
        models.LotteryWin.win_date >= start,
        models.LotteryWin.win_date < end,
    ).count()
    return count > 0


def record_user_win(db: Session, user_id: int, prize: str) -> models.LotteryWin:
    win = models.LotteryWin(user_id=user_id, prize=prize, win_date=datetime.datetime.now())
    db.add(win)
    db.commit()
    return win
