# main.py
import secrets
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import config
from xui import crud, models, security, settings
from xui.database import Database
from xui.errors import XUIError
from xui.host import Host
from xui.jobs import JobRunner
from xui.logger import get_logger, setup_logging
from xui.services.server import ServerService
from xui.services.traffic import TrafficService
from xui.services.xray_service import XrayService
from xui.xray.access_log import AccessLogWatcher
from xui.xray.links import build_link

logger = get_logger("web")
router = APIRouter()


class AppContext:
    """Everything the web layer and the jobs share, built once per process."""

    def __init__(self, database: Database, xray: XrayService, traffic: TrafficService,
                 watcher: AccessLogWatcher, host: Optional[Host] = None):
        self.database = database
        self.xray = xray
        self.traffic = traffic
        self.watcher = watcher
        self.host = host or Host()
        self.server = ServerService(database, xray)
        self.jobs = JobRunner(xray, traffic, watcher)


def build_context(db_path: str = config.DB_PATH) -> AppContext:
    database = Database(db_path)
    database.init()
    xray = XrayService(database)
    traffic = TrafficService(database, xray)
    watcher = AccessLogWatcher(xray.access_log_path)
    return AppContext(database, xray, traffic, watcher)


def create_app(context: Optional[AppContext] = None, start_jobs: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.context is None:
            setup_logging()
            app.state.context = build_context()
        if start_jobs:
            app.state.context.jobs.start()
        try:
            yield
        finally:
            if start_jobs:
                app.state.context.jobs.stop()

    app = FastAPI(title=config.PANEL_NAME, version=config.VERSION, lifespan=lifespan)
    app.state.context = context
    app.include_router(router)

    # --- Error Handling ---
    @app.exception_handler(XUIError)
    async def xui_error_handler(request: Request, exc: XUIError):
        logger.info("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "msg": exc.message, "kind": exc.kind},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info("validation error on %s: %s", request.url, exc.errors())
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "msg": "invalid request",
                "kind": "invalid-request",
                "detail": jsonable_encoder(exc.errors()),
            },
        )

    return app


# --- Helper functions & Auth ---


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_db(context: AppContext = Depends(get_context)):
    with context.database.session() as db:
        yield db


async def get_current_user(request: Request, db: Session = Depends(get_db)):
    token = request.cookies.get("session_token")
    if not token:
        return None
    return crud.get_user_by_session_token(db, token=token)


async def require_auth(user: models.User = Depends(get_current_user)):
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not logged in")
    return user


# --- Pydantic Models for API Validation ---
class CreateInbound(BaseModel):
    remark: str = ""
    enable: bool = True
    listen: str = ""
    port: int
    protocol: str = "vless"
    total: int = Field(0, ge=0)
    expiryTime: int = 0
    settings: dict = Field(default_factory=dict)
    streamSettings: dict = Field(default_factory=dict)
    sniffing: dict = Field(default_factory=dict)

    def to_row(self) -> dict:
        return {
            "remark": self.remark,
            "enable": self.enable,
            "listen": self.listen,
            "port": self.port,
            "protocol": self.protocol,
            "total": self.total,
            "expiry_time": self.expiryTime,
            "settings": self.settings,
            "stream_settings": self.streamSettings,
            "sniffing": self.sniffing,
        }


class UpdateInbound(BaseModel):
    remark: Optional[str] = None
    enable: Optional[bool] = None
    listen: Optional[str] = None
    port: Optional[int] = None
    protocol: Optional[str] = None
    total: Optional[int] = Field(None, ge=0)
    expiryTime: Optional[int] = None
    settings: Optional[dict] = None
    streamSettings: Optional[dict] = None
    sniffing: Optional[dict] = None

    def to_row(self) -> dict:
        data = self.model_dump(exclude_none=True)
        if "expiryTime" in data:
            data["expiry_time"] = data.pop("expiryTime")
        if "streamSettings" in data:
            data["stream_settings"] = data.pop("streamSettings")
        return data


class AddClients(BaseModel):
    clients: List[dict]


class ClientEnable(BaseModel):
    enable: bool


class ClientExpiry(BaseModel):
    expiryTime: int


class ClientIpLimit(BaseModel):
    limitIp: int = Field(..., ge=0)


class ClientTgId(BaseModel):
    tgId: int


class LinkRecord(BaseModel):
    type: str
    link: str


class ShortLinkRequest(BaseModel):
    link: str


# --- Auth Routes ---
@router.post("/login")
async def login(db: Session = Depends(get_db), username: str = Form(...), password: str = Form(...)):
    user = crud.get_user_by_username(db, username=username)
    if not user or not security.verify_password(password, user.password):
        return JSONResponse(
            status_code=401,
            content={"success": False, "msg": "wrong username or password", "kind": "unauthorized"},
        )

    token = secrets.token_hex(16)
    crud.update_user_session(db, user_id=user.id, token=token)

    json_response = JSONResponse(status_code=200, content={"success": True})
    json_response.set_cookie(key="session_token", value=token, httponly=True, max_age=86400)
    return json_response


@router.get("/logout")
async def logout(db: Session = Depends(get_db), user: models.User = Depends(require_auth)):
    crud.update_user_session(db, user_id=user.id, token=None)
    response = JSONResponse(content={"success": True})
    response.delete_cookie("session_token")
    return response


# --- INBOUND APIs ---
@router.get("/api/v1/inbounds", dependencies=[Depends(require_auth)])
async def read_inbounds(db: Session = Depends(get_db)):
    return [ib.to_dict() for ib in crud.list_inbounds(db)]


@router.get("/api/v1/inbounds/{inbound_id}", dependencies=[Depends(require_auth)])
async def read_inbound(inbound_id: int, db: Session = Depends(get_db)):
    return crud.get_inbound(db, inbound_id).to_dict()


@router.post("/api/v1/inbounds", dependencies=[Depends(require_auth)])
async def add_inbound(inbound_data: CreateInbound, db: Session = Depends(get_db),
                      context: AppContext = Depends(get_context)):
    new_inbound = crud.add_inbound(db, inbound_data.to_row())
    context.host.allow_port(new_inbound.port)
    context.xray.request_restart()
    return new_inbound.to_dict()


@router.put("/api/v1/inbounds/{inbound_id}", dependencies=[Depends(require_auth)])
async def update_inbound(inbound_id: int, inbound_data: UpdateInbound, db: Session = Depends(get_db),
                         context: AppContext = Depends(get_context)):
    updated = crud.update_inbound(db, inbound_id, inbound_data.to_row())
    context.xray.request_restart()
    return updated.to_dict()


@router.delete("/api/v1/inbounds/{inbound_id}", dependencies=[Depends(require_auth)])
async def remove_inbound(inbound_id: int, db: Session = Depends(get_db),
                         context: AppContext = Depends(get_context)):
    crud.delete_inbound(db, inbound_id)
    context.xray.request_restart()
    return {"status": "success"}


@router.post("/api/v1/inbounds/{inbound_id}/reset-traffic", dependencies=[Depends(require_auth)])
async def reset_inbound_traffic(inbound_id: int, db: Session = Depends(get_db)):
    crud.reset_inbound_traffic(db, inbound_id)
    return {"status": "success"}


@router.post("/api/v1/inbounds/{inbound_id}/reset-client-traffics", dependencies=[Depends(require_auth)])
async def reset_all_client_traffics(inbound_id: int, db: Session = Depends(get_db)):
    return {"status": "success", "count": crud.reset_all_client_traffics(db, inbound_id)}


@router.get("/api/v1/inbounds/{inbound_id}/links", dependencies=[Depends(require_auth)])
async def inbound_links(inbound_id: int, db: Session = Depends(get_db),
                        context: AppContext = Depends(get_context)):
    inbound = crud.get_inbound(db, inbound_id)
    address = context.host.get_panel_domain(db)
    return [
        {"email": client.email, "link": build_link(inbound, client, address)}
        for client in crud.list_clients(inbound)
    ]


# --- CLIENT APIs ---
@router.post("/api/v1/inbounds/{inbound_id}/clients", dependencies=[Depends(require_auth)])
async def add_clients(inbound_id: int, data: AddClients, db: Session = Depends(get_db),
                      context: AppContext = Depends(get_context)):
    added = crud.add_clients(db, inbound_id, data.clients)
    context.xray.request_restart()
    return [c.to_dict() for c in added]


@router.get("/api/v1/clients/online", dependencies=[Depends(require_auth)])
async def online_clients(context: AppContext = Depends(get_context)):
    return context.traffic.get_online_clients()


@router.get("/api/v1/clients/{email}", dependencies=[Depends(require_auth)])
async def read_client(email: str, db: Session = Depends(get_db)):
    inbound, client = crud.get_client_by_email(db, email)
    traffic = crud.get_client_traffic(db, email)
    return {
        "inboundId": inbound.id,
        "client": client.to_dict(),
        "traffic": traffic.to_dict() if traffic else None,
    }


@router.put("/api/v1/clients/{email}", dependencies=[Depends(require_auth)])
async def update_client(email: str, client_data: dict = Body(...), db: Session = Depends(get_db),
                        context: AppContext = Depends(get_context)):
    client = crud.update_client(db, email, client_data)
    context.xray.request_restart()
    return client.to_dict()


@router.delete("/api/v1/clients/{email}", dependencies=[Depends(require_auth)])
async def remove_client(email: str, db: Session = Depends(get_db),
                        context: AppContext = Depends(get_context)):
    crud.delete_client(db, email)
    context.xray.request_restart()
    return {"status": "success"}


@router.post("/api/v1/clients/{email}/enable", dependencies=[Depends(require_auth)])
async def set_client_enable(email: str, data: ClientEnable, db: Session = Depends(get_db),
                            context: AppContext = Depends(get_context)):
    if crud.set_client_enable(db, email, data.enable):
        context.xray.request_restart()
    return {"status": "success", "enable": data.enable}


@router.post("/api/v1/clients/{email}/toggle", dependencies=[Depends(require_auth)])
async def toggle_client(email: str, db: Session = Depends(get_db),
                        context: AppContext = Depends(get_context)):
    enable = crud.toggle_client_enable(db, email)
    context.xray.request_restart()
    return {"status": "success", "enable": enable}


@router.post("/api/v1/clients/{email}/reset-traffic", dependencies=[Depends(require_auth)])
async def reset_client_traffic(email: str, db: Session = Depends(get_db),
                               context: AppContext = Depends(get_context)):
    if crud.reset_client_traffic(db, email):
        context.xray.request_restart()
    return {"status": "success"}


@router.post("/api/v1/clients/{email}/expiry", dependencies=[Depends(require_auth)])
async def reset_client_expiry(email: str, data: ClientExpiry, db: Session = Depends(get_db),
                              context: AppContext = Depends(get_context)):
    if crud.reset_client_expiry(db, email, data.expiryTime):
        context.xray.request_restart()
    return {"status": "success"}


@router.post("/api/v1/clients/{email}/ip-limit", dependencies=[Depends(require_auth)])
async def set_client_ip_limit(email: str, data: ClientIpLimit, db: Session = Depends(get_db)):
    crud.set_client_ip_limit(db, email, data.limitIp)
    return {"status": "success"}


@router.post("/api/v1/clients/{email}/tg-id", dependencies=[Depends(require_auth)])
async def set_client_tg_id(email: str, data: ClientTgId, db: Session = Depends(get_db)):
    crud.set_client_tg_id(db, email, data.tgId)
    return {"status": "success"}


@router.get("/api/v1/clients/{email}/ips", dependencies=[Depends(require_auth)])
async def client_ips(email: str, db: Session = Depends(get_db)):
    return {"ips": crud.get_client_ips(db, email), "banned": crud.get_banned_ips(db, email)}


@router.delete("/api/v1/clients/{email}/ips", dependencies=[Depends(require_auth)])
async def clear_client_ips(email: str, db: Session = Depends(get_db)):
    crud.clear_client_ips(db, email)
    return {"status": "success"}


# --- Outbound traffic ---
@router.get("/api/v1/outbounds/traffic", dependencies=[Depends(require_auth)])
async def outbound_traffic(db: Session = Depends(get_db)):
    return [
        {"tag": row.tag, "up": row.up, "down": row.down, "total": row.total}
        for row in crud.list_outbound_traffics(db)
    ]


@router.post("/api/v1/outbounds/{tag}/reset-traffic", dependencies=[Depends(require_auth)])
async def reset_outbound_traffic(tag: str, db: Session = Depends(get_db)):
    crud.reset_outbound_traffic(db, tag)
    return {"status": "success"}


# --- System & Xray Routes ---
@router.get("/api/v1/system/stats", dependencies=[Depends(require_auth)])
def get_system_stats(context: AppContext = Depends(get_context)):
    return context.server.get_status()


@router.get("/api/v1/xray/status", dependencies=[Depends(require_auth)])
async def xray_status(context: AppContext = Depends(get_context)):
    return context.xray.get_status()


@router.get("/api/v1/xray/config", dependencies=[Depends(require_auth)])
async def xray_config(context: AppContext = Depends(get_context)):
    return context.server.get_config_json()


@router.post("/api/v1/xray/restart", dependencies=[Depends(require_auth)])
def restart_xray(context: AppContext = Depends(get_context)):
    err = context.xray.restart_xray(force=True)
    if err is not None:
        raise err
    return {"status": "success", "message": "Xray restarted successfully."}


@router.post("/api/v1/xray/stop", dependencies=[Depends(require_auth)])
def stop_xray(context: AppContext = Depends(get_context)):
    context.xray.stop_xray()
    return {"status": "success", "message": "Xray stopped successfully."}


# --- Panel settings ---
@router.get("/api/v1/panel/settings", dependencies=[Depends(require_auth)])
async def read_settings(db: Session = Depends(get_db)):
    return settings.get_all(db)


@router.post("/api/v1/panel/settings", dependencies=[Depends(require_auth)])
async def write_settings(settings_data: dict = Body(...), db: Session = Depends(get_db),
                         context: AppContext = Depends(get_context)):
    settings.update(db, settings_data)
    if "xrayTemplateConfig" in settings_data:
        context.xray.request_restart()
    return {"status": "success", "message": "Settings saved successfully."}


# --- Server: database, link history, short links ---
@router.get("/api/v1/server/db", dependencies=[Depends(require_auth)])
def export_db(context: AppContext = Depends(get_context)):
    content = context.server.export_db()
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": 'attachment; filename="x-ui.db"'},
    )


@router.post("/api/v1/server/import-db", dependencies=[Depends(require_auth)])
def import_db(db_file: UploadFile = File(...), context: AppContext = Depends(get_context)):
    context.server.import_db(db_file.file)
    return {"status": "success", "message": "Database imported successfully."}


@router.get("/api/v1/server/link-history", dependencies=[Depends(require_auth)])
async def load_link_history(context: AppContext = Depends(get_context)):
    return context.server.load_link_history()


@router.post("/api/v1/server/link-history", dependencies=[Depends(require_auth)])
async def save_link_history(data: LinkRecord, context: AppContext = Depends(get_context)):
    context.server.save_link_history(data.type, data.link)
    return {"status": "success"}


@router.post("/api/v1/short-links", dependencies=[Depends(require_auth)])
async def create_short_link(data: ShortLinkRequest, context: AppContext = Depends(get_context)):
    return {"code": context.server.create_short_link(data.link)}


@router.get("/s/{code}")
async def resolve_short_link(code: str, context: AppContext = Depends(get_context)):
    link = context.server.resolve_short_link(code)
    if link is None:
        raise HTTPException(status_code=404, detail="Link not found")
    return PlainTextResponse(link)


if __name__ == "__main__":
    setup_logging()
    context = build_context()
    with context.database.session() as db:
        listen_port = settings.web_port(db)
        listen_host = settings.get(db, "webListen") or config.HOST

    logger.info("panel listening on %s:%s", listen_host, listen_port)
    uvicorn.run(create_app(context), host=listen_host, port=listen_port)
