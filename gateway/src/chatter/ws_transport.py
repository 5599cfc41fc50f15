from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict

from aiohttp import WSMsgType, web

from .accounts import AccountStore, InMemoryAccountStore, ensure_admin
from .config import GatewayConfig
from .engine import Coordinator
from .errors import ChatterError, InvalidRequest, Unauthenticated
from .history import HistoryStore, InMemoryHistoryStore
from .sessions import Session, SessionStore
from .sqlite_accounts import SQLiteAccountStore
from .sqlite_backend import SQLiteBackend
from .sqlite_history import SQLiteHistoryStore

log = logging.getLogger("chatter.ws_transport")

_connection_ids = itertools.count(1)


class Runtime:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        coordinator: Coordinator,
        accounts: AccountStore,
        sessions: SessionStore,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.config = config
        self.coordinator = coordinator
        self.accounts = accounts
        self.sessions = sessions
        self.backend = backend


RUNTIME_KEY = web.AppKey("runtime", Runtime)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid session_token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get_by_session(session_token)


async def _json_body(request: web.Request) -> dict | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


async def handle_signup(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")

    user_id = body.get("user_id")
    username = body.get("username")
    password = body.get("password")
    if not all(isinstance(value, str) and value for value in (user_id, username, password)):
        return _invalid_request("user_id, username and password required")
    try:
        record = runtime.accounts.register(user_id, username, password)
    except ChatterError as exc:
        status = 409 if exc.code == "account_exists" else 400
        return _error(exc.code, str(exc), status)
    log.info("registered account %s", user_id)
    return web.json_response({"status": "ok", "user": record.public()})


async def handle_login(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")

    user_id = body.get("user_id")
    password = body.get("password")
    if not isinstance(user_id, str) or not isinstance(password, str):
        return _invalid_request("user_id and password required")
    record = runtime.accounts.authenticate(user_id, password)
    if record is None:
        return _error("invalid_credentials", "invalid credentials", 401)
    session = runtime.sessions.create(record.user_id)
    return web.json_response(
        {
            "status": "ok",
            "session_token": session.session_token,
            "expires_at": session.expires_at_ms,
            "user": record.public(),
        }
    )


async def handle_contacts_add(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")

    contact_id = body.get("contact_id")
    if not isinstance(contact_id, str) or not contact_id:
        return _invalid_request("contact_id required")
    try:
        contact = runtime.accounts.add_contact(session.user_id, contact_id)
    except ChatterError as exc:
        return _error(exc.code, str(exc), 404 if exc.code == "not_found" else 400)
    return web.json_response({"status": "ok", "contact": contact.public()})


async def handle_contacts_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    contacts = runtime.accounts.list_contacts(session.user_id)
    return web.json_response({"contacts": [contact.public() for contact in contacts]})


async def handle_profile_update(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")

    username = body.get("username")
    profile_pic = body.get("profile_pic")
    if username is None and profile_pic is None:
        return _invalid_request("username or profile_pic required")
    if (username is not None and not isinstance(username, str)) or (
        profile_pic is not None and not isinstance(profile_pic, str)
    ):
        return _invalid_request("username and profile_pic must be strings")
    try:
        record = runtime.accounts.update_profile(session.user_id, username=username, profile_pic=profile_pic)
    except ChatterError as exc:
        return _error(exc.code, str(exc), 404 if exc.code == "not_found" else 400)

    public = record.public()
    runtime.coordinator.notify_profile_updated(
        record.user_id, {"username": public["username"], "profile_pic": public["profile_pic"]}
    )
    return web.json_response({"status": "ok", "user": public})


def _forbidden() -> web.Response:
    return _error("forbidden", "admin privileges required", 403)


async def handle_admin_users(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    admin = runtime.accounts.get_user(session.user_id)
    if admin is None or not admin.is_admin:
        return _forbidden()
    users = [{**record.public(), "is_admin": record.is_admin} for record in runtime.accounts.list_users()]
    return web.json_response({"users": users})


async def handle_admin_delete_user(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    admin = runtime.accounts.get_user(session.user_id)
    if admin is None or not admin.is_admin:
        return _forbidden()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")

    user_id = body.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        return _invalid_request("user_id required")
    target = runtime.accounts.get_user(user_id)
    if target is None:
        return _error("not_found", "user not found", 404)
    if target.is_admin:
        return _invalid_request("cannot delete an admin account")
    runtime.accounts.delete_user(user_id)
    dropped = runtime.sessions.invalidate_user(user_id)
    log.info("admin %s deleted account %s (%d session(s) revoked)", admin.user_id, user_id, dropped)
    return web.json_response({"status": "ok"})


def create_app(
    config: GatewayConfig | None = None,
    *,
    coordinator: Coordinator | None = None,
    accounts: AccountStore | None = None,
    now_func: Callable[[], int] | None = None,
    **overrides: Any,
) -> web.Application:
    config = (config or GatewayConfig()).with_overrides(**overrides)

    backend: SQLiteBackend | None = None
    history: HistoryStore
    if config.db_path is not None:
        backend = SQLiteBackend(config.db_path)
        history = SQLiteHistoryStore(backend)
        accounts = accounts or SQLiteAccountStore(backend)
    else:
        history = InMemoryHistoryStore()
        accounts = accounts or InMemoryAccountStore()

    clock: Dict[str, Any] = {} if now_func is None else {"now_func": now_func}
    coordinator = coordinator or Coordinator(
        history=history,
        accounts=accounts,
        peek_ttl_ms=config.peek_ttl_ms,
        peek_sweep_interval_s=config.peek_sweep_interval_s,
        reject_unknown_recipients=config.reject_unknown_recipients,
        **clock,
    )
    if config.admin_user_id and config.admin_password:
        ensure_admin(accounts, config.admin_user_id, config.admin_password)

    runtime = Runtime(
        config=config,
        coordinator=coordinator,
        accounts=accounts,
        sessions=SessionStore(config.session_ttl_ms, **clock),
        backend=backend,
    )

    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/signup", handle_signup)
    app.router.add_post("/v1/login", handle_login)
    app.router.add_post("/v1/contacts/add", handle_contacts_add)
    app.router.add_get("/v1/contacts", handle_contacts_list)
    app.router.add_post("/v1/profile", handle_profile_update)
    app.router.add_get("/v1/admin/users", handle_admin_users)
    app.router.add_post("/v1/admin/delete-user", handle_admin_delete_user)
    app.router.add_get("/v1/ws", websocket_handler)

    async def start_sweeper(_: web.Application) -> None:
        coordinator.start_sweeper()

    async def stop_sweeper(_: web.Application) -> None:
        await coordinator.stop_sweeper()

    app.on_startup.append(start_sweeper)
    app.on_cleanup.append(stop_sweeper)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _require_str(body: dict, key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidRequest(f"{key} required")
    return value


def dispatch_frame(runtime: Runtime, handle: str, frame: dict, reply: Callable[[dict], None]) -> None:
    """Apply one client frame to the coordinator on behalf of connection ``handle``."""

    coordinator = runtime.coordinator
    frame_type = frame.get("t")
    request_id = frame.get("id")
    body = frame.get("body") or {}
    if not isinstance(body, dict):
        raise InvalidRequest("body must be an object")

    if frame_type == "ping":
        reply({"v": 1, "t": "pong", "id": request_id})
    elif frame_type == "pong":
        return
    elif frame_type == "session.login":
        session = runtime.sessions.get_by_session(_require_str(body, "session_token"))
        if session is None:
            reply(_error_frame("unauthorized", "invalid session_token", request_id=request_id))
            return
        reply({"v": 1, "t": "session.ready", "id": request_id, "body": {"user_id": session.user_id}})
        coordinator.on_login(handle, session.user_id)
    elif frame_type == "chat.send":
        payload = body.get("payload")
        if not isinstance(payload, str):
            raise InvalidRequest("payload must be a string")
        has_attachment = body.get("has_attachment", False)
        if not isinstance(has_attachment, bool):
            raise InvalidRequest("has_attachment must be a boolean")
        coordinator.on_send(handle, _require_str(body, "to"), payload, has_attachment)
    elif frame_type == "chat.history":
        coordinator.on_get_history(handle, _require_str(body, "with_user"), request_id=request_id)
    elif frame_type == "chat.peek":
        coordinator.on_set_peek(handle, _require_str(body, "with_user"))
    elif frame_type == "chat.unpeek":
        coordinator.on_clear_peek(handle, _require_str(body, "with_user"))
    elif frame_type == "chat.poll_status":
        coordinator.on_poll_status(handle, _require_str(body, "to"))
    else:
        raise InvalidRequest("unknown frame type")


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    config = runtime.config

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    handle = f"conn-{next(_connection_ids)}"
    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue(payload: dict) -> None:
        try:
            outbound.put_nowait(payload)
        except asyncio.QueueFull:
            log.warning("outbound queue full for %s; closing", handle)
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                payload = await outbound.get()
                if payload is None:
                    break
                await ws.send_json(payload)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            log.debug("connection %s reset while writing", handle)

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= config.ping_interval_s:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    runtime.coordinator.on_connect(handle, enqueue)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                try:
                    dispatch_frame(runtime, handle, frame, enqueue)
                except Unauthenticated as exc:
                    log.info("dropping %s from %s: %s", frame.get("t"), handle, exc)
                except ChatterError as exc:
                    log.info("rejected %s from %s: %s", frame.get("t"), handle, exc)
                    enqueue(_error_frame(exc.code, str(exc), request_id=frame.get("id")))
                except Exception:
                    log.exception("handler for %s failed on %s", frame.get("t"), handle)
                    enqueue(_error_frame("internal", "internal error", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        runtime.coordinator.on_disconnect(handle)
        heartbeat_task.cancel()
        writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
