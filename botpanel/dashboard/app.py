"""FastAPI dashboard for botpanel.

Thin HTTP / WebSocket surface over `BotService`: bot CRUD, start/stop/restart,
logs and metrics reads, and the ``/ws`` push channel that streams
``statusUpdate`` snapshots. Every lifecycle call returns a boolean or a record
(never raises), and the handlers map ``False`` / ``None`` to a 500.
"""
from __future__ import annotations

import contextlib
import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from starlette.websockets import WebSocketState

from botpanel.manager.broadcaster import Subscriber
from botpanel.manager.service import BotService
from botpanel.utils import profiles
from botpanel.utils.models import BotSpec, BotUpdate

logger = logging.getLogger("botpanel.dashboard")

LOCAL_HOSTS = ("127.0.0.1", "::1", "localhost")
TEST_HOSTS = ("testclient", "testserver")


class WebSocketSubscriber(Subscriber):
    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    def __repr__(self) -> str:
        client = self.websocket.client
        return f"<WebSocketSubscriber {client.host if client else '?'}>"

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: Dict[str, Any]) -> None:
        await self.websocket.send_json(payload)


def _parse_id(raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid bot ID")


def _client_allowed(host: Optional[str], supplied: Optional[str], api_key: Optional[str]) -> bool:
    # local requests are always allowed; remote ones need the key when one is configured
    if host in LOCAL_HOSTS:
        return True
    if api_key:
        return supplied == api_key
    return host is None or host in TEST_HOSTS


def create_app(service: BotService, *, api_key: Optional[str] = None, manage_service: bool = False) -> FastAPI:
    """Build the dashboard app around an existing service.

    With ``manage_service`` the app's lifespan starts and stops the service;
    otherwise the caller owns it.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_service:
            await service.start()
        try:
            yield
        finally:
            if manage_service:
                await service.stop()

    app = FastAPI(title="botpanel", version="0.1.0", lifespan=lifespan)
    app.state.start_time = time.time()
    app.state.service = service
    manager = service.manager
    storage = service.storage
    api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

    async def require_api_key(request: Request, header: Optional[str] = Depends(api_key_header)):
        host = request.client.host if request.client else None
        if _client_allowed(host, header, api_key):
            return True
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API Key or access not allowed")

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok", "uptime": int(time.time() - app.state.start_time)})

    @app.get("/ready")
    async def ready():
        return JSONResponse(
            {
                "status": "ready" if service.ready.is_set() else "starting",
                "connections": len(manager.handles()),
                "subscribers": len(service.broadcaster),
            }
        )

    # -- bots -------------------------------------------------------------

    @app.get("/api/bots")
    async def list_bots(userId: Optional[int] = None, auth=Depends(require_api_key)):
        try:
            bots = await storage.get_bots_by_user_id(userId) if userId is not None else await storage.get_all_bots()
        except Exception:
            logger.exception("Failed to list bots")
            return JSONResponse({"message": "Server error retrieving bots"}, status_code=500)
        return JSONResponse([b.to_public() for b in bots])

    @app.get("/api/bots/{bot_id}")
    async def get_bot(bot_id: str, auth=Depends(require_api_key)):
        bot = await storage.get_bot(_parse_id(bot_id))
        if bot is None:
            return JSONResponse({"message": "Bot not found"}, status_code=404)
        return JSONResponse(bot.to_public())

    @app.post("/api/bots")
    async def create_bot(spec: BotSpec, auth=Depends(require_api_key)):
        if not spec.name.strip() or not spec.token.strip():
            return JSONResponse({"message": "Invalid bot data", "errors": ["name and token are required"]}, status_code=400)
        bot = await manager.create_bot(spec)
        if bot is None:
            return JSONResponse({"message": "Failed to create bot"}, status_code=500)
        return JSONResponse(bot.to_public(), status_code=201)

    @app.put("/api/bots/{bot_id}")
    async def update_bot(bot_id: str, changes: BotUpdate, auth=Depends(require_api_key)):
        bid = _parse_id(bot_id)
        if await storage.get_bot(bid) is None:
            return JSONResponse({"message": "Bot not found"}, status_code=404)
        bot = await manager.update_bot(bid, changes)
        if bot is None:
            return JSONResponse({"message": "Failed to update bot"}, status_code=500)
        return JSONResponse(bot.to_public())

    @app.delete("/api/bots/{bot_id}")
    async def delete_bot(bot_id: str, auth=Depends(require_api_key)):
        if not await manager.delete_bot(_parse_id(bot_id)):
            return JSONResponse({"message": "Bot not found or could not be deleted"}, status_code=404)
        return Response(status_code=204)

    @app.post("/api/bots/{bot_id}/{op}")
    async def bot_op(bot_id: str, op: str, auth=Depends(require_api_key)):
        ops = {"start": manager.start_bot, "stop": manager.stop_bot, "restart": manager.restart_bot}
        if op not in ops:
            return JSONResponse({"message": "Unknown operation"}, status_code=404)
        ok = await ops[op](_parse_id(bot_id))
        past = {"start": "started", "stop": "stopped", "restart": "restarted"}[op]
        if not ok:
            return JSONResponse({"message": f"Failed to {op} bot"}, status_code=500)
        return JSONResponse({"message": f"Bot {past} successfully"})

    @app.get("/api/bots/{bot_id}/invite")
    async def bot_invite(bot_id: str, guildId: Optional[str] = None, auth=Depends(require_api_key)):
        bot = await storage.get_bot(_parse_id(bot_id))
        if bot is None:
            return JSONResponse({"message": "Bot not found"}, status_code=404)
        client_id = profiles.client_id_from_token(bot.token)
        if client_id is None:
            return JSONResponse({"message": "Could not extract client ID from token"}, status_code=400)
        scopes = bot.invite_config.get("scopes") or profiles.INVITE_SCOPES
        url = profiles.build_invite_url(client_id, bot.permissions, scopes, guild_id=guildId)
        return JSONResponse({"url": url, "clientId": client_id, "permissions": bot.permissions, "scopes": scopes})

    # -- logs & metrics ---------------------------------------------------

    @app.get("/api/logs")
    async def logs(limit: int = 50, botId: Optional[int] = None, auth=Depends(require_api_key)):
        limit = max(1, min(limit, 1000))
        try:
            entries = await storage.get_logs_by_bot_id(botId, limit) if botId is not None else await storage.get_logs(limit)
        except Exception:
            logger.exception("Failed to read logs")
            return JSONResponse({"message": "Server error retrieving logs"}, status_code=500)
        return JSONResponse([e.to_wire() for e in entries])

    @app.get("/api/metrics")
    async def metrics(auth=Depends(require_api_key)):
        sample = await storage.get_latest_metrics()
        if sample is None:
            return JSONResponse({"message": "No metrics available"}, status_code=404)
        return JSONResponse(sample.to_wire())

    # -- push channel -----------------------------------------------------

    async def _handle_message(subscriber: WebSocketSubscriber, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed websocket message")
            return
        kind = data.get("type") if isinstance(data, dict) else None
        if kind == "requestUpdate":
            await manager.send_status(subscriber)
            return
        ops = {"startBot": manager.start_bot, "stopBot": manager.stop_bot, "restartBot": manager.restart_bot}
        if kind not in ops:
            logger.info("Unknown message type: %s", kind)
            return
        try:
            bot_id = int(data.get("botId"))
        except (TypeError, ValueError):
            logger.warning("Websocket %s without a valid botId", kind)
            return
        await ops[kind](bot_id)

    @app.websocket("/ws")
    async def ws(websocket: WebSocket):
        host = websocket.client.host if websocket.client else None
        supplied = websocket.headers.get("x-api-key") or websocket.query_params.get("key")
        if not _client_allowed(host, supplied, api_key):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await websocket.accept()
        subscriber = WebSocketSubscriber(websocket)
        logger.info("WebSocket client connected")
        await manager.add_client(subscriber)
        try:
            while True:
                raw = await websocket.receive_text()
                await _handle_message(subscriber, raw)
        except WebSocketDisconnect:
            pass
        finally:
            manager.remove_client(subscriber)
            logger.info("WebSocket client disconnected")

    return app
