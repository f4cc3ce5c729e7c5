import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

import aiohttp
from aiohttp import web

from core.assistant import MESSAGE_EVENT, Assistant, InboundEvent
from core.errors import TransportError
from core.history import ConversationMessage

log = logging.getLogger(__name__)

WEBHOOK_PATH = "/whatsapp/webhook"
HISTORY_FETCH_LIMIT = 50


def parse_event(body: Mapping[str, Any]) -> InboundEvent:
    """Map a WAHA webhook envelope onto an InboundEvent."""
    payload = body.get("payload") or {}
    if not isinstance(payload, Mapping):
        payload = {}
    attachments: List[Dict[str, Any]] = []
    media = payload.get("media")
    if payload.get("hasMedia") and isinstance(media, Mapping):
        attachments.append(dict(media))
    return InboundEvent(
        event_type=str(body.get("event") or ""),
        sender=str(payload.get("from") or ""),
        recipient=str(payload.get("to") or ""),
        from_bot=bool(payload.get("fromMe")),
        text=str(payload.get("body") or ""),
        message_id=str(payload["id"]) if payload.get("id") else None,
        attachments=attachments,
    )


def parse_history(items: Any) -> List[ConversationMessage]:
    messages: List[ConversationMessage] = []
    if not isinstance(items, list):
        return messages
    for item in items:
        if not isinstance(item, Mapping):
            continue
        try:
            timestamp = float(item.get("timestamp") or 0)
        except (TypeError, ValueError):
            continue
        messages.append(
            ConversationMessage(
                timestamp=timestamp,
                body=str(item.get("body") or ""),
                from_user=not bool(item.get("fromMe")),
                message_id=str(item["id"]) if item.get("id") else None,
            )
        )
    return messages


class WahaClient:
    """HTTP client for a WAHA (WhatsApp HTTP API) session."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        session: str = "default",
        timeout: float = 15.0,
        http: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session_name = session
        self._headers = {"X-Api-Key": api_key} if api_key else {}
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._http = http

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(headers=self._headers, timeout=self._timeout)
        return self._http

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._client().request(method, url, **kwargs) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    raise TransportError(f"{method} {path} returned {resp.status}: {detail[:200]}")
                if resp.content_type == "application/json":
                    return await resp.json()
                return await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

    async def send_text(self, to: str, text: str) -> Any:
        return await self._request(
            "POST",
            "/api/sendText",
            json={
                "chatId": to,
                "text": text,
                "linkPreview": True,
                "session": self.session_name,
            },
        )

    async def start_typing(self, to: str) -> None:
        await self._request("POST", "/api/startTyping", json={"chatId": to, "session": self.session_name})

    async def stop_typing(self, to: str) -> None:
        await self._request("POST", "/api/stopTyping", json={"chatId": to, "session": self.session_name})

    async def get_history(self, chat_id: str) -> List[ConversationMessage]:
        data = await self._request(
            "GET",
            f"/api/{self.session_name}/chats/{chat_id}/messages",
            params={"limit": str(HISTORY_FETCH_LIMIT), "downloadMedia": "false"},
        )
        return parse_history(data)

    async def close(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()


class WhatsAppTransport:
    def __init__(self, assistant: Assistant, *, host: str = "0.0.0.0", port: int = 8080):
        self.assistant = assistant
        self.host = host
        self.port = port
        self.app = self.build_app()
        self._runner: Optional[web.AppRunner] = None
        self._stop_event = asyncio.Event()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(WEBHOOK_PATH, self.webhook)
        app.router.add_get("/health", self.health)
        return app

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def webhook(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"message": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"message": "Invalid event"}, status=400)
        event = parse_event(body)
        if event.event_type != MESSAGE_EVENT:
            return web.json_response({"message": "Event not supported"})
        try:
            reply = await self.assistant.handle_event(event)
        except Exception as exc:
            log.exception("Assistant error: %s", exc)
            return web.json_response({"message": "Error processing webhook"}, status=500)
        if reply is None:
            return web.json_response({"message": "Event ignored"})
        return web.json_response({"message": "Event processed"})

    async def start(self):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("Webhook listening on %s:%s%s", self.host, self.port, WEBHOOK_PATH)
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self._runner.cleanup()

    async def stop(self):
        self._stop_event.set()
