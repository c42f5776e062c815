"""Browser live reload: listener registry, WebSocket transport and HTML injection.

Browsers load a page, the injected snippet opens a WebSocket to
``/reload-stream`` and waits. When the watcher reports a change the
broadcaster pushes one ``reload`` frame to every connected tab.
"""
from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List

from starlette.datastructures import MutableHeaders
from starlette.websockets import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

RELOAD_INSTRUCTION = "reload"
RELOAD_STREAM_PATH = "/reload-stream"
SNIPPET_MARKER = "data-live-reload"

RELOAD_SNIPPET = """<script %s>
(function () {
  var url = (location.protocol === "https:" ? "wss://" : "ws://") + location.host + "%s";
  var lost = false;
  function connect() {
    var socket = new WebSocket(url);
    socket.onopen = function () {
      if (lost) { location.reload(); }
    };
    socket.onmessage = function (event) {
      if (event.data === "%s") { location.reload(); }
    };
    socket.onclose = function () {
      lost = true;
      setTimeout(connect, 1000);
    };
  }
  connect();
})();
</script>""" % (SNIPPET_MARKER, RELOAD_STREAM_PATH, RELOAD_INSTRUCTION)

_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)


class ListenerDeliveryError(Exception):
    """A reload instruction could not be handed to one listener."""

    def __init__(self, listener_id: str, reason: str):
        super().__init__(f"listener {listener_id}: {reason}")
        self.listener_id = listener_id
        self.reason = reason


@dataclass
class ReloadListener:
    """One connected browser tab waiting for reload instructions."""

    id: str
    channel: "asyncio.Queue[str]"
    created_at: float = field(default_factory=time.time)

    def deliver(self, instruction: str) -> None:
        try:
            self.channel.put_nowait(instruction)
        except asyncio.QueueFull as exc:
            raise ListenerDeliveryError(self.id, "delivery channel is full") from exc

    async def instructions(self) -> AsyncIterator[str]:
        while True:
            yield await self.channel.get()


class ReloadBroadcaster:
    """Fans a reload instruction out to every registered listener.

    The listener set is only reachable through register/unregister/notify,
    each of which runs entirely under one lock. ``notify`` must be called on
    the event loop that owns the listeners' channels.
    """

    def __init__(self, channel_size: int = 16):
        self._listeners: Dict[str, ReloadListener] = {}
        self._lock = threading.Lock()
        self._channel_size = channel_size
        self._notifications = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def register(self) -> ReloadListener:
        with self._lock:
            listener_id = uuid.uuid4().hex
            while listener_id in self._listeners:
                listener_id = uuid.uuid4().hex
            listener = ReloadListener(id=listener_id, channel=asyncio.Queue(maxsize=self._channel_size))
            self._listeners[listener_id] = listener
            count = len(self._listeners)
        logger.debug("Registered reload listener %s (%s connected)", listener_id, count)
        return listener

    def unregister(self, listener_id: str) -> bool:
        with self._lock:
            listener = self._listeners.pop(listener_id, None)
            count = len(self._listeners)
        if listener is None:
            return False
        logger.debug(
            "Unregistered reload listener %s after %.1fs (%s connected)",
            listener_id,
            time.time() - listener.created_at,
            count,
        )
        return True

    def notify(self) -> int:
        """Send one reload instruction to every current listener.

        Listeners that cannot take the instruction are dropped. Returns the
        number of successful deliveries.
        """
        failed: List[ListenerDeliveryError] = []
        with self._lock:
            self._notifications += 1
            sequence = self._notifications
            delivered = 0
            for listener in list(self._listeners.values()):
                try:
                    listener.deliver(RELOAD_INSTRUCTION)
                except ListenerDeliveryError as exc:
                    failed.append(exc)
                    del self._listeners[listener.id]
                else:
                    delivered += 1

        for exc in failed:
            logger.warning("Dropping reload listener: %s", exc)
        logger.info("Reload #%s sent to %s listener(s)", sequence, delivered)
        return delivered


async def reload_stream(websocket: WebSocket) -> None:
    """Long-lived WebSocket that forwards reload instructions to one browser."""

    broadcaster: ReloadBroadcaster = websocket.app.state.broadcaster
    listener = broadcaster.register()
    tasks: List["asyncio.Task[None]"] = []
    try:
        await websocket.accept()
        tasks.append(asyncio.create_task(_forward(websocket, listener)))
        tasks.append(asyncio.create_task(_wait_for_disconnect(websocket)))
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    finally:
        for task in tasks:
            task.cancel()
        broadcaster.unregister(listener.id)


async def _forward(websocket: WebSocket, listener: ReloadListener) -> None:
    async for instruction in listener.instructions():
        try:
            await websocket.send_text(instruction)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            error = ListenerDeliveryError(listener.id, f"send failed: {exc!r}")
            logger.warning("%s", error)
            return


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


def inject_reload_script(html: str) -> str:
    """Insert the reload snippet before the closing body tag.

    Returns the input unchanged when it already carries the snippet, and
    appends at the end when there is no ``</body>``.
    """
    if SNIPPET_MARKER in html:
        return html
    matches = list(_BODY_CLOSE.finditer(html))
    if not matches:
        return html + RELOAD_SNIPPET
    position = matches[-1].start()
    return html[:position] + RELOAD_SNIPPET + html[position:]


class ReloadInjectorMiddleware:
    """ASGI middleware that runs every HTML response through inject_reload_script."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # HEAD is answered as GET with the body dropped, so its
        # content-length matches the injected GET response.
        head = scope["method"] == "HEAD"
        if head:
            scope = dict(scope, method="GET")

        start_message = None
        chunks: List[bytes] = []

        async def send_wrapper(message):
            nonlocal start_message
            if message["type"] == "http.response.start":
                headers = MutableHeaders(raw=message["headers"])
                content_type = headers.get("content-type", "")
                if content_type.startswith("text/html") and "content-encoding" not in headers:
                    start_message = message
                    return
                await send(message)
                return

            if message["type"] != "http.response.body" or start_message is None:
                if head and message["type"] == "http.response.body":
                    message = dict(message, body=b"")
                await send(message)
                return

            chunks.append(message.get("body", b""))
            if message.get("more_body", False):
                return

            headers = MutableHeaders(raw=start_message["headers"])
            body = _injected_body(b"".join(chunks), _charset(headers))
            headers["content-length"] = str(len(body))
            await send(start_message)
            await send({"type": "http.response.body", "body": b"" if head else body, "more_body": False})

        await self.app(scope, receive, send_wrapper)


def _injected_body(raw: bytes, charset: str) -> bytes:
    try:
        html = raw.decode(charset)
    except (LookupError, UnicodeDecodeError) as exc:
        logger.warning("Not injecting reload script into undecodable HTML (%s)", exc)
        return raw
    return inject_reload_script(html).encode(charset)


def _charset(headers: MutableHeaders) -> str:
    content_type = headers.get("content-type", "")
    for part in content_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip('"')
    return "utf-8"
