"""Per-request log lines: method, path, status, latency and bytes sent."""
from __future__ import annotations

import logging
import time

logger = logging.getLogger(__name__)


class RequestLogMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        path = scope["path"]
        started = time.perf_counter()
        status = None
        sent = 0
        logger.info("started %s %s", method, path)

        async def send_wrapper(message):
            nonlocal status, sent
            if message["type"] == "http.response.start":
                status = message["status"]
            elif message["type"] == "http.response.body":
                chunk = len(message.get("body", b""))
                sent += chunk
                logger.debug("sending %s bytes", chunk)
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            logger.exception("%s %s failed after %.1fms", method, path, _elapsed_ms(started))
            raise

        latency = _elapsed_ms(started)
        logger.info("%s %s %s in %.1fms, %s bytes", method, path, status, latency, sent)
        if status is not None and status >= 500:
            logger.error("%s %s returned %s", method, path, status)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
