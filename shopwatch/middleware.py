"""Request instrumentation: one counter increment and one duration sample per request."""

import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .metrics import MetricsRegistry


def route_label(scope: Scope) -> str:
    """Matched route template (e.g. /api/users/{id}) or the raw path."""
    route = scope.get("route")
    path = getattr(route, "path", None)
    return path or scope.get("path", "")


class InstrumentationMiddleware:
    def __init__(self, app: ASGIApp, metrics: MetricsRegistry):
        self.app = app
        self.metrics = metrics

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.perf_counter() - start
            labels = {
                "method": scope["method"],
                "endpoint": route_label(scope),
                "status": status_code,
            }
            self.metrics.inc("http_requests_total", labels)
            self.metrics.observe("http_request_duration_seconds", labels, duration)
