"""Synchronous HTTP client for calls between services."""

import logging
import time
from contextlib import contextmanager
from typing import Any, Optional
from urllib.parse import quote

import requests

from .errors import UpstreamError
from .metrics import MetricsRegistry

logger = logging.getLogger(__name__)


class PeerClient:
    """
    Calls one peer service (user-service or product-service).

    Every call is timed into `external_api_latency_seconds{service, endpoint}`,
    successful or not. Non-2xx answers and transport failures raise
    `UpstreamError`; nothing is retried.
    """

    def __init__(self, base_url: str, service: str, metrics: Optional[MetricsRegistry] = None,
                 timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.service = service
        self.metrics = metrics
        self.timeout = timeout
        self.session = session or requests.Session()

    @contextmanager
    def _timed(self, endpoint: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            if self.metrics is not None and "external_api_latency_seconds" in self.metrics:
                self.metrics.observe(
                    "external_api_latency_seconds",
                    {"service": self.service, "endpoint": endpoint},
                    time.perf_counter() - start,
                )

    def _request(self, method: str, path: str, endpoint: str, timeout: Optional[float] = None,
                 **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        with self._timed(endpoint):
            try:
                response = self.session.request(method, url, timeout=timeout or self.timeout, **kwargs)
            except requests.RequestException as e:
                logger.warning("%s %s failed: %s", method, url, e)
                raise UpstreamError(f"{self.service} unavailable") from e
        if response.status_code >= 400:
            raise UpstreamError(
                f"{self.service} returned {response.status_code}",
                upstreamStatus=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"{self.service} returned an invalid body") from e

    def get_user(self, user_id: str) -> dict:
        try:
            body = self._request("GET", f"/api/users/{quote(str(user_id), safe='')}", "get_user")
        except UpstreamError as e:
            raise UpstreamError("User not found") from e
        return body.get("data") or {}

    def get_product(self, product_id: str) -> dict:
        try:
            body = self._request("GET", f"/api/products/{quote(str(product_id), safe='')}", "get_product")
        except UpstreamError as e:
            raise UpstreamError(f"Product {product_id} not found") from e
        return body.get("data") or {}

    def adjust_stock(self, product_id: str, delta: int) -> dict:
        return self._request(
            "PUT", f"/api/products/{quote(str(product_id), safe='')}/stock", "update_stock", json={"quantity": delta}
        )

    def health(self, timeout: Optional[float] = None) -> str:
        try:
            self._request("GET", "/health", "health", timeout=timeout)
        except UpstreamError:
            return "unhealthy"
        return "healthy"
