"""Pytest fixtures for shopwatch tests."""

from urllib.parse import urlsplit

import mongomock
import pytest
import requests
from fastapi.testclient import TestClient
from prometheus_client.parser import text_string_to_metric_families

from shopwatch.database import ensure_indexes
from shopwatch.metrics import ORDER_METRICS, PRODUCT_METRICS, USER_METRICS, build_registry
from shopwatch.orders import create_order_app
from shopwatch.products import create_product_app
from shopwatch.settings import ORDER_SERVICE, PRODUCT_SERVICE, USER_SERVICE, Settings
from shopwatch.users import create_user_app

JWT_SECRET = "test-secret-for-signing-session-tokens"
USER_URL = "http://user-service:3000"
PRODUCT_URL = "http://product-service:3001"


def exposed(text, name, **labels):
    """Value of one sample in exposition text, whatever order its labels render in."""
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            if sample.name == name and sample.labels == labels:
                return sample.value
    return None


class RoutedSession:
    """Stands in for requests.Session, sending peer calls to in-process apps."""

    def __init__(self, routes):
        self.routes = routes
        self.down = set()
        self.calls = []

    def request(self, method, url, timeout=None, json=None, **kwargs):
        parts = urlsplit(url)
        host = f"{parts.scheme}://{parts.netloc}"
        self.calls.append((method, url, json))
        if host in self.down or host not in self.routes:
            raise requests.ConnectionError(f"connection refused: {host}")
        return self.routes[host].request(method, parts.path, json=json)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["monitoring"]
    ensure_indexes(database)
    return database


def make_settings(service_name, **overrides):
    values = dict(
        service_name=service_name,
        mongodb_uri="mongodb://test",
        jwt_secret=JWT_SECRET,
        user_service_url=USER_URL,
        product_service_url=PRODUCT_URL,
        health_timeout=0.5,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def user_metrics():
    return build_registry(USER_SERVICE, USER_METRICS, runtime_metrics=False)


@pytest.fixture
def product_metrics():
    return build_registry(PRODUCT_SERVICE, PRODUCT_METRICS, runtime_metrics=False)


@pytest.fixture
def order_metrics():
    return build_registry(ORDER_SERVICE, ORDER_METRICS, runtime_metrics=False)


@pytest.fixture
def user_client(db, user_metrics):
    app = create_user_app(make_settings(USER_SERVICE), db, user_metrics)
    return TestClient(app)


@pytest.fixture
def product_client(db, product_metrics):
    app = create_product_app(make_settings(PRODUCT_SERVICE), db, product_metrics)
    return TestClient(app)


@pytest.fixture
def peer_session(user_client, product_client):
    return RoutedSession({USER_URL: user_client, PRODUCT_URL: product_client})


@pytest.fixture
def payments():
    """Payment processor that records charges and approves unless told otherwise."""

    class Payments:
        approve = True

        def __init__(self):
            self.charges = []

        def __call__(self, amount, currency="USD"):
            self.charges.append((amount, currency))
            return self.approve

    return Payments()


@pytest.fixture
def order_client(db, order_metrics, peer_session, payments):
    app = create_order_app(make_settings(ORDER_SERVICE), db, order_metrics,
                           session=peer_session, payment=payments)
    return TestClient(app)


@pytest.fixture
def registered_user(user_client):
    response = user_client.post(
        "/api/users/register",
        json={"name": "Alice Doe", "email": "alice@shop.io", "password": "s3cret-pass"},
    )
    assert response.status_code == 201
    return {"id": response.json()["userId"], "email": "alice@shop.io", "password": "s3cret-pass"}


@pytest.fixture
def create_product(product_client):
    def _create(name="Laptop", price=10.0, category="electronics", stock=50, **extra):
        response = product_client.post(
            "/api/products",
            json={"name": name, "price": price, "category": category, "stock": stock, **extra},
        )
        assert response.status_code == 201, response.text
        return response.json()["productId"]

    return _create
