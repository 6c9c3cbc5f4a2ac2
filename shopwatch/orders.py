# shopwatch/orders.py - order-service: order saga, listing, analytics
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import requests
from fastapi import FastAPI, Query
from pymongo.database import Database
from pymongo.errors import PyMongoError

from .app import create_app, refresh_connection_gauges
from .clients import PeerClient
from .database import ORDERS, create_document, get_documents, now, parse_object_id, serialize
from .errors import InsufficientStock, NotFound, UpstreamError, ValidationError
from .metrics import ORDER_HTTP_BUCKETS, ORDER_METRICS, MetricsRegistry, build_registry
from .payments import PaymentProcessor, simulated_processor
from .schemas import VALID_STATUSES, CreateOrderRequest, Order, OrderItem, OrderStatus, StatusUpdateRequest
from .settings import ORDER_SERVICE, Settings

logger = logging.getLogger(__name__)

CURRENCY = "USD"
REVENUE_STATUSES = [OrderStatus.DELIVERED.value, OrderStatus.SHIPPED.value]


def refresh_pending_orders(db: Database, metrics: MetricsRegistry) -> None:
    pending = db[ORDERS].count_documents({"status": OrderStatus.PENDING.value})
    metrics.set("pending_orders", None, pending)


class OrderService:
    def __init__(self, db: Database, metrics: MetricsRegistry, users: PeerClient,
                 products: PeerClient, payment: PaymentProcessor):
        self.db = db
        self.collection = db[ORDERS]
        self.metrics = metrics
        self.users = users
        self.products = products
        self.payment = payment

    def _timer(self, operation: str):
        return self.metrics.time("database_query_duration_seconds",
                                 {"operation": operation, "collection": ORDERS})

    def create(self, payload: CreateOrderRequest) -> dict:
        """
        Place an order.

        Steps run in sequence: fetch the user, fetch and check every product,
        charge the payment, store the order as pending, then ask the product
        service to decrement stock for each item. Any failure before the
        insert aborts without writing anything. Stock decrement failures
        after the insert are only logged; the order stays in place.
        """
        started = time.perf_counter()

        self.users.get_user(payload.user_id)

        items = []
        total = 0.0
        for item in payload.items:
            product = self.products.get_product(item.product_id)
            available = product.get("stock", 0)
            if available < item.quantity:
                raise InsufficientStock(
                    f"Insufficient stock for product {product.get('name')}",
                    available=available,
                    requested=item.quantity,
                    productId=item.product_id,
                )
            price = float(product.get("price", 0))
            subtotal = round(price * item.quantity, 2)
            total = round(total + subtotal, 2)
            items.append(OrderItem(
                product_id=item.product_id,
                name=product.get("name", ""),
                price=price,
                quantity=item.quantity,
                subtotal=subtotal,
            ))

        if not self.payment(total, CURRENCY):
            self.metrics.inc("orders_failed_total")
            raise UpstreamError("Payment processing failed")

        order = Order(
            user_id=payload.user_id,
            items=items,
            total_amount=total,
            currency=CURRENCY,
            shipping_address=payload.shipping_address or {},
            payment_method=payload.payment_method or "credit_card",
        ).model_dump(by_alias=True, mode="json")
        order["userId"] = parse_object_id(payload.user_id) or payload.user_id

        try:
            with self._timer("insert"):
                order_id = create_document(self.db, ORDERS, order)
        except PyMongoError:
            self.metrics.inc("orders_failed_total")
            raise

        for item in payload.items:
            try:
                self.products.adjust_stock(item.product_id, -item.quantity)
            except UpstreamError as e:
                # no rollback: the order is already stored
                logger.error("Failed to update stock for product %s (order %s): %s",
                             item.product_id, order_id, e)

        self.metrics.observe("order_processing_time_seconds", {"type": "creation"},
                             time.perf_counter() - started)
        self.metrics.inc("orders_created_total", {"status": OrderStatus.PENDING.value})
        self.metrics.inc("revenue_total", {"currency": CURRENCY}, total)
        logger.info("order %s created for user %s, total %.2f", order_id, payload.user_id, total)
        return serialize(order)

    def list(self, user_id: Optional[str], status: Optional[str], page: int, limit: int) -> dict:
        query = {}
        if user_id:
            oid = parse_object_id(user_id)
            if oid is None:
                raise ValidationError(f"Invalid userId: {user_id}")
            query["userId"] = oid
        if status:
            query["status"] = status

        with self._timer("find"):
            orders = get_documents(self.db, ORDERS, query, sort=[("createdAt", -1), ("_id", -1)],
                                   skip=(page - 1) * limit, limit=limit)
            total = self.collection.count_documents(query)

        return {
            "data": serialize(orders),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }

    def get(self, order_id: str) -> dict:
        oid = parse_object_id(order_id)
        with self._timer("findOne"):
            order = self.collection.find_one({"_id": oid}) if oid else None
        if order is None:
            raise NotFound("Order not found")
        return serialize(order)

    def update_status(self, order_id: str, status) -> None:
        if status not in VALID_STATUSES:
            raise ValidationError("Invalid status", validStatuses=VALID_STATUSES)
        oid = parse_object_id(order_id)
        if oid is None:
            raise NotFound("Order not found")

        with self._timer("update"):
            result = self.collection.update_one(
                {"_id": oid}, {"$set": {"status": status, "updatedAt": now()}}
            )
        if result.matched_count == 0:
            raise NotFound("Order not found")

        if status == OrderStatus.DELIVERED.value:
            self.metrics.inc("orders_completed_total")

    def revenue(self, days: int) -> List[dict]:
        # naive UTC, the form the server stores dates in
        start = (datetime.now(timezone.utc) - timedelta(days=days)).replace(tzinfo=None)
        pipeline = [
            {"$match": {"createdAt": {"$gte": start}, "status": {"$in": REVENUE_STATUSES}}},
            {
                "$group": {
                    "_id": {"date": {"$dateToString": {"format": "%Y-%m-%d", "date": "$createdAt"}}},
                    "totalRevenue": {"$sum": "$totalAmount"},
                    "orderCount": {"$sum": 1},
                    "averageOrderValue": {"$avg": "$totalAmount"},
                }
            },
            {"$sort": {"_id.date": 1}},
        ]
        with self._timer("aggregate"):
            return serialize(list(self.collection.aggregate(pipeline)))

    def top_products(self, limit: int = 10) -> List[dict]:
        pipeline = [
            {"$unwind": "$items"},
            {
                "$group": {
                    "_id": "$items.productId",
                    "productName": {"$first": "$items.name"},
                    "totalQuantity": {"$sum": "$items.quantity"},
                    "totalRevenue": {"$sum": "$items.subtotal"},
                    "orderCount": {"$sum": 1},
                }
            },
            {"$sort": {"totalRevenue": -1}},
            {"$limit": limit},
        ]
        with self._timer("aggregate"):
            return serialize(list(self.collection.aggregate(pipeline)))


def create_order_app(settings: Settings, db: Database, metrics: Optional[MetricsRegistry] = None,
                     session: Optional[requests.Session] = None,
                     payment: Optional[PaymentProcessor] = None) -> FastAPI:
    metrics = metrics or build_registry(settings.service_name or ORDER_SERVICE, ORDER_METRICS,
                                        http_buckets=ORDER_HTTP_BUCKETS)
    session = session or requests.Session()
    users = PeerClient(settings.user_service_url, "user-service", metrics,
                       timeout=settings.peer_timeout, session=session)
    products = PeerClient(settings.product_service_url, "product-service", metrics,
                          timeout=settings.peer_timeout, session=session)
    payment = payment or simulated_processor(settings.payment_success_rate, settings.payment_max_delay)

    app = create_app(
        settings.service_name,
        db,
        metrics,
        peers={"userService": users, "productService": products},
        health_timeout=settings.health_timeout,
        refreshers=(refresh_connection_gauges, refresh_pending_orders),
    )
    service = OrderService(db, metrics, users, products, payment)
    app.state.orders = service

    @app.post("/api/orders", status_code=201)
    def create_order(payload: CreateOrderRequest):
        order = service.create(payload)
        return {
            "success": True,
            "message": "Order created successfully",
            "orderId": order["_id"],
            "order": order,
        }

    @app.get("/api/orders")
    def list_orders(
        userId: Optional[str] = None,
        status: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
    ):
        return {"success": True, **service.list(userId, status, page, limit)}

    @app.get("/api/orders/analytics/revenue")
    def revenue(days: int = Query(30, ge=1, le=365)):
        return {
            "success": True,
            "data": service.revenue(days),
            "period": f"{days} days",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/orders/analytics/top-products")
    def top_products():
        return {
            "success": True,
            "data": service.top_products(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/orders/{order_id}")
    def get_order(order_id: str):
        return {"success": True, "data": service.get(order_id)}

    @app.put("/api/orders/{order_id}/status")
    def update_status(order_id: str, payload: StatusUpdateRequest):
        service.update_status(order_id, payload.status)
        return {"success": True, "message": f"Order status updated to {payload.status}"}

    return app
