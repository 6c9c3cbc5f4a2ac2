# shopwatch/products.py - product-service: catalog, stock, purchases
import math
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Query
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from .app import create_app
from .cache import Cache, TTLCache
from .database import PRODUCTS, create_document, get_documents, now, parse_object_id, serialize
from .errors import InsufficientStock, NotFound, ValidationError
from .metrics import PRODUCT_METRICS, MetricsRegistry, build_registry
from .schemas import CreateProductRequest, Product, PurchaseRequest, StockUpdateRequest
from .settings import PRODUCT_SERVICE, Settings


LIST_TTL_MS = 30 * 1000
PRODUCT_TTL_MS = 30 * 1000
SORT_FIELDS = ("name", "price", "stock", "category", "createdAt")


class ProductService:
    def __init__(self, db: Database, cache: Cache, metrics: MetricsRegistry):
        self.db = db
        self.collection = db[PRODUCTS]
        self.cache = cache
        self.metrics = metrics

    def _timer(self, operation: str):
        return self.metrics.time("database_query_duration_seconds",
                                 {"operation": operation, "collection": PRODUCTS})

    def _object_id(self, product_id: str):
        oid = parse_object_id(product_id)
        if oid is None:
            raise NotFound("Product not found")
        return oid

    def create(self, payload: CreateProductRequest) -> dict:
        doc = Product(**payload.model_dump()).model_dump(by_alias=True, mode="json")
        with self._timer("insert"):
            create_document(self.db, PRODUCTS, doc)

        self.metrics.inc("products_created_total", {"category": payload.category})
        self.cache.clear()
        return serialize(doc)

    def list(self, category: Optional[str], page: int, limit: int, sort: str, order: str) -> dict:
        if sort not in SORT_FIELDS:
            raise ValidationError(f"Invalid sort field: {sort}", validSortFields=list(SORT_FIELDS))

        with self._timer("find"):
            cache_key = f"products:{category or 'all'}:page:{page}:limit:{limit}:sort:{sort}:order:{order}"
            cached = self.cache.get(cache_key)
            if cached is None:
                query = {"category": category} if category else {}
                direction = DESCENDING if order == "desc" else ASCENDING
                products = get_documents(self.db, PRODUCTS, query, sort=[(sort, direction), ("_id", ASCENDING)],
                                         skip=(page - 1) * limit, limit=limit)
                total = self.collection.count_documents(query)
                cached = {"products": serialize(products), "total": total}
                self.cache.set(cache_key, cached, LIST_TTL_MS)

        products = cached["products"]
        if products:
            self.metrics.inc("products_viewed_total", amount=len(products))
        total = cached["total"]
        return {
            "data": products,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }

    def get(self, product_id: str) -> dict:
        with self._timer("findOne"):
            cache_key = f"product:{product_id}"
            product = self.cache.get(cache_key)
            if product is None:
                doc = self.collection.find_one({"_id": self._object_id(product_id)})
                if doc is None:
                    raise NotFound("Product not found")
                product = serialize(doc)
                self.cache.set(cache_key, product, PRODUCT_TTL_MS)

        self.metrics.inc("products_viewed_total")
        return product

    def _missing_or_short(self, oid, requested: int):
        current = self.collection.find_one({"_id": oid}, {"stock": 1, "name": 1})
        if current is None:
            return NotFound("Product not found")
        return InsufficientStock(available=current.get("stock", 0), requested=requested)

    def adjust_stock(self, product_id: str, delta: int) -> int:
        """Add a signed delta to stock; a decrement only applies if stock stays >= 0."""
        oid = self._object_id(product_id)
        guard = {"_id": oid}
        if delta < 0:
            guard["stock"] = {"$gte": -delta}

        with self._timer("update"):
            updated = self.collection.find_one_and_update(
                guard,
                {"$inc": {"stock": delta}, "$set": {"updatedAt": now()}},
                projection={"stock": 1},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise self._missing_or_short(oid, -delta)

        self.metrics.inc("stock_updates_total")
        self.cache.clear()
        return updated["stock"]

    def purchase(self, product_id: str, quantity: int) -> dict:
        oid = self._object_id(product_id)
        with self._timer("update"):
            # compare-and-decrement in a single round trip
            updated = self.collection.find_one_and_update(
                {"_id": oid, "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updatedAt": now()}},
                projection={"stock": 1, "category": 1},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise self._missing_or_short(oid, quantity)

        self.metrics.inc("products_purchased_total", {"category": updated.get("category", "unknown")})
        self.metrics.inc("stock_updates_total")
        self.cache.clear()
        return {"productId": product_id, "quantity": quantity, "remainingStock": updated["stock"]}

    def summary(self) -> List[dict]:
        pipeline = [
            {
                "$group": {
                    "_id": "$category",
                    "totalProducts": {"$sum": 1},
                    "totalStock": {"$sum": "$stock"},
                    "averagePrice": {"$avg": "$price"},
                    "maxPrice": {"$max": "$price"},
                    "minPrice": {"$min": "$price"},
                }
            },
            {"$sort": {"totalProducts": -1, "_id": 1}},
        ]
        with self._timer("aggregate"):
            return serialize(list(self.collection.aggregate(pipeline)))


def create_product_app(settings: Settings, db: Database, metrics: Optional[MetricsRegistry] = None,
                       cache: Optional[Cache] = None) -> FastAPI:
    metrics = metrics or build_registry(settings.service_name or PRODUCT_SERVICE, PRODUCT_METRICS)
    cache = cache if cache is not None else TTLCache(metrics, max_entries=settings.cache_max_entries)
    app = create_app(settings.service_name, db, metrics, cache, health_timeout=settings.health_timeout)
    service = ProductService(db, cache, metrics)
    app.state.products = service

    @app.get("/api/products")
    def list_products(
        category: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        sort: str = "name",
        order: str = Query("asc", pattern="^(asc|desc)$"),
    ):
        return {"success": True, **service.list(category, page, limit, sort, order)}

    @app.post("/api/products", status_code=201)
    def create_product(payload: CreateProductRequest):
        product = service.create(payload)
        return {
            "success": True,
            "message": "Product created successfully",
            "productId": product["_id"],
            "product": product,
        }

    @app.get("/api/products/analytics/summary")
    def analytics_summary():
        return {
            "success": True,
            "data": service.summary(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/products/{product_id}")
    def get_product(product_id: str):
        return {"success": True, "data": service.get(product_id)}

    @app.put("/api/products/{product_id}/stock")
    def update_stock(product_id: str, payload: StockUpdateRequest):
        stock = service.adjust_stock(product_id, payload.quantity)
        return {"success": True, "message": "Stock updated successfully", "stock": stock}

    @app.post("/api/products/{product_id}/purchase")
    def purchase(product_id: str, payload: Optional[PurchaseRequest] = None):
        quantity = payload.quantity if payload else 1
        return {"success": True, "message": "Purchase successful", **service.purchase(product_id, quantity)}

    return app
