# shopwatch/main.py - process entry point: pick the service from SERVICE_NAME and serve it
import logging
import sys

import uvicorn
from fastapi import FastAPI
from pymongo.database import Database
from pymongo.errors import PyMongoError

from .database import ensure_indexes, get_client, ping
from .metrics import ORDER_HTTP_BUCKETS, ORDER_METRICS, PRODUCT_METRICS, USER_METRICS, build_registry
from .orders import create_order_app
from .products import create_product_app
from .settings import ORDER_SERVICE, PRODUCT_SERVICE, USER_SERVICE, Settings, configure_logging
from .users import create_user_app

logger = logging.getLogger("shopwatch")


def build_app(settings: Settings, db: Database) -> FastAPI:
    if settings.service_name == USER_SERVICE:
        metrics = build_registry(settings.service_name, USER_METRICS)
        metrics.set("database_collections_total", None, len(db.list_collection_names()))
        return create_user_app(settings, db, metrics)
    if settings.service_name == PRODUCT_SERVICE:
        return create_product_app(settings, db, build_registry(settings.service_name, PRODUCT_METRICS))
    if settings.service_name == ORDER_SERVICE:
        metrics = build_registry(settings.service_name, ORDER_METRICS, http_buckets=ORDER_HTTP_BUCKETS)
        return create_order_app(settings, db, metrics)
    raise RuntimeError(f"Unknown SERVICE_NAME: {settings.service_name}")


def main() -> None:
    try:
        settings = Settings.from_env()
    except RuntimeError as e:
        configure_logging()
        logger.critical("%s", e)
        sys.exit(1)
    configure_logging(settings.log_level)

    client = get_client(settings.mongodb_uri)
    db = client[settings.mongodb_db]
    try:
        ping(db)
        ensure_indexes(db)
        app = build_app(settings, db)
    except PyMongoError as e:
        logger.critical("MongoDB connection error: %s", e)
        client.close()
        sys.exit(1)
    logger.info("Connected to MongoDB database %s", settings.mongodb_db)

    logger.info("%s listening on port %s", settings.service_name, settings.port)
    logger.info("Metrics available at http://localhost:%s/metrics", settings.port)
    try:
        uvicorn.run(app, host="0.0.0.0", port=settings.port)
    finally:
        logger.info("%s shutting down", settings.service_name)
        client.close()


if __name__ == "__main__":
    main()
