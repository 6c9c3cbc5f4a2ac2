import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

from .clients import PeerClient
from .database import ping
from .metrics import MetricsRegistry

logger = logging.getLogger(__name__)


def check_health(service_name: str, db: Database, metrics: MetricsRegistry,
                 peers: Optional[Mapping[str, PeerClient]] = None,
                 peer_timeout: float = 2.0) -> JSONResponse:
    """
    Ping the database and, when given, each peer's /health.

    Peers only affect the `dependencies` map: the top-level status stays
    "healthy" whenever the database answers.
    """
    try:
        ping(db)
    except PyMongoError as e:
        logger.error("health check: database ping failed: %s", e)
        return JSONResponse(
            status_code=500,
            content={"status": "unhealthy", "service": service_name, "error": str(e)},
        )

    body = {
        "status": "healthy",
        "service": service_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": metrics.uptime(),
        "mongodb": "connected",
    }
    if peers:
        body["dependencies"] = {
            name: client.health(timeout=peer_timeout) for name, client in peers.items()
        }
    return JSONResponse(content=body)
