# shopwatch/settings.py - environment-driven configuration
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
REPO_ROOT = BASE_DIR.parent

USER_SERVICE = "user-service"
PRODUCT_SERVICE = "product-service"
ORDER_SERVICE = "order-service"

DEFAULT_PORTS = {
    USER_SERVICE: 3000,
    PRODUCT_SERVICE: 3001,
    ORDER_SERVICE: 3002,
}


def require_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None or (isinstance(val, str) and val.strip() == ""):
        raise RuntimeError(f"Missing required env var: {name}")
    return val


@dataclass
class Settings:
    service_name: str = USER_SERVICE
    port: int = 3000
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "monitoring"
    jwt_secret: Optional[str] = None
    user_service_url: Optional[str] = None
    product_service_url: Optional[str] = None
    peer_timeout: float = 5.0
    health_timeout: float = 2.0
    payment_success_rate: float = 0.9
    payment_max_delay: float = 2.0
    cache_max_entries: int = 1024
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """
        Build settings from the process environment.

        A `.env` file at the repo root (or `env_file`) is loaded first
        without overriding variables already set.
        """
        load_dotenv(env_file or REPO_ROOT / ".env")

        service_name = os.getenv("SERVICE_NAME", USER_SERVICE)
        settings = cls(
            service_name=service_name,
            port=int(os.getenv("PORT", DEFAULT_PORTS.get(service_name, 3000))),
            mongodb_uri=require_env("MONGODB_URI"),
            mongodb_db=os.getenv("MONGODB_DB", "monitoring"),
            jwt_secret=os.getenv("JWT_SECRET"),
            user_service_url=os.getenv("USER_SERVICE_URL"),
            product_service_url=os.getenv("PRODUCT_SERVICE_URL"),
            peer_timeout=float(os.getenv("PEER_TIMEOUT_SECONDS", "5")),
            health_timeout=float(os.getenv("HEALTH_TIMEOUT_SECONDS", "2")),
            payment_success_rate=float(os.getenv("PAYMENT_SUCCESS_RATE", "0.9")),
            payment_max_delay=float(os.getenv("PAYMENT_MAX_DELAY_SECONDS", "2")),
            cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "1024")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

        # per-service requirements
        if service_name == USER_SERVICE:
            settings.jwt_secret = require_env("JWT_SECRET")
        elif service_name == ORDER_SERVICE:
            settings.user_service_url = require_env("USER_SERVICE_URL").rstrip("/")
            settings.product_service_url = require_env("PRODUCT_SERVICE_URL").rstrip("/")
        return settings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
