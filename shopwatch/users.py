# shopwatch/users.py - user-service: registration, login, listing
import logging
import math
import random
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .app import create_app
from .cache import Cache, TTLCache
from .database import USERS, create_document, get_documents, parse_object_id, serialize
from .errors import Conflict, NotFound, Unauthorized
from .metrics import USER_METRICS, MetricsRegistry, build_registry
from .schemas import LoginRequest, RegisterRequest, User
from .security import create_token, hash_password, verify_password
from .settings import USER_SERVICE, Settings

logger = logging.getLogger(__name__)

LOGIN_TTL_MS = 5 * 60 * 1000
USER_TTL_MS = 2 * 60 * 1000
LIST_TTL_MS = 60 * 1000
MAX_SLOW_DELAY = 30.0

# never returned to callers
HIDDEN_FIELDS = {"passwordHash": 0}


class UserService:
    def __init__(self, db: Database, cache: Cache, metrics: MetricsRegistry, jwt_secret: str):
        self.collection = db[USERS]
        self.db = db
        self.cache = cache
        self.metrics = metrics
        self.jwt_secret = jwt_secret

    def _timer(self, operation: str):
        return self.metrics.time("database_query_duration_seconds",
                                 {"operation": operation, "collection": USERS})

    def register(self, payload: RegisterRequest) -> str:
        with self._timer("insert"):
            if self.collection.find_one({"email": payload.email}, {"_id": 1}):
                raise Conflict("User already exists")
            user_doc = User(
                name=payload.name,
                email=payload.email,
                password_hash=hash_password(payload.password),
            )
            try:
                uid = create_document(self.db, USERS, user_doc)
            except DuplicateKeyError:
                # lost a race against a concurrent registration
                raise Conflict("User already exists")

        self.metrics.inc("user_registrations_total")
        self.cache.clear()
        logger.info("registered user %s", uid)
        return uid

    def login(self, email: str, password: str) -> dict:
        with self._timer("find"):
            cache_key = f"user:email:{email}"
            user = self.cache.get(cache_key)
            if user is None:
                user = self.collection.find_one({"email": email})
                if user:
                    self.cache.set(cache_key, user, LOGIN_TTL_MS)

        # same answer for unknown email and wrong password
        if not user or not verify_password(password, user.get("passwordHash", "")):
            self.metrics.inc("user_logins_failed_total")
            raise Unauthorized()

        user_id = str(user["_id"])
        token = create_token(user_id, user["email"], self.jwt_secret)
        self.metrics.inc("user_logins_total")
        return {
            "token": token,
            "user": {"id": user_id, "name": user.get("name"), "email": user["email"]},
        }

    def list(self, page: int, limit: int) -> dict:
        with self._timer("find"):
            cache_key = f"users:page:{page}:limit:{limit}"
            cached = self.cache.get(cache_key)
            if cached is None:
                skip = (page - 1) * limit
                users = get_documents(self.db, USERS, projection=HIDDEN_FIELDS, skip=skip, limit=limit)
                total = self.collection.count_documents({})
                cached = {"users": serialize(users), "total": total}
                self.cache.set(cache_key, cached, LIST_TTL_MS)

        total = cached["total"]
        return {
            "data": cached["users"],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }

    def get(self, user_id: str) -> dict:
        with self._timer("findOne"):
            cache_key = f"user:{user_id}"
            user = self.cache.get(cache_key)
            if user is None:
                oid = parse_object_id(user_id)
                doc = self.collection.find_one({"_id": oid}, HIDDEN_FIELDS) if oid else None
                if doc is None:
                    raise NotFound("User not found")
                user = serialize(doc)
                self.cache.set(cache_key, user, USER_TTL_MS)
        return user


def create_user_app(settings: Settings, db: Database, metrics: Optional[MetricsRegistry] = None,
                    cache: Optional[Cache] = None, rng: Optional[random.Random] = None) -> FastAPI:
    metrics = metrics or build_registry(settings.service_name or USER_SERVICE, USER_METRICS)
    cache = cache if cache is not None else TTLCache(metrics, max_entries=settings.cache_max_entries)
    app = create_app(settings.service_name, db, metrics, cache, health_timeout=settings.health_timeout)
    service = UserService(db, cache, metrics, settings.jwt_secret)
    app.state.users = service
    rng = rng or random.Random()

    @app.post("/api/users/register", status_code=201)
    def register(payload: RegisterRequest):
        uid = service.register(payload)
        return {"success": True, "message": "User registered successfully", "userId": uid}

    @app.post("/api/users/login")
    def login(payload: LoginRequest):
        return {"success": True, **service.login(payload.email, payload.password)}

    @app.get("/api/users")
    def list_users(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)):
        return {"success": True, **service.list(page, limit)}

    # Failure injection for exercising alerts
    @app.get("/api/users/simulate/error")
    def simulate_error(rate: float = Query(0.5, ge=0, le=1)):
        timestamp = datetime.now(timezone.utc).isoformat()
        if rng.random() < rate:
            return JSONResponse(status_code=500, content={"error": "Simulated server error",
                                                          "timestamp": timestamp})
        return {"message": "Request successful", "timestamp": timestamp}

    @app.get("/api/users/simulate/slow")
    def simulate_slow(delay: float = Query(3, ge=0, le=MAX_SLOW_DELAY)):
        time.sleep(delay)
        return {
            "message": "Slow request completed",
            "delay": delay,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/users/{user_id}")
    def get_user(user_id: str):
        return {"success": True, "data": service.get(user_id)}

    return app
