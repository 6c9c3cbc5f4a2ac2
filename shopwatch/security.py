from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from passlib.context import CryptContext

TOKEN_ALGORITHM = "HS256"
TOKEN_TTL = timedelta(hours=24)

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_token(user_id: str, email: str, secret: str, now: Optional[datetime] = None) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "email": email,
        "iat": issued,
        "exp": issued + TOKEN_TTL,
    }
    return jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)


def decode_token(token: str, secret: str) -> dict:
    """Verify signature and expiry; raises jwt.InvalidTokenError otherwise."""
    return jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM])
