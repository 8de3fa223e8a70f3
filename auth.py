import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRY_MINUTES = int(os.getenv("JWT_EXPIRY_MINUTES", 60 * 24))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ROLE_CAPABILITIES = {
    "ADMIN": {"place_order", "manage_catalog", "manage_orders", "manage_users"},
    "CUSTOMER": {"place_order"},
}


class AuthUser(BaseModel):
    id: str
    email: str
    name: str
    role: str = "CUSTOMER"

    def can(self, capability: str) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, set())


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # unknown or malformed hash
        return False


def create_token(data: dict, expires_minutes: int = JWT_EXPIRY_MINUTES) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def token_for(user: dict) -> str:
    return create_token({
        "id": str(user["_id"]),
        "email": user["email"],
        "name": user["name"],
        "role": user.get("role", "CUSTOMER"),
    })


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        return AuthUser(**{
            "id": payload.get("id"),
            "email": payload.get("email"),
            "name": payload.get("name"),
            "role": payload.get("role", "CUSTOMER"),
        })
    except (JWTError, ValidationError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def require_capability(capability: str):
    """Dependency factory: the current user must hold ``capability``."""

    def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if not user.can(capability):
            raise HTTPException(status_code=403, detail="Access denied")
        return user

    return checker
