from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from . import config

if TYPE_CHECKING:
    from .auth_models import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


@dataclass(frozen=True)
class TokenClaims:
    """Identità dell'operatore letta dal token: utente, studio e ruolo."""

    user_id: str
    tenant_id: str
    role: str
    username: str | None = None


def create_access_token(subject: str, extra: dict[str, Any] | None = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload: dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        payload.update(extra)

    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def issue_user_token(user: User) -> str:
    """Token di sessione per un operatore: il tenant viaggia nel token e viene ricontrollato a ogni richiesta."""
    return create_access_token(
        user.id,
        {"tenant_id": user.tenant_id, "role": user.role.value, "username": user.username},
    )


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])


def read_token(token: str) -> TokenClaims | None:
    """None se il token è scaduto, manomesso o privo di utente/tenant."""
    try:
        payload = decode_token(token)
    except JWTError:
        return None

    user_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    if not user_id or not tenant_id:
        return None
    return TokenClaims(
        user_id=user_id,
        tenant_id=tenant_id,
        role=payload.get("role", ""),
        username=payload.get("username"),
    )
