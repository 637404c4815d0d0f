"""
Caller identity: JWT decoding and FastAPI dependencies.

Sessions are issued by the external auth provider; this module only
verifies the signed token and exposes the caller as an ``Actor``.
"""

import os
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt

from marketplace.models.schemas import Actor, Role

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24


def _secret() -> str:
    return os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")


def create_token(user_id: str, role: str, name: str | None = None) -> str:
    """Issue a token valid for 24 hours."""
    if role not in Role.ALL:
        raise ValueError(f"Rol desconocido: {role}")
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {"sub": user_id, "role": role, "exp": expire}
    if name:
        payload["name"] = name
    return jwt.encode(payload, _secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Actor:
    """
    Decode and validate a token.

    Raises:
        ValueError: the token is invalid, expired or lacks identity claims.
    """
    try:
        payload = jwt.decode(token, _secret(), algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"Token inválido: {e}")

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in Role.ALL:
        raise ValueError("El token no contiene la identidad del usuario")
    return Actor(user_id=user_id, role=role, name=payload.get("name"))


def get_current_actor(request: Request) -> Actor:
    """
    FastAPI dependency: read the JWT from the Authorization header (Bearer)
    or the ``token`` cookie.

    Raises:
        HTTPException(401): token missing or invalid.
    """
    token = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]

    if not token:
        token = request.cookies.get("token")

    if not token:
        raise HTTPException(status_code=401, detail="No se proporcionó token de autenticación")

    try:
        return verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="Token inválido o expirado")


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """FastAPI dependency: only the platform admin passes."""
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Acceso restringido a administradores")
    return actor
