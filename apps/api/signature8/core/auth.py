from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from signature8.core.config import get_settings


@dataclass
class AuthUser:
    user_id: str
    email: str | None
    role: str
    name: str | None


ANONYMOUS = AuthUser(user_id="anonymous", email=None, role="guest", name=None)


def extract_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer ") :]
    return request.cookies.get("token", "")


def decode_token(token: str) -> dict[str, Any] | None:
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def issue_token(user_id: str, email: str | None, role: str, name: str | None) -> str:
    settings = get_settings()
    claims = {"userId": user_id, "email": email, "role": role, "name": name}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_token(extract_token(request))
    if payload is None or not payload.get("userId"):
        return ANONYMOUS

    user = AuthUser(
        user_id=str(payload["userId"]),
        email=payload.get("email"),
        role=str(payload.get("role") or "guest"),
        name=payload.get("name"),
    )
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.user_id
        context.user_role = user.role
    return user
