from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import jwt
from typing import Optional
from fastapi import Request
from .core_settings import get_settings
from .domain.enums import Role
from .domain.errors import Unauthorized, Forbidden
from shared.core import set_request_context

settings = get_settings()

BEARER_PREFIX = "Bearer "

@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """The caller of an operation, passed explicitly into every service entry point."""
    id: str
    role: Role
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

def create_access_token(
    subject: str,
    role: Role = Role.CUSTOMER,
    name: Optional[str] = None,
    email: Optional[str] = None,
    expires_minutes: int = 60,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": Role(role).value,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if name:
        payload["name"] = name
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)

def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.PyJWTError:
        return None

def principal_from_claims(claims: dict) -> Optional[AuthenticatedPrincipal]:
    try:
        role = Role(claims.get("role", ""))
    except ValueError:
        return None
    subject = claims.get("sub")
    if not subject:
        return None
    return AuthenticatedPrincipal(
        id=str(subject), role=role, name=claims.get("name"), email=claims.get("email")
    )

def get_principal(request: Request) -> AuthenticatedPrincipal:
    """FastAPI dependency resolving the bearer token into a principal."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise Unauthorized("Missing token")
    claims = decode_access_token(auth_header.split(" ", 1)[1])
    if not claims:
        raise Unauthorized("Invalid token")
    principal = principal_from_claims(claims)
    if principal is None:
        raise Unauthorized("Invalid token")
    set_request_context(user_id=principal.id)
    return principal

def require_roles(principal: AuthenticatedPrincipal, *roles: Role) -> AuthenticatedPrincipal:
    if principal.role not in roles:
        raise Forbidden()
    return principal
