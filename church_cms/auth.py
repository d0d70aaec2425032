"""
Bearer token authentication and role-based authorization.

Supports:
- JWT token generation and verification (HS256 by default)
- Strict (`require_auth`) and lenient (`optional_auth`) request dependencies
- Role gate (`require_roles`) driven only by verified token claims
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional

from fastapi import Depends, Request
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from .constants import AUTH_HEADER, AUTH_SCHEME
from .errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    PASTOR = "pastor"
    MEMBER = "member"
    GUEST = "guest"


class Identity(BaseModel):
    """Caller identity reconstructed from a verified token; never persisted."""
    id: str
    role: Optional[Role] = None


class JWTManager:
    """Manages JWT token generation and validation for API access."""

    def __init__(self, secret: Optional[str], algorithm: str = "HS256", expiry_days: int = 7):
        self.secret = secret
        self.algorithm = algorithm
        self.expiry_days = expiry_days

    def create_token(self, user_id: str, role: Optional[str] = None, expires_in: Optional[timedelta] = None) -> str:
        """Generate a signed token for `user_id` carrying `role`."""
        if not self.secret:
            raise RuntimeError("JWT secret is not configured")
        now = datetime.now(timezone.utc)
        payload = {
            'sub': str(user_id),
            'iat': now,
            'exp': now + (expires_in if expires_in is not None else timedelta(days=self.expiry_days)),
        }
        if role:
            payload['role'] = Role(role).value
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> Identity:
        """Verify signature and expiry, then build the `Identity` from claims."""
        if not self.secret:
            logger.warning("Token presented but no JWT secret is configured")
            raise AuthenticationError("Invalid token", reason=AuthenticationError.INVALID)
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            logger.info("Rejected expired token")
            raise AuthenticationError("Token has expired", reason=AuthenticationError.EXPIRED)
        except JWTError as e:
            logger.debug("JWT verification failed: %s", e)
            raise AuthenticationError("Invalid token", reason=AuthenticationError.INVALID)

        user_id = payload.get('sub')
        if not user_id:
            logger.debug("JWT payload has no subject")
            raise AuthenticationError("Invalid token", reason=AuthenticationError.INVALID)

        role = payload.get('role')
        try:
            role = Role(role) if role else None
        except ValueError:
            logger.debug("JWT payload has unknown role %r", role)
            raise AuthenticationError("Invalid token", reason=AuthenticationError.INVALID)

        return Identity(id=str(user_id), role=role)


def parse_authorization_header(value: Optional[str]) -> Optional[str]:
    """Return the bearer token from an Authorization header value.

    None means the header was absent; anything other than exactly
    ``Bearer <token>`` is malformed.
    """
    if value is None:
        return None
    parts = value.split(' ')
    if len(parts) != 2 or parts[0] != AUTH_SCHEME or not parts[1]:
        raise AuthenticationError(
            "Invalid token format. Use: Bearer <token>",
            reason=AuthenticationError.MALFORMED,
        )
    return parts[1]


def _jwt_manager(request: Request) -> JWTManager:
    return request.app.state.jwt_manager


def _identity_from_request(request: Request) -> Optional[Identity]:
    token = parse_authorization_header(request.headers.get(AUTH_HEADER))
    if token is None:
        return None
    identity = _jwt_manager(request).decode(token)
    logger.debug("Authenticated user %s (role=%s)", identity.id, identity.role)
    return identity


def require_auth(request: Request) -> Identity:
    """Strict: a valid bearer token is mandatory."""
    identity = _identity_from_request(request)
    if identity is None:
        logger.debug("No Authorization header on %s %s", request.method, request.url.path)
        raise AuthenticationError("No token provided", reason=AuthenticationError.MISSING)
    request.state.identity = identity
    return identity


def optional_auth(request: Request) -> Optional[Identity]:
    """Lenient: absent header yields None, a bad header or token is still rejected."""
    identity = _identity_from_request(request)
    request.state.identity = identity
    return identity


def authorize(identity: Optional[Identity], roles: Iterable) -> Identity | None:
    """Allow only identities whose role is in `roles`; an empty set allows anyone."""
    allowed = {Role(r) for r in roles}
    if not allowed:
        return identity
    if identity is None or identity.role is None or identity.role not in allowed:
        logger.info(
            "Authorization denied for %s (role=%s); requires one of %s",
            identity.id if identity else None,
            identity.role.value if identity and identity.role else None,
            sorted(r.value for r in allowed),
        )
        raise AuthorizationError()
    return identity


def require_roles(*roles):
    """Dependency factory: strict authentication followed by the role gate."""
    def _dependency(identity: Identity = Depends(require_auth)) -> Identity:
        return authorize(identity, roles)
    return _dependency


def has_role(identity: Optional[Identity], *roles) -> bool:
    try:
        authorize(identity, roles)
        return True
    except AuthorizationError:
        return False
