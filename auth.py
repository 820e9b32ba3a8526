"""Authentication and authorization for insight: shared API key or signed role tokens."""
import hmac
import uuid
import logging
import jwt
from pydantic import ValidationError as PydanticValidationError
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from exceptions import AuthenticationError, AuthorizationError
from models import TokenClaims

logger = logging.getLogger("insight.auth")

ADMIN_ROLE = "admin"
TOKEN_ALGORITHM = "HS256"


# Minimum role per exact request path; unlisted paths only need a valid credential
ENDPOINT_ROLES: Dict[str, str] = {
    "/api/metrics": "user",
    "/api/logs": "user",
    "/api/logs/bulk": "user",
    "/api/traces": "user",
    "/api/spans": "user",
    "/api/auth/token": ADMIN_ROLE,
}

PUBLIC_ENDPOINTS = frozenset({"/health", "/api/health"})


def requires_auth(path: str) -> bool:
    """Everything except the health check needs a credential."""
    return path not in PUBLIC_ENDPOINTS


def has_role(role: Optional[str], required: Optional[str]) -> bool:
    if not required:
        return True
    if role == ADMIN_ROLE:
        return True
    return role == required


def issue_token(role: str, secret: str, expires_in: Optional[int] = None) -> Tuple[str, Optional[datetime]]:
    """
    Sign a role token with the server secret.

    Args:
        role: Role claim carried by the token
        secret: HMAC signing secret
        expires_in: Lifetime in seconds; ``None`` issues a token without expiry

    Returns:
        The encoded token and its expiry (or ``None``)
    """
    if not role or not role.strip():
        raise ValueError("role is required to issue a token")

    now = int(datetime.now(timezone.utc).timestamp())
    payload = {
        "role": role.strip(),
        "iat": now,
        "jti": str(uuid.uuid4()),
    }
    expires_at = None
    if expires_in:
        payload["exp"] = now + int(expires_in)
        expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)

    token = jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)
    return token, expires_at


def verify_token(token: str, secret: str) -> TokenClaims:
    """
    Verify a ``<header>.<payload>.<signature>`` token.

    The signature must be the HMAC-SHA256 of ``"<header>.<payload>"`` under
    ``secret`` (compared in constant time), the payload must carry a ``role``
    claim, and a present ``exp`` must not be in the past.

    Raises:
        AuthenticationError: on any malformed, tampered or expired token
    """
    if not token or token.count(".") != 2:
        raise AuthenticationError("Invalid token format")

    try:
        payload = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}")

    role = payload.get("role")
    if not isinstance(role, str) or not role:
        raise AuthenticationError("Invalid token: missing role")

    try:
        return TokenClaims(role=role, exp=payload.get("exp"))
    except PydanticValidationError:
        raise AuthenticationError("Invalid token: bad claims")


class AuthGate:
    """Classifies callers by credential and enforces ENDPOINT_ROLES."""

    def __init__(self, api_key: Optional[str] = None, jwt_secret: Optional[str] = None,
                 endpoint_roles: Optional[Dict[str, str]] = None):
        self.api_key = api_key or None
        self.jwt_secret = jwt_secret or None
        self.endpoint_roles = ENDPOINT_ROLES if endpoint_roles is None else endpoint_roles

        if not self.enabled:
            logger.warning("No API_KEY or JWT_SECRET configured, authentication disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key or self.jwt_secret)

    @staticmethod
    def extract_credential(request) -> Optional[str]:
        """Authorization header (ApiKey/Bearer), then X-API-Key, then ?api_key=."""
        auth_header = request.headers.get("authorization", "")
        for scheme in ("ApiKey ", "Bearer "):
            if auth_header.startswith(scheme):
                value = auth_header[len(scheme):].strip()
                if value:
                    return value

        api_key = request.headers.get("x-api-key")
        if api_key:
            return api_key

        api_key = request.query_params.get("api_key")
        if api_key:
            return api_key

        return None

    def authenticate(self, credential: Optional[str]) -> Tuple[Optional[str], bool]:
        """Resolve a credential to ``(role, ok)``."""
        if not credential:
            return None, False

        if self.api_key and hmac.compare_digest(credential.encode(), self.api_key.encode()):
            return ADMIN_ROLE, True

        if self.jwt_secret and credential.count(".") == 2:
            try:
                claims = verify_token(credential, self.jwt_secret)
            except AuthenticationError as e:
                logger.info(f"Token validation failed: {e.message}")
                return None, False
            return claims.role, True

        return None, False

    def authorize(self, path: str, role: Optional[str]) -> bool:
        return has_role(role, self.endpoint_roles.get(path))

    def check(self, request) -> Optional[str]:
        """
        Authenticate and authorize a request.

        Returns:
            The caller's role, or ``None`` when the gate is disabled

        Raises:
            AuthenticationError: missing or invalid credential
            AuthorizationError: valid credential without the required role
        """
        path = request.url.path
        if not self.enabled:
            return None

        role, ok = self.authenticate(self.extract_credential(request))
        if not ok:
            raise AuthenticationError("Missing or invalid credentials")

        if not self.authorize(path, role):
            required = self.endpoint_roles.get(path)
            raise AuthorizationError(f"Role '{required}' required for {path}")

        return role
