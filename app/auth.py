"""
Authentication utilities for the API usage ledger.

User identity is established upstream; this service trusts the
X-User-ID header set by the gateway. Admin routes require a bearer
token matching ADMIN_API_TOKEN.

Security Considerations:
- Admin tokens are compared in constant time
- Failed admin attempts are logged without the presented value
- No admin token configured means every admin request is refused
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from src.config import get_settings
from src.utils.logging import set_request_context

from .exceptions import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

USER_ID_HEADER = APIKeyHeader(name="X-User-ID", auto_error=False)

ADMIN_BEARER = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> Optional[str]:
    """The caller address, preferring proxy headers over the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


async def get_current_user_id(
    request: Request,
    user_id: Optional[str] = Depends(USER_ID_HEADER),
) -> str:
    """
    Resolve the authenticated user from the X-User-ID header.

    Raises:
        AuthenticationError: If the header is missing or blank
    """
    user_id = (user_id or "").strip()
    if not user_id:
        logger.warning(f"Missing user identity in request from {client_ip(request)}")
        raise AuthenticationError("User identity header is required")

    request.state.user_id = user_id
    set_request_context(user_id=user_id)
    return user_id


@dataclass(frozen=True)
class AdminPrincipal:
    """An authenticated admin caller."""

    admin_id: str


class AdminAuthenticator:
    """
    Decides whether a caller may use the admin routes.

    The admin id is a short fingerprint of the token, stable across
    requests and safe to store in created_by columns.
    """

    def __init__(self, admin_token: Optional[str]):
        self._admin_token = admin_token or None

    @property
    def is_configured(self) -> bool:
        return self._admin_token is not None

    def verify(self, presented: Optional[str]) -> AdminPrincipal:
        """
        Check a presented bearer value.

        Raises:
            AuthenticationError: If nothing was presented
            AuthorizationError: If the value does not match or admin access is disabled
        """
        if not presented:
            raise AuthenticationError("Admin authentication is required")

        if self._admin_token is None:
            logger.warning("Admin request refused: no admin token configured")
            raise AuthorizationError("Admin access is disabled")

        if not hmac.compare_digest(
            presented.encode("utf-8"), self._admin_token.encode("utf-8")
        ):
            raise AuthorizationError("Admin access denied")

        fingerprint = hashlib.sha256(self._admin_token.encode("utf-8")).hexdigest()[:12]
        return AdminPrincipal(admin_id=f"admin-{fingerprint}")


def get_admin_authenticator() -> AdminAuthenticator:
    """Build the authenticator from the current settings."""
    token = get_settings().security.admin_api_token
    return AdminAuthenticator(token.get_secret_value() if token else None)


async def require_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(ADMIN_BEARER),
    authenticator: AdminAuthenticator = Depends(get_admin_authenticator),
) -> AdminPrincipal:
    """
    FastAPI dependency guarding the admin routes.

    Returns:
        The authenticated AdminPrincipal
    """
    presented = credentials.credentials if credentials else None
    try:
        principal = authenticator.verify(presented)
    except (AuthenticationError, AuthorizationError):
        logger.warning(
            f"Rejected admin request to {request.url.path} from {client_ip(request)}"
        )
        raise

    request.state.user_id = principal.admin_id
    set_request_context(user_id=principal.admin_id)
    return principal
