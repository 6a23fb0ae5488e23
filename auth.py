"""Authentication utilities."""
from typing import Optional
from fastapi import Depends, Header
from sqlalchemy.orm import Session
import logging

from database import get_db
from errors import Forbidden, Unauthorized
from models import Account
from monitoring import auth_failures_counter, auth_attempts_counter

logger = logging.getLogger(__name__)


def extract_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token of a ``Bearer <token>`` header, or None."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def verify_token(authorization: Optional[str] = Header(None)) -> str:
    """
    Verify the authorization header format.

    Args:
        authorization: Authorization header value

    Returns:
        Bearer token

    Raises:
        Unauthorized: If the header is missing or malformed
    """
    # Record authentication attempt
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    if authorization is None:
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise Unauthorized("Missing authorization header")

    token = extract_token(authorization)
    if token is None:
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format", extra={
            "auth_header": authorization[:20] + "..." if len(authorization) > 20 else authorization
        })
        raise Unauthorized("Invalid authorization header format")

    return token


def get_current_account(
    token: str = Depends(verify_token),
    db: Session = Depends(get_db)
) -> Account:
    """
    Resolve the bearer token against the account directory.

    Raises:
        Unauthorized: If the token is unknown or the account is banned
    """
    account = db.query(Account).filter(Account.api_token == token).first()
    if account is None:
        auth_failures_counter.add(1, {"reason": "invalid_token"})
        logger.warning("Authentication failed: Invalid token", extra={
            "token_prefix": token[:8] + "..." if len(token) > 8 else token
        })
        raise Unauthorized("Invalid token")

    if account.banned:
        auth_failures_counter.add(1, {"reason": "banned"})
        logger.warning("Authentication failed: Account is banned", extra={
            "account_id": account.id
        })
        raise Unauthorized("Account is banned")

    logger.debug("Authentication successful", extra={"account_id": account.id})
    return account


def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """
    Restrict a route to admin accounts.

    Raises:
        Forbidden: If the account isn't an admin
    """
    if not account.is_admin:
        auth_failures_counter.add(1, {"reason": "not_admin"})
        logger.warning("Authorization failed: Admin role required", extra={
            "account_id": account.id
        })
        raise Forbidden("Admin role required")
    return account
