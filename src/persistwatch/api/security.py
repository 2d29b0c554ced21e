# API Security - Control token for mutating routes
#
# Starting, stopping, acknowledging, reconfiguring, containing, releasing
# and rolling back all require the control token in the
# X-PersistWatch-Token header. The token is random per server start
# unless PERSISTWATCH_API_TOKEN pins it for scripted clients.

import os
import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

TOKEN_HEADER = "X-PersistWatch-Token"
TOKEN_ENV = "PERSISTWATCH_API_TOKEN"

_control_token: Optional[str] = None


def issue_control_token() -> str:
    """Set the control token for this server instance and return it."""
    global _control_token
    _control_token = os.environ.get(TOKEN_ENV) or secrets.token_urlsafe(32)
    return _control_token


def current_control_token() -> str:
    """
    Raises:
        RuntimeError: before the server has issued a token
    """
    if _control_token is None:
        raise RuntimeError("Control token not issued yet")
    return _control_token


def revoke_control_token() -> None:
    global _control_token
    _control_token = None


async def require_control_token(
    x_persistwatch_token: Optional[str] = Header(None, alias=TOKEN_HEADER),
) -> str:
    """FastAPI dependency guarding every state-changing route.

    503 until the server has started, 401 when the header is missing or
    does not match.
    """
    if _control_token is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Control token not issued yet",
        )
    if not x_persistwatch_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {TOKEN_HEADER} header",
        )
    if not secrets.compare_digest(x_persistwatch_token, _control_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Control token rejected",
        )
    return x_persistwatch_token
