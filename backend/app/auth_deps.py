from __future__ import annotations
import jwt
import structlog
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.security import ADMIN_ROLE, decode_token

security = HTTPBearer()

async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Returns the actor id recorded in the audit log."""
    try:
        data = decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if data.get("type") != "access":
        raise HTTPException(status_code=401, detail="Wrong token type")
    if data.get("role") != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin role required")
    actor = data.get("sub")
    if not actor:
        raise HTTPException(status_code=401, detail="Token has no subject")
    structlog.contextvars.bind_contextvars(actor_id=actor)
    return str(actor)
