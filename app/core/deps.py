"""FastAPI dependencies: the current patient and the process-wide collaborators."""

from typing import Optional
from uuid import UUID
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.user import User
from app.services.audit_service import AuditLogger
from app.services.auth import decode_access_token
from app.services.gateways import GatewayRegistry
from app.services.notification_service import Notifier

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the bearer token's ``sub`` claim to a user. 401 otherwise."""
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not credentials:
        raise unauthorized

    payload = decode_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise unauthorized

    try:
        user_id = UUID(str(payload["sub"]))
    except ValueError:
        raise unauthorized

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise unauthorized
    return user


def get_gateways(request: Request) -> GatewayRegistry:
    return request.app.state.gateways


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_auditor(request: Request) -> AuditLogger:
    return request.app.state.auditor
