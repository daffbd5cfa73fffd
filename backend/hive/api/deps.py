"""
Hive - API Dependencies
=======================

Shared dependencies for FastAPI endpoints.
"""

import secrets
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from hive.core.config import settings
from hive.core.database import get_db
from hive.core.pipeline.dispatch import AgentDispatcher, create_dispatcher
from hive.core.pipeline.errors import (
    DispatchError,
    DuplicateProjectError,
    HiveError,
    InvalidTaskError,
    InvalidTransitionError,
    ProjectNotEmptyError,
    ProjectNotFoundError,
    RunConflictError,
    RunNotFoundError,
    TaskNotFoundError,
)
from hive.core.pipeline.orchestrator import PipelineOrchestrator


# ==========================================================================
# Security
# ==========================================================================

security = HTTPBearer(auto_error=False)


# ==========================================================================
# Token Utilities
# ==========================================================================

def create_access_token(
    subject: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a new access token.

    Args:
        subject: Username the token is issued to
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
        "jti": secrets.token_hex(16),  # Unique token identifier
    }

    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def _admin_from_credentials(credentials: HTTPAuthorizationCredentials) -> str:
    payload = decode_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.get("sub") != settings.ADMIN_USERNAME:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return payload["sub"]


# ==========================================================================
# Auth Dependencies
# ==========================================================================

async def get_current_admin(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> str:
    """
    Get the authenticated operator.

    Returns:
        Admin username

    Raises:
        HTTPException: If not authenticated
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _admin_from_credentials(credentials)


async def get_callback_token(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    token: Annotated[Optional[str], Query(description="Callback token of the run")] = None,
) -> Optional[str]:
    """
    Authenticate a worker callback.

    Workers pass the run's callback token from their instructions; it is
    checked against the outstanding run by the orchestrator. Operators may
    call the same endpoints with their bearer token instead, in which case
    None is returned and no run binding applies.
    """
    if token:
        return token
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Callback token or admin token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    _admin_from_credentials(credentials)
    return None


# ==========================================================================
# Pipeline Dependencies
# ==========================================================================

async def get_dispatcher() -> AsyncGenerator[AgentDispatcher, None]:
    """Dispatcher for one request, closed afterwards."""
    dispatcher = create_dispatcher(settings)
    try:
        yield dispatcher
    finally:
        await dispatcher.close()


async def get_orchestrator(
    db: Annotated[AsyncSession, Depends(get_db)],
    dispatcher: Annotated[AgentDispatcher, Depends(get_dispatcher)],
) -> PipelineOrchestrator:
    return PipelineOrchestrator(db, dispatcher, settings)


# ==========================================================================
# Error Mapping
# ==========================================================================

def http_error(exc: HiveError) -> HTTPException:
    """Translate an orchestrator error into an HTTP error."""
    if isinstance(exc, (TaskNotFoundError, ProjectNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(
        exc,
        (
            RunNotFoundError,
            RunConflictError,
            InvalidTransitionError,
            ProjectNotEmptyError,
            DuplicateProjectError,
        ),
    ):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, InvalidTaskError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, DispatchError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

# Use these in endpoint signatures for cleaner code
CurrentAdmin = Annotated[str, Depends(get_current_admin)]
CallbackToken = Annotated[Optional[str], Depends(get_callback_token)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]
