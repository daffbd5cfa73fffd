"""
Hive - Authentication API
=========================

Operator login. There is a single admin account configured through
settings; workers authenticate with per-run callback tokens instead.
"""

import hmac

import structlog
from fastapi import APIRouter, HTTPException, status
from passlib.hash import bcrypt

from hive.api.deps import CurrentAdmin, create_access_token
from hive.core.config import settings
from hive.core.schemas import LoginRequest, MessageResponse, TokenResponse

router = APIRouter(prefix="/auth", tags=["Authentication"])

logger = structlog.get_logger()


# ==========================================================================
# Helper Functions
# ==========================================================================

def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a hash. An empty or malformed hash never matches."""
    if not password_hash:
        return False
    try:
        return bcrypt.verify(password, password_hash)
    except ValueError:
        logger.error("admin_password_hash_invalid")
        return False


def verify_admin(username: str, password: str) -> bool:
    """Check the operator credentials against the configured bcrypt hash."""
    user_ok = hmac.compare_digest(username.encode(), settings.ADMIN_USERNAME.encode())
    password_ok = verify_password(password, settings.ADMIN_PASSWORD_HASH)
    return user_ok and password_ok


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login and get an access token",
    responses={
        200: {"description": "Login successful"},
        401: {"description": "Invalid credentials"},
    },
)
async def login(data: LoginRequest) -> TokenResponse:
    """
    Authenticate the operator and return a bearer token.

    Wrong username and wrong password return the same 401.
    """
    if not verify_admin(data.username, data.password):
        logger.warning("login_failed", username=data.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.info("login_succeeded", username=data.username)
    return TokenResponse(
        access_token=create_access_token(settings.ADMIN_USERNAME),
        token_type="bearer",
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.get("/me", response_model=MessageResponse, summary="Check the current token")
async def me(admin: CurrentAdmin) -> MessageResponse:
    return MessageResponse(message=f"Authenticated as {admin}")
