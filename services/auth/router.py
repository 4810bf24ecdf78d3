"""
services/auth/router.py
Credential and Google OAuth2 authentication endpoints.
Implements: Register / Login / OAuth callback → JWT issue → Refresh → Logout
"""

import logging
from datetime import timedelta
from typing import Optional

from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import APIRouter, Body, Cookie, Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import OAuthProvider, RefreshToken, User, UserRole, UserStatus
from shared.schemas.schemas import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    TokenResponse,
    UserProfileResponse,
    UserResponse,
)
from shared.utils.dates import as_utc, utcnow
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    get_token_remaining_ttl,
    hash_password,
    hash_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE_PATH = f"{settings.API_PREFIX}/auth/refresh"

# ── OAuth Setup ───────────────────────────────────────────────
oauth = OAuth()
oauth.register(
    name="google",
    client_id=settings.GOOGLE_CLIENT_ID,
    client_secret=settings.GOOGLE_CLIENT_SECRET,
    server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
    client_kwargs={"scope": "openid email profile"},
    redirect_uri=settings.GOOGLE_REDIRECT_URI,
)


# ── Helpers ───────────────────────────────────────────────────

async def _get_or_create_oauth_user(
    db: AsyncSession,
    oauth_provider: OAuthProvider,
    oauth_id: str,
    email: str,
    name: str,
    image: Optional[str],
) -> User:
    """Get existing user by OAuth ID, link by email, or create a new one."""
    result = await db.execute(
        select(User).where(
            User.oauth_provider == oauth_provider,
            User.oauth_id == oauth_id,
        )
    )
    user = result.scalar_one_or_none()
    if user:
        return user

    result = await db.execute(select(User).where(User.email == email))
    existing = result.scalar_one_or_none()
    if existing:
        # Link this OAuth provider to the credential account
        existing.oauth_provider = oauth_provider
        existing.oauth_id = oauth_id
        existing.image = existing.image or image
        existing.email_verified = True
        return existing

    user = User(
        oauth_provider=oauth_provider,
        oauth_id=oauth_id,
        email=email,
        name=(name or email.split("@")[0])[:50],
        image=image,
        role=UserRole.USER,
        email_verified=True,
    )
    db.add(user)
    await db.flush()
    logger.info(f"New OAuth user {user.email} via {oauth_provider.value}")
    return user


async def _issue_tokens(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Request,
) -> tuple[str, str]:
    """Issue access + refresh tokens. Store refresh token in DB and set cookie."""
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=user.role.value,
        email=user.email,
    )

    raw_refresh, hashed_refresh = create_refresh_token()
    db.add(
        RefreshToken(
            user_id=user.id,
            token_hash=hashed_refresh,
            expires_at=utcnow() + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
            user_agent=(request.headers.get("user-agent") or "")[:500] or None,
            ip_address=request.client.host if request.client else None,
        )
    )

    # httpOnly cookie for web clients
    response.set_cookie(
        key="refresh_token",
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path=REFRESH_COOKIE_PATH,
    )
    return access_token, raw_refresh


def _auth_response(user: User, access_token: str, raw_refresh: str) -> AuthResponse:
    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


def _is_locked(user: User) -> bool:
    return bool(user.lock_until) and as_utc(user.lock_until) > utcnow()


def _register_failed_login(user: User) -> None:
    """Count a bad password; lock the account once the limit is reached."""
    if user.lock_until and not _is_locked(user):
        # Previous lock expired, start counting again
        user.login_attempts = 0
        user.lock_until = None
    user.login_attempts = (user.login_attempts or 0) + 1
    if user.login_attempts >= settings.MAX_LOGIN_ATTEMPTS:
        user.lock_until = utcnow() + timedelta(hours=settings.ACCOUNT_LOCK_HOURS)
        logger.warning(f"Account {user.email} locked after {user.login_attempts} failed logins")


# ── Credential Endpoints ──────────────────────────────────────

@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register with email and password",
)
async def register(
    data: RegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    existing = await db.scalar(select(User.id).where(User.email == data.email))
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already exists with this email",
        )

    user = User(
        email=data.email,
        name=data.name,
        password_hash=hash_password(data.password),
        oauth_provider=OAuthProvider.CREDENTIALS,
        role=UserRole.USER,
        last_login=utcnow(),
    )
    db.add(user)
    await db.flush()

    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()

    logger.info(f"User registered: {user.email}")
    return _auth_response(user, access_token, raw_refresh)


@router.post("/login", response_model=AuthResponse, summary="Login with email and password")
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(User).where(User.email == data.email, User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()

    if not user or not user.password_hash:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if _is_locked(user):
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail="Account temporarily locked due to too many failed login attempts",
        )

    if not verify_password(data.password, user.password_hash):
        _register_failed_login(user)
        await db.commit()
        if _is_locked(user):
            raise HTTPException(
                status_code=status.HTTP_423_LOCKED,
                detail="Account temporarily locked due to too many failed login attempts",
            )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if user.status != UserStatus.ACTIVE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Account is {user.status.value}",
        )

    user.login_attempts = 0
    user.lock_until = None
    user.last_login = utcnow()

    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()

    return _auth_response(user, access_token, raw_refresh)


# ── OAuth Endpoints ───────────────────────────────────────────

@router.get("/google", summary="Initiate Google OAuth2 login")
async def google_login(request: Request):
    """
    Redirects the user to Google's OAuth2 consent page.
    The client should open this URL in a browser/webview.
    """
    return await oauth.google.authorize_redirect(request, settings.GOOGLE_REDIRECT_URI)


@router.get("/google/callback", response_model=AuthResponse, summary="Google OAuth2 callback")
async def google_callback(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Handles Google OAuth2 callback. Issues JWT access token + refresh token."""
    try:
        token = await oauth.google.authorize_access_token(request)
    except OAuthError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {e.error}",
        )
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("email"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not fetch user info from Google",
        )

    user = await _get_or_create_oauth_user(
        db=db,
        oauth_provider=OAuthProvider.GOOGLE,
        oauth_id=userinfo["sub"],
        email=userinfo["email"].lower(),
        name=userinfo.get("name", ""),
        image=userinfo.get("picture"),
    )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Account is {user.status.value}",
        )
    user.last_login = utcnow()

    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()

    return _auth_response(user, access_token, raw_refresh)


# ── Token Lifecycle ───────────────────────────────────────────

@router.post("/refresh", response_model=TokenResponse, summary="Refresh access token")
async def refresh_token(
    request: Request,
    response: Response,
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    refresh_token_body: Optional[str] = Body(None, alias="refresh_token", embed=True),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token (cookie for web,
    body for mobile). Implements rotation: the old token is revoked.
    """
    raw_token = refresh_token_cookie or refresh_token_body
    if not raw_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token required",
        )

    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(raw_token),
            RefreshToken.is_revoked.is_(False),
        )
    )
    db_token = result.scalar_one_or_none()
    if not db_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or revoked refresh token",
        )
    if as_utc(db_token.expires_at) < utcnow():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token expired",
        )

    user = await db.get(User, db_token.user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    db_token.is_revoked = True
    access_token, _ = await _issue_tokens(user, db, response, request)
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    response: Response,
    token_data: TokenData = Depends(get_token_data),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Deny-list the access token in Redis, revoke the refresh token, clear the cookie."""
    ttl = get_token_remaining_ttl(token_data.payload)
    if ttl > 0:
        await RedisCache(redis).revoke_token(token_data.jti, ttl)

    if refresh_token_cookie:
        result = await db.execute(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(refresh_token_cookie))
        )
        db_token = result.scalar_one_or_none()
        if db_token:
            db_token.is_revoked = True

    response.delete_cookie(key="refresh_token", path=REFRESH_COOKIE_PATH)
    await db.commit()

    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserProfileResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    return UserProfileResponse.model_validate(current_user)
