"""
Authentication utilities for LifeScanner
Password hashing, signed tokens backed by session rows, and request guards
"""

from fastapi import Request, HTTPException, Depends, status
from fastapi.responses import RedirectResponse
from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession
import json
import uuid
import logging

from lifescanner.config import settings
from lifescanner.database import get_async_session
from lifescanner.models import User, UserPreference, AuthSession, Profile, utc_now

logger = logging.getLogger(__name__)

# Password hashing
pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds
)

PROTECTED_PAGES = ["/", "/profile", "/export"]
AUTH_PAGES = ["/login", "/signup"]

class AuthenticatedUser:
    """A verified user together with the token that authenticated it"""

    def __init__(self, user: User, preferences: Optional[UserPreference], token: str):
        self.user = user
        self.preferences = preferences
        self.token = token

def hash_password(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # malformed or foreign hash
        return False

def generate_token(payload: Dict[str, Any]) -> str:
    """Sign a token carrying user_id and email"""
    now = datetime.utcnow()
    claims = {
        "sub": payload["user_id"],
        "email": payload["email"],
        "iat": now,
        "jti": uuid.uuid4().hex,
        "exp": now + timedelta(days=settings.token_expire_days),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Return {user_id, email} for a valid token, None otherwise"""
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if "sub" not in claims:
        return None
    return {"user_id": claims["sub"], "email": claims.get("email")}

def parse_categories(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(c) for c in value] if isinstance(value, list) else []

def serialize_user(user: User, preferences: Optional[UserPreference]) -> Dict[str, Any]:
    prefs = None
    if preferences is not None:
        prefs = {
            "profile": Profile(preferences.profile).value,
            "categories": parse_categories(preferences.categories),
            "interests": preferences.interests,
            "language": preferences.language,
            "timezone": preferences.timezone,
            "notifications": preferences.notifications,
            "telegramChat": preferences.telegram_chat,
        }
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "preferences": prefs,
    }

async def create_user(
    db: AsyncSession,
    email: str,
    password: str,
    name: Optional[str] = None,
    profile: Profile = Profile.STUDENT,
) -> User:
    """Create a user with default preferences"""
    user = User(email=email, password=hash_password(password), name=name)
    db.add(user)
    await db.flush()

    db.add(UserPreference(user_id=user.id, profile=Profile(profile)))
    await db.commit()
    logger.info(f"👤 Created user {email}")
    return user

async def find_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()

async def find_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    return await db.get(User, user_id)

async def get_preferences(db: AsyncSession, user_id: str) -> Optional[UserPreference]:
    result = await db.execute(select(UserPreference).where(UserPreference.user_id == user_id))
    return result.scalar_one_or_none()

async def create_session(db: AsyncSession, user_id: str, token: str) -> AuthSession:
    """Persist a session valid for the token lifetime"""
    session = AuthSession(
        user_id=user_id,
        token=token,
        expires_at=utc_now() + timedelta(days=settings.token_expire_days),
    )
    db.add(session)
    await db.commit()
    return session

async def delete_session(db: AsyncSession, token: str):
    await db.execute(delete(AuthSession).where(AuthSession.token == token))
    await db.commit()

async def delete_all_user_sessions(db: AsyncSession, user_id: str):
    await db.execute(delete(AuthSession).where(AuthSession.user_id == user_id))
    await db.commit()

async def delete_expired_sessions(db: AsyncSession) -> int:
    result = await db.execute(delete(AuthSession).where(AuthSession.expires_at < utc_now()))
    await db.commit()
    return result.rowcount or 0

async def issue_token(db: AsyncSession, user: User) -> str:
    """Sign a token for the user and open a session for it"""
    token = generate_token({"user_id": user.id, "email": user.email})
    await create_session(db, user.id, token)
    return token

def extract_token(request: Request) -> Optional[str]:
    """Bearer header first, then the auth cookie"""
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    return request.cookies.get(settings.auth_cookie_name) or None

async def authenticate_token(db: AsyncSession, token: Optional[str]) -> Optional[AuthenticatedUser]:
    """Resolve a token to an active user with a live session"""
    if not token:
        return None

    payload = verify_token(token)
    if payload is None:
        return None

    result = await db.execute(select(AuthSession).where(AuthSession.token == token))
    session = result.scalar_one_or_none()
    if session is None or session.expires_at < utc_now():
        return None

    user = await find_user_by_id(db, payload["user_id"])
    if user is None or not user.is_active:
        return None

    return AuthenticatedUser(user, await get_preferences(db, user.id), token)

async def get_current_user(
    request: Request, db: AsyncSession = Depends(get_async_session)
) -> Optional[AuthenticatedUser]:
    """Current user from header or cookie, or None"""
    return await authenticate_token(db, extract_token(request))

async def require_auth(
    request: Request, db: AsyncSession = Depends(get_async_session)
) -> AuthenticatedUser:
    """Dependency that requires authentication"""
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No token provided")

    current = await authenticate_token(db, token)
    if current is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return current

def _matches(path: str, routes: List[str]) -> bool:
    return any(path == r or (r != "/" and path.startswith(r + "/")) for r in routes)

class AuthMiddleware:
    """Redirects page requests based on the presence of a signed token

    Protected pages without a valid signature go to /login; the login and
    signup pages go to / when one is present. Session rows are checked by
    the route dependencies, not here.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        path = request.url.path

        if path.startswith("/api") or path.startswith("/static"):
            await self.app(scope, receive, send)
            return

        token = request.cookies.get(settings.auth_cookie_name)
        has_token = bool(token) and verify_token(token) is not None

        if _matches(path, PROTECTED_PAGES) and not has_token:
            response = RedirectResponse(url="/login", status_code=302)
            await response(scope, receive, send)
            return

        if _matches(path, AUTH_PAGES) and has_token and request.method == "GET":
            response = RedirectResponse(url="/", status_code=302)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
