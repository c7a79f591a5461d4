from fastapi import FastAPI, Depends, Request, HTTPException, Form, Header, status
from fastapi.exceptions import RequestValidationError
from fastapi.templating import Jinja2Templates
from fastapi.staticfiles import StaticFiles
from fastapi.responses import HTMLResponse, RedirectResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union
import json
import re
from urllib.parse import urlencode
import logging

import pytz

from lifescanner.auth import (
    AuthMiddleware, AuthenticatedUser, create_user, delete_all_user_sessions, delete_session,
    find_user_by_email, get_current_user, get_preferences, issue_token, parse_categories,
    require_auth, serialize_user, verify_password,
)
from lifescanner.completions import completion_client
from lifescanner.config import settings, source_manager, STATIC_DIR, TEMPLATES_DIR
from lifescanner.database import create_db_and_tables, check_database, get_async_session
from lifescanner.export import export_filename, generate_html_report, localize, profile_title
from lifescanner.models import User, Profile, PROFILES, utc_now
from lifescanner.news import list_articles, serialize_article, parse_profile, impact_for, ALL
from lifescanner.scheduler.tasks import IngestionInProgress, run_ingestion
from lifescanner.telegram.bot import TelegramBot, TelegramError
from lifescanner.telegram.handler import TelegramBotHandler

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="LifeScanner", version="1.0.0")
app.add_middleware(AuthMiddleware)

# Mount static files and templates
app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
templates.env.filters["localtime"] = localize

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt ignores anything longer
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

@app.on_event("startup")
async def startup_event():
    """Initialize app on startup"""
    logger.info("🚀 Starting LifeScanner...")

    await create_db_and_tables()
    logger.info("✅ Database tables created")

    if settings.enable_scheduler:
        try:
            from lifescanner.scheduler.tasks import scheduler
            scheduler.start()
            logger.info("✅ Scheduler started")
        except Exception as e:
            logger.warning(f"⚠️ Scheduler initialization failed (non-critical): {e}")

    logger.info("🎉 App initialized successfully!")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    if settings.enable_scheduler:
        from lifescanner.scheduler.tasks import scheduler
        scheduler.shutdown()
    await completion_client.close()
    logger.info("🛑 App shutdown complete")

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"success": False, "message": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", [])[1:])
    message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse({"success": False, "message": message}, status_code=400)

# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class SignupRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    profile: Optional[str] = None

class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None

class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    profile: Optional[str] = None
    categories: Optional[Union[List[str], str]] = None
    interests: Optional[str] = None
    language: Optional[str] = None
    timezone: Optional[str] = None
    notifications: Optional[bool] = None
    telegram_chat: Optional[Union[str, int]] = Field(default=None, alias="telegramChat")

class NewsActionRequest(BaseModel):
    action: Optional[str] = None

class ExportRequest(BaseModel):
    profile: Optional[str] = ALL
    category: Optional[str] = ALL

class TelegramSetupRequest(BaseModel):
    action: Optional[str] = None
    webhookUrl: Optional[str] = None

# ---------------------------------------------------------------------------
# Shared account logic
# ---------------------------------------------------------------------------

def _validate_profile(profile: Optional[str]) -> Profile:
    if profile not in PROFILES:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid profile type")
    return Profile(profile)

async def signup_user(
    db: AsyncSession, email: str, password: str, profile: str, name: Optional[str] = None
) -> Tuple[User, str]:
    email = (email or "").strip().lower()
    if not email or not password or not profile:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Email, password, and profile are required")
    if not EMAIL_RE.match(email):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid email address")
    if len(password) < MIN_PASSWORD_LENGTH or len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            f"Password must be between {MIN_PASSWORD_LENGTH} and {MAX_PASSWORD_BYTES} bytes",
        )

    if await find_user_by_email(db, email):
        raise HTTPException(status.HTTP_409_CONFLICT, "User with this email already exists")

    selected = _validate_profile(profile)
    user = await create_user(db, email, password, name or None, selected)
    return user, await issue_token(db, user)

async def login_user(db: AsyncSession, email: str, password: str) -> Tuple[User, str]:
    if not email or not password:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Email and password are required")

    user = await find_user_by_email(db, email.strip().lower())
    if user is None or not verify_password(password, user.password):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid email or password")
    if not user.is_active:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Account is deactivated")

    return user, await issue_token(db, user)

def _coerce_categories(value: Union[List[str], str]) -> List[str]:
    if isinstance(value, str):
        try:
            value = json.loads(value) if value.strip() else []
        except ValueError:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Categories must be a JSON list")
        if not isinstance(value, list):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Categories must be a JSON list")

    categories = []
    known = set(source_manager.get_categories())
    for category in value:
        category = str(category).strip().lower()
        if category not in known:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, f"Unknown category: {category}")
        if category not in categories:
            categories.append(category)
    return categories

async def update_preferences(db: AsyncSession, current: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a partial profile update; only keys present in ``data`` change"""
    if "profile" in data and data["profile"] is not None:
        data["profile"] = _validate_profile(data["profile"])
    if "timezone" in data and data["timezone"] is not None:
        if data["timezone"] not in pytz.all_timezones_set:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid timezone")
    if "categories" in data:
        data["categories"] = json.dumps(_coerce_categories(data["categories"] or []))
    if "telegram_chat" in data:
        chat = data["telegram_chat"]
        if chat is not None:
            chat = str(chat).strip() or None
        data["telegram_chat"] = chat

    user = current.user
    if "name" in data:
        user.name = data.pop("name") or None
        user.updated_at = utc_now()
        db.add(user)

    prefs = current.preferences or await get_preferences(db, user.id)
    for key in ("profile", "categories", "interests", "language", "timezone", "notifications", "telegram_chat"):
        if key in data and (data[key] is not None or key in ("interests", "telegram_chat")):
            setattr(prefs, key, data[key])
    db.add(prefs)
    await db.commit()

    await db.refresh(user)
    await db.refresh(prefs)
    logger.info(f"👤 Updated profile for {user.email}")
    return serialize_user(user, prefs)

# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------

@app.post("/api/auth/signup")
async def api_signup(body: SignupRequest, db: AsyncSession = Depends(get_async_session)):
    user, token = await signup_user(db, body.email, body.password, body.profile, body.name)
    return {
        "success": True,
        "message": "Account created successfully",
        "token": token,
        "user": serialize_user(user, await get_preferences(db, user.id)),
    }

@app.post("/api/auth/login")
async def api_login(body: LoginRequest, db: AsyncSession = Depends(get_async_session)):
    user, token = await login_user(db, body.email, body.password)
    return {
        "success": True,
        "message": "Login successful",
        "token": token,
        "user": serialize_user(user, await get_preferences(db, user.id)),
    }

@app.get("/api/auth/me")
async def api_me(current: AuthenticatedUser = Depends(require_auth)):
    return {"success": True, "user": serialize_user(current.user, current.preferences)}

@app.post("/api/auth/logout")
async def api_logout(
    everywhere: bool = False,
    current: AuthenticatedUser = Depends(require_auth),
    db: AsyncSession = Depends(get_async_session),
):
    """End this session, or every session of the user with ?everywhere=true"""
    if everywhere:
        await delete_all_user_sessions(db, current.user.id)
    else:
        await delete_session(db, current.token)
    response = JSONResponse({"success": True, "message": "Logged out"})
    response.delete_cookie(settings.auth_cookie_name)
    return response

@app.put("/api/auth/profile")
async def api_update_profile(
    body: ProfileUpdateRequest,
    current: AuthenticatedUser = Depends(require_auth),
    db: AsyncSession = Depends(get_async_session),
):
    data = body.model_dump(include=body.model_fields_set)
    user = await update_preferences(db, current, data)
    return {"success": True, "message": "Profile updated successfully", "user": user}

@app.get("/api/news")
async def api_news(
    category: str = ALL,
    profile: str = ALL,
    limit: int = settings.news_default_limit,
    current: AuthenticatedUser = Depends(require_auth),
    db: AsyncSession = Depends(get_async_session),
):
    try:
        parse_profile(profile)
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid profile type")

    limit = max(1, min(limit, settings.news_max_limit))
    articles = await list_articles(db, category=category, profile=profile, limit=limit)
    return {"success": True, "data": [serialize_article(a) for a in articles]}

@app.post("/api/news")
async def api_news_action(
    body: NewsActionRequest, current: AuthenticatedUser = Depends(require_auth)
):
    if body.action != "scrape":
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid action")

    try:
        report = await run_ingestion()
    except IngestionInProgress as e:
        raise HTTPException(status.HTTP_409_CONFLICT, str(e))

    if not report["success"]:
        return JSONResponse(
            {"success": False, "message": report["error"] or "Failed to scrape news", "report": report},
            status_code=500,
        )

    return {
        "success": True,
        "message": f"Successfully scraped and processed {report['processed']} articles",
        "processed": report["processed"],
        "report": report,
    }

async def _build_export(
    db: AsyncSession, current: AuthenticatedUser, profile: Optional[str], category: Optional[str]
) -> str:
    try:
        parse_profile(profile)
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid profile type")

    articles = await list_articles(
        db, category=category or ALL, profile=profile or ALL, limit=settings.export_limit
    )
    tz_name = current.preferences.timezone if current.preferences else "UTC"
    return generate_html_report(articles, profile or ALL, category or ALL, current.user, tz_name)

@app.post("/api/export")
async def api_export(
    body: ExportRequest,
    current: AuthenticatedUser = Depends(require_auth),
    db: AsyncSession = Depends(get_async_session),
):
    html = await _build_export(db, current, body.profile, body.category)
    return {
        "success": True,
        "message": "Export generated successfully",
        "html": html,
        "filename": export_filename(),
    }

@app.post("/api/telegram/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
):
    # Always answer ok so Telegram does not retry
    if settings.telegram_webhook_secret and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
        logger.warning("Ignoring Telegram update with a bad secret token")
        return {"ok": True}

    try:
        update = await request.json()
        message = update.get("message") if isinstance(update, dict) else None
        if message:
            async with TelegramBot() as bot:
                if not bot.is_valid_token():
                    logger.warning("Telegram bot token is not configured, ignoring update")
                    return {"ok": True}
                await TelegramBotHandler(bot=bot).handle_message(message)
    except Exception as e:
        logger.error(f"Telegram webhook error: {e}")
    return {"ok": True}

@app.get("/api/telegram/webhook")
async def telegram_webhook_status():
    return {"message": "Telegram webhook is active", "timestamp": datetime.utcnow().isoformat()}

@app.post("/api/telegram/setup")
async def telegram_setup(
    body: TelegramSetupRequest, current: AuthenticatedUser = Depends(require_auth)
):
    actions = {"setWebhook", "getWebhookInfo", "deleteWebhook", "getMe"}
    if body.action not in actions:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid action")
    if body.action == "setWebhook" and not body.webhookUrl:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Webhook URL is required")

    async with TelegramBot() as bot:
        if not bot.is_valid_token():
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Telegram bot token is not configured")
        try:
            if body.action == "setWebhook":
                await bot.set_webhook(body.webhookUrl, settings.telegram_webhook_secret or None)
                return {"success": True, "message": "Telegram webhook set successfully"}
            if body.action == "deleteWebhook":
                await bot.delete_webhook()
                return {"success": True, "message": "Telegram webhook deleted successfully"}
            if body.action == "getWebhookInfo":
                return {"success": True, "data": await bot.get_webhook_info()}
            return {"success": True, "data": await bot.get_me()}
        except TelegramError as e:
            logger.error(f"Telegram setup error: {e}")
            raise HTTPException(status.HTTP_502_BAD_GATEWAY, "An error occurred while setting up Telegram")

@app.get("/api/health")
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    timestamp = datetime.utcnow().isoformat()
    try:
        await check_database()
    except Exception as e:
        logger.error(f"Health check error: {e}")
        return JSONResponse(
            {
                "success": False,
                "message": "Health check failed",
                "timestamp": timestamp,
                "services": {"database": "unhealthy", "api": "healthy"},
            },
            status_code=500,
        )
    return {
        "success": True,
        "message": "Health check passed",
        "timestamp": timestamp,
        "version": app.version,
        "services": {"database": "healthy", "api": "healthy"},
    }

# ---------------------------------------------------------------------------
# HTML pages
# ---------------------------------------------------------------------------

def _login_redirect() -> RedirectResponse:
    response = RedirectResponse(url="/login", status_code=302)
    response.delete_cookie(settings.auth_cookie_name)
    return response

def _with_auth_cookie(response: Response, token: str) -> Response:
    response.set_cookie(
        settings.auth_cookie_name,
        token,
        max_age=settings.token_expire_days * 24 * 3600,
        httponly=True,
        samesite="lax",
    )
    return response

@app.get("/login", response_class=HTMLResponse)
async def login_page(request: Request):
    return templates.TemplateResponse(request, "login.html", {"error": None})

@app.post("/login", response_class=HTMLResponse)
async def login_submit(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    db: AsyncSession = Depends(get_async_session),
):
    try:
        _, token = await login_user(db, email, password)
    except HTTPException as e:
        return templates.TemplateResponse(
            request, "login.html", {"error": e.detail, "email": email}, status_code=e.status_code
        )
    return _with_auth_cookie(RedirectResponse(url="/", status_code=302), token)

@app.get("/signup", response_class=HTMLResponse)
async def signup_page(request: Request):
    return templates.TemplateResponse(request, "signup.html", {"error": None, "profiles": PROFILES})

@app.post("/signup", response_class=HTMLResponse)
async def signup_submit(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    profile: str = Form(""),
    db: AsyncSession = Depends(get_async_session),
):
    try:
        _, token = await signup_user(db, email, password, profile, name)
    except HTTPException as e:
        return templates.TemplateResponse(
            request,
            "signup.html",
            {"error": e.detail, "profiles": PROFILES, "name": name, "email": email, "profile": profile},
            status_code=e.status_code,
        )
    return _with_auth_cookie(RedirectResponse(url="/", status_code=302), token)

@app.post("/logout")
async def logout_submit(
    current: Optional[AuthenticatedUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    if current is not None:
        await delete_session(db, current.token)
    return _login_redirect()

@app.get("/", response_class=HTMLResponse)
async def dashboard(
    request: Request,
    category: Optional[str] = None,
    profile: Optional[str] = None,
    message: Optional[str] = None,
    current: Optional[AuthenticatedUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Main news page"""
    if current is None:
        return _login_redirect()

    prefs = current.preferences
    preferred = parse_categories(prefs.categories) if prefs else []
    if category is None:
        category = preferred[0] if preferred else ALL
    if profile is None:
        profile = Profile(prefs.profile).value if prefs else ALL

    try:
        selected = parse_profile(profile)
    except ValueError:
        selected, profile = None, ALL

    articles = await list_articles(db, category=category, profile=profile, limit=settings.news_max_limit)
    items = [{"article": a, "impact": impact_for(a, selected)} for a in articles]

    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {
            "user": current.user,
            "items": items,
            "categories": source_manager.get_categories(),
            "profiles": PROFILES,
            "selected_category": category,
            "selected_profile": profile,
            "profile_title": profile_title(profile),
            "tz_name": prefs.timezone if prefs else "UTC",
            "message": message,
        },
    )

@app.post("/refresh")
async def refresh_news(current: Optional[AuthenticatedUser] = Depends(get_current_user)):
    """Manually trigger ingestion and go back to the dashboard"""
    if current is None:
        return _login_redirect()

    try:
        report = await run_ingestion()
        if report["success"]:
            message = f"Fetched {report['processed']} new articles"
        else:
            message = f"Refresh failed: {report['error']}"
    except IngestionInProgress:
        message = "A refresh is already running"
    except Exception as e:
        logger.error(f"❌ Error in manual refresh: {e}")
        message = "Refresh failed"

    return RedirectResponse(url="/?" + urlencode({"message": message}), status_code=302)

@app.get("/export")
async def export_download(
    profile: str = ALL,
    category: str = ALL,
    current: Optional[AuthenticatedUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    if current is None:
        return _login_redirect()

    html = await _build_export(db, current, profile, category)
    return HTMLResponse(
        html, headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'}
    )

@app.get("/profile", response_class=HTMLResponse)
async def profile_page(
    request: Request,
    saved: bool = False,
    current: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    if current is None:
        return _login_redirect()
    return _render_profile(request, current, serialize_user(current.user, current.preferences), None, saved)

def _render_profile(request: Request, current: AuthenticatedUser, user: Dict[str, Any], error: Optional[str], saved: bool = False, status_code: int = 200):
    return templates.TemplateResponse(
        request,
        "profile.html",
        {
            "user": user,
            "profiles": PROFILES,
            "categories": source_manager.get_categories(),
            "timezones": pytz.common_timezones,
            "error": error,
            "saved": saved,
        },
        status_code=status_code,
    )

@app.post("/profile", response_class=HTMLResponse)
async def profile_submit(
    request: Request,
    current: Optional[AuthenticatedUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    if current is None:
        return _login_redirect()

    form = await request.form()
    data = {
        "name": form.get("name", ""),
        "profile": form.get("profile") or None,
        "categories": form.getlist("categories"),
        "interests": form.get("interests") or None,
        "language": form.get("language") or None,
        "timezone": form.get("timezone") or None,
        "notifications": form.get("notifications") == "on",
        "telegram_chat": form.get("telegram_chat", ""),
    }
    # validation fails before anything is modified
    before = serialize_user(current.user, current.preferences)
    try:
        await update_preferences(db, current, data)
    except HTTPException as e:
        return _render_profile(
            request, current, before, e.detail,
            status_code=e.status_code,
        )
    return RedirectResponse(url="/profile?saved=true", status_code=302)

def run():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

if __name__ == "__main__":
    run()
