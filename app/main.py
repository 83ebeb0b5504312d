"""
FastAPI application with rate-limited authentication, posts, a security center and security headers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.auth import (
    AuthService,
    RateLimitExceeded,
    create_session_token,
    get_current_user_from_cookie,
    normalize_email,
    require_auth,
)
from app.config import get_settings
from app.db import DocumentStore, get_store
from app.identity import AuthError, IdentityProvider, InMemoryIdentityProvider
from app.models import (
    ChangePasswordRequest,
    GoogleLoginRequest,
    LoginRequest,
    PasswordStrengthRequest,
    Post,
    PostCreateRequest,
    RegisterRequest,
    UserInfo,
)
from app.posts import PostNotFound, PostPermissionError, PostService, PostValidationError, to_view
from app.rate_limit import RateLimiter
from app.security import (
    SECURITY_HEADERS,
    SecurityEventLogger,
    check_password_strength,
    generate_csrf_token,
    log_security_config,
    perform_security_audit,
    validate_session,
)
from app.validators import validate_form

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 15  # seconds
CSRF_COOKIE_NAME = "csrf_token"


# ---------- Security headers middleware ----------


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response


# ---------- Dependencies ----------


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_post_service(request: Request) -> PostService:
    return request.app.state.post_service


def _get_client_ip(request: Request) -> str:
    """Get client IP, respecting X-Forwarded-For if behind proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _client_context(request: Request) -> dict[str, Any]:
    return {
        "ip_address": _get_client_ip(request),
        "user_agent": request.headers.get("user-agent", "unknown"),
    }


def _set_session_cookie(response: Response, user: UserInfo) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=create_session_token(user),
        max_age=settings.session_max_age,
        httponly=True,
        samesite="lax",
    )


# ---------- Auth routes ----------

router = APIRouter(prefix="/api")


@router.post("/auth/login")
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    """Authenticate with email and password and set the session cookie."""
    form = validate_form(email=body.email)
    if not form.is_valid:
        raise HTTPException(status_code=422, detail=form.errors)

    try:
        user = await auth.login_with_email(body.email, body.password, _client_context(request))
    except RateLimitExceeded as exc:
        raise HTTPException(status_code=429, detail=exc.message)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=exc.message)

    _set_session_cookie(response, user)
    return user


@router.post("/auth/register", status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    """Create an account and sign it in."""
    settings = get_settings()
    form = validate_form(
        email=body.email,
        password=body.password,
        display_name=body.display_name,
        app_env=settings.app_env,
    )
    if not form.is_valid:
        raise HTTPException(status_code=422, detail=form.errors)

    try:
        user = await auth.register_with_email(
            body.email,
            body.password,
            body.display_name,
            _client_context(request),
        )
    except AuthError as exc:
        raise HTTPException(status_code=400, detail=exc.message)

    _set_session_cookie(response, user)
    return user


@router.post("/auth/google")
async def login_google(
    body: GoogleLoginRequest,
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    try:
        user = await auth.login_with_google(body.credential, _client_context(request))
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=exc.message)

    _set_session_cookie(response, user)
    return user


@router.post("/auth/logout")
async def logout(request: Request, auth: AuthService = Depends(get_auth_service)):
    """Clear the session cookie."""
    await auth.logout(get_current_user_from_cookie(request), _client_context(request))
    response = JSONResponse({"status": "logged_out"})
    response.delete_cookie(key=get_settings().session_cookie_name)
    return response


@router.post("/auth/password")
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    user: UserInfo = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    settings = get_settings()
    form = validate_form(password=body.new_password, app_env=settings.app_env)
    if not form.is_valid:
        raise HTTPException(status_code=422, detail=form.errors)

    try:
        await auth.change_password(
            user, body.current_password, body.new_password, _client_context(request)
        )
    except AuthError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    return {"status": "password_changed"}


@router.post("/auth/verify-email")
async def resend_verification(
    request: Request,
    user: UserInfo = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    try:
        await auth.resend_email_verification(user, _client_context(request))
    except AuthError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    return {"status": "verification_sent"}


@router.get("/me")
async def me(user: UserInfo = Depends(require_auth)):
    """Current user with session status."""
    return {"user": user, "session": validate_session(user)}


# ---------- Posts ----------


@router.get("/posts")
async def list_posts(
    user: UserInfo = Depends(require_auth),
    posts: PostService = Depends(get_post_service),
):
    return [to_view(post) for post in posts.list_posts(user.uid)]


@router.post("/posts", status_code=201)
async def create_post(
    body: PostCreateRequest,
    user: UserInfo = Depends(require_auth),
    posts: PostService = Depends(get_post_service),
):
    try:
        post = posts.create_post(user, body.text)
    except PostValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return to_view(post)


@router.delete("/posts/{post_id}", status_code=204)
async def delete_post(
    post_id: str,
    user: UserInfo = Depends(require_auth),
    posts: PostService = Depends(get_post_service),
):
    try:
        posts.delete_post(user, post_id)
    except PostNotFound:
        raise HTTPException(status_code=404, detail="Post not found")
    except PostPermissionError:
        raise HTTPException(status_code=403, detail="Forbidden")
    return Response(status_code=204)


async def _post_stream(
    request: Request,
    posts: PostService,
    user_id: str,
) -> AsyncGenerator[str, None]:
    """Yield the user's full post list as an SSE message on every change."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[list[Post]] = asyncio.Queue(maxsize=16)

    def offer(items: list[Post]) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(items)

    unsubscribe = posts.subscribe(user_id, lambda items: loop.call_soon_threadsafe(offer, items))
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                items = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL)
                payload = json.dumps([to_view(p).model_dump(mode="json") for p in items])
                yield f"event: posts\ndata: {payload}\n\n"
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
    finally:
        unsubscribe()


@router.get("/posts/stream", response_class=StreamingResponse)
async def stream_posts(
    request: Request,
    user: UserInfo = Depends(require_auth),
    posts: PostService = Depends(get_post_service),
):
    """Live post list for the current user via Server-Sent Events."""
    return StreamingResponse(
        _post_stream(request, posts, user.uid),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------- Security center ----------


@router.get("/security/audit")
async def security_audit(user: UserInfo = Depends(require_auth)):
    return perform_security_audit(user)


@router.get("/security/session")
async def session_status(user: UserInfo = Depends(require_auth)):
    return validate_session(user)


@router.get("/security/limits")
async def login_limits(
    user: UserInfo = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    """Login rate-limit state for the current user's email."""
    key = normalize_email(user.email or "")
    return {
        "max_attempts": auth.limiter.max_attempts,
        "window_seconds": auth.limiter.time_window,
        "remaining_attempts": auth.limiter.get_remaining_attempts(key),
        "active": auth.limiter.get_active_limits().get(key),
    }


@router.get("/security/csrf-token")
async def csrf_token(response: Response):
    """Issue a token for double-submit CSRF protection, also set as a cookie."""
    token = generate_csrf_token()
    response.set_cookie(
        key=CSRF_COOKIE_NAME,
        value=token,
        max_age=get_settings().session_max_age,
        samesite="strict",
    )
    return {"csrf_token": token}


@router.post("/security/password-strength")
async def password_strength(body: PasswordStrengthRequest):
    return check_password_strength(body.password)


@router.get("/health")
async def health(request: Request):
    """Health check endpoint (no auth required)."""
    store: DocumentStore = request.app.state.store
    db_ok = store.test_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
    }


# ---------- App setup ----------


def create_app(
    identity: IdentityProvider | None = None,
    store: DocumentStore | None = None,
    limiter: RateLimiter | None = None,
    events: SecurityEventLogger | None = None,
) -> FastAPI:
    """Build the application with its collaborators injected."""
    settings = get_settings()
    store = store or get_store()
    events = events or SecurityEventLogger(store, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        logger.info("Starting login guard (env=%s)...", settings.app_env)
        log_security_config(settings)

        if store.test_connection():
            logger.info("Document store connection successful")
        else:
            logger.warning("Document store connection failed - posts will not work")

        yield

        await events.drain()
        store.close()
        logger.info("Login guard stopped")

    application = FastAPI(
        title="Login Guard",
        description="Rate-limited authentication, per-user posts and security center",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    application.add_middleware(SecurityHeadersMiddleware)

    application.state.store = store
    application.state.events = events
    application.state.auth_service = AuthService(
        identity=identity or InMemoryIdentityProvider(),
        limiter=limiter or RateLimiter(),
        events=events,
    )
    application.state.post_service = PostService(store)

    application.include_router(router)

    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Hide internal error details from clients."""
        if exc.status_code >= 500:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": "Internal server error"},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
