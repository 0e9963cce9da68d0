"""FastAPI application exposing accounts, stores, ratings and dashboards."""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import Counter, make_asgi_app
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from .auth import (
    authenticate,
    current_user,
    end_session,
    get_db,
    get_session_store,
    require,
    start_session,
)
from .config import settings
from .database import SessionLocal, init_db
from .errors import ServiceError, ValidationError
from .models.user import User
from .schemas import (
    LoginRequest,
    MessageResponse,
    OwnerStoreSummary,
    PasswordChange,
    PlatformStats,
    RatingOut,
    RatingSubmit,
    SignupRequest,
    StoreCreate,
    StoreOut,
    UserCreate,
    UserOut,
)
from .seed import seed_demo_data
from .services import (
    create_store,
    create_user,
    get_user_detail,
    list_stores,
    list_users,
    owner_rollup,
    platform_stats,
    serialize_store,
    serialize_user,
    update_password,
    upsert_rating,
)
from .sessions import SessionStore, build_session_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and optionally load demo data before serving."""
    init_db()
    if settings.seed_demo_data:
        db = SessionLocal()
        try:
            seed_demo_data(db)
        finally:
            db.close()
    yield


limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app = FastAPI(title=settings.api_title, lifespan=lifespan)
app.state.limiter = limiter
app.state.session_store = build_session_store(
    settings.session_backend, settings.session_ttl_seconds, SessionLocal
)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.mount("/metrics", make_asgi_app())

logger = logging.getLogger(__name__)

CREDENTIAL_RATE_LIMIT = settings.login_rate_limit

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError.from_errors(exc.errors())
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@app.post("/api/login", response_model=UserOut, response_model_exclude_unset=True)
@limiter.limit(CREDENTIAL_RATE_LIMIT)
def login(
    request: Request,
    response: Response,
    credentials: LoginRequest,
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
):
    """Check credentials and start a cookie-backed session."""

    user = authenticate(db, credentials.username, credentials.password)
    start_session(request, response, store, user)
    return serialize_user(user)


@app.post(
    "/api/signup",
    response_model=UserOut,
    response_model_exclude_unset=True,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(CREDENTIAL_RATE_LIMIT)
def signup(
    request: Request,
    response: Response,
    payload: SignupRequest,
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
):
    """Register a regular user account and sign it in."""

    user = create_user(db, payload)
    start_session(request, response, store, user)
    return serialize_user(user)


@app.post("/api/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    store: SessionStore = Depends(get_session_store),
):
    end_session(request, response, store)
    return MessageResponse(message="Logged out")


@app.get("/api/user", response_model=UserOut, response_model_exclude_unset=True)
def me(user: User = Depends(require("auth.me"))):
    """Return the identity bound to the session cookie."""

    return serialize_user(user)


@app.post("/api/change-password", response_model=MessageResponse)
@limiter.limit(CREDENTIAL_RATE_LIMIT)
def change_password(
    request: Request,
    payload: PasswordChange,
    user: User = Depends(require("auth.change_password")),
    db: Session = Depends(get_db),
):
    update_password(db, user.id, payload.current_password, payload.new_password)
    return MessageResponse(message="Password updated successfully")


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@app.get(
    "/api/admin/dashboard",
    response_model=PlatformStats,
    dependencies=[Depends(require("admin.dashboard"))],
)
def admin_dashboard(db: Session = Depends(get_db)):
    """Return platform-wide user, store and rating counts."""

    return platform_stats(db)


@app.get(
    "/api/admin/users",
    response_model=List[UserOut],
    response_model_exclude_unset=True,
    dependencies=[Depends(require("admin.users.list"))],
)
def admin_list_users(
    search: Optional[str] = None,
    role: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    order: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Return accounts filtered by text and role."""

    return list_users(db, search=search, role=role, sort_by=sort_by, order=order)


@app.post(
    "/api/admin/users",
    response_model=UserOut,
    response_model_exclude_unset=True,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require("admin.users.create"))],
)
def admin_create_user(payload: UserCreate, db: Session = Depends(get_db)):
    """Create an account with any role."""

    return serialize_user(create_user(db, payload))


@app.get(
    "/api/admin/users/{user_id}",
    response_model=UserOut,
    response_model_exclude_unset=True,
    dependencies=[Depends(require("admin.users.get"))],
)
def admin_get_user(user_id: int, db: Session = Depends(get_db)):
    return get_user_detail(db, user_id)


@app.get(
    "/api/admin/stores",
    response_model=List[StoreOut],
    response_model_exclude_unset=True,
    dependencies=[Depends(require("admin.stores.list"))],
)
def admin_list_stores(
    search: Optional[str] = None,
    address: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    order: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Return stores with their average rating."""

    return list_stores(db, search=search, address=address, sort_by=sort_by, order=order)


@app.post(
    "/api/admin/stores",
    response_model=StoreOut,
    response_model_exclude_unset=True,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require("admin.stores.create"))],
)
def admin_create_store(payload: StoreCreate, db: Session = Depends(get_db)):
    store = create_store(db, payload)
    return serialize_store(store, average_rating=0.0)


# ---------------------------------------------------------------------------
# Browsing and rating
# ---------------------------------------------------------------------------


@app.get("/api/stores", response_model=List[StoreOut], response_model_exclude_unset=True)
def browse_stores(
    search: Optional[str] = None,
    address: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    order: Optional[str] = None,
    user: User = Depends(require("stores.list")),
    db: Session = Depends(get_db),
):
    """Return stores with the average rating and the caller's own rating."""

    return list_stores(
        db,
        search=search,
        address=address,
        sort_by=sort_by,
        order=order,
        viewer_id=user.id,
    )


@app.post("/api/stores/{store_id}/rate", response_model=RatingOut)
def rate_store(
    store_id: int,
    payload: RatingSubmit,
    user: User = Depends(require("stores.rate")),
    db: Session = Depends(get_db),
):
    """Submit or replace the caller's rating for a store."""

    return upsert_rating(db, user.id, store_id, payload.rating)


@app.get("/api/owner/dashboard", response_model=List[OwnerStoreSummary])
def owner_dashboard(
    user: User = Depends(require("owner.dashboard")),
    db: Session = Depends(get_db),
):
    """Return average and individual ratings for each store the caller owns."""

    return owner_rollup(db, user.id)


@app.get("/health", tags=["root"])
def health(user: Optional[User] = Depends(current_user)):
    return {"name": settings.api_title, "authenticated": user is not None}
