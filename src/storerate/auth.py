"""Session-cookie authentication and role-based authorization."""

import logging
import secrets
from typing import Dict, FrozenSet, Generator, Iterable, Optional

from fastapi import Depends, Request, Response
from prometheus_client import Counter
from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .errors import AuthError, ForbiddenError
from .models.user import Role, User
from .security import verify_password
from .services import get_user, get_user_by_email
from .sessions import SessionStore


logger = logging.getLogger(__name__)

LOGIN_COUNTER = Counter(
    "login_attempts_total", "Login attempts by outcome", ["outcome"]
)

ALL_ROLES: FrozenSet[Role] = frozenset(Role)

# Which roles may call each protected operation.
PERMISSIONS: Dict[str, FrozenSet[Role]] = {
    "auth.me": ALL_ROLES,
    "auth.change_password": ALL_ROLES,
    "admin.dashboard": frozenset({Role.ADMIN}),
    "admin.users.list": frozenset({Role.ADMIN}),
    "admin.users.create": frozenset({Role.ADMIN}),
    "admin.users.get": frozenset({Role.ADMIN}),
    "admin.stores.list": frozenset({Role.ADMIN}),
    "admin.stores.create": frozenset({Role.ADMIN}),
    "stores.list": ALL_ROLES,
    "stores.rate": ALL_ROLES,
    "owner.dashboard": frozenset({Role.OWNER}),
}


def get_db() -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def _session_id(request: Request) -> Optional[str]:
    return request.cookies.get(settings.session_cookie_name)


def authenticate(db: Session, username: str, password: str) -> User:
    """Check an email/password pair, raising ``AuthError`` on any mismatch.

    Unknown emails and wrong passwords produce the same error so callers
    cannot tell which accounts exist; the reason is only logged.
    """
    user = get_user_by_email(db, username)
    if user is None:
        logger.info("login failed: unknown email %s", username)
        LOGIN_COUNTER.labels(outcome="unknown_user").inc()
        raise AuthError("Invalid credentials")
    if not verify_password(password, user.password_hash):
        logger.info("login failed: bad password for user=%s", user.id)
        LOGIN_COUNTER.labels(outcome="bad_password").inc()
        raise AuthError("Invalid credentials")
    LOGIN_COUNTER.labels(outcome="success").inc()
    return user


def start_session(
    request: Request, response: Response, store: SessionStore, user: User
) -> str:
    """Issue a fresh session for ``user`` and set the cookie on ``response``."""
    previous = _session_id(request)
    if previous:
        store.destroy(previous)
    session_id = secrets.token_urlsafe(32)
    store.set(session_id, user.id)
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session_id,
        max_age=store.ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.session_cookie_secure,
        path="/",
    )
    logger.info("session started user=%s", user.id)
    return session_id


def end_session(request: Request, response: Response, store: SessionStore) -> None:
    session_id = _session_id(request)
    if session_id:
        store.destroy(session_id)
    response.delete_cookie(settings.session_cookie_name, path="/")


def current_user(
    request: Request,
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
) -> Optional[User]:
    """Return the signed-in user, or ``None`` for anonymous requests."""
    session_id = _session_id(request)
    if not session_id:
        return None
    user_id = store.get(session_id)
    if user_id is None:
        return None
    user = get_user(db, user_id)
    if user is None:
        # account vanished underneath a live session
        store.destroy(session_id)
    return user


def authorize(user: Optional[User], allowed: Iterable[Role]) -> User:
    """Raise ``AuthError`` when anonymous, ``ForbiddenError`` when the role is not allowed."""
    if user is None:
        raise AuthError("Login required")
    if Role(user.role) not in allowed:
        raise ForbiddenError("You do not have access to this resource")
    return user


def require(operation: str):
    """Dependency factory enforcing the ``PERMISSIONS`` entry for ``operation``."""
    allowed = PERMISSIONS[operation]

    def dependency(user: Optional[User] = Depends(current_user)) -> User:
        return authorize(user, allowed)

    dependency.__name__ = f"require_{operation.replace('.', '_')}"
    return dependency
