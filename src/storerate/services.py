"""Service layer for accounts, stores, ratings and rating aggregates."""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type, TypeVar, Union

from prometheus_client import Counter
from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import func, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .database import Rating, Store
from .errors import (
    AuthError,
    ConflictError,
    InternalError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from .models.user import Role, User
from .schemas import (
    PasswordChange,
    RatingSubmit,
    SignupRequest,
    StoreCreate,
    UserCreate,
)
from .security import hash_password, verify_password


logger = logging.getLogger(__name__)

# Prometheus counters for key service events
USER_CREATED_COUNTER = Counter(
    "users_created_total", "Total user accounts created", ["role"]
)
STORE_CREATED_COUNTER = Counter("stores_created_total", "Total stores created")
RATING_SUBMITTED_COUNTER = Counter(
    "ratings_submitted_total", "Total rating submissions, including updates"
)

USER_SORT_FIELDS = {"name": User.name, "email": User.email, "role": User.role}
STORE_SORT_FIELDS = ("name", "email", "rating")
SORT_ORDERS = ("asc", "desc")

_UPSERT_INSERTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _handle_service_error(session: Session, exc: Exception) -> None:
    """Rollback the transaction and re-raise ``exc`` as a service error."""
    session.rollback()
    if isinstance(exc, ServiceError):
        raise exc
    if isinstance(exc, PydanticValidationError):
        raise ValidationError.from_pydantic(exc) from exc
    logger.exception("service layer error", exc_info=exc)
    if isinstance(exc, SQLAlchemyError):
        raise InternalError("Database error") from exc
    raise exc


def _parse(schema: Type[SchemaT], data: Union[SchemaT, Mapping[str, Any]]) -> SchemaT:
    """Validate raw input against ``schema`` before any write happens."""
    if isinstance(data, schema):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


def _check_choice(value: Optional[str], choices: Iterable[str], field: str) -> None:
    if value is not None and value not in choices:
        raise ValidationError(f"Invalid {field}: {value}", field=field)


# ---------------------------------------------------------------------------
# Identity directory
# ---------------------------------------------------------------------------


def get_user(session: Session, user_id: int) -> Optional[User]:
    return session.get(User, user_id)


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    """Look up an account by exact, case-sensitive email."""
    return session.query(User).filter(User.email == email).first()


def create_user(session: Session, data: Union[BaseModel, Mapping[str, Any]]) -> User:
    """Validate and persist a new account.

    ``data`` may be a :class:`~storerate.schemas.SignupRequest` (role is
    always ``user``), a :class:`~storerate.schemas.UserCreate` or a plain
    mapping, which is validated as ``UserCreate``.
    """
    if isinstance(data, SignupRequest):
        payload = data
    else:
        payload = _parse(UserCreate, data)
    role = getattr(payload, "role", Role.USER)

    logger.info("create user email=%s role=%s", payload.email, role.value)
    try:
        if get_user_by_email(session, payload.email) is not None:
            raise ConflictError("Email already exists", field="email")
        user = User(
            name=payload.name,
            email=payload.email,
            password_hash=hash_password(payload.password),
            address=payload.address,
            role=role.value,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
    except IntegrityError as exc:
        # a concurrent signup won the unique(email) race
        session.rollback()
        raise ConflictError("Email already exists", field="email") from exc
    except Exception as exc:
        _handle_service_error(session, exc)

    USER_CREATED_COUNTER.labels(role=role.value).inc()
    logger.info("created user id=%s role=%s", user.id, user.role)
    return user


def update_password(
    session: Session, user_id: int, current_password: str, new_password: str
) -> None:
    """Replace a user's password after verifying the current one."""
    change = _parse(
        PasswordChange,
        {"current_password": current_password, "new_password": new_password},
    )
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not verify_password(change.current_password, user.password_hash):
            raise AuthError("Incorrect current password", field="currentPassword")
        user.password_hash = hash_password(change.new_password)
        session.commit()
    except Exception as exc:
        _handle_service_error(session, exc)
    logger.info("updated password user=%s", user_id)


def owner_averages(session: Session, owner_ids: Iterable[int]) -> Dict[int, float]:
    """Mean of every rating across each owner's stores, 0 for owners without ratings."""
    owner_ids = list(owner_ids)
    if not owner_ids:
        return {}
    rows = (
        session.query(Store.owner_id, func.avg(Rating.rating))
        .join(Rating, Rating.store_id == Store.id)
        .filter(Store.owner_id.in_(owner_ids))
        .group_by(Store.owner_id)
        .all()
    )
    averages = {owner_id: 0.0 for owner_id in owner_ids}
    averages.update({owner_id: float(avg) for owner_id, avg in rows if avg is not None})
    return averages


def serialize_user(user: User, average_rating: Optional[float] = None) -> Dict[str, Any]:
    """Public fields of an account; ``average_rating`` only when given."""
    row = {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "address": user.address,
        "role": user.role,
        "created_at": user.created_at,
    }
    if average_rating is not None:
        row["average_rating"] = average_rating
    return row


def get_user_detail(session: Session, user_id: int) -> Dict[str, Any]:
    """Return one account, annotated with its stores' average when it is an owner."""
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        average = None
        if user.role == Role.OWNER.value:
            average = owner_averages(session, [user.id])[user.id]
        return serialize_user(user, average)
    except Exception as exc:
        _handle_service_error(session, exc)


def list_users(
    session: Session,
    search: Optional[str] = None,
    role: Optional[str] = None,
    sort_by: Optional[str] = None,
    order: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """List accounts matching the filters.

    ``search`` is a case-insensitive substring of name or email. ``role`` of
    ``"all"`` or ``None`` disables role filtering. Without ``sort_by`` the
    newest accounts come first.
    """
    if role == "all":
        role = None
    _check_choice(role, [r.value for r in Role], "role")
    _check_choice(sort_by, USER_SORT_FIELDS, "sortBy")
    _check_choice(order, SORT_ORDERS, "order")

    try:
        query = session.query(User)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
        if role:
            query = query.filter(User.role == role)

        if sort_by:
            column = USER_SORT_FIELDS[sort_by]
            query = query.order_by(column.desc() if order == "desc" else column.asc(), User.id)
        else:
            query = query.order_by(User.created_at.desc(), User.id.desc())
        users = query.all()

        averages = owner_averages(
            session, [u.id for u in users if u.role == Role.OWNER.value]
        )
        return [serialize_user(u, averages.get(u.id)) for u in users]
    except Exception as exc:
        _handle_service_error(session, exc)


# ---------------------------------------------------------------------------
# Store directory
# ---------------------------------------------------------------------------


def create_store(session: Session, data: Union[StoreCreate, Mapping[str, Any]]) -> Store:
    """Validate and persist a new store."""
    payload = _parse(StoreCreate, data)
    logger.info("create store name=%s owner=%s", payload.name, payload.owner_id)
    try:
        if payload.owner_id is not None:
            owner = session.get(User, payload.owner_id)
            if owner is None or owner.role != Role.OWNER.value:
                raise ValidationError(
                    "Owner must be an existing store owner account", field="ownerId"
                )
        store = Store(
            name=payload.name,
            email=payload.email,
            address=payload.address,
            owner_id=payload.owner_id,
        )
        session.add(store)
        session.commit()
        session.refresh(store)
    except Exception as exc:
        _handle_service_error(session, exc)

    STORE_CREATED_COUNTER.inc()
    logger.info("created store id=%s owner=%s", store.id, store.owner_id)
    return store


def get_store(session: Session, store_id: int) -> Store:
    store = session.get(Store, store_id)
    if store is None:
        raise NotFoundError("Store not found")
    return store


def list_stores_by_owner(session: Session, owner_id: int) -> List[Store]:
    """Every store assigned to ``owner_id``, without rating annotations."""
    return (
        session.query(Store)
        .filter(Store.owner_id == owner_id)
        .order_by(Store.id)
        .all()
    )


def serialize_store(store: Store, average_rating: float, my_rating: Optional[int] = None):
    row = {
        "id": store.id,
        "name": store.name,
        "email": store.email,
        "address": store.address,
        "owner_id": store.owner_id,
        "created_at": store.created_at,
        "average_rating": average_rating,
    }
    if my_rating is not None:
        row["my_rating"] = my_rating
    return row


def list_stores(
    session: Session,
    search: Optional[str] = None,
    address: Optional[str] = None,
    sort_by: Optional[str] = None,
    order: Optional[str] = None,
    viewer_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """List stores annotated with their average rating.

    ``search`` matches the name and ``address`` the address, both as
    case-insensitive substrings. ``sort_by="rating"`` orders by average
    descending and ``sort_by="name"``/``"email"`` alphabetically ascending;
    ``order`` overrides the direction. When ``viewer_id`` is given each row
    also carries that user's own rating, if any.
    """
    _check_choice(sort_by, STORE_SORT_FIELDS, "sortBy")
    _check_choice(order, SORT_ORDERS, "order")

    try:
        query = session.query(Store)
        if search:
            query = query.filter(Store.name.ilike(f"%{search}%"))
        if address:
            query = query.filter(Store.address.ilike(f"%{address}%"))
        stores = query.order_by(Store.id).all()

        averages = average_ratings(session, [s.id for s in stores])
        mine: Dict[int, int] = {}
        if viewer_id is not None and stores:
            mine = dict(
                session.query(Rating.store_id, Rating.rating)
                .filter(
                    Rating.user_id == viewer_id,
                    Rating.store_id.in_([s.id for s in stores]),
                )
                .all()
            )

        rows = [serialize_store(s, averages[s.id], mine.get(s.id)) for s in stores]
    except Exception as exc:
        _handle_service_error(session, exc)

    if sort_by == "rating":
        rows.sort(key=lambda r: r["average_rating"], reverse=order != "asc")
    elif sort_by in ("name", "email"):
        rows.sort(key=lambda r: r[sort_by].lower(), reverse=order == "desc")
    return rows


# ---------------------------------------------------------------------------
# Rating ledger
# ---------------------------------------------------------------------------


def get_rating(session: Session, user_id: int, store_id: int) -> Optional[Rating]:
    return (
        session.query(Rating)
        .filter(Rating.user_id == user_id, Rating.store_id == store_id)
        .first()
    )


def _insert_or_update(session: Session, user_id: int, store_id: int, value: int) -> None:
    insert = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
    if insert is not None:
        stmt = insert(Rating).values(
            user_id=user_id,
            store_id=store_id,
            rating=value,
            created_at=datetime.utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "store_id"],
            set_={"rating": stmt.excluded.rating},
        )
        session.execute(stmt)
        return

    # no native upsert: let the unique constraint arbitrate
    try:
        with session.begin_nested():
            session.add(Rating(user_id=user_id, store_id=store_id, rating=value))
    except IntegrityError:
        session.query(Rating).filter(
            Rating.user_id == user_id, Rating.store_id == store_id
        ).update({"rating": value}, synchronize_session=False)


def upsert_rating(session: Session, user_id: int, store_id: int, rating: Any) -> Rating:
    """Record ``user_id``'s rating of ``store_id``, replacing any earlier value.

    A resubmission keeps the original row's id and creation time.
    """
    value = _parse(RatingSubmit, {"rating": rating}).rating
    logger.info("rate store=%s user=%s rating=%s", store_id, user_id, value)
    try:
        get_store(session, store_id)
        _insert_or_update(session, user_id, store_id, value)
        session.commit()
        record = get_rating(session, user_id, store_id)
    except Exception as exc:
        _handle_service_error(session, exc)

    RATING_SUBMITTED_COUNTER.inc()
    return record


def list_ratings_for_store(session: Session, store_id: int) -> List[Rating]:
    """Ratings of a store with their authors loaded, newest first."""
    return (
        session.query(Rating)
        .options(joinedload(Rating.user))
        .filter(Rating.store_id == store_id)
        .order_by(Rating.created_at.desc(), Rating.id.desc())
        .all()
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def average_ratings(session: Session, store_ids: Iterable[int]) -> Dict[int, float]:
    """Average rating per store in one grouped query; 0.0 for unrated stores."""
    store_ids = list(store_ids)
    if not store_ids:
        return {}
    rows = (
        session.query(Rating.store_id, func.avg(Rating.rating))
        .filter(Rating.store_id.in_(store_ids))
        .group_by(Rating.store_id)
        .all()
    )
    averages = {store_id: 0.0 for store_id in store_ids}
    averages.update({store_id: float(avg) for store_id, avg in rows if avg is not None})
    return averages


def average_rating(session: Session, store_id: int) -> float:
    """Arithmetic mean of a store's ratings, 0.0 when it has none."""
    avg = session.query(func.avg(Rating.rating)).filter(Rating.store_id == store_id).scalar()
    return float(avg) if avg is not None else 0.0


def owner_rollup(session: Session, owner_id: int) -> List[Dict[str, Any]]:
    """Per-store average and rater list for every store of ``owner_id``.

    An owner without stores yields an empty list.
    """
    try:
        stores = list_stores_by_owner(session, owner_id)
        summary = []
        for store in stores:
            ratings = list_ratings_for_store(session, store.id)
            average = (
                sum(r.rating for r in ratings) / len(ratings) if ratings else 0.0
            )
            summary.append(
                {
                    "store_id": store.id,
                    "store_name": store.name,
                    "average_rating": average,
                    "ratings": [
                        {"user_name": r.user.name, "rating": r.rating} for r in ratings
                    ],
                }
            )
        return summary
    except Exception as exc:
        _handle_service_error(session, exc)


def platform_stats(session: Session) -> Dict[str, int]:
    """Counts of users, stores and ratings across the platform."""
    try:
        return {
            "total_users": session.query(func.count(User.id)).scalar(),
            "total_stores": session.query(func.count(Store.id)).scalar(),
            "total_ratings": session.query(func.count(Rating.id)).scalar(),
        }
    except Exception as exc:
        _handle_service_error(session, exc)
