"""Database setup for users, stores and ratings."""

from datetime import datetime
from sqlalchemy import (
    create_engine,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import sessionmaker, declarative_base, relationship

from .config import settings


def normalize_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def make_engine(url: str, **kwargs):
    """Create an engine, allowing SQLite connections to cross threads."""
    url = normalize_url(url)
    connect_args = kwargs.pop("connect_args", {})
    if url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return create_engine(url, connect_args=connect_args, future=True, **kwargs)


DATABASE_URL = normalize_url(settings.database_url)

engine = make_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()


class Store(Base):
    """A rateable store, optionally assigned to an owner account."""

    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(60), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    address = Column(String(400), nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    owner = relationship("User", back_populates="stores")
    ratings = relationship("Rating", back_populates="store")


class Rating(Base):
    """A single user's 1-5 rating of a store."""

    __tablename__ = "ratings"
    __table_args__ = (
        UniqueConstraint("user_id", "store_id", name="uq_ratings_user_store"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="ratings")
    store = relationship("Store", back_populates="ratings")


class AuthSession(Base):
    """Server-side login session, used by the database session backend."""

    __tablename__ = "auth_sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


def init_db(bind=None) -> None:
    """Create database tables if they do not exist."""
    Base.metadata.create_all(bind=bind or engine)


from .models import user  # noqa: E402,F401  register User with the mapper
