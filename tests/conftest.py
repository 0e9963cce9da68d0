import os

os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storerate.api import app
from storerate.auth import get_db
from storerate.database import Base, make_engine
from storerate.models.user import Role
from storerate.schemas import StoreCreate, UserCreate
from storerate.services import create_store, create_user
from storerate.sessions import MemorySessionStore

PASSWORD = "Secret#Pass1"


@pytest.fixture
def session_local():
    """Provide an isolated in-memory database for each test."""
    engine = make_engine("sqlite://", poolclass=StaticPool)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    yield TestingSessionLocal
    engine.dispose()


@pytest.fixture
def db(session_local):
    session = session_local()
    yield session
    session.close()


@pytest.fixture
def client(session_local):
    def override_get_db():
        session = session_local()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.session_store = MemorySessionStore(ttl_seconds=3600)
    app.state.limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role=Role.USER, email=None, name=None, password=PASSWORD):
        counter["n"] += 1
        return create_user(
            db,
            UserCreate(
                name=name or f"Account Holder Number {counter['n']:03d}",
                email=email or f"{role.value}{counter['n']}@example.com",
                password=password,
                role=role,
            ),
        )

    return _make


@pytest.fixture
def make_store(db):
    counter = {"n": 0}

    def _make(owner=None, name=None, address="1 Market Street, Springfield"):
        counter["n"] += 1
        return create_store(
            db,
            StoreCreate(
                name=name or f"Neighbourhood Store No {counter['n']:03d}",
                email=f"store{counter['n']}@example.com",
                address=address,
                owner_id=owner.id if owner else None,
            ),
        )

    return _make


@pytest.fixture
def login(client):
    def _login(user_or_email, password=PASSWORD):
        email = getattr(user_or_email, "email", user_or_email)
        return client.post("/api/login", json={"username": email, "password": password})

    return _login
