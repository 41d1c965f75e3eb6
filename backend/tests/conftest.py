"""Shared fixtures: an in-memory SQLite store and a few users."""

import os
import sys
import uuid

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Settings are read once at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EXPIRY_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("MATCH_REQUEST_COOLDOWN_MINUTES", "0")
os.environ.setdefault("RATE_LIMIT_WRITES", "1000/minute")
os.environ.setdefault("STORE_RETRY_BASE_DELAY", "0")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from changeswap.database import Base, init_db
from changeswap.models import User  # registers every model

MANILA = (14.60, 120.98)
MANILA_NEARBY = (14.61, 120.99)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(name: str = "User") -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=f"{name.lower()}-{uuid.uuid4().hex[:8]}@example.com",
            password_hash="x",
            display_name=name,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def alice(make_user):
    return make_user("Alice")


@pytest.fixture
def bob(make_user):
    return make_user("Bob")


@pytest.fixture
def carol(make_user):
    return make_user("Carol")
