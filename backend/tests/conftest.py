import os

# Settings are read once at import time.
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-0123456789abcdef0123456789")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret")
os.environ.setdefault("ENCRYPTION_KEY", "ab" * 32)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_INIT_MODE", "off")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tourney.client.session import ClientSession
from tourney.core import encryption
from tourney.core.database import Base, get_db
from tourney.main import app
from tourney.models.user import User
from tourney.core.security import get_password_hash
from tourney.services.rate_limiter import rate_limiter

PASSWORD = "correct-horse-battery"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def app_with_db(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield app
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def _reset_state():
    rate_limiter.reset()
    ClientSession.reset_all()
    encryption.clear_key_cache()
    yield
    ClientSession.reset_all()
    encryption.clear_key_cache()


def make_user(db, email="player@example.com", username="player1", role="player", **extra) -> User:
    user = User(
        email=email,
        username=username,
        password_hash=get_password_hash(PASSWORD),
        role=role,
        is_active=True,
        **extra,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
