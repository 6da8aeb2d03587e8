import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

from backend.api.main import app, get_current_user
from backend.api.database import get_db
from backend.api.rate_limiter import rate_limiter
from backend.tests.fakes import USER_ID, make_db


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def db():
    return make_db()


@pytest.fixture
def user():
    return MagicMock(id=USER_ID, email="test@example.com")


@pytest.fixture
def client(db, user):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: user
    yield TestClient(app)
    app.dependency_overrides.clear()
