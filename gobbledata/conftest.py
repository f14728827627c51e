# gobbledata/conftest.py
import os

import pytest
from fastapi.testclient import TestClient

# Never validate a developer's environment in tests
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from gobbledata.core.database import Database
from gobbledata.core.metrics import reset_metrics
from gobbledata.dependencies import build_services
from gobbledata.features.identity.provider import AccessibleAccount
from gobbledata.main import create_app
from gobbledata.tests.mocks import FakeBillingProvider, FakeIdentityProvider, make_settings


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def database():
    """Fresh in-memory SQLite database with all tables."""
    db = Database.from_url("sqlite:///:memory:")
    db.create_all()
    yield db
    db.drop_all()
    db.engine.dispose()


@pytest.fixture
def identity():
    return FakeIdentityProvider(
        accounts=[
            AccessibleAccount(account_id="123456789", account_name="Main Site", parent_name="Acme"),
            AccessibleAccount(account_id="987654321", account_name="Blog", parent_name="Acme"),
        ]
    )


@pytest.fixture
def billing_provider():
    return FakeBillingProvider()


@pytest.fixture
def services(test_settings, database, identity, billing_provider):
    return build_services(test_settings, database, identity=identity, billing_provider=billing_provider)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client
