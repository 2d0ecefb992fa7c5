"""Shared test fixtures for the CRM billing test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: a workspace with an owner and a member, plus a second workspace
- provider / billing_service: BillingService wired to a mocked Stripe provider
- login: helper logging a user in through /auth/login
"""

from unittest.mock import MagicMock

import pytest
from werkzeug.security import generate_password_hash

from crm import create_app
from crm.extensions import db as _db
from crm.models.user import User
from crm.models.workspace import Workspace, WorkspaceMember
from crm.services.billing_service import BillingService


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed a workspace (owner + member) and an unrelated second workspace.

    Returns plain IDs so tests can use them across app contexts.
    """
    with app.app_context():
        workspace = Workspace(display_name="Acme Corp")
        other_workspace = Workspace(display_name="Globex")
        _db.session.add_all([workspace, other_workspace])
        _db.session.flush()

        owner = User(
            email="owner@acme.test",
            password_hash=generate_password_hash("ownerpass123"),
            first_name="Olivia",
            last_name="Owner",
            default_workspace_id=workspace.id,
        )
        member = User(
            email="member@acme.test",
            password_hash=generate_password_hash("memberpass123"),
            first_name="Max",
            default_workspace_id=workspace.id,
        )
        outsider = User(
            email="outsider@globex.test",
            password_hash=generate_password_hash("outsiderpass123"),
            default_workspace_id=workspace.id,  # points at Acme but not a member
        )
        _db.session.add_all([owner, member, outsider])
        _db.session.flush()

        _db.session.add_all([
            WorkspaceMember(user_id=owner.id, workspace_id=workspace.id, role="owner"),
            WorkspaceMember(user_id=member.id, workspace_id=workspace.id, role="member"),
            WorkspaceMember(
                user_id=outsider.id, workspace_id=other_workspace.id, role="owner"
            ),
        ])
        _db.session.commit()

        return {
            "workspace_id": workspace.id,
            "other_workspace_id": other_workspace.id,
            "owner_id": owner.id,
            "owner_email": owner.email,
            "member_id": member.id,
            "outsider_id": outsider.id,
        }


@pytest.fixture
def provider():
    """A stand-in for StripeBillingProvider."""
    provider = MagicMock()
    provider.create_checkout_session.return_value = MagicMock(
        url="https://checkout.stripe.com/c/pay/cs_test_123"
    )
    provider.create_billing_portal_session.return_value = MagicMock(
        url="https://billing.stripe.com/p/session/test_456"
    )
    return provider


@pytest.fixture
def billing_service(provider):
    return BillingService(
        provider=provider,
        front_base_url="http://localhost:3001",
        base_plan_product_id="prod_base_plan_test",
    )


@pytest.fixture
def login(client):
    """Return a function that logs a user in via the JSON login route."""

    def _login(email, password):
        resp = client.post(
            "/auth/login", json={"email": email, "password": password}
        )
        assert resp.status_code == 200, resp.get_json()
        return resp

    return _login
