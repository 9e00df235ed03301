"""
Pytest fixtures for the canteen backend tests.

Provides the app (in-memory SQLite, inline task runner), a fresh database
per test, theater/product factories and authenticated API headers.
"""

from datetime import date
from decimal import Decimal

import pytest

from canteen import create_app
from canteen.config import TestConfig
from canteen.extensions import db
from canteen.models import Product
from canteen.services import auth_service, print_service, rate_limit_service, settings_service, stock_ledger_service, theater_service


PASSWORD = "Password123"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    settings_service.reload_settings()
    rate_limit_service.get_limiter().reset()
    dispatcher = print_service.get_dispatcher()
    dispatcher.counters = print_service.DispatchCounters()
    app.extensions.pop("canteen.agents", None)

    yield db.session

    db.session.rollback()


@pytest.fixture(scope='function')
def theater(db_session):
    return theater_service.create_theater(
        "Screen City",
        code="SCITY",
        order_prefix="SC",
        admin_username="sc-admin",
        admin_password=PASSWORD,
        agent_username="sc-agent",
        agent_password=PASSWORD,
    )


@pytest.fixture(scope='function')
def other_theater(db_session):
    return theater_service.create_theater(
        "Galaxy Multiplex",
        code="GALAXY",
        order_prefix="GX",
        admin_username="gx-admin",
        admin_password=PASSWORD,
    )


@pytest.fixture(scope='function')
def operator(db_session):
    return auth_service.create_user("ops", PASSWORD, theater_id=None, is_super_admin=True)


def make_product(theater, name="Popcorn", *, price="100", tax_rate="18", gst_type="EXCLUDE",
                 track_stock=True, discount="0"):
    product = Product(
        theater_id=theater.id,
        name=name,
        base_price=Decimal(price),
        tax_rate=Decimal(tax_rate),
        gst_type=gst_type,
        discount_percentage=Decimal(discount),
        track_stock=track_stock,
    )
    db.session.add(product)
    db.session.commit()
    return product


def stock_cafe(theater, product, quantity, *, on=date(2024, 1, 1)):
    """Give a product cafe-ledger stock."""
    stock_ledger_service.add_entry(
        theater.id,
        product.id,
        {"date": on.isoformat(), "type": "ADDED", "invordStock": quantity},
        ledger="cafe",
        today=on,
    )


def login(client, username, password=PASSWORD, **extra):
    resp = client.post("/api/auth/login", json={"username": username, "password": password, **extra})
    assert resp.status_code == 200, resp.get_json()
    return {"Authorization": f"Bearer {resp.get_json()['data']['token']}"}


@pytest.fixture(scope='function')
def admin_headers(client, theater):
    return login(client, "sc-admin")


@pytest.fixture(scope='function')
def operator_headers(client, operator):
    return login(client, "ops")
