"""
Pytest fixtures for storefront backend tests.

Provides an in-memory database, fake payment processors, factories for
catalog/promotion/gift-card/admin rows, and an admin login helper.
"""

import itertools
import json
from datetime import timedelta
from decimal import Decimal

import pyotp
import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import AdminUser, DiscountCode, GiftCard, Product
from storefront.services import mfa_service, rate_limit_service
from storefront.services.auth_service import hash_password
from storefront.services.payment_gateways import WebhookSignatureError
from storefront.time_utils import utcnow


TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
VALID_SIGNATURE = "t=1,v1=valid"
ADMIN_PASSWORD = "CorrectHorse42Battery"


# =============================================================================
# FAKE PAYMENT PROCESSORS
# =============================================================================

class FakeCardGateway:
    """In-process card processor; sessions live in a dict."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.sessions = {}
        self.payloads = []

    def create_card_session(self, payload):
        session_id = f"cs_test_{next(self._ids)}"
        self.payloads.append(payload)
        self.sessions[session_id] = {
            "id": session_id,
            "url": f"https://checkout.test/{session_id}",
            "metadata": dict(payload.get("metadata") or {}),
            "customer_email": payload.get("customer_email"),
            "payment_status": "unpaid",
            "line_items": payload.get("line_items"),
            "shipping_options": payload.get("shipping_options"),
        }
        return {"id": session_id, "url": f"https://checkout.test/{session_id}"}

    def retrieve_card_session(self, session_id):
        return self.sessions[session_id]

    def verify_card_webhook(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("No signatures found matching the expected signature")
        return json.loads(payload)

    def charged_pence(self, session_id):
        """What the processor would charge for a session's lines and shipping."""
        session = self.sessions[session_id]
        total = sum(li["price_data"]["unit_amount"] * li["quantity"] for li in session["line_items"])
        for option in session.get("shipping_options") or []:
            total += option["shipping_rate_data"]["fixed_amount"]["amount"]
        return total

    def complete(self, session_id, amount_total=None, email="buyer@example.com", payment_intent=None):
        session = self.sessions[session_id]
        session.update({
            "payment_status": "paid",
            "payment_intent": payment_intent or f"pi_{session_id}",
            "amount_total": self.charged_pence(session_id) if amount_total is None else amount_total,
            "customer_details": {
                "email": email,
                "name": "Sam Buyer",
                "phone": "+447700900123",
            },
            "shipping_details": {
                "name": "Sam Buyer",
                "address": {
                    "line1": "1 High Street",
                    "line2": None,
                    "city": "Leeds",
                    "state": None,
                    "postal_code": "LS1 1AA",
                    "country": "GB",
                },
            },
        })
        return session


class FakeWalletGateway:
    """In-process wallet processor with create/capture/get."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.orders = {}

    def wallet_access_token(self):
        return "wallet-test-token"

    def create_wallet_order(self, payload):
        order_id = f"WALLET-{next(self._ids)}"
        self.orders[order_id] = {
            "id": order_id,
            "status": "CREATED",
            "purchase_units": json.loads(json.dumps(payload["purchase_units"])),
            "links": [{"rel": "approve", "href": f"https://wallet.test/approve/{order_id}"}],
        }
        return self.orders[order_id]

    def capture_wallet_order(self, order_id):
        order = self.orders[order_id]
        unit = order["purchase_units"][0]
        order["status"] = "COMPLETED"
        order["payer"] = {
            "email_address": "payer@example.com",
            "name": {"given_name": "Pat", "surname": "Payer"},
        }
        unit["shipping"] = {
            "name": {"full_name": "Pat Payer"},
            "address": {
                "address_line_1": "2 Low Road",
                "admin_area_2": "York",
                "postal_code": "YO1 1AA",
                "country_code": "GB",
            },
        }
        unit["payments"] = {
            "captures": [{
                "id": f"CAPTURE-{order_id}",
                "status": "COMPLETED",
                "amount": dict(unit["amount"], breakdown=None),
            }]
        }
        return order

    def get_wallet_order(self, order_id):
        return self.orders[order_id]


# =============================================================================
# APPLICATION
# =============================================================================

@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'APP_ENV': 'test',
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_ENGINE_OPTIONS': {},
        'JWT_SECRET': 'test-jwt-secret',
        'ENCRYPTION_KEY': TEST_ENCRYPTION_KEY,
        'SITE_URL': 'http://localhost:8888',
        'ADMIN_ALLOWED_IPS': [],
        'STORE_NAME': 'Test Store',
        'CURRENCY': 'GBP',
        'SHIPPING_FREE_THRESHOLD_PENCE': 2000,
        'SHIPPING_STANDARD_PENCE': 349,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        rate_limit_service.memory_store().reset()
        mfa_service.mfa_limiter.reset()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def card_gateway(app):
    gateway = FakeCardGateway()
    app.extensions["card_gateway"] = gateway
    return gateway


@pytest.fixture(scope='function')
def wallet_gateway(app):
    gateway = FakeWalletGateway()
    app.extensions["wallet_gateway"] = gateway
    return gateway


@pytest.fixture(scope='function')
def config(app):
    """Mutable app config, restored after the test."""
    saved = dict(app.config)
    yield app.config
    app.config.clear()
    app.config.update(saved)


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture(scope='function')
def make_product(db_session):
    counter = itertools.count(1)

    def _make(title="Fidget Cube", price_pence=1599, stock=10, is_active=True):
        n = next(counter)
        product = Product(
            title=title,
            slug=f"{title.lower().replace(' ', '-')}-{n}",
            price_pence=price_pence,
            stock=stock,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def make_discount(db_session):
    def _make(code="SAVE10", discount_type="percentage", value="10", **kwargs):
        discount = DiscountCode(
            code=code,
            name=kwargs.pop("name", f"{code} promotion"),
            discount_type=discount_type,
            value=Decimal(value),
            is_active=kwargs.pop("is_active", True),
            use_count=kwargs.pop("use_count", 0),
            **kwargs,
        )
        db_session.add(discount)
        db_session.commit()
        return discount

    return _make


@pytest.fixture(scope='function')
def make_gift_card(db_session):
    def _make(code="GC-ABCD-EFGH-JKMN", balance_pence=2000, status="active", initial_pence=None, **kwargs):
        card = GiftCard(
            code=code,
            initial_balance_pence=initial_pence if initial_pence is not None else balance_pence,
            current_balance_pence=balance_pence,
            status=status,
            purchaser_name="Pat Giver",
            purchaser_email="giver@example.com",
            recipient_name="Sam Buyer",
            recipient_email="buyer@example.com",
            expires_at=kwargs.pop("expires_at", utcnow() + timedelta(days=365)),
            activated_at=kwargs.pop("activated_at", utcnow() if status != "pending" else None),
            **kwargs,
        )
        db_session.add(card)
        db_session.commit()
        return card

    return _make


@pytest.fixture(scope='function')
def make_admin(db_session):
    def _make(email="admin@example.com", role="super_admin", password=ADMIN_PASSWORD,
              mfa_enabled=True, password_hash=None, is_active=True):
        user = AdminUser(
            email=email,
            name="Ada Admin",
            role=role,
            password_hash=password_hash or hash_password(password),
            is_active=is_active,
            mfa_enabled=mfa_enabled,
        )
        if mfa_enabled:
            codes, salt, hashed = mfa_service.generate_backup_codes()
            user.mfa_secret = mfa_service.generate_secret()
            user.mfa_backup_codes = hashed
            user.mfa_backup_salt = salt
            user.plain_backup_codes = codes
        db_session.add(user)
        db_session.commit()
        return user

    return _make


# =============================================================================
# HELPERS
# =============================================================================

def login(client, user, password=ADMIN_PASSWORD) -> str:
    """Full password + TOTP login; the client keeps the cookies. Returns the CSRF token."""
    resp = client.post('/api/admin-auth', json={'email': user.email, 'password': password})
    assert resp.status_code == 200, resp.get_json()
    pre_mfa_token = resp.get_json()['preMfaToken']

    code = pyotp.TOTP(user.mfa_secret).now()
    resp = client.post('/api/admin-mfa/validate', json={'code': code, 'preMfaToken': pre_mfa_token})
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()['csrfToken']


def csrf_headers(token: str) -> dict:
    """Helper to create the double-submit header."""
    return {'X-CSRF-Token': token}


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def cart(*lines):
    """[(product, quantity), ...] -> client cart with deliberately wrong prices."""
    return [{"id": product.id, "quantity": quantity, "price": 0.01} for product, quantity in lines]
