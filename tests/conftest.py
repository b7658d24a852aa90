"""
Pytest configuration for Recompra tests.
Environment must be set before config.py is imported (Config reads it at import time).
"""

import hashlib
import hmac
import itertools
import json
import os
import time

os.environ["APP_ENV"] = "development"
os.environ.pop("RENDER", None)
os.environ.pop("RENDER_EXTERNAL_URL", None)
os.environ.setdefault("SECRET_KEY", "test-secret-key-please-change-32chars+")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from app import create_app
from config import Config
from models.address_model import Address
from models.extensions import db
from models.intent_model import SubscriptionIntent
from models.user_model import User
from services.errors import BillingError, ExternalCapabilityError
from services.intent_extractor import Extraction
from services.payment_processor import StripeProcessor


WEBHOOK_SECRET = "whsec_test_secret"
CRON_KEY = "cron-test-key"


class FakeAgentClient:
    """Servico de compras falso: responde da fila `responses` ou com o padrao."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.responses = []
        self.default = {
            "success": True,
            "result": "stopped before place order",
            "orderDetails": {"merchant": "Amazon", "priceCents": 2000, "orderNumber": None},
        }
        self.opened = []
        self.released = []
        self.instructions = []

    def open_session(self):
        handle = f"sess-{next(self._ids)}"
        self.opened.append(handle)
        return handle

    def act(self, session_handle, instruction):
        self.instructions.append(instruction)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        if response.get("success") is False:
            raise ExternalCapabilityError(response.get("error") or "failed")
        return response

    def release_session(self, session_handle):
        self.released.append(session_handle)


class FakeProcessor(StripeProcessor):
    """Stripe falso; mantem a verificacao de assinatura real do StripeProcessor."""

    def __init__(self):
        super().__init__("", WEBHOOK_SECRET, timeout=5, tolerance=300)
        self._ids = itertools.count(1)
        self.items = []
        self.invoices = []
        self.customers = []
        self.subscriptions = []
        self.canceled = []
        self.fail_items = False
        self.invoice_status = "paid"
        self._by_key = {}

    def _next(self, prefix):
        return f"{prefix}_{next(self._ids)}"

    def create_customer(self, *, email, name, metadata):
        customer_id = self._next("cus")
        self.customers.append({"id": customer_id, "email": email, "metadata": metadata})
        return customer_id

    def create_subscription(self, *, customer_id, price_id, payment_method_id, metadata):
        sub = {"id": self._next("sub"), "status": "active", "customer": customer_id, "metadata": metadata}
        self.subscriptions.append(sub)
        return {"id": sub["id"], "status": "active"}

    def cancel_subscription(self, subscription_id):
        self.canceled.append(subscription_id)

    def create_checkout_session(self, *, customer_id, price_id, success_url, cancel_url, metadata):
        session_id = self._next("cs")
        return {"id": session_id, "url": f"https://checkout.test/{session_id}"}

    def add_invoice_item(self, *, customer_id, amount_cents, description, metadata, invoice_id=None, idempotency_key=None):
        if self.fail_items:
            raise BillingError("Erro Stripe em invoiceitem.create: card_declined")
        # mesma semantica do Stripe: chave repetida devolve o mesmo objeto
        if idempotency_key and idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        item_id = self._next("ii")
        self.items.append(
            {
                "id": item_id,
                "customer": customer_id,
                "amount": amount_cents,
                "description": description,
                "metadata": metadata,
                "invoice": invoice_id,
            }
        )
        if idempotency_key:
            self._by_key[idempotency_key] = item_id
        return item_id

    def create_invoice(self, *, customer_id, metadata, idempotency_key=None):
        invoice_id = self._next("in")
        self.invoices.append({"id": invoice_id, "customer": customer_id, "metadata": metadata})
        return invoice_id

    def finalize_invoice(self, invoice_id):
        return {"id": invoice_id, "status": self.invoice_status, "amount_paid": 0, "hosted_invoice_url": None}


class FakeExtractor:
    def __init__(self):
        self.result = Extraction(
            intent={"title": "Dish soap", "targetUrl": "https://www.amazon.com/dp/B000", "cadenceDays": 30}
        )

    def extract(self, message):
        return self.result


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


@pytest.fixture
def agent_client():
    return FakeAgentClient()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def app(tmp_path, processor, agent_client, extractor):
    db_uri = f"sqlite:///{tmp_path / 'test.db'}"

    class TestConfig(Config):
        TESTING = True
        IS_PRODUCTION = False
        SQLALCHEMY_DATABASE_URI = db_uri
        SQLALCHEMY_ENGINE_OPTIONS = {}
        STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
        STRIPE_SERVICE_FEE_PRICE_ID = "price_service_fee"
        CRON_SECRET_KEY = CRON_KEY
        MERCHANT_ACCOUNTS = {"amazon": {"email": "buyer@example.test", "password": "pw"}}

    application = create_app(TestConfig, processor=processor, agent_client=agent_client, extractor=extractor)
    yield application
    with application.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def services(app):
    return app.extensions["recompra"]


@pytest.fixture
def client(app):
    return app.test_client()


def create_user(email="alice@example.test", *, customer_id=None) -> User:
    user = User(
        email=email,
        full_name="Alice",
        api_token=User.new_api_token(),
        stripe_customer_id=customer_id,
    )
    db.session.add(user)
    db.session.commit()
    return user


def create_address(user, **overrides) -> Address:
    data = {
        "street1": "1 Main St",
        "city": "Austin",
        "state": "TX",
        "zip_code": "78701",
        "is_primary": True,
    }
    data.update(overrides)
    address = Address(user_id=user.id, **data)
    db.session.add(address)
    db.session.commit()
    return address


def create_intent(user, **overrides) -> SubscriptionIntent:
    data = {
        "title": "Dish soap",
        "target_url": "https://www.amazon.com/dp/B000",
        "cadence_days": 30,
        "max_price_cents": 1500,
        "constraints": {},
        "status": "active",
    }
    data.update(overrides)
    intent = SubscriptionIntent(user_id=user.id, **data)
    db.session.add(intent)
    db.session.commit()
    return intent
