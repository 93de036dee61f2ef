import os

# Configuration de test: doit précéder tout import de marketplace (config lue à l'import)
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("INTERNAL_SERVICE_SECRET", "test-internal-secret")
os.environ.setdefault("WEBHOOK_AUTO_RETRY_ENABLED", "0")
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")
os.environ.setdefault("PLATFORM_COMMISSION_RATE", "10")

import copy
import hashlib
import hmac
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List

import fakeredis
import pytest
import stripe
from fastapi.testclient import TestClient

from marketplace.app import app as fastapi_app
from marketplace.utils.security import require_admin, require_user

VENDOR_A = "11111111-1111-4111-8111-111111111111"
VENDOR_B = "22222222-2222-4222-8222-222222222222"
BUYER = {"id": "buyer-1", "email": "buyer@example.com", "role": "buyer", "vendor_id": None}
ADMIN = {"id": "admin-1", "email": "admin@example.com", "role": "admin", "vendor_id": None}
INTERNAL_HEADERS = {"X-Internal-Service": "payment-service", "X-Internal-Secret": "test-internal-secret"}

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)


# --- Supabase en mémoire (sous-ensemble PostgREST utilisé par les repositories) ---
class FakeResult:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.filters: List = []
        self.count_mode = None
        self.order_by = None
        self.limit_n = None
        self.range_ab = None

    def select(self, columns: str = "*", count=None):
        self.count_mode = count
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def update(self, fields):
        self.op, self.payload = "update", fields
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, col, value):
        self.filters.append(lambda r: r.get(col) == value)
        return self

    def neq(self, col, value):
        self.filters.append(lambda r: r.get(col) != value)
        return self

    def is_(self, col, value):
        if value == "null":
            self.filters.append(lambda r: r.get(col) is None)
        else:
            self.filters.append(lambda r: r.get(col) is value)
        return self

    def lte(self, col, value):
        # horodatages ISO UTC de même format: l'ordre lexical suit l'ordre chronologique
        self.filters.append(lambda r: r.get(col) is not None and str(r.get(col)) <= str(value))
        return self

    def in_(self, col, values):
        values = list(values)
        self.filters.append(lambda r: r.get(col) in values)
        return self

    def order(self, col, desc=False):
        self.order_by = (col, desc)
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def range(self, start, end):
        self.range_ab = (start, end)
        return self

    def _match(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        if self.table in self.db.failing_tables:
            raise RuntimeError(f"supabase down ({self.table})")
        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            created = []
            for item in items:
                row = dict(item)
                row.setdefault("id", str(uuid.uuid4()))
                row.setdefault("created_at", self.db.next_timestamp())
                rows.append(row)
                created.append(copy.deepcopy(row))
            return FakeResult(created)
        if self.op == "update":
            updated = []
            for row in rows:
                if self._match(row):
                    row.update(copy.deepcopy(self.payload))
                    updated.append(copy.deepcopy(row))
            return FakeResult(updated)
        if self.op == "delete":
            removed = [r for r in rows if self._match(r)]
            self.db.tables[self.table] = [r for r in rows if not self._match(r)]
            return FakeResult(copy.deepcopy(removed))

        selected = [r for r in rows if self._match(r)]
        if self.order_by:
            col, desc = self.order_by
            selected.sort(key=lambda r: str(r.get(col) or ""), reverse=desc)
        total = len(selected)
        if self.range_ab:
            start, end = self.range_ab
            selected = selected[start:end + 1]
        if self.limit_n is not None:
            selected = selected[: self.limit_n]
        return FakeResult(copy.deepcopy(selected), total if self.count_mode else None)


class FakeRpc:
    def __init__(self, db, name, params):
        self.db, self.name, self.params = db, name, params

    def execute(self):
        return FakeResult(self.db.rpc_handlers[self.name](self.params))


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.failing_tables = set()
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.rpc_handlers = {
            "reserve_inventory": self._reserve_inventory,
            "release_inventory": self._release_inventory,
        }

    def next_timestamp(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> FakeRpc:
        return FakeRpc(self, name, params)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def _product(self, product_id):
        return next((p for p in self.rows("products") if p["id"] == product_id), None)

    def _reserve_inventory(self, params):
        lines = params["lines"]
        for line in lines:
            p = self._product(line["product_id"])
            if p and p.get("track_inventory") and p["inventory_quantity"] < line["quantity"]:
                return False
        for line in lines:
            p = self._product(line["product_id"])
            if p and p.get("track_inventory"):
                p["inventory_quantity"] -= line["quantity"]
        return True

    def _release_inventory(self, params):
        for line in params["lines"]:
            p = self._product(line["product_id"])
            if p and p.get("track_inventory"):
                p["inventory_quantity"] += line["quantity"]
        return True


@pytest.fixture(autouse=True)
def fake_db(monkeypatch) -> FakeSupabase:
    db = FakeSupabase()
    db.rows("products").extend([
        {"id": "prod-a1", "vendor_id": VENDOR_A, "title": "Mug", "price": "30.00", "status": "active",
         "track_inventory": True, "inventory_quantity": 10},
        {"id": "prod-b1", "vendor_id": VENDOR_B, "title": "Poster", "price": "25.00", "status": "active",
         "track_inventory": False, "inventory_quantity": 0},
        {"id": "prod-draft", "vendor_id": VENDOR_B, "title": "Draft", "price": "5.00", "status": "draft",
         "track_inventory": False, "inventory_quantity": 0},
    ])
    db.rows("vendors").extend([
        {"id": VENDOR_A, "stripe_account_id": "acct_vendorA", "stripe_onboarding_completed": True},
        {"id": VENDOR_B, "stripe_account_id": "acct_vendorB", "stripe_onboarding_completed": False},
    ])
    monkeypatch.setattr("marketplace.infra.supabase_client.get_service_supabase", lambda: db)
    return db


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    r = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr("marketplace.infra.redis_client._redis", r)
    return r


# --- Stripe simulé (idempotence par clé, comme l'API réelle) ---
class FakeStripe:
    def __init__(self):
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.intent_calls: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.transfers: List[Dict[str, Any]] = []
        self.transfer_errors: Dict[str, Exception] = {}
        self.transfer_keys: List[str] = []
        self.transfers_by_key: Dict[str, Dict[str, Any]] = {}
        self.lost_transfer_responses: set = set()
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.account_calls: List[Dict[str, Any]] = []
        self.account_links: List[Dict[str, Any]] = []
        self.account_error: Exception | None = None
        self.intent_error: Exception | None = None

    def create_payment_intent(self, **kwargs):
        self.intent_calls.append(kwargs)
        if self.intent_error is not None:
            raise self.intent_error
        key = kwargs["idempotency_key"]
        if key not in self.intents:
            n = len(self.intents) + 1
            self.intents[key] = {
                "id": f"pi_test_{n}",
                "client_secret": f"pi_test_{n}_secret",
                "status": "requires_payment_method",
                "amount": kwargs["amount"],
                "application_fee_amount": kwargs["application_fee_amount"],
                "metadata": kwargs["metadata"],
            }
        return dict(self.intents[key])

    def cancel_payment_intent(self, payment_intent_id):
        self.cancelled.append(payment_intent_id)
        return {"id": payment_intent_id, "status": "canceled"}

    def create_transfer(self, **kwargs):
        key = kwargs["idempotency_key"]
        self.transfer_keys.append(key)
        error = self.transfer_errors.get(kwargs["destination"])
        if error is not None:
            raise error
        if key not in self.transfers_by_key:
            transfer = {"id": f"tr_test_{len(self.transfers) + 1}", **kwargs}
            self.transfers.append(transfer)
            self.transfers_by_key[key] = transfer
        if kwargs["destination"] in self.lost_transfer_responses:
            # transfert créé chez Stripe, réponse perdue (timeout de lecture)
            self.lost_transfer_responses.discard(kwargs["destination"])
            raise stripe.APIConnectionError("read timeout")
        return dict(self.transfers_by_key[key])

    def create_connected_account(self, **kwargs):
        self.account_calls.append(kwargs)
        if self.account_error is not None:
            raise self.account_error
        key = kwargs["idempotency_key"]
        if key not in self.accounts:
            self.accounts[key] = {"id": f"acct_test{len(self.accounts) + 1}", "email": kwargs["email"],
                                  "country": kwargs["country"], "charges_enabled": False}
        return dict(self.accounts[key])

    def create_account_link(self, **kwargs):
        self.account_links.append(kwargs)
        return {"url": f"https://connect.stripe.test/setup/{kwargs['account_id']}", "expires_at": 1767225600}


@pytest.fixture(autouse=True)
def fake_stripe(monkeypatch) -> FakeStripe:
    fake = FakeStripe()
    monkeypatch.setattr("marketplace.payments.stripe_client.create_payment_intent", fake.create_payment_intent)
    monkeypatch.setattr("marketplace.payments.stripe_client.cancel_payment_intent", fake.cancel_payment_intent)
    monkeypatch.setattr("marketplace.payments.stripe_client.create_transfer", fake.create_transfer)
    monkeypatch.setattr("marketplace.payments.stripe_client.create_connected_account", fake.create_connected_account)
    monkeypatch.setattr("marketplace.payments.stripe_client.create_account_link", fake.create_account_link)
    return fake


@pytest.fixture
def inprocess_order_service(monkeypatch):
    """Le confirmateur appelle le service commandes en direct (au lieu d'HTTP)."""
    from marketplace.orders import service as orders_service
    calls = {"verify": 0, "confirm": 0}

    def _verify(order_id):
        calls["verify"] += 1
        return orders_service.verify_order(order_id)

    def _confirm(order_id, payment_intent_id, amount_received, currency):
        calls["confirm"] += 1
        return orders_service.confirm_payment(order_id, payment_intent_id, amount_received, currency)

    monkeypatch.setattr("marketplace.webhooks.order_client.verify_order", _verify)
    monkeypatch.setattr("marketplace.webhooks.order_client.confirm_order_payment", _confirm)
    return calls


def sign_payload(payload: str, secret: str = "whsec_test_secret", timestamp: int | None = None) -> str:
    """En-tête Stripe-Signature valide (t=..., v1=HMAC-SHA256(secret, 't.payload'))."""
    ts = int(timestamp if timestamp is not None else time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def payment_succeeded_event(order_id: str, intent_id: str, amount: int, event_id: str = "evt_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "amount_received": amount,
            "currency": "usd",
            "metadata": {"order_id": order_id},
        }},
    }


@pytest.fixture
def signed():
    return sign_payload


@pytest.fixture
def payment_event():
    return payment_succeeded_event


@pytest.fixture(scope="session")
def app():
    return fastapi_app


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


# Simuler un acheteur authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(app):
    app.dependency_overrides[require_user] = lambda: dict(BUYER)
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)


@pytest.fixture
def admin_client(app, client):
    app.dependency_overrides[require_admin] = lambda: dict(ADMIN)
    app.dependency_overrides[require_user] = lambda: dict(ADMIN)
    yield client
    app.dependency_overrides.pop(require_admin, None)


@pytest.fixture
def as_vendor(app):
    def _as(vendor_id: str):
        app.dependency_overrides[require_user] = lambda: {
            "id": f"user-{vendor_id[:4]}", "email": "vendor@example.com", "role": "vendor", "vendor_id": vendor_id,
        }
    return _as


