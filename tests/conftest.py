import hashlib
import hmac
import json

import mongomock
import pytest
from bson import ObjectId
from flask_jwt_extended import create_access_token

from app import create_app
from errors import PaymentGatewayError
from wipay import PaymentIntent, PaymentVerification, WiPayClient

WEBHOOK_SECRET = "wipay-test-secret"

KINGSTON_ADDRESS = {
    "street": "12 Hope Road",
    "city": "Kingston",
    "parish": "St. Andrew",
    "postalCode": "JMAAW10",
}


class FakeGateway:
    """In-memory stand-in for the WiPay client."""

    def __init__(self):
        self.created = []
        self.verify_calls = []
        self.verifications = {}
        self.fail_create = False
        self.fail_verify = False
        self._signer = WiPayClient("merchant", "key", WEBHOOK_SECRET)

    def create_payment(self, payment_request):
        if self.fail_create:
            raise PaymentGatewayError("Payment provider timed out.")
        self.created.append(payment_request)
        number = len(self.created)
        return PaymentIntent(
            transaction_id=f"wp_txn_{number}",
            payment_url=f"https://sandbox.wipay.com/pay/{number}",
            reference=f"WPREF-{number}",
        )

    def verify_payment(self, reference):
        self.verify_calls.append(reference)
        if self.fail_verify:
            raise PaymentGatewayError("Payment provider unreachable.")
        if reference not in self.verifications:
            raise PaymentGatewayError("Unknown payment.")
        return self.verifications[reference]

    def settle(self, reference, status="success", amount=0.0, transaction_id=None):
        self.verifications[reference] = PaymentVerification(
            transaction_id=transaction_id or reference.replace("WPREF-", "wp_txn_"),
            reference=reference,
            status=status,
            amount=amount,
            currency="JMD",
            metadata={"reference": reference, "status": status},
        )

    def verify_signature(self, raw_payload, signature):
        return self._signer.verify_signature(raw_payload, signature)


def sign(raw_payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()


def webhook_body(**fields) -> bytes:
    return json.dumps(fields).encode("utf-8")


@pytest.fixture
def db():
    return mongomock.MongoClient().harvest_market


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app_config():
    return {
        "TESTING": True,
        "JWT_SECRET_KEY": "test-secret-key-with-enough-length",
        "RESEND_API_KEY": "",
        "FRONTEND_URL": "https://shop.example.jm",
        "SHIPPING_FLAT_FEE": "500",
        "REMOTE_PARISH_SURCHARGE": "300",
    }


@pytest.fixture
def app(db, gateway, app_config):
    return create_app(config=app_config, db=db, gateway=gateway)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def workflow(app):
    return app.extensions["order_workflow"]


@pytest.fixture
def make_user(db):
    def _make_user(role="buyer", email=None, addresses=None):
        user_id = ObjectId()
        db.users.insert_one(
            {
                "_id": user_id,
                "email": email or f"{role}-{user_id}@example.jm",
                "display_name": f"Test {role.title()}",
                "role": role,
                "addresses": addresses or [],
            }
        )
        return db.users.find_one({"_id": user_id})

    return _make_user


@pytest.fixture
def buyer(make_user):
    return make_user("buyer", email="buyer@example.jm")


@pytest.fixture
def seller(make_user):
    return make_user("farmer", email="farmer@example.jm")


@pytest.fixture
def make_product(db):
    def _make_product(seller, stock=10, price=100, title="Scotch Bonnet Peppers", **extra):
        document = {
            "seller_id": seller["_id"],
            "title": title,
            "price": price,
            "stock": stock,
            "available": stock > 0,
            "is_approved": True,
        }
        document.update(extra)
        product_id = db.products.insert_one(document).inserted_id
        return db.products.find_one({"_id": product_id})

    return _make_product


@pytest.fixture
def fill_cart(app):
    carts = app.extensions["order_workflow"].carts

    def _fill_cart(user, *lines):
        for product, quantity in lines:
            carts.add_item(user["_id"], product["_id"], quantity)
        return carts.find(user["_id"])

    return _fill_cart


@pytest.fixture
def auth_headers(app):
    def _auth_headers(user):
        with app.app_context():
            token = create_access_token(identity=str(user["_id"]))
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def stock_of(db):
    def _stock_of(product):
        return db.products.find_one({"_id": product["_id"]})["stock"]

    return _stock_of
