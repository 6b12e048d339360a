import pytest
from werkzeug.security import generate_password_hash

from ums_app import create_app, db
from ums_app.models import User, Student, Faculty
from ums_app.payments.gateways import GatewayOrder, GatewayOutcome

PASSWORD = "secret123"

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret",
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "RATELIMIT_ENABLED": False,
    "PAYMENT_SWEEP_INTERVAL": 0,
    "CACHE_TYPE": "SimpleCache",
    "CASHFREE_APP_ID": "cf-app",
    "CASHFREE_SECRET_KEY": "cf-secret",
    "CASHFREE_WEBHOOK_SECRET": "cf-webhook-secret",
    "RAZORPAY_KEY_ID": "rzp-key",
    "RAZORPAY_KEY_SECRET": "rzp-secret",
    "RAZORPAY_WEBHOOK_SECRET": "rzp-webhook-secret",
}


class FakeGateway:
    """Stands in for a gateway client; answers with a preset outcome."""

    def __init__(self, name="cashfree", status="success", payment_id="cf_pay_1", real=None):
        self.name = name
        self.status = status
        self.payment_id = payment_id
        self.error = None
        self.real = real
        self.fetches = 0
        self.orders = 0

    def create_order(self, order_id, amount, customer):
        self.orders += 1
        return GatewayOrder(order_id=order_id, token=f"token_{order_id}")

    def fetch_outcome(self, order_id, gateway_payment_id=None, signature=None):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        pid = None if self.status == "pending" else self.payment_id
        return GatewayOutcome(order_id, self.status, gateway_payment_id=pid, transaction_id=pid)

    # Webhooks go through the real signature/body handling
    def verify_webhook(self, raw_body, headers):
        return self.real.verify_webhook(raw_body, headers)

    def parse_webhook(self, raw_body):
        return self.real.parse_webhook(raw_body)


@pytest.fixture()
def app():
    app = create_app(dict(TEST_CONFIG))
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture()
def ledger(app):
    return app.extensions["payment_ledger"]


@pytest.fixture()
def fake_cashfree(ledger):
    fake = FakeGateway("cashfree", real=ledger.gateways["cashfree"])
    ledger.gateways["cashfree"] = fake
    return fake


@pytest.fixture()
def make_user(app):
    def _make(username, role="admin", password=PASSWORD):
        with app.app_context():
            user = User(username=username, password_hash=generate_password_hash(password), role=role)
            db.session.add(user)
            db.session.commit()
            return user.user_id
    return _make


@pytest.fixture()
def make_student(app, make_user):
    def _make(regd_no="21CS001", semester=3, first_name="Asha", branch="CSE", section="A"):
        user_id = make_user(regd_no, role="student")
        with app.app_context():
            db.session.add(Student(
                regd_no=regd_no, user_id_fk=user_id, first_name=first_name, last_name="Rao",
                email=f"{regd_no.lower()}@college.test", mobile="9000000001",
                branch=branch, section=section, semester=semester,
            ))
            db.session.commit()
        return regd_no
    return _make


@pytest.fixture()
def make_faculty(app, make_user):
    def _make(username="prof.iyer", full_name="Meera Iyer"):
        user_id = make_user(username, role="faculty")
        with app.app_context():
            faculty = Faculty(user_id_fk=user_id, full_name=full_name, employee_id=f"EMP-{username}", department="CSE")
            db.session.add(faculty)
            db.session.commit()
            return faculty.faculty_id
    return _make


@pytest.fixture()
def login(client):
    def _login(username, password=PASSWORD):
        resp = client.post("/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return resp
    return _login
