import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
import main
from mailer import MailerError
from rate_limit import SlidingWindowRateLimiter
from security import create_access_token, get_password_hash

API = main.API_PREFIX
PASSWORD = "s3cretpass"


class FakeMailer:
    """Records OTP emails instead of talking to an SMTP server."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def verify(self):
        return True

    def send_otp(self, to, name, code, minutes, resend=False):
        if self.fail:
            raise MailerError("connection refused")
        self.sent.append({"to": to, "name": name, "code": code, "minutes": minutes, "resend": resend})

    def last_code(self, to):
        return [m["code"] for m in self.sent if m["to"] == to][-1]


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient()["ekoseller_test"]
    database.ensure_indexes(mock_db)
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    return mock_db


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(mongo, mailer, tmp_path, monkeypatch):
    monkeypatch.setattr(main, "UPLOAD_DIR", str(tmp_path / "uploads"))
    main.app.state.mailer = mailer
    main.app.state.otp_limiter = SlidingWindowRateLimiter(main.OTP_RATE_LIMIT, main.OTP_RATE_WINDOW_SECONDS)
    return TestClient(main.app)


_phone_counter = iter(range(10000000, 99999999))


@pytest.fixture
def make_user(mongo):
    def _make(role="user", verified=True, email=None, **extra):
        n = next(_phone_counter)
        doc = {
            "name": extra.pop("name", f"{role.title()} {n}"),
            "email": email or f"{role}{n}@ekoseller.ng",
            "passwordHash": get_password_hash(PASSWORD),
            "phone": f"080{n}",
            "role": role,
            "state": "Lagos",
            "country": "Nigeria",
            "isVerified": verified,
            "otp": None,
            "otpExpiry": None,
        }
        if role == "seller":
            doc.update({"marketLocation": "Balogun", "description": "Fabrics", "localGovernmentArea": "Lagos Island"})
        doc.update(extra)
        doc["_id"] = mongo["user"].insert_one(doc).inserted_id
        return doc
    return _make


def auth(user):
    token = create_access_token({"userId": str(user["_id"]), "email": user["email"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def category(mongo):
    doc = {"name": "Fashion", "icon": "shirt", "color": "#fff", "parentCategory": None}
    doc["_id"] = mongo["category"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def make_product(mongo, category):
    def _make(name="Ankara Shirt", price=100.0, **extra):
        doc = {
            "name": name,
            "description": "Cotton",
            "image": "",
            "images": [],
            "brand": "Eko",
            "price": price,
            "colour": "red",
            "size": {"kind": "text", "value": "M"},
            "category": category["_id"],
            "countInStock": 10,
            "rating": 0,
            "dateCreated": database.now_utc(),
        }
        doc.update(extra)
        doc["_id"] = mongo["product"].insert_one(doc).inserted_id
        return doc
    return _make


def missing_id():
    return str(ObjectId())
