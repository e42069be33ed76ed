import os
import tempfile

os.environ.update({
    "DATABASE_URL": "mongodb://localhost:27017",
    "DATABASE_NAME": "storefront_test",
    "APP_ENV": "development",
    "BCRYPT_ROUNDS": "4",
    "UPLOAD_DIR": tempfile.mkdtemp(prefix="storefront-uploads-"),
})
for key in ("EMAIL_USER", "EMAIL_PASSWORD", "CLOUDINARY_URL"):
    os.environ.pop(key, None)

import mongomock  # noqa: E402
import pymongo  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# database.py builds its client at import time
pymongo.MongoClient = mongomock.MongoClient

import database  # noqa: E402
from auth import create_token, hash_password, permissions_for_role  # noqa: E402
from database import create_document  # noqa: E402
from main import app  # noqa: E402
from schemas import Admin, Bundle, GiftBox, Product, User  # noqa: E402

ADMIN_PASSWORD = "fireworks123"
SHIPPING_ADDRESS = {
    "street": "12 Gandhi Road",
    "city": "Sivakasi",
    "state": "Tamil Nadu",
    "pincode": "626123",
    "phone_number": "9876543210",
}


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def clean_db():
    yield
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def make_user():
    def _make(email="priya@gmail.com", name="Priya", **extra):
        user_id = create_document("user", User(name=name, email=email, is_verified=True, **extra))
        token = create_token({"id": user_id, "email": email, "type": "user"})
        return {"id": user_id, "email": email, "name": name, "headers": bearer(token)}

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def make_admin():
    def _make(role="super_admin", email=None, name="Store Admin", **extra):
        email = email or f"{role.replace('_', '')}@sindhucrackers.com"
        admin_id = create_document("admin", Admin(
            name=name,
            email=email,
            password_hash=hash_password(ADMIN_PASSWORD),
            role=role,
            permissions=permissions_for_role(role),
            **extra,
        ))
        token = create_token({"id": admin_id, "email": email, "type": "admin"})
        return {"id": admin_id, "email": email, "role": role, "headers": bearer(token)}

    return _make


@pytest.fixture
def admin(make_admin):
    return make_admin()


@pytest.fixture
def make_product():
    def _make(name="Flower Pots Deluxe", price=200.0, stock=50, **extra):
        data = {
            "description": "Colourful fountain that lights up the courtyard",
            "weight": 250,
            "unit": "box",
            **extra,
        }
        return create_document("product", Product(name=name, price=price, stock=stock, **data))

    return _make


@pytest.fixture
def make_bundle():
    def _make(name="Diwali Family Pack", price=1499.0, collection="bundle", **extra):
        model = Bundle if collection == "bundle" else GiftBox
        return create_document(collection, model(
            name=name,
            price=price,
            description="Assorted crackers for the whole family",
            crackers=[{"name": "Sparklers", "quantity": 10}, {"name": "Chakkars", "quantity": 5}],
            **extra,
        ))

    return _make
