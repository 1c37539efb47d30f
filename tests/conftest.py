import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from schemas import Category as CategorySchema, Product as ProductSchema


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient()["storefront_test"]
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    database.ensure_indexes()
    return mock_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


@pytest.fixture(scope="session")
def password_hash():
    return main.hash_password("secret123")


@pytest.fixture
def make_user(mongo, password_hash):
    def _make(name="Alice", role="user", address=None):
        uid = database.create_document("user", {
            "name": name,
            "email": f"{name.lower()}@example.com",
            "password_hash": password_hash,
            "role": role,
            "phone": None,
            "address": address,
        })
        token = main.create_access_token({"sub": uid, "role": role})
        return {"id": uid, "headers": {"Authorization": f"Bearer {token}"}}
    return _make


@pytest.fixture
def user(make_user):
    return make_user("Alice")


@pytest.fixture
def other_user(make_user):
    return make_user("Bob")


@pytest.fixture
def admin(make_user):
    return make_user("Root", role="admin")


@pytest.fixture
def make_product(mongo):
    def _make(name="Widget", price=10.0, **extra):
        product = ProductSchema(
            name=name,
            price=price,
            description=f"{name} description",
            image=f"https://img.example.com/{name.lower()}.png",
            **extra,
        )
        return database.create_document("product", product)
    return _make


@pytest.fixture
def make_category(mongo):
    def _make(name="Gadgets", description=None):
        return database.create_document("category", CategorySchema(name=name, description=description))
    return _make
