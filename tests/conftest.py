import os
from decimal import Decimal
from typing import Generator

# Keep the module-level engine in orderdesk.db off the filesystem during tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderdesk import models
from orderdesk.auth import create_access_token, hash_password
from orderdesk.config import Settings, get_settings
from orderdesk.db import Base, enable_sqlite_foreign_keys
from orderdesk.main import app, get_db
from orderdesk.models import Actor
from orderdesk.visibility import VisibilityContext

SUPERADMIN_EMAIL = "root@example.com"
JWT_SECRET = "test-secret"


@pytest.fixture(scope="function")
def db_session() -> Generator:
    # Use in-memory SQLite with a single connection
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_foreign_keys(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        jwt_secret=JWT_SECRET,
        superadmin_email=SUPERADMIN_EMAIL,
        hide_forbidden=False,
        log_level="INFO",
    )


@pytest.fixture
def ctx(settings) -> VisibilityContext:
    return VisibilityContext.from_settings(settings)


@pytest.fixture(scope="function")
def client(db_session, settings):
    # Override dependencies to use the same session and test settings
    def override_get_db():
        try:
            yield db_session
        finally:
            pass
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    """Insert a user directly, bypassing the role rules in crud.create_user."""
    counter = {"n": 0}

    def _make(role="customer", email=None, created_by=None, password=None, name=None):
        counter["n"] += 1
        user = models.User(
            name=name or f"{role}-{counter['n']}",
            email=email or f"{role}{counter['n']}@example.com",
            role=role,
            created_by_id=created_by.id if created_by is not None else None,
            password_hash=hash_password(password) if password else None,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def make_product(db_session):
    counter = {"n": 0}

    def _make(stock=10, price="9.99", sku=None, name=None):
        counter["n"] += 1
        product = models.Product(
            sku=sku or f"SKU-{counter['n']}",
            name=name or f"Product {counter['n']}",
            price=Decimal(price),
            stock=stock,
        )
        db_session.add(product)
        db_session.commit()
        db_session.refresh(product)
        return product

    return _make


@pytest.fixture
def assign(db_session):
    def _assign(customer, employee):
        db_session.add(models.CustomerAssignment(customer_id=customer.id, employee_id=employee.id))
        db_session.commit()

    return _assign


def actor_of(user) -> Actor:
    return Actor.from_user(user)


def stock_of(db, product) -> int:
    db.expire_all()
    return db.get(models.Product, product.id).stock


def auth_headers(user) -> dict:
    token = create_access_token(user.id, user.role, JWT_SECRET, email=user.email)
    return {"Authorization": f"Bearer {token}"}
