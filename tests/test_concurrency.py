import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from orderdesk import inventory, models, orders, schemas
from orderdesk.db import Base, enable_sqlite_foreign_keys
from orderdesk.errors import InsufficientStock
from orderdesk.models import Actor


@pytest.fixture
def file_sessions(tmp_path):
    # a file database so every thread gets its own connection and real locking
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    yield factory
    engine.dispose()


def seed(factory, stock):
    with factory() as db:
        customer = models.User(name="buyer", email="buyer@example.com", role=models.ROLE_CUSTOMER)
        product = models.Product(sku="RACE-1", name="Contended", price=Decimal("1.00"), stock=stock)
        db.add_all([customer, product])
        db.commit()
        return customer.id, product.id


def run_in_threads(count, work):
    barrier = threading.Barrier(count)
    outcomes = []
    lock = threading.Lock()

    def runner():
        barrier.wait()
        result = work()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=runner) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def final_stock(factory, product_id):
    with factory() as db:
        return db.get(models.Product, product_id).stock


def test_parallel_reservations_never_oversell(file_sessions):
    stock, attempts = 5, 16
    _, product_id = seed(file_sessions, stock)

    def reserve_one():
        with file_sessions() as db:
            try:
                inventory.reserve(db, product_id, 1)
                db.commit()
                return "ok"
            except InsufficientStock:
                db.rollback()
                return "short"

    outcomes = run_in_threads(attempts, reserve_one)
    assert outcomes.count("ok") == stock
    assert outcomes.count("short") == attempts - stock
    assert final_stock(file_sessions, product_id) == 0


def test_parallel_orders_never_oversell(file_sessions, ctx):
    stock, attempts = 3, 10
    customer_id, product_id = seed(file_sessions, stock)
    actor = Actor(id=customer_id, role=models.ROLE_CUSTOMER, email="buyer@example.com")
    items = [schemas.OrderItemCreate(product_id=product_id, quantity=1)]

    def place_order():
        with file_sessions() as db:
            try:
                orders.create_order(db, ctx, actor, items)
                return "ok"
            except InsufficientStock:
                return "short"

    outcomes = run_in_threads(attempts, place_order)
    assert outcomes.count("ok") == stock
    assert final_stock(file_sessions, product_id) == 0
    with file_sessions() as db:
        assert db.query(models.Order).count() == stock
        assert db.query(models.InventoryMovement).count() == stock
