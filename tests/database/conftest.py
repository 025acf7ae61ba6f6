"""Fixtures for isolated database module tests.

Provides a fresh temp-file SQLite DatabaseManager for each test plus
small builders for the customer -> vehicle -> service chain that most
invoicing and payment tests need.
"""
import os
import shutil
import tempfile
from datetime import datetime, date

import pytest

from database import DatabaseManager
from database.base_crud import BaseCRUD


@pytest.fixture
def temp_db():
    """Yield a fresh DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="db-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.create_tables()

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def db_conn(temp_db):
    """Yield a DatabaseConnection from the temp_db manager."""
    return temp_db.conn


@pytest.fixture
def base_crud(db_conn):
    """Yield a BaseCRUD instance."""
    return BaseCRUD(db_conn)


@pytest.fixture
def sample_now():
    """Stable 'now' for report tests (a Wednesday)."""
    return datetime(2024, 5, 15, 14, 0, 0)


@pytest.fixture
def sample_date():
    """Stable date value for deterministic tests."""
    return date(2024, 5, 15)


def make_service(db, cost=100000, status="completed", plate="B 1234 CD",
                 service_date=None, customer_name="Budi"):
    """Helper: create customer, vehicle and service; return the service."""
    customer = db.customers.create({"name": customer_name, "phone": "0812000"})
    vehicle = db.vehicles.create({
        "customer_id": customer.id,
        "plate_number": plate,
        "brand": "Toyota",
        "model": "Avanza",
        "year": 2019,
    })
    data = {
        "customer_id": customer.id,
        "vehicle_id": vehicle.id,
        "complaint": "Ganti oli",
        "cost": cost,
    }
    if service_date is not None:
        data["service_date"] = service_date
    service = db.services.create(data)
    if status != "pending":
        service = db.services.update_status(service.id, status)
    return service


def make_part(db, name="Filter Oli", purchase_price=15000, sale_price=25000,
              stock=10, min_stock=2):
    """Helper: create a spare part and return it."""
    return db.spare_parts.create({
        "name": name,
        "category": "Filter",
        "purchase_price": purchase_price,
        "sale_price": sale_price,
        "stock": stock,
        "min_stock": min_stock,
    })


def service_item(service, unit_price=None):
    """Helper: the service line of an invoice."""
    return {
        "item_type": "service",
        "item_id": service.id,
        "quantity": 1,
        "unit_price": service.cost if unit_price is None else unit_price,
    }


def part_item(part, quantity=1, unit_price=None):
    """Helper: a spare-part line of an invoice."""
    return {
        "item_type": "sparepart",
        "item_id": part.id,
        "quantity": quantity,
        "unit_price": part.sale_price if unit_price is None else unit_price,
    }


@pytest.fixture
def completed_service(temp_db):
    """A completed service with labour cost 100000."""
    return make_service(temp_db)


@pytest.fixture
def filter_part(temp_db):
    """A spare part selling at 25000 (cost 15000) with 10 in stock."""
    return make_part(temp_db)


@pytest.fixture
def invoice(temp_db, completed_service, filter_part):
    """An issued invoice: 100000 service + 2 x 25000 parts, 10% tax,
    5000 discount -> total 160000."""
    return temp_db.invoices.create_invoice(
        completed_service.id,
        [service_item(completed_service), part_item(filter_part, 2)],
        tax_rate_percent=10,
        discount_amount=5000,
    )
