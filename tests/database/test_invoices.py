"""Invoice builder tests.

Tests for InvoiceRepository:
- totals (subtotal, tax, discount)
- stock consumption and service-part cost snapshot
- one invoice per completed service
- rollback when any part of creation fails
- draft / issue lifecycle and derived status
"""
import re
from datetime import date, timedelta
from decimal import Decimal

import pytest

from config.business_config import CATEGORY_SERVICE_PAYMENT
from database.business_repos import InvoiceRepository
from database.errors import (
    ConflictError, DuplicateInvoice, EmptyItemList, InvalidStockOperation,
    InvoiceNotFound, MissingService, SparePartNotFound, ValidationError
)
from database.models import FinancialTransaction, ServicePart, SparePart

from conftest import make_part, make_service, part_item, service_item


class TestCreateInvoice:
    """Totals and side effects of create_invoice."""

    def test_totals(self, invoice):
        assert invoice.subtotal == Decimal("150000")
        assert invoice.tax_amount == Decimal("15000")
        assert invoice.discount_amount == Decimal("5000")
        assert invoice.total_amount == Decimal("160000")
        assert invoice.status == "issued"

    def test_number_and_dates(self, invoice):
        assert re.match(r"^INV-\d{8}-\d{4}$", invoice.invoice_number)
        assert invoice.issue_date == date.today()
        assert invoice.due_date == date.today() + timedelta(days=30)

    def test_items(self, invoice, completed_service, filter_part):
        items = sorted(invoice.items, key=lambda i: i.item_type)
        assert [i.item_type for i in items] == ["service", "sparepart"]
        assert items[0].item_id == completed_service.id
        assert items[0].description == "Servis Toyota Avanza - Ganti oli"
        assert items[1].item_id == filter_part.id
        assert items[1].description == "Filter Oli"
        assert items[1].total_price == Decimal("50000")

    def test_consumes_stock(self, temp_db, invoice, filter_part):
        part = temp_db.spare_parts.get_by_id(SparePart, filter_part.id)
        assert part.stock == 8
        last = temp_db.spare_parts.get_movements(filter_part.id)[-1]
        assert last.movement_type == "out"
        assert last.quantity == 2
        assert invoice.invoice_number in last.notes
        assert temp_db.spare_parts.reconcile(filter_part.id)["difference"] == 0

    def test_records_service_part_cost_snapshot(self, temp_db, invoice,
                                                completed_service):
        with temp_db.get_session() as session:
            usage = session.query(ServicePart).filter(
                ServicePart.service_id == completed_service.id
            ).one()
            assert usage.quantity == 2
            assert usage.unit_price == Decimal("25000")
            assert usage.unit_cost == Decimal("15000")

    def test_records_income_transaction(self, temp_db, invoice,
                                        completed_service):
        with temp_db.get_session() as session:
            tx = session.query(FinancialTransaction).filter(
                FinancialTransaction.category == CATEGORY_SERVICE_PAYMENT
            ).one()
            assert tx.transaction_type == "income"
            assert tx.amount == Decimal("160000")
            assert tx.service_id == completed_service.id
            assert tx.description == f"Invoice {invoice.invoice_number} - Budi"

    def test_default_tax_rate(self, temp_db, completed_service):
        invoice = temp_db.invoices.create_invoice(
            completed_service.id, [service_item(completed_service)]
        )
        assert invoice.tax_amount == Decimal("10000")
        assert invoice.total_amount == Decimal("110000")

    def test_tax_rounds_half_up(self, temp_db):
        service = make_service(temp_db, cost="0.50")
        invoice = temp_db.invoices.create_invoice(
            service.id, [service_item(service)], tax_rate_percent=1
        )
        # 0.50 * 1% = 0.005
        assert invoice.tax_amount == Decimal("0.01")

    def test_fractional_tax_rate_keeps_precision(self, temp_db,
                                                 completed_service):
        """Only the tax amount is rounded, never the rate itself."""
        invoice = temp_db.invoices.create_invoice(
            completed_service.id, [service_item(completed_service)],
            tax_rate_percent=7.125
        )
        assert invoice.tax_amount == Decimal("7125.00")
        assert invoice.total_amount == Decimal("107125.00")

    @pytest.mark.parametrize("rate", ["abc", "NaN", True])
    def test_invalid_tax_rate(self, temp_db, completed_service, rate):
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(
                completed_service.id, [service_item(completed_service)],
                tax_rate_percent=rate
            )

    def test_draft_then_issue(self, temp_db, completed_service):
        draft = temp_db.invoices.create_invoice(
            completed_service.id, [service_item(completed_service)],
            status="draft"
        )
        assert draft.status == "draft"
        issued = temp_db.invoices.issue(draft.id)
        assert issued.status == "issued"
        with pytest.raises(ValidationError):
            temp_db.invoices.issue(draft.id)

    def test_issue_unknown_invoice(self, temp_db):
        with pytest.raises(InvoiceNotFound):
            temp_db.invoices.issue("missing")

    def test_get_by_service(self, temp_db, invoice, completed_service):
        found = temp_db.invoices.get_by_service(completed_service.id)
        assert found.id == invoice.id
        assert len(found.items) == 2
        assert found.payments == []


class TestCreateInvoiceRejections:
    """Inputs and states create_invoice refuses."""

    def test_empty_items(self, temp_db, completed_service):
        with pytest.raises(EmptyItemList):
            temp_db.invoices.create_invoice(completed_service.id, [])
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(completed_service.id, [])

    @pytest.mark.parametrize("status", ["pending", "in-progress"])
    def test_service_not_completed(self, temp_db, status):
        service = make_service(temp_db, status=status)
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(service.id, [service_item(service)])
        assert temp_db.invoices.get_by_service(service.id) is None

    def test_unknown_service(self, temp_db):
        with pytest.raises(MissingService):
            temp_db.invoices.create_invoice("missing", [{
                "item_type": "service", "item_id": "missing",
                "quantity": 1, "unit_price": 0,
            }])

    def test_duplicate_invoice(self, temp_db, invoice, completed_service):
        with pytest.raises(DuplicateInvoice):
            temp_db.invoices.create_invoice(
                completed_service.id, [service_item(completed_service)]
            )
        with pytest.raises(ConflictError):
            temp_db.invoices.create_invoice(
                completed_service.id, [service_item(completed_service)]
            )

    def test_requires_exactly_one_service_line(self, temp_db,
                                               completed_service, filter_part):
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(
                completed_service.id, [part_item(filter_part)]
            )
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(
                completed_service.id,
                [service_item(completed_service), service_item(completed_service)]
            )

    def test_service_price_must_match_cost(self, temp_db, completed_service):
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(
                completed_service.id,
                [service_item(completed_service, unit_price=90000)]
            )

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, None])
    def test_invalid_quantity(self, temp_db, completed_service, filter_part,
                              quantity):
        line = part_item(filter_part)
        line["quantity"] = quantity
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(
                completed_service.id, [service_item(completed_service), line]
            )

    def test_invalid_item_type(self, temp_db, completed_service):
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(
                completed_service.id,
                [service_item(completed_service),
                 {"item_type": "labour", "quantity": 1, "unit_price": 1}]
            )

    def test_negative_tax_or_discount(self, temp_db, completed_service):
        items = [service_item(completed_service)]
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(completed_service.id, items,
                                            tax_rate_percent=-1)
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(completed_service.id, items,
                                            discount_amount=-1)

    def test_discount_larger_than_total(self, temp_db, completed_service):
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(
                completed_service.id, [service_item(completed_service)],
                tax_rate_percent=0, discount_amount=100001
            )

    def test_invalid_status(self, temp_db, completed_service):
        with pytest.raises(ValidationError):
            temp_db.invoices.create_invoice(
                completed_service.id, [service_item(completed_service)],
                status="paid"
            )

    def test_unknown_spare_part(self, temp_db, completed_service):
        with pytest.raises(SparePartNotFound):
            temp_db.invoices.create_invoice(
                completed_service.id,
                [service_item(completed_service),
                 {"item_type": "sparepart", "item_id": "missing",
                  "quantity": 1, "unit_price": 1000}]
            )

    def test_insufficient_stock_rolls_back_everything(self, temp_db,
                                                      completed_service):
        plenty = make_part(temp_db, name="Oli", stock=10)
        scarce = make_part(temp_db, name="Aki", stock=1)
        with pytest.raises(InvalidStockOperation):
            temp_db.invoices.create_invoice(
                completed_service.id,
                [service_item(completed_service),
                 part_item(plenty, 3), part_item(scarce, 2)]
            )

        assert temp_db.invoices.get_by_service(completed_service.id) is None
        assert temp_db.spare_parts.get_by_id(SparePart, plenty.id).stock == 10
        assert temp_db.spare_parts.get_by_id(SparePart, scarce.id).stock == 1
        assert len(temp_db.spare_parts.get_movements(plenty.id)) == 1
        with temp_db.get_session() as session:
            assert session.query(ServicePart).count() == 0
            assert session.query(FinancialTransaction).count() == 0


class TestInvoiceQueries:
    """Paid amount, remaining balance and derived status."""

    def test_paid_and_remaining(self, temp_db, invoice):
        assert temp_db.invoices.get_paid_amount(invoice.id) == Decimal("0")
        assert temp_db.invoices.get_remaining(invoice.id) == Decimal("160000")
        temp_db.payments.process_payment(invoice.id, 60000, "cash")
        assert temp_db.invoices.get_paid_amount(invoice.id) == Decimal("60000")
        assert temp_db.invoices.get_remaining(invoice.id) == Decimal("100000")

    def test_remaining_unknown_invoice(self, temp_db):
        with pytest.raises(InvoiceNotFound):
            temp_db.invoices.get_remaining("missing")

    def test_get_invoice_missing(self, temp_db):
        assert temp_db.invoices.get_invoice("missing") is None

    @pytest.mark.parametrize("status,total,paid,expected", [
        ("draft", 100, 0, "draft"),
        ("issued", 100, 0, "issued"),
        ("issued", 100, 40, "partial"),
        ("partial", 100, 100, "paid"),
        ("issued", 0, 0, "paid"),
    ])
    def test_derive_status(self, status, total, paid, expected):
        assert InvoiceRepository.derive_status(
            status, Decimal(total), Decimal(paid)
        ) == expected
