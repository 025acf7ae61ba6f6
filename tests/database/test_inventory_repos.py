"""Inventory ledger tests.

Tests for SparePartRepository:
- catalogue create / update / delete
- adjust_stock with movement journal
- low-stock listing and reconciliation
"""
import pytest

from database.errors import (
    ConflictError, InvalidStockOperation, SparePartNotFound, ValidationError
)
from database.models import SparePart

from conftest import make_part


class TestSparePartCatalogue:
    """Create, update and delete spare parts."""

    def test_create_records_opening_stock(self, temp_db):
        part = make_part(temp_db, stock=12)
        movements = temp_db.spare_parts.get_movements(part.id)
        assert len(movements) == 1
        assert movements[0].movement_type == "in"
        assert movements[0].quantity == 12
        assert movements[0].notes == "Stok awal"

    def test_create_without_stock_has_no_movement(self, temp_db):
        part = make_part(temp_db, stock=0)
        assert temp_db.spare_parts.get_movements(part.id) == []

    def test_create_accepts_price_alias(self, temp_db):
        part = temp_db.spare_parts.create({
            "name": "Aki", "category": "Kelistrikan",
            "purchase_price": 600000, "price": 750000,
        })
        assert float(part.sale_price) == 750000.0

    @pytest.mark.parametrize("overrides", [
        {"purchase_price": -1},
        {"stock": -3},
        {"min_stock": -1},
    ])
    def test_create_rejects_negative_values(self, temp_db, overrides):
        data = {"name": "Busi", "category": "Pengapian",
                "purchase_price": 20000, "sale_price": 30000}
        data.update(overrides)
        with pytest.raises(ValidationError):
            temp_db.spare_parts.create(data)

    @pytest.mark.parametrize("overrides", [
        {"stock": "lima"},
        {"stock": 2.7},
        {"min_stock": "x"},
        {"min_stock": True},
    ])
    def test_create_rejects_non_integer_levels(self, temp_db, overrides):
        data = {"name": "Busi", "category": "Pengapian",
                "purchase_price": 20000, "sale_price": 30000}
        data.update(overrides)
        with pytest.raises(ValidationError):
            temp_db.spare_parts.create(data)
        assert temp_db.spare_parts.get_all(SparePart) == []

    def test_create_accepts_numeric_string_stock(self, temp_db):
        part = temp_db.spare_parts.create({
            "name": "Busi", "category": "Pengapian",
            "purchase_price": 20000, "sale_price": 30000,
            "stock": " 8 ", "min_stock": "2",
        })
        assert part.stock == 8
        assert part.min_stock == 2

    def test_create_requires_name(self, temp_db):
        with pytest.raises(ValidationError):
            temp_db.spare_parts.create({"category": "Filter",
                                        "purchase_price": 1, "sale_price": 2})

    def test_update_fields(self, temp_db):
        part = make_part(temp_db)
        updated = temp_db.spare_parts.update(part.id, sale_price="27500",
                                             supplier="PT Sumber")
        assert float(updated.sale_price) == 27500.0
        assert updated.supplier == "PT Sumber"

    def test_update_cannot_touch_stock(self, temp_db):
        part = make_part(temp_db)
        with pytest.raises(ValidationError):
            temp_db.spare_parts.update(part.id, stock=99)

    @pytest.mark.parametrize("fields", [
        {"min_stock": -5},
        {"min_stock": "x"},
        {"min_stock": 1.5},
        {"purchase_price": -100},
        {"sale_price": -1},
        {"sale_price": "mahal"},
        {"name": ""},
    ])
    def test_update_rejects_invalid_values(self, temp_db, fields):
        part = make_part(temp_db)
        with pytest.raises(ValidationError):
            temp_db.spare_parts.update(part.id, **fields)
        stored = temp_db.spare_parts.get_by_id(SparePart, part.id)
        assert stored.min_stock == 2
        assert float(stored.purchase_price) == 15000.0
        assert float(stored.sale_price) == 25000.0
        assert stored.name == "Filter Oli"

    def test_update_unknown_part(self, temp_db):
        with pytest.raises(SparePartNotFound):
            temp_db.spare_parts.update("missing", name="X")

    def test_delete_part_without_history(self, temp_db):
        part = make_part(temp_db, stock=0)
        assert temp_db.spare_parts.delete(part.id) is True
        assert temp_db.spare_parts.delete(part.id) is False

    def test_delete_part_with_history_conflicts(self, temp_db):
        part = make_part(temp_db, stock=5)
        with pytest.raises(ConflictError):
            temp_db.spare_parts.delete(part.id)


class TestAdjustStock:
    """adjust_stock and the movement journal."""

    def test_low_stock_then_restock(self, temp_db):
        part = make_part(temp_db, name="Kampas Rem", stock=3, min_stock=5)
        assert [p.id for p in temp_db.spare_parts.list_low_stock()] == [part.id]

        updated = temp_db.spare_parts.adjust_stock(part.id, 5, "in", "Restock")
        assert updated.stock == 8
        assert temp_db.spare_parts.list_low_stock() == []

        movements = temp_db.spare_parts.get_movements(part.id)
        assert [(m.movement_type, m.quantity) for m in movements] == [
            ("in", 3), ("in", 5)
        ]

    def test_stock_out(self, temp_db):
        part = make_part(temp_db, stock=10)
        updated = temp_db.spare_parts.adjust_stock(part.id, -4, "out")
        assert updated.stock == 6
        assert temp_db.spare_parts.get_movements(part.id)[-1].quantity == 4

    def test_stock_out_to_exactly_zero(self, temp_db):
        part = make_part(temp_db, stock=2)
        assert temp_db.spare_parts.adjust_stock(part.id, -2, "out").stock == 0

    def test_insufficient_stock_leaves_state_unchanged(self, temp_db):
        part = make_part(temp_db, stock=2)
        with pytest.raises(InvalidStockOperation):
            temp_db.spare_parts.adjust_stock(part.id, -3, "out")
        with pytest.raises(ConflictError):
            temp_db.spare_parts.adjust_stock(part.id, -3, "out")

        reloaded = temp_db.spare_parts.get_by_id(SparePart, part.id)
        assert reloaded.stock == 2
        assert len(temp_db.spare_parts.get_movements(part.id)) == 1

    @pytest.mark.parametrize("delta,movement_type", [
        (5, "out"),
        (-5, "in"),
        (0, "in"),
        (True, "in"),
        (2.5, "in"),
        (1, "transfer"),
    ])
    def test_invalid_adjustments(self, temp_db, delta, movement_type):
        part = make_part(temp_db)
        with pytest.raises(ValidationError):
            temp_db.spare_parts.adjust_stock(part.id, delta, movement_type)

    def test_unknown_part(self, temp_db):
        with pytest.raises(SparePartNotFound):
            temp_db.spare_parts.adjust_stock("missing", 1, "in")

    def test_low_stock_ordered_by_name(self, temp_db):
        make_part(temp_db, name="Zeta", stock=0, min_stock=1)
        make_part(temp_db, name="Alpha", stock=1, min_stock=2)
        make_part(temp_db, name="Mid", stock=5, min_stock=5)
        assert [p.name for p in temp_db.spare_parts.list_low_stock()] == [
            "Alpha", "Zeta"
        ]

    def test_reconcile_matches_journal(self, temp_db):
        part = make_part(temp_db, stock=10)
        temp_db.spare_parts.adjust_stock(part.id, -3, "out")
        temp_db.spare_parts.adjust_stock(part.id, 4, "in")
        assert temp_db.spare_parts.reconcile(part.id) == {
            "stock": 11, "movement_balance": 11, "difference": 0,
        }

    def test_reconcile_unknown_part(self, temp_db):
        with pytest.raises(SparePartNotFound):
            temp_db.spare_parts.reconcile("missing")
