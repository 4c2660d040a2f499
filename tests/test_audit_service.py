import csv
import io
import json
from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from factories import ORG, add_item, reserve, stock
from inventory_control.database import utcnow
from inventory_control.exceptions import ImmutableRecordError
from inventory_control.models.audit_log import InventoryAuditLog
from inventory_control.models.stock_movement import MovementType
from inventory_control.schemas.audit import AuditQuery
from inventory_control.schemas.inventory_update import QuantityUpdate
from inventory_control.schemas.movement import MovementCreate
from inventory_control.services import audit_service, inventory_update_service, movement_service, reservation_service


def _receive(db, ctx, quantity, sku="WIDGET-001"):
    created = movement_service.create_movement(db, ctx, MovementCreate(
        warehouse_id="wh-a", sku=sku, quantity=quantity, type=MovementType.RECEIVE, reason="Inbound"
    ))
    return movement_service.execute_movement(db, ctx, created.movement.id)


@pytest.fixture
def history(db, ctx):
    """A small run of mixed mutations on one SKU."""
    add_item(db, quantity=100)
    _receive(db, ctx, 20)
    reservation_id = reserve(db, ctx, "order-1", quantity=15)
    reservation_service.fulfill_reservation(db, ctx, reservation_id)
    inventory_update_service.update_quantity(db, ctx, QuantityUpdate(sku="WIDGET-001", quantity=95))


class TestTrail:
    def test_one_entry_per_mutation(self, db, ctx, history):
        entries = audit_service.entries_for_sku(db, ctx, "WIDGET-001")
        assert [e.action for e in entries] == ["RECEIVE", "RESERVE", "FULFILL", "UPDATE"]

    def test_entries_chain_and_match_stock(self, db, ctx, history):
        entries = audit_service.entries_for_sku(db, ctx, "WIDGET-001")

        for earlier, later in zip(entries, entries[1:]):
            assert later.previous_quantity == earlier.new_quantity
        for entry in entries:
            assert entry.variance == entry.new_quantity - entry.previous_quantity
        assert entries[-1].new_quantity == stock(db).quantity == 95

    def test_reservation_entries_track_reserved(self, db, ctx, history):
        reserve_entry, fulfil_entry = audit_service.entries_for_sku(db, ctx, "WIDGET-001")[1:3]
        assert (reserve_entry.previous_reserved, reserve_entry.new_reserved) == (0, 15)
        assert (fulfil_entry.previous_quantity, fulfil_entry.new_quantity) == (120, 105)
        assert fulfil_entry.new_reserved == 0

    def test_entries_are_tenant_scoped(self, db, other_ctx, history):
        assert audit_service.entries_for_sku(db, other_ctx, "WIDGET-001") == []


class TestImmutability:
    def test_update_is_blocked(self, db, ctx, history):
        entry = db.query(InventoryAuditLog).first()
        entry.notes = "edited"

        with pytest.raises(ImmutableRecordError):
            db.commit()
        db.rollback()

    def test_delete_is_blocked(self, db, ctx, history):
        entry = db.query(InventoryAuditLog).first()
        db.delete(entry)

        with pytest.raises(ImmutableRecordError):
            db.commit()
        db.rollback()
        assert db.query(InventoryAuditLog).count() == 4


def test_audit_failure_does_not_fail_the_mutation(db, ctx, monkeypatch):
    add_item(db, quantity=10)

    def broken(*args, **kwargs):
        raise SQLAlchemyError("audit table unavailable")

    monkeypatch.setattr(audit_service, "_build_entry", broken)

    result = _receive(db, ctx, 5)

    assert result.success
    assert stock(db).quantity == 15
    assert audit_service.integrity_monitor.failures == 1
    assert "audit table unavailable" in audit_service.integrity_monitor.last_error
    assert db.query(InventoryAuditLog).count() == 0


class TestQueries:
    def test_paging_and_filters(self, db, ctx, history):
        page = audit_service.query_entries(db, ctx, AuditQuery(sku="WIDGET-001", page_size=3))
        assert page.total == 4
        assert len(page.items) == 3

        by_action = audit_service.query_entries(db, ctx, AuditQuery(action="RESERVE"))
        assert [e.action for e in by_action.items] == ["RESERVE"]

    def test_page_size_is_capped(self, db, ctx, history):
        assert audit_service.query_entries(db, ctx, AuditQuery(page_size=1000)).page_size == 100

    def test_inverted_date_range_is_empty(self, db, ctx, history):
        now = utcnow()
        query = AuditQuery(start_date=now, end_date=now - timedelta(days=1))
        assert audit_service.query_entries(db, ctx, query).total == 0
        assert audit_service.variance_summary(db, ctx, query).item_count == 0

    def test_variance_summary(self, db, ctx, history):
        summary = audit_service.variance_summary(db, ctx)
        # +20 receive, 0 reserve, -15 fulfil, -10 update
        assert summary.total_variance == -5
        assert summary.absolute_variance == 45
        assert (summary.positive_variance, summary.negative_variance) == (20, -25)
        assert summary.item_count == 4

    def test_activity_breakdowns(self, db, ctx, history):
        by_action = {a.key: a for a in audit_service.activity_by_action(db, ctx)}
        assert by_action["FULFILL"].total_variance == -15
        by_user = audit_service.activity_by_user(db, ctx)
        assert [(a.key, a.count) for a in by_user] == [("user-1", 4)]


class TestExport:
    def test_csv(self, db, ctx, history):
        rows = list(csv.reader(io.StringIO(audit_service.export_csv(db, ctx))))
        assert rows[0] == audit_service.EXPORT_COLUMNS
        assert len(rows) == 5
        assert rows[1][5] == "RECEIVE"

    def test_json(self, db, ctx, history):
        data = json.loads(audit_service.export_json(db, ctx, AuditQuery(action="UPDATE")))
        assert len(data) == 1
        assert data[0]["new_quantity"] == 95
        assert data[0]["metadata"]["update_type"] == "ABSOLUTE"


def test_retention_count(db, ctx):
    db.add(InventoryAuditLog(
        organization_id=ORG, warehouse_id="wh-a", user_id="user-1", sku="WIDGET-001", action="UPDATE",
        previous_quantity=1, new_quantity=2, variance=1, created_at=utcnow() - timedelta(days=3000),
    ))
    db.add(InventoryAuditLog(
        organization_id=ORG, warehouse_id="wh-a", user_id="user-1", sku="WIDGET-001", action="UPDATE",
        previous_quantity=2, new_quantity=3, variance=1,
    ))
    db.commit()

    assert audit_service.entries_past_retention(db, ctx) == 1
    assert audit_service.entries_past_retention(db, ctx, retention_days=0) == 2
