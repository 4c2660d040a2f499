import pytest
from sqlalchemy.orm.exc import StaleDataError

from factories import add_item, stock
from inventory_control.models.stock_movement import MovementStatus, MovementType
from inventory_control.schemas.audit import AuditQuery
from inventory_control.schemas.inventory_update import QuantityUpdate, UpdateOptions, UpdateType, VarianceLevel
from inventory_control.services import audit_service, inventory_update_service, movement_service


def _absolute(quantity, sku="WIDGET-001", **extra):
    return QuantityUpdate(sku=sku, quantity=quantity, update_type=UpdateType.ABSOLUTE, **extra)


def _adjust(delta, sku="WIDGET-001", **extra):
    return QuantityUpdate(sku=sku, quantity=delta, update_type=UpdateType.ADJUSTMENT, **extra)


class TestVarianceClassification:
    def test_twenty_percent_drop_with_error_at_twenty_is_a_warning(self, db, ctx):
        add_item(db, quantity=100)

        result = inventory_update_service.update_quantity(
            db, ctx, _absolute(80, reason_code="DAMAGE"), UpdateOptions(warning_threshold=5, error_threshold=20)
        )

        assert result.success
        assert result.status == "APPLIED"
        assert (result.variance, result.variance_percent) == (-20, -20.0)
        assert result.variance_level == VarianceLevel.WARNING
        assert stock(db).quantity == 80
        entries = audit_service.query_entries(db, ctx, AuditQuery(action="UPDATE")).items
        assert len(entries) == 1
        assert (entries[0].previous_quantity, entries[0].new_quantity, entries[0].variance) == (100, 80, -20)
        assert entries[0].reason_code == "DAMAGE"

    @pytest.mark.parametrize(
        "new_quantity, level",
        [(90, VarianceLevel.OK), (89, VarianceLevel.WARNING), (75, VarianceLevel.WARNING), (74, VarianceLevel.ERROR)],
    )
    def test_thresholds_are_exclusive(self, db, ctx, new_quantity, level):
        add_item(db, quantity=100)
        result = inventory_update_service.update_quantity(
            db, ctx, _absolute(new_quantity), UpdateOptions(warning_threshold=10, error_threshold=25)
        )
        assert result.variance_level == level

    def test_growth_from_zero_counts_as_full_variance(self, db, ctx):
        add_item(db, quantity=0)
        result = inventory_update_service.update_quantity(db, ctx, _absolute(5, reason_code="FOUND"))
        assert result.variance_percent == 100.0
        assert result.status == "APPLIED"


class TestApply:
    def test_adjustment_is_relative(self, db, ctx):
        add_item(db, quantity=100)
        result = inventory_update_service.update_quantity(db, ctx, _adjust(15, reason_code="FOUND"))
        assert (result.previous_quantity, result.new_quantity) == (100, 115)

    def test_applied_update_leaves_a_completed_movement(self, db, ctx):
        add_item(db, quantity=100)
        result = inventory_update_service.update_quantity(db, ctx, _adjust(-5, reason_code="THEFT"))

        movement = movement_service.get_movement(db, ctx, result.movement_id)
        assert movement.type == MovementType.ADJUSTMENT_REMOVE
        assert movement.status == MovementStatus.COMPLETED
        assert movement.quantity == 5

    def test_cannot_drop_below_reserved(self, db, ctx):
        add_item(db, quantity=100, reserved=10)

        blocked = inventory_update_service.update_quantity(db, ctx, _adjust(-95, reason_code="WRITE_OFF"))
        allowed = inventory_update_service.update_quantity(db, ctx, _adjust(-90, reason_code="WRITE_OFF"))

        assert not blocked.success
        assert blocked.error_code == "CONFLICT"
        assert allowed.success
        item = stock(db)
        assert (item.quantity, item.reserved_quantity) == (10, 10)

    def test_absolute_below_reserved_is_rejected(self, db, ctx):
        add_item(db, quantity=100, reserved=10)
        result = inventory_update_service.update_quantity(db, ctx, _absolute(9))
        assert result.error_code == "CONFLICT"
        assert stock(db).quantity == 100

    def test_no_change_is_not_audited(self, db, ctx):
        add_item(db, quantity=100)
        result = inventory_update_service.update_quantity(db, ctx, _absolute(100))
        assert result.status == "UNCHANGED"
        assert audit_service.query_entries(db, ctx).total == 0

    def test_unknown_reason_code(self, db, ctx):
        add_item(db, quantity=100)
        result = inventory_update_service.update_quantity(db, ctx, _absolute(90, reason_code="VIBES"))
        assert result.error_code == "VALIDATION_ERROR"

    def test_warehouse_required_when_sku_is_in_several(self, db, ctx):
        add_item(db, warehouse_id="wh-a", quantity=10)
        add_item(db, warehouse_id="wh-b", quantity=10)

        ambiguous = inventory_update_service.update_quantity(db, ctx, _absolute(5))
        targeted = inventory_update_service.update_quantity(db, ctx, _absolute(5, warehouse_id="wh-b"))

        assert ambiguous.error_code == "VALIDATION_ERROR"
        assert targeted.success
        assert stock(db, warehouse_id="wh-b").quantity == 5

    def test_missing_item(self, db, ctx, other_ctx):
        add_item(db, quantity=10)
        assert inventory_update_service.update_quantity(db, other_ctx, _absolute(5)).error_code == "NOT_FOUND"


class TestApproval:
    def test_large_change_waits_for_approval(self, db, ctx):
        add_item(db, quantity=100)

        result = inventory_update_service.update_quantity(
            db, ctx, _absolute(50, reason_code="RECOUNT"), UpdateOptions(auto_approve_threshold=10)
        )

        assert result.status == "PENDING_APPROVAL"
        assert result.requires_approval
        assert stock(db).quantity == 100
        movement = movement_service.get_movement(db, ctx, result.movement_id)
        assert movement.status == MovementStatus.PENDING
        assert movement.type == MovementType.ADJUSTMENT_REMOVE

        movement_service.approve_movement(db, ctx, result.movement_id)
        movement_service.execute_movement(db, ctx, result.movement_id)
        assert stock(db).quantity == 50


class TestConcurrentWrites:
    def test_retries_once_after_version_conflict(self, db, ctx, monkeypatch):
        add_item(db, quantity=100)
        real_stage = inventory_update_service._stage_update
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("row was updated by someone else")
            return real_stage(*args, **kwargs)

        monkeypatch.setattr(inventory_update_service, "_stage_update", flaky)

        result = inventory_update_service.update_quantity(db, ctx, _absolute(90))

        assert result.success
        assert len(calls) == 2
        assert stock(db).quantity == 90

    def test_reports_conflict_without_retry(self, db, ctx, monkeypatch):
        add_item(db, quantity=100)

        def always_stale(*args, **kwargs):
            raise StaleDataError("row was updated by someone else")

        monkeypatch.setattr(inventory_update_service, "_stage_update", always_stale)

        result = inventory_update_service.update_quantity(
            db, ctx, _absolute(90), UpdateOptions(retry_on_conflict=False)
        )

        assert result.error_code == "VERSION_CONFLICT"


class TestBulk:
    def test_non_atomic_applies_what_it_can(self, db, ctx):
        add_item(db, sku="WIDGET-001", quantity=10)
        add_item(db, sku="WIDGET-002", quantity=10)

        result = inventory_update_service.update_bulk(db, ctx, [
            _absolute(12, sku="WIDGET-001"),
            _absolute(-1, sku="WIDGET-002"),
        ])

        assert not result.success
        assert (result.success_count, result.error_count) == (1, 1)
        assert stock(db, "WIDGET-001").quantity == 12

    def test_atomic_rolls_everything_back(self, db, ctx):
        add_item(db, sku="WIDGET-001", quantity=10)
        add_item(db, sku="WIDGET-002", quantity=10)

        result = inventory_update_service.update_bulk(db, ctx, [
            _absolute(12, sku="WIDGET-001"),
            _absolute(-1, sku="WIDGET-002"),
        ], atomic=True)

        assert not result.success
        assert result.error.startswith("Atomic update failed - all changes rolled back")
        assert result.results[0].sku == "WIDGET-002"
        assert stock(db, "WIDGET-001").quantity == 10
        assert audit_service.query_entries(db, ctx).total == 0

    def test_atomic_success(self, db, ctx):
        add_item(db, sku="WIDGET-001", quantity=10)
        add_item(db, sku="WIDGET-002", quantity=10)

        result = inventory_update_service.update_bulk(db, ctx, [
            _adjust(1, sku="WIDGET-001"),
            _adjust(2, sku="WIDGET-002"),
        ], atomic=True)

        assert result.success
        assert stock(db, "WIDGET-002").quantity == 12
