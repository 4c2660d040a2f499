import pytest

from factories import add_item, stock
from inventory_control.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from inventory_control.models.cycle_count import CycleCountLineStatus, CycleCountSession, CycleCountStatus, CycleCountType
from inventory_control.models.stock_movement import ReferenceType
from inventory_control.schemas.cycle_count import CountEntry, CycleCountSessionCreate
from inventory_control.schemas.inventory_update import VarianceLevel
from inventory_control.services import cycle_count_service, movement_service


def _session(db, ctx, **overrides):
    data = dict(type=CycleCountType.FULL, warehouse_id="wh-a")
    data.update(overrides)
    return cycle_count_service.create_session(db, ctx, CycleCountSessionCreate(**data))


def _count(db, ctx, session_id, **counts):
    entries = [CountEntry(sku=sku.replace("_", "-"), counted_quantity=qty) for sku, qty in counts.items()]
    return cycle_count_service.submit_cycle_count(db, ctx, session_id, entries)


@pytest.fixture
def shelf(db):
    add_item(db, sku="WIDGET-001", quantity=100)
    add_item(db, sku="WIDGET-002", quantity=50)
    add_item(db, sku="GADGET-100", quantity=0)
    add_item(db, sku="WIDGET-001", warehouse_id="wh-b", quantity=7)


class TestCreateSession:
    def test_full_count_covers_the_warehouse(self, db, ctx, shelf, events):
        session = _session(db, ctx)

        assert session.status == CycleCountStatus.IN_PROGRESS
        assert session.item_count == 3
        items = cycle_count_service.get_session_items(db, ctx, session.id)
        assert [i.sku for i in items] == ["GADGET-100", "WIDGET-001", "WIDGET-002"]
        assert events[-1][0] == "cycle_count.started"

    def test_partial_count_needs_skus(self, db, ctx, shelf):
        with pytest.raises(ValidationError):
            _session(db, ctx, type=CycleCountType.PARTIAL)

    def test_partial_count_only_covers_listed_skus(self, db, ctx, shelf):
        session = _session(db, ctx, type=CycleCountType.PARTIAL, skus=["WIDGET-002", "NOPE-404"])
        assert session.item_count == 1
        assert session.skus == ["NOPE-404", "WIDGET-002"]

    def test_empty_warehouse(self, db, ctx):
        with pytest.raises(ValidationError):
            _session(db, ctx, warehouse_id="wh-b")

    def test_foreign_warehouse(self, db, ctx, shelf):
        with pytest.raises(NotFoundError):
            _session(db, ctx, warehouse_id="wh-other")

    def test_locked_items_cannot_join_another_locking_count(self, db, ctx, shelf):
        _session(db, ctx, type=CycleCountType.PARTIAL, skus=["WIDGET-001"], lock_items=True)
        assert stock(db).is_locked

        with pytest.raises(ConflictError):
            _session(db, ctx, lock_items=True)


class TestCounting:
    def test_blind_count_hides_expected_quantity(self, db, ctx, shelf):
        session = _session(db, ctx, is_blind=True)
        items = cycle_count_service.get_session_items(db, ctx, session.id)
        assert all("expected_quantity" not in item.model_dump() for item in items)

    def test_guided_count_shows_expected_quantity(self, db, ctx, shelf):
        session = _session(db, ctx)
        items = {i.sku: i for i in cycle_count_service.get_session_items(db, ctx, session.id)}
        assert items["WIDGET-001"].expected_quantity == 100

    def test_submit_reports_bad_entries(self, db, ctx, shelf):
        session = _session(db, ctx)

        result = cycle_count_service.submit_cycle_count(db, ctx, session.id, [
            CountEntry(sku="WIDGET-001", counted_quantity=98),
            CountEntry(sku="NOPE-404", counted_quantity=1),
            CountEntry(sku="WIDGET-002", counted_quantity=-4),
        ])

        assert not result.success
        assert result.accepted == 1
        assert [e.sku for e in result.errors] == ["NOPE-404", "WIDGET-002"]

    def test_later_count_replaces_earlier(self, db, ctx, shelf):
        session = _session(db, ctx)
        _count(db, ctx, session.id, WIDGET_001=90)
        _count(db, ctx, session.id, WIDGET_001=95)

        report = cycle_count_service.generate_variance_report(db, ctx, session.id)

        assert [(i.sku, i.counted_quantity) for i in report.items] == [("WIDGET-001", 95)]


class TestVarianceReport:
    def test_totals(self, db, ctx, shelf):
        session = _session(db, ctx)
        _count(db, ctx, session.id, WIDGET_001=90, WIDGET_002=52, GADGET_100=3)

        report = cycle_count_service.generate_variance_report(
            db, ctx, session.id, warning_threshold=5, error_threshold=50
        )

        assert report.total_items == 3
        assert report.counted_items == 3
        assert report.items_with_variance == 3
        assert report.total_variance == -5
        assert report.absolute_variance == 15
        by_sku = {i.sku: i for i in report.items}
        assert by_sku["WIDGET-001"].variance_percent == -10.0
        assert by_sku["WIDGET-001"].variance_level == VarianceLevel.WARNING
        assert by_sku["WIDGET-002"].variance_level == VarianceLevel.OK
        assert by_sku["GADGET-100"].variance_percent == 100.0
        assert by_sku["GADGET-100"].variance_level == VarianceLevel.ERROR
        assert (report.warning_count, report.error_count) == (1, 1)

    def test_uncounted_lines_are_left_out(self, db, ctx, shelf):
        session = _session(db, ctx)
        _count(db, ctx, session.id, WIDGET_002=50)

        report = cycle_count_service.generate_variance_report(db, ctx, session.id)

        assert (report.total_items, report.counted_items, report.items_with_variance) == (3, 1, 0)

    def test_tenant_scoped(self, db, ctx, other_ctx, shelf):
        session = _session(db, ctx)
        with pytest.raises(NotFoundError):
            cycle_count_service.generate_variance_report(db, other_ctx, session.id)


class TestCompletion:
    def test_completion_reconciles_stock(self, db, ctx, shelf, events):
        session = _session(db, ctx)
        _count(db, ctx, session.id, WIDGET_001=90, WIDGET_002=50)

        result = cycle_count_service.complete_cycle_count_session(db, ctx, session.id)

        assert result.status == CycleCountStatus.COMPLETED
        assert (result.applied, result.unchanged, result.uncounted) == (1, 1, 1)
        assert stock(db, "WIDGET-001").quantity == 90
        assert stock(db, "WIDGET-002").quantity == 50
        assert stock(db, "WIDGET-001", warehouse_id="wh-b").quantity == 7

        applied = next(line for line in result.lines if line.sku == "WIDGET-001")
        movement = movement_service.get_movement(db, ctx, applied.movement_id)
        assert movement.reference_type == ReferenceType.CYCLE_COUNT
        assert movement.reference_id == session.id
        assert events[-1][0] == "cycle_count.completed"

    def test_closed_session_rejects_counts(self, db, ctx, shelf):
        session = _session(db, ctx)
        cycle_count_service.complete_cycle_count_session(db, ctx, session.id)

        with pytest.raises(InvalidStateError):
            _count(db, ctx, session.id, WIDGET_001=1)
        with pytest.raises(InvalidStateError):
            cycle_count_service.complete_cycle_count_session(db, ctx, session.id)

    def test_session_being_completed_cannot_be_completed_again(self, db, ctx, shelf):
        session = _session(db, ctx)
        _count(db, ctx, session.id, WIDGET_001=90)
        row = db.get(CycleCountSession, session.id)
        row.status = CycleCountStatus.COMPLETING
        db.commit()

        with pytest.raises(InvalidStateError):
            cycle_count_service.complete_cycle_count_session(db, ctx, session.id)
        with pytest.raises(InvalidStateError):
            _count(db, ctx, session.id, WIDGET_001=80)
        assert stock(db, "WIDGET-001").quantity == 100

    def test_completion_unlocks_items(self, db, ctx, shelf):
        session = _session(db, ctx, lock_items=True)
        _count(db, ctx, session.id, WIDGET_001=99)

        cycle_count_service.complete_cycle_count_session(db, ctx, session.id)

        assert not stock(db, "WIDGET-001").is_locked
        assert stock(db, "WIDGET-001").quantity == 99

    def test_large_variance_waits_for_approval(self, db, ctx, shelf):
        session = _session(db, ctx, auto_approve_threshold=10)
        _count(db, ctx, session.id, WIDGET_001=50, WIDGET_002=48)

        result = cycle_count_service.complete_cycle_count_session(db, ctx, session.id)

        assert (result.applied, result.pending_approval) == (1, 1)
        assert stock(db, "WIDGET-001").quantity == 100
        assert stock(db, "WIDGET-002").quantity == 48

        executed = cycle_count_service.approve_count_adjustment(db, ctx, session.id, "WIDGET-001")

        assert executed.success
        assert stock(db, "WIDGET-001").quantity == 50
        items = {i.sku: i for i in cycle_count_service.get_session_items(db, ctx, session.id)}
        assert items["WIDGET-001"].status == CycleCountLineStatus.APPLIED

    def test_rejected_adjustment_leaves_stock(self, db, ctx, shelf):
        session = _session(db, ctx, auto_approve_threshold=10)
        _count(db, ctx, session.id, WIDGET_001=50)
        cycle_count_service.complete_cycle_count_session(db, ctx, session.id)

        result = cycle_count_service.reject_count_adjustment(db, ctx, session.id, "WIDGET-001", "Recount needed")

        assert result.success
        assert stock(db, "WIDGET-001").quantity == 100
        items = {i.sku: i for i in cycle_count_service.get_session_items(db, ctx, session.id)}
        assert items["WIDGET-001"].status == CycleCountLineStatus.REJECTED
        with pytest.raises(InvalidStateError):
            cycle_count_service.approve_count_adjustment(db, ctx, session.id, "WIDGET-001")


def test_list_sessions(db, ctx, shelf):
    first = _session(db, ctx, type=CycleCountType.PARTIAL, skus=["WIDGET-001"])
    _session(db, ctx, type=CycleCountType.PARTIAL, skus=["WIDGET-002"])
    cycle_count_service.complete_cycle_count_session(db, ctx, first.id)

    open_sessions = cycle_count_service.list_sessions(db, ctx, status=CycleCountStatus.IN_PROGRESS)

    assert len(open_sessions) == 1
    assert open_sessions[0].skus == ["WIDGET-002"]
    assert len(cycle_count_service.list_sessions(db, ctx, warehouse_id="wh-a")) == 2
