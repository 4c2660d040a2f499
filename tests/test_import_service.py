import pytest

from factories import ORG, add_item, stock
from inventory_control.exceptions import ValidationError
from inventory_control.schemas.audit import AuditQuery
from inventory_control.schemas.inventory_import import ImportOptions
from inventory_control.services import audit_service, import_service


def _options(**overrides):
    data = dict(organization_id=ORG, user_id="user-1", warehouse_id="wh-a")
    data.update(overrides)
    return ImportOptions(**data)


def _run(db, content, **overrides):
    return import_service.import_inventory_csv(db, content, _options(**overrides))


class TestHappyPath:
    def test_creates_new_items(self, db, ctx, events):
        result = _run(db, "sku,quantity,location\nWIDGET-001,10,A-01\nWIDGET-002,4,B-02\n")

        assert result.success
        assert (result.total_rows, result.created, result.updated) == (2, 2, 0)
        assert stock(db, "WIDGET-001").quantity == 10
        assert stock(db, "WIDGET-001").location == "A-01"
        entries = audit_service.query_entries(db, ctx, AuditQuery(action="CREATE")).items
        assert {e.sku for e in entries} == {"WIDGET-001", "WIDGET-002"}
        assert all(e.metadata["import_id"] == result.import_id for e in entries)
        assert events[-1][0] == "inventory.import.completed"

    def test_reimport_updates_every_row(self, db):
        content = "sku,quantity\nWIDGET-001,10\nWIDGET-002,4\n"
        _run(db, content)

        result = _run(db, "sku,quantity\nWIDGET-001,12\nWIDGET-002,4\n")

        assert (result.created, result.updated) == (0, 2)
        assert stock(db, "WIDGET-001").quantity == 12

    def test_headers_are_case_insensitive_and_warehouse_column_wins(self, db):
        result = _run(db, "SKU,Quantity,WarehouseId,ReorderPoint,Cost\nWIDGET-001,3,wh-b,2,1.25\n")

        assert result.success
        item = stock(db, warehouse_id="wh-b")
        assert (item.quantity, item.reorder_point, item.cost) == (3, 2, 1.25)

    def test_bom_crlf_and_quoted_fields(self, db):
        content = '\ufeffsku,quantity,location\r\nWIDGET-001,5,"Aisle ""7"", bay 2"\r\n\r\n'

        result = _run(db, content)

        assert result.success
        assert result.total_rows == 1
        assert stock(db).location == 'Aisle "7", bay 2'

    def test_duplicate_rows_keep_the_last(self, db):
        result = _run(db, "sku,quantity\nWIDGET-001,1\nWIDGET-002,2\nWIDGET-001,3\n")

        assert result.total_rows == 2
        assert stock(db, "WIDGET-001").quantity == 3
        assert result.warnings == ["Duplicate SKU 'WIDGET-001' found in file, using last occurrence"]

    def test_unknown_columns_only_warn(self, db):
        result = _run(db, "sku,quantity,colour\nWIDGET-001,1,red\n")
        assert result.success
        assert result.warnings == ["Unknown column 'colour' will be ignored"]


class TestRowErrors:
    def test_partial_success_reports_rows(self, db):
        result = _run(db, "sku,quantity\nWIDGET-001,10\nWIDGET-002,12.5\nNOPE-404,1\nGADGET-100,abc\n")

        assert not result.success
        assert result.partial_success
        assert (result.created, result.error_count) == (1, 3)
        assert [(e.row, e.field) for e in result.errors] == [(3, "quantity"), (4, "sku"), (5, "quantity")]
        assert result.errors[0].message == "Quantity must be an integer, got '12.5'"
        assert result.errors[2].message == "Quantity must be a numeric value, got 'abc'"
        assert result.errors[1].original_data == {"sku": "NOPE-404", "quantity": "1"}

    def test_quantity_below_reserved(self, db):
        add_item(db, quantity=20, reserved=10)

        result = _run(db, "sku,quantity\nWIDGET-001,5\n")

        assert result.error_count == 1
        assert "below reserved" in result.errors[0].message
        assert stock(db).quantity == 20

    def test_missing_warehouse(self, db):
        result = _run(db, "sku,quantity\nWIDGET-001,5\n", warehouse_id=None)
        assert result.errors[0].field == "warehouseId"

    def test_inactive_warehouse(self, db):
        result = _run(db, "sku,quantity,warehouseId\nWIDGET-001,5,wh-x\n")
        assert result.errors[0].message == "Warehouse 'wh-x' is not active"
        assert result.errors[0].field == "warehouseId"

    def test_fail_on_first_error_skips_the_rest(self, db):
        result = _run(db, "sku,quantity\nWIDGET-001,x\nWIDGET-002,1\nGADGET-100,1\n", fail_on_first_error=True)

        assert result.error_count == 1
        assert result.skipped == 2
        assert stock(db, "WIDGET-002") is None

    def test_atomic_import_rolls_back(self, db):
        result = _run(db, "sku,quantity\nWIDGET-001,10\nWIDGET-002,-1\nGADGET-100,1\n", atomic=True)

        assert not result.success
        assert result.errors[-1].field == "transaction"
        assert result.errors[-1].message == "Atomic import failed - all changes rolled back"
        assert stock(db, "WIDGET-001") is None
        assert result.skipped == 1

    def test_atomic_import_commits_when_clean(self, db):
        result = _run(db, "sku,quantity\nWIDGET-001,10\nWIDGET-002,1\n", atomic=True)
        assert result.success
        assert stock(db, "WIDGET-002").quantity == 1


class TestFileErrors:
    def test_too_many_rows_imports_nothing(self, db):
        rows = "".join("WIDGET-001,1\n" for _ in range(10_001))

        result = _run(db, "sku,quantity\n" + rows)

        assert not result.success
        assert result.errors[0].row == 0
        assert "exceeding maximum of 10000" in result.errors[0].message
        assert stock(db) is None

    def test_file_size_cap(self, db):
        result = _run(db, "sku,quantity\nWIDGET-001,1\n", max_file_size_bytes=10)
        assert "exceeds maximum" in result.errors[0].message

    @pytest.mark.parametrize(
        "content, message",
        [
            ("", "CSV file is empty"),
            ("sku,quantity\n", "CSV file has no data rows"),
            ("sku,location\nWIDGET-001,A\n", "Missing required header 'quantity'"),
            ("sku,quantity,sku\nWIDGET-001,1,X\n", "Duplicate header 'sku'"),
            ("sku,,quantity\nWIDGET-001,,1\n", "Empty header in column 2"),
        ],
    )
    def test_rejected_files(self, db, content, message):
        result = _run(db, content)
        assert not result.success
        assert message in result.errors[0].message

    def test_explicit_zero_limits_are_honoured(self, db):
        result = _run(db, "sku,quantity\nWIDGET-001,1\n", max_rows=0)
        assert "exceeding maximum of 0" in result.errors[0].message

        result = _run(db, "sku,quantity\nWIDGET-001,1\n", max_file_size_bytes=0)
        assert "exceeds maximum of 0 bytes" in result.errors[0].message
        assert stock(db) is None

    def test_options_need_an_organization(self, db):
        with pytest.raises(ValidationError):
            import_service.import_inventory_csv(db, "sku,quantity\n", ImportOptions(user_id="user-1"))


def test_every_import_gets_its_own_id(db):
    first = _run(db, "sku,quantity\nWIDGET-001,1\n")
    second = _run(db, "sku,quantity\nWIDGET-001,2\n")
    assert first.import_id != second.import_id


def test_template_parses_back(db):
    headers, rows = import_service.parse_csv(import_service.import_template())
    assert headers == ["sku", "quantity", "warehouseid", "cost", "reorderpoint", "location"]
    assert import_service.check_headers(headers) == ([], [])
    assert len(rows) == 2


@pytest.mark.parametrize("atomic, transactions", [(False, 3), (True, 1)])
def test_row_transactions_are_bounded(db, monkeypatch, atomic, transactions):
    bounded = []
    monkeypatch.setattr(import_service, "apply_transaction_timeout", bounded.append)

    result = _run(db, "sku,quantity\nWIDGET-001,1\nWIDGET-002,2\nGADGET-100,3\n", atomic=atomic)

    assert result.success
    assert len(bounded) == transactions
