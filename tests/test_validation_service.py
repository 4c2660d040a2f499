import pytest

from factories import ORG, OTHER_ORG, add_item, context
from inventory_control.exceptions import ValidationError
from inventory_control.schemas.validation import ValidationInput
from inventory_control.services import validation_service


class TestSkuFormat:
    @pytest.mark.parametrize("sku", ["WIDGET-001", "abc", "A" * 100, "  GADGET-100  "])
    def test_accepts_well_formed_skus(self, sku):
        assert validation_service.validate_sku_format(sku) == []

    @pytest.mark.parametrize(
        "sku, message",
        [
            (None, "SKU is required"),
            ("   ", "SKU is required"),
            ("AB", "SKU must be at least 3 characters"),
            ("A" * 101, "SKU must be at most 100 characters"),
            ("BAD SKU!", "SKU can only contain letters, numbers, and hyphens"),
            ("WIDGET_001", "SKU can only contain letters, numbers, and hyphens"),
        ],
    )
    def test_rejects_malformed_skus(self, sku, message):
        assert validation_service.validate_sku_format(sku) == [message]


class TestQuantity:
    @pytest.mark.parametrize("quantity", [0, 1, 10_000_000])
    def test_accepts_bounds(self, quantity):
        assert validation_service.validate_quantity(quantity) == []

    @pytest.mark.parametrize(
        "quantity, message",
        [
            (None, "Quantity is required"),
            (-1, "Quantity cannot be negative"),
            (10_000_001, "Quantity cannot exceed 10,000,000"),
            (5.5, "Quantity must be an integer"),
            ("5", "Quantity must be an integer"),
            (True, "Quantity must be an integer"),
        ],
    )
    def test_rejects_out_of_range_and_non_integers(self, quantity, message):
        assert validation_service.validate_quantity(quantity) == [message]


class TestValidate:
    def test_valid_input(self, db):
        result = validation_service.validate(
            db, ValidationInput(organization_id=ORG, sku="WIDGET-001", quantity=10, warehouse_id="wh-a")
        )
        assert result.valid
        assert result.errors == []

    def test_collects_every_failure(self, db):
        result = validation_service.validate(
            db, ValidationInput(organization_id=ORG, sku="X", quantity=-3, warehouse_id="wh-missing")
        )
        assert not result.valid
        assert result.errors == [
            "SKU must be at least 3 characters",
            "Quantity cannot be negative",
            "Warehouse 'wh-missing' not found or not accessible",
        ]

    def test_other_organizations_warehouse_looks_missing(self, db):
        result = validation_service.validate(
            db, ValidationInput(organization_id=ORG, sku="WIDGET-001", quantity=1, warehouse_id="wh-other")
        )
        assert result.errors == ["Warehouse 'wh-other' not found or not accessible"]

    def test_inactive_warehouse(self, db):
        result = validation_service.validate(
            db, ValidationInput(organization_id=ORG, sku="WIDGET-001", quantity=1, warehouse_id="wh-x")
        )
        assert result.errors == ["Warehouse 'wh-x' is not active"]

    def test_unknown_and_inactive_products(self, db):
        unknown = validation_service.validate(db, ValidationInput(organization_id=ORG, sku="NOPE-404", quantity=1))
        inactive = validation_service.validate(db, ValidationInput(organization_id=ORG, sku="OLD-999", quantity=1))

        assert unknown.errors == ["Product with SKU 'NOPE-404' not found or not accessible"]
        assert inactive.errors == ["Product with SKU 'OLD-999' is not active"]

    def test_product_lookup_is_tenant_scoped(self, db):
        result = validation_service.validate(
            db, ValidationInput(organization_id=OTHER_ORG, sku="WIDGET-002", quantity=1)
        )
        assert result.errors == ["Product with SKU 'WIDGET-002' not found or not accessible"]

    def test_missing_organization_raises(self, db):
        with pytest.raises(ValidationError):
            validation_service.validate(db, ValidationInput(sku="WIDGET-001", quantity=1))


class TestValidateForCreate:
    def test_rejects_existing_sku(self, db):
        add_item(db, sku="WIDGET-001")
        result = validation_service.validate_for_create(
            db, ValidationInput(organization_id=ORG, sku="WIDGET-001", quantity=5, warehouse_id="wh-a")
        )
        assert not result.valid
        assert "SKU 'WIDGET-001' already exists - duplicate not allowed" in result.errors

    def test_same_sku_in_another_organization_is_fine(self, db):
        add_item(db, sku="WIDGET-001", warehouse_id="wh-other", organization_id=OTHER_ORG)
        result = validation_service.validate_for_create(
            db, ValidationInput(organization_id=ORG, sku="WIDGET-001", quantity=5, warehouse_id="wh-a")
        )
        assert result.valid


def test_validate_batch_counts(db):
    result = validation_service.validate_batch(db, [
        ValidationInput(organization_id=ORG, sku="WIDGET-001", quantity=1),
        ValidationInput(organization_id=ORG, sku="WIDGET-002", quantity=-1),
        ValidationInput(organization_id=ORG, sku="GADGET-100", quantity=3),
    ])
    assert not result.valid
    assert (result.total, result.valid_count, result.invalid_count) == (3, 2, 1)
    assert not result.results[1].valid


def test_sanitize_text_strips_markup():
    text = "<script>alert('x')</script>Damaged <b>pallet</b>  "
    assert validation_service.sanitize_text(text) == "Damaged pallet"
    assert validation_service.sanitize_text(None) == ""


def test_require_reason_rejects_markup_only_text():
    with pytest.raises(ValidationError):
        validation_service.require_reason("<i></i>   ")


def test_require_context():
    with pytest.raises(ValidationError, match="organization_id"):
        validation_service.require_context(context(organization_id=""))
    with pytest.raises(ValidationError, match="user_id"):
        validation_service.require_context(context(user_id=""))


@pytest.mark.parametrize(
    "message, field",
    [
        ("SKU must be at least 3 characters", "sku"),
        ("Quantity cannot be negative", "quantity"),
        ("Warehouse 'wh-x' is not active", "warehouseId"),
        ("something else", "unknown"),
    ],
)
def test_error_field(message, field):
    assert validation_service.error_field(message) == field
