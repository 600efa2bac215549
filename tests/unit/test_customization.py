"""Unit tests for customization schema parsing and pricing rules."""

from decimal import Decimal

import pytest
from services.store_service.errors import PricingValidationError
from services.store_service.services.customization import (
    CheckboxField,
    DropdownField,
    extract_quantity,
    parse_schema,
    resolve_customization,
)

SCHEMA = [
    {
        "id": "size",
        "type": "dropdown",
        "label": "Size",
        "required": True,
        "options": [
            {"value": "s", "label": "Small"},
            {"value": "xl", "label": "XL", "price_modifier": "2.50"},
            {"value": "pro", "label": "Pro", "unit_price_override": "25"},
        ],
    },
    {"id": "gift_wrap", "type": "checkbox", "price_modifier": "3"},
    {
        "id": "finish",
        "type": "radio_group",
        "price_modifier": "1",
        "options": [
            {"value": "matte"},
            {"value": "gloss", "price_modifier": "4"},
        ],
    },
    {
        "id": "engraving",
        "type": "text",
        "price_modifier": "5",
        "required": True,
        "condition": {"depends_on": "gift_wrap", "show_when": "true"},
    },
    {
        "id": "colors",
        "type": "color_selector",
        "multiple_selection": True,
        "colors": [
            {"id": "red", "name": "Red", "price_modifier": "0.75"},
            {"id": "blue", "name": "Blue"},
        ],
    },
]


@pytest.fixture
def schema():
    return parse_schema(SCHEMA)


# ---------------------------------------------------------------------------
# parse_schema
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_parse_schema_builds_typed_fields(schema):
    """Each raw field becomes the model for its kind."""
    assert isinstance(schema.fields[0], DropdownField)
    assert isinstance(schema.fields[1], CheckboxField)
    assert schema.fields[0].options[1].price_modifier == Decimal("2.50")


@pytest.mark.unit
def test_parse_schema_rejects_unknown_field_kind():
    """A field type nobody handles is a misconfigured product."""
    with pytest.raises(PricingValidationError):
        parse_schema([{"id": "x", "type": "hologram"}])


# ---------------------------------------------------------------------------
# resolve_customization
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_dropdown_option_modifier(schema):
    """The selected option's modifier is added."""
    resolved = resolve_customization(schema, {"size": "xl"})

    assert resolved.modifier == Decimal("2.50")
    assert resolved.unit_price_override is None


@pytest.mark.unit
def test_dropdown_unit_price_override(schema):
    """An option with a unit price override replaces the base price."""
    resolved = resolve_customization(schema, {"size": "pro"})

    assert resolved.unit_price_override == Decimal("25.00")


@pytest.mark.unit
def test_checkbox_only_counts_when_ticked(schema):
    """Checkbox modifiers apply to True only."""
    ticked = resolve_customization(
        schema, {"size": "s", "gift_wrap": True, "engraving": "Hola"}
    )
    unticked = resolve_customization(schema, {"size": "s", "gift_wrap": False})

    assert ticked.modifier == Decimal("8.00")
    assert unticked.modifier == Decimal("0.00")


@pytest.mark.unit
def test_radio_falls_back_to_field_modifier(schema):
    """Options without their own modifier use the field's."""
    matte = resolve_customization(schema, {"size": "s", "finish": "matte"})
    gloss = resolve_customization(schema, {"size": "s", "finish": "gloss"})

    assert matte.modifier == Decimal("1.00")
    assert gloss.modifier == Decimal("4.00")


@pytest.mark.unit
def test_color_selector_sums_selected_colors(schema):
    """Every selected color adds its own modifier."""
    resolved = resolve_customization(schema, {"size": "s", "colors": ["red", "blue"]})

    assert resolved.modifier == Decimal("0.75")


@pytest.mark.unit
def test_invalid_choice_rejected(schema):
    """A value that is not one of the options is refused."""
    with pytest.raises(PricingValidationError):
        resolve_customization(schema, {"size": "xxl"})

    with pytest.raises(PricingValidationError):
        resolve_customization(schema, {"size": "s", "colors": ["green"]})


@pytest.mark.unit
def test_required_field_missing(schema):
    """Missing required visible fields are refused."""
    with pytest.raises(PricingValidationError) as exc_info:
        resolve_customization(schema, {})

    assert "size" in exc_info.value.message


@pytest.mark.unit
def test_hidden_required_field_not_enforced(schema):
    """A required field hidden by its condition may be left empty."""
    resolved = resolve_customization(schema, {"size": "s", "gift_wrap": False})
    assert "engraving" not in resolved.selections

    with pytest.raises(PricingValidationError):
        resolve_customization(schema, {"size": "s", "gift_wrap": True})


@pytest.mark.unit
def test_unknown_keys_are_dropped(schema):
    """Only declared fields survive into the stored selections."""
    resolved = resolve_customization(
        schema, {"size": "s", "__proto__": {"admin": True}, "total": "0"}
    )

    assert resolved.selections == {"size": "s"}


# ---------------------------------------------------------------------------
# Quantity fields
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_quantity_keyword_field_overrides_quantity():
    """Fields named like a quantity set the line quantity."""
    schema = parse_schema([{"id": "cantidad", "type": "text"}])

    resolved = resolve_customization(schema, {"cantidad": "5 unidades"})

    assert resolved.quantity_override == 5


@pytest.mark.unit
def test_explicit_quantity_multiplier_flag():
    """is_quantity_multiplier marks a field regardless of its name."""
    schema = parse_schema(
        [
            {
                "id": "pack",
                "type": "dropdown",
                "is_quantity_multiplier": True,
                "options": [{"value": "12"}, {"value": "24"}],
            }
        ]
    )

    resolved = resolve_customization(schema, {"pack": "24"})

    assert resolved.quantity_override == 24


@pytest.mark.unit
@pytest.mark.parametrize(
    "value,expected",
    [(3, 3), (2.9, 2), ("10 units", 10), ("none", 1), (0, 1), (True, 1), ([4], 4)],
)
def test_extract_quantity(value, expected):
    """Quantities are read leniently and never drop below 1."""
    assert extract_quantity(value) == expected
